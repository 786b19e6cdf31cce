# SPDX-License-Identifier: LGPL-3.0-or-later
# vmi/formats/raw.py
# -*- coding: utf-8 -*-
from __future__ import annotations

import errno
import io
import logging
import os
import stat
from pathlib import Path
from typing import Any, BinaryIO, Iterable, Iterator, List, Optional, Tuple, Union

from ..core.exceptions import MalformedLayout, wrap_io
from ..core.utils import U, is_zero
from ..disk.extent import Block, DiskImage, Extent, ExtentKind, merge_adjacent
from ..disk.sources import FileSlice
from .descriptor import FormatDescriptor, FormatTag, block_stream

LOG = logging.getLogger(__name__)

RAW_CONFIDENCE = 0.05
DEFAULT_ZERO_BLOCK = 64 * 1024

Source = Union[Path, FileSlice]


def as_slice(source: Source) -> FileSlice:
    if isinstance(source, FileSlice):
        return source
    return FileSlice(Path(source))


def _is_disk_path(path: Path) -> bool:
    try:
        st = path.stat()
    except OSError:
        return False
    return stat.S_ISREG(st.st_mode) or stat.S_ISBLK(st.st_mode)


def data_regions(path: Path, size: int) -> List[Tuple[int, int]]:
    """
    Allocated regions of a regular file via SEEK_DATA/SEEK_HOLE.
    Filesystems without hole reporting give back the whole file.
    """
    seek_data = getattr(os, "SEEK_DATA", None)
    seek_hole = getattr(os, "SEEK_HOLE", None)
    if seek_data is None or seek_hole is None or size == 0:
        return [(0, size)]
    regions: List[Tuple[int, int]] = []
    fd = os.open(path, os.O_RDONLY)
    try:
        pos = 0
        while pos < size:
            try:
                start = os.lseek(fd, pos, seek_data)
            except OSError as e:
                if e.errno == errno.ENXIO:
                    break
                return [(0, size)]
            end = min(os.lseek(fd, start, seek_hole), size)
            if end > start:
                regions.append((start, end - start))
            pos = end
    finally:
        os.close(fd)
    return regions


class RawCodec:
    """
    Identity mapping: one Data extent per run of non-zero blocks, zero runs
    coalesced into Zero extents, filesystem holes reported as Sparse.
    """

    tag = FormatTag.RAW

    def __init__(self, zero_block_size: int = DEFAULT_ZERO_BLOCK):
        self.zero_block_size = max(512, int(zero_block_size))

    def probe(self, path: Source) -> float:
        if isinstance(path, FileSlice):
            return RAW_CONFIDENCE if path.size > 0 else 0.0
        p = Path(path)
        if not _is_disk_path(p):
            return 0.0
        try:
            return RAW_CONFIDENCE if as_slice(p).size > 0 else 0.0
        except Exception:
            return 0.0

    def open(self, path: Source, **options: Any) -> DiskImage:
        sl = as_slice(path)
        block = int(options.get("zero_block_size") or self.zero_block_size)
        if sl.base == 0 and stat.S_ISREG(os.stat(sl.path).st_mode):
            regions = data_regions(sl.path, sl.size)
        else:
            regions = [(0, sl.size)]

        extents: List[Extent] = []
        pos = 0
        for start, length in regions:
            if start > pos:
                extents.append(Extent(pos, start - pos, ExtentKind.SPARSE))
            extents.extend(self._scan(sl, start, length, block))
            pos = start + length
        if pos < sl.size:
            extents.append(Extent(pos, sl.size - pos, ExtentKind.SPARSE))

        desc = FormatDescriptor(FormatTag.RAW, sl.path, {"zero_block_size": block})
        image = DiskImage(sl.size, merge_adjacent(extents), descriptor=desc)
        LOG.debug("Raw %s: %d extents, %s allocated", sl.describe(), len(image.extents), U.human_bytes(image.allocated_bytes))
        return image

    @staticmethod
    def _scan(sl: FileSlice, start: int, length: int, block: int) -> Iterator[Extent]:
        with sl.reader() as r:
            pos = start
            end = start + length
            while pos < end:
                n = min(block, end - pos)
                data = r.read_at(pos, n)
                if is_zero(data):
                    yield Extent(pos, n, ExtentKind.ZERO)
                else:
                    yield Extent(pos, n, ExtentKind.DATA, sl, pos)
                pos += n

    def create(self, image: DiskImage, sink: Path, *, blocks: Optional[Iterable[Block]] = None, **options: Any) -> int:
        sink = Path(sink)
        written = 0
        try:
            with open(sink, "wb") as f:
                written = write_sparse(f, block_stream(image, blocks))
                f.truncate(image.virtual_size)
        except OSError as e:
            raise wrap_io(f"failed writing raw image {sink}", e, path=str(sink)) from e
        LOG.info("Raw written: %s (%s data)", sink, U.human_bytes(written))
        return written

    def artifacts(self, sink: Path, **options: Any) -> List[Path]:
        return [Path(sink)]


def write_sparse(f: BinaryIO, blocks: Iterable[Block]) -> int:
    """Write Data blocks at their offsets; zero ranges are left as holes."""
    written = 0
    for b in blocks:
        if b.kind != ExtentKind.DATA or is_zero(b.data):  # type: ignore[arg-type]
            continue
        f.seek(b.offset)
        f.write(b.data)  # type: ignore[arg-type]
        written += b.length
    return written


def write_dense(f: BinaryIO, blocks: Iterable[Block], chunk_size: int = 1024 * 1024) -> int:
    """Sequential raw stream with explicit zeros, for pipes and upload streams."""
    written = 0
    for b in blocks:
        if b.kind == ExtentKind.DATA:
            f.write(b.data)  # type: ignore[arg-type]
            written += b.length
            continue
        remaining = b.length
        while remaining > 0:
            n = min(chunk_size, remaining)
            f.write(bytes(n))
            remaining -= n
            written += n
    return written


class DenseReader(io.RawIOBase):
    """
    Readable stream of the dense bytes of a block stream, zero-filled up to
    `total` (which may exceed the last block, for alignment padding).
    """

    def __init__(self, blocks: Iterable[Block], total: int):
        self._blocks = iter(blocks)
        self._total = int(total)
        self._pos = 0
        self._pending = b""
        self._zeros = 0

    def readable(self) -> bool:
        return True

    def _next(self) -> bool:
        b = next(self._blocks, None)
        if b is None:
            return False
        if b.offset != self._pos + len(self._pending) + self._zeros:
            raise MalformedLayout(msg=f"block stream out of order at offset {b.offset}")
        if b.kind == ExtentKind.DATA:
            self._pending = memoryview(b.data)  # type: ignore[assignment,arg-type]
        else:
            self._zeros = b.length
        return True

    def readinto(self, buf) -> int:
        # fills `buf` completely unless the end is reached; tarfile treats short reads as EOF
        mv = memoryview(buf).cast("B")
        want = min(len(mv), self._total - self._pos)
        done = 0
        while done < want:
            if not self._pending and not self._zeros:
                if not self._next():
                    self._zeros = self._total - self._pos
            n = want - done
            if self._pending:
                n = min(n, len(self._pending))
                mv[done:done + n] = self._pending[:n]
                self._pending = self._pending[n:]
            else:
                n = min(n, self._zeros)
                mv[done:done + n] = bytes(n)
                self._zeros -= n
            self._pos += n
            done += n
        return done
