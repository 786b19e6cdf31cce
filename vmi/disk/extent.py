# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vmi/disk/extent.py
"""
Canonical in-memory disk layout.

A DiskImage is an ordered list of extents covering [0, virtual_size) with no
gaps and no overlaps. Data extents point at a lazy ByteSource; Zero extents
are ranges known to read as zeros; Sparse extents are unallocated ranges
(which also read as zeros, but destinations may leave them unallocated).
"""
from __future__ import annotations

import bisect
import logging
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, Iterator, List, Optional, Sequence, Tuple, TYPE_CHECKING

from ..core.exceptions import MalformedLayout
from .sources import DEFAULT_CHUNK, ByteSource

if TYPE_CHECKING:  # pragma: no cover
    from ..formats.descriptor import FormatDescriptor

LOG = logging.getLogger(__name__)

DEFAULT_SECTOR_SIZE = 512


class ExtentKind(str, Enum):
    DATA = "data"
    ZERO = "zero"
    SPARSE = "sparse"


@dataclass(frozen=True)
class Extent:
    offset: int
    length: int
    kind: ExtentKind
    source: Optional[ByteSource] = None
    source_offset: int = 0

    @property
    def end(self) -> int:
        return self.offset + self.length

    @property
    def is_data(self) -> bool:
        return self.kind == ExtentKind.DATA

    def slice(self, start: int, length: int) -> "Extent":
        """Sub-range `[start, start + length)` in disk coordinates."""
        if start < self.offset or start + length > self.end or length < 0:
            raise MalformedLayout(msg=f"slice [{start}, {start + length}) outside extent [{self.offset}, {self.end})")
        if self.is_data:
            return replace(self, offset=start, length=length, source_offset=self.source_offset + (start - self.offset))
        return replace(self, offset=start, length=length)

    def iter_bytes(self, chunk_size: int = DEFAULT_CHUNK) -> Iterator[bytes]:
        if self.is_data:
            yield from self.source.iter_bytes(self.source_offset, self.length, chunk_size)  # type: ignore[union-attr]
            return
        pos = 0
        while pos < self.length:
            n = min(chunk_size, self.length - pos)
            yield bytes(n)
            pos += n


@dataclass(frozen=True)
class Block:
    """Unit of streaming: Data blocks carry bytes, Zero/Sparse blocks do not."""
    offset: int
    length: int
    kind: ExtentKind
    data: Optional[bytes] = None

    @property
    def end(self) -> int:
        return self.offset + self.length


def _can_merge(a: Extent, b: Extent) -> bool:
    if a.kind != b.kind or a.end != b.offset:
        return False
    if a.kind != ExtentKind.DATA:
        return True
    return a.source is b.source and a.source_offset + a.length == b.source_offset


def merge_adjacent(extents: Iterable[Extent]) -> List[Extent]:
    """Collapse contiguous same-kind extents (Data only when the source run is contiguous too)."""
    out: List[Extent] = []
    for e in extents:
        if e.length == 0:
            continue
        if out and _can_merge(out[-1], e):
            out[-1] = replace(out[-1], length=out[-1].length + e.length)
        else:
            out.append(e)
    return out


def validate_layout(extents: Sequence[Extent], virtual_size: int) -> None:
    """Raise MalformedLayout unless extents tile [0, virtual_size) exactly."""
    if virtual_size < 0:
        raise MalformedLayout(msg=f"negative virtual size {virtual_size}")
    pos = 0
    for i, e in enumerate(extents):
        if e.length <= 0:
            raise MalformedLayout(msg=f"extent #{i} has non-positive length {e.length}")
        if e.offset != pos:
            what = "gap" if e.offset > pos else "overlap"
            raise MalformedLayout(
                msg=f"extent layout has a {what} at offset {pos} (extent #{i} starts at {e.offset})",
                context={"index": i},
            )
        if e.is_data and e.source is None:
            raise MalformedLayout(msg=f"data extent #{i} at {e.offset} has no byte source")
        pos = e.end
    if pos != virtual_size:
        raise MalformedLayout(
            msg=f"extents cover {pos} bytes but virtual size is {virtual_size}",
            context={"covered": pos, "virtual_size": virtual_size},
        )


class DiskImage:
    """
    Logical disk. Immutable once constructed; transforms build new images
    that share sources (and cleanup) with the original.
    """

    def __init__(
        self,
        virtual_size: int,
        extents: Iterable[Extent],
        *,
        sector_size: int = DEFAULT_SECTOR_SIZE,
        descriptor: Optional["FormatDescriptor"] = None,
        cleanup: Optional[List[Callable[[], None]]] = None,
    ):
        ext = tuple(extents)
        validate_layout(ext, virtual_size)
        self._virtual_size = int(virtual_size)
        self._extents: Tuple[Extent, ...] = ext
        self._starts = [e.offset for e in ext]
        self.sector_size = int(sector_size)
        self.descriptor = descriptor
        self._cleanup: List[Callable[[], None]] = cleanup if cleanup is not None else []

    def __repr__(self) -> str:
        tag = self.descriptor.tag.value if self.descriptor is not None and self.descriptor.tag else "?"
        return f"DiskImage(format={tag}, virtual_size={self._virtual_size}, extents={len(self._extents)})"

    @property
    def virtual_size(self) -> int:
        return self._virtual_size

    @property
    def extents(self) -> Tuple[Extent, ...]:
        return self._extents

    @property
    def allocated_bytes(self) -> int:
        return sum(e.length for e in self._extents if e.is_data)

    @property
    def sparse_bytes(self) -> int:
        return self._virtual_size - self.allocated_bytes

    @property
    def sparse_ratio(self) -> float:
        if self._virtual_size == 0:
            return 0.0
        return self.sparse_bytes / self._virtual_size

    def with_extents(self, extents: Iterable[Extent], virtual_size: Optional[int] = None, **kw) -> "DiskImage":
        return DiskImage(
            self._virtual_size if virtual_size is None else virtual_size,
            extents,
            sector_size=kw.get("sector_size", self.sector_size),
            descriptor=kw.get("descriptor", self.descriptor),
            cleanup=self._cleanup,
        )

    def add_cleanup(self, fn: Callable[[], None]) -> None:
        self._cleanup.append(fn)

    def close(self) -> None:
        while self._cleanup:
            fn = self._cleanup.pop()
            try:
                fn()
            except Exception as e:
                LOG.warning("Cleanup for %r failed: %s", self, e)

    def __enter__(self) -> "DiskImage":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def extents_in(self, offset: int, length: int) -> Iterator[Extent]:
        """Extents clipped to [offset, offset + length)."""
        if length <= 0:
            return
        end = offset + length
        if offset < 0 or end > self._virtual_size:
            raise MalformedLayout(msg=f"range [{offset}, {end}) outside disk of {self._virtual_size} bytes")
        i = max(0, bisect.bisect_right(self._starts, offset) - 1)
        while i < len(self._extents) and self._extents[i].offset < end:
            e = self._extents[i]
            s = max(e.offset, offset)
            t = min(e.end, end)
            if t > s:
                yield e.slice(s, t - s) if (s, t) != (e.offset, e.end) else e
            i += 1

    def blocks(self, chunk_size: int = DEFAULT_CHUNK) -> Iterator[Block]:
        """Stream the disk in offset order."""
        for e in self._extents:
            if not e.is_data:
                yield Block(e.offset, e.length, e.kind)
                continue
            pos = e.offset
            for data in e.iter_bytes(chunk_size):
                yield Block(pos, len(data), ExtentKind.DATA, data)
                pos += len(data)
            if pos != e.end:
                raise MalformedLayout(msg=f"data extent at {e.offset} produced {pos - e.offset} of {e.length} bytes")

    def iter_range(self, offset: int, length: int, chunk_size: int = DEFAULT_CHUNK) -> Iterator[bytes]:
        for e in self.extents_in(offset, length):
            yield from e.iter_bytes(chunk_size)

    def read_at(self, offset: int, length: int) -> bytes:
        return b"".join(self.iter_range(offset, length))

    def is_unallocated(self, offset: int, length: int) -> bool:
        return all(not e.is_data for e in self.extents_in(offset, length))

    def source_paths(self) -> List[Path]:
        """Files the image content is read from, descriptor file included."""
        seen: List[Path] = []
        found = [e.source.paths() for e in self._extents if e.is_data and e.source is not None]
        if self.descriptor is not None and self.descriptor.path is not None:
            found.append((Path(self.descriptor.path),))
        for group in found:
            for p in group:
                if p not in seen:
                    seen.append(p)
        return seen


class ImageSource(ByteSource):
    """ByteSource over a range of another DiskImage."""

    def __init__(self, image: DiskImage):
        self.image = image
        self.size = image.virtual_size

    def iter_bytes(self, offset: int, length: int, chunk_size: int = DEFAULT_CHUNK) -> Iterator[bytes]:
        return self.image.iter_range(offset, length, chunk_size)

    def paths(self) -> Tuple[Path, ...]:
        return tuple(self.image.source_paths())


def diff(a: DiskImage, b: DiskImage, block_size: int = 64 * 1024) -> List[Extent]:
    """
    Byte ranges whose content differs between two images of equal virtual
    size, as Data extents backed by `b`. Ranges unallocated in both are skipped
    without reading.
    """
    if a.virtual_size != b.virtual_size:
        raise MalformedLayout(
            msg=f"cannot diff images of different virtual size ({a.virtual_size} != {b.virtual_size})"
        )
    src = ImageSource(b)
    out: List[Extent] = []
    pos = 0
    size = a.virtual_size
    while pos < size:
        n = min(block_size, size - pos)
        if not (a.is_unallocated(pos, n) and b.is_unallocated(pos, n)):
            if a.read_at(pos, n) != b.read_at(pos, n):
                out.append(Extent(pos, n, ExtentKind.DATA, src, pos))
        pos += n
    return merge_adjacent(out)


def content_equal(a: DiskImage, b: DiskImage) -> bool:
    return a.virtual_size == b.virtual_size and not diff(a, b)
