# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vmi/disk/sources.py
"""
Lazy byte producers backing Data extents.

A source never holds disk content in memory (BytesSource aside, which exists
for tests and tiny metadata blobs); every read opens the backing file, so a
source can be shared between the producer thread and anything else.
"""
from __future__ import annotations

import os
from contextlib import contextmanager
from pathlib import Path
from typing import BinaryIO, Iterator, Optional, Tuple

from ..core.exceptions import MalformedLayout, wrap_io

DEFAULT_CHUNK = 1024 * 1024


class ByteSource:
    """Pull-based producer of a contiguous byte range."""

    size: Optional[int] = None

    def iter_bytes(self, offset: int, length: int, chunk_size: int = DEFAULT_CHUNK) -> Iterator[bytes]:
        raise NotImplementedError

    def read_at(self, offset: int, length: int) -> bytes:
        return b"".join(self.iter_bytes(offset, length, max(1, length)))

    def describe(self) -> str:
        return type(self).__name__

    def paths(self) -> Tuple[Path, ...]:
        """Files this source reads from."""
        return ()


class BytesSource(ByteSource):
    def __init__(self, data: bytes):
        self._data = bytes(data)
        self.size = len(self._data)

    def iter_bytes(self, offset: int, length: int, chunk_size: int = DEFAULT_CHUNK) -> Iterator[bytes]:
        if offset < 0 or offset + length > len(self._data):
            raise MalformedLayout(msg=f"read [{offset}, {offset + length}) outside in-memory source of {len(self._data)} bytes")
        end = offset + length
        pos = offset
        while pos < end:
            n = min(chunk_size, end - pos)
            yield self._data[pos:pos + n]
            pos += n


class FileSlice(ByteSource):
    """
    A window `[base, base + size)` of a file (or block device).

    Used both as a Data extent backing store and as the random-access blob the
    codecs parse headers from. OVA members are FileSlices of the tar file.
    """

    def __init__(self, path: Path, base: int = 0, size: Optional[int] = None, *, name: Optional[str] = None):
        self.path = Path(path)
        self.base = int(base)
        if size is None:
            size = file_size(self.path) - self.base
        self.size = int(size)
        self.name = name or self.path.name

    def __repr__(self) -> str:
        return f"FileSlice({str(self.path)!r}, base={self.base}, size={self.size})"

    def describe(self) -> str:
        return f"{self.path}@{self.base}"

    def paths(self) -> Tuple[Path, ...]:
        return (self.path,)

    def sub(self, offset: int, size: int, *, name: Optional[str] = None) -> "FileSlice":
        if offset < 0 or offset + size > self.size:
            raise MalformedLayout(msg=f"sub-slice [{offset}, {offset + size}) outside {self!r}")
        return FileSlice(self.path, self.base + offset, size, name=name or self.name)

    @contextmanager
    def reader(self) -> Iterator["SliceReader"]:
        try:
            f = open(self.path, "rb")
        except OSError as e:
            raise wrap_io(f"cannot open {self.path}", e, path=str(self.path)) from e
        try:
            yield SliceReader(self, f)
        finally:
            f.close()

    def read_at(self, offset: int, length: int) -> bytes:
        with self.reader() as r:
            return r.read_at(offset, length)

    def iter_bytes(self, offset: int, length: int, chunk_size: int = DEFAULT_CHUNK) -> Iterator[bytes]:
        if offset < 0 or offset + length > self.size:
            raise MalformedLayout(
                msg=f"read [{offset}, {offset + length}) beyond end of {self.path} ({self.size} bytes)",
                context={"path": str(self.path)},
            )
        with self.reader() as r:
            pos = offset
            end = offset + length
            while pos < end:
                n = min(chunk_size, end - pos)
                yield r.read_at(pos, n)
                pos += n


class SliceReader:
    """Single open handle over a FileSlice, for parsers doing many small reads."""

    def __init__(self, sl: FileSlice, f: BinaryIO):
        self._sl = sl
        self._f = f

    @property
    def size(self) -> int:
        return self._sl.size

    def read_at(self, offset: int, length: int, *, allow_short: bool = False) -> bytes:
        if offset < 0:
            raise MalformedLayout(msg=f"negative offset {offset} in {self._sl.path}")
        avail = max(0, self._sl.size - offset)
        want = min(length, avail) if allow_short else length
        if want > avail:
            raise MalformedLayout(
                msg=f"short read at {offset} (+{length}) in {self._sl.path} ({self._sl.size} bytes)",
                context={"path": str(self._sl.path)},
            )
        try:
            self._f.seek(self._sl.base + offset)
            data = self._f.read(want)
        except OSError as e:
            raise wrap_io(f"read failed on {self._sl.path}", e, offset=offset) from e
        if len(data) != want:
            raise MalformedLayout(msg=f"truncated file {self._sl.path} at offset {offset}")
        return data


def file_size(path: Path) -> int:
    """Size of a regular file or block device."""
    try:
        with open(path, "rb") as f:
            return f.seek(0, os.SEEK_END)
    except OSError as e:
        raise wrap_io(f"cannot stat {path}", e, path=str(path)) from e
