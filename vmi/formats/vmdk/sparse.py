# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vmi/formats/vmdk/sparse.py
"""
Hosted sparse extents (monolithicSparse, twoGbMaxExtentSparse, streamOptimized).

Layout of the 512-byte little-endian header:

   Off  Name
     0  magic 'KDMV'
     4  version (1; 2 adds zeroed-grain GTEs; 3 is streamOptimized)
     8  flags (bit 0 newline test, bit 1 redundant GT, bit 16 compressed, bit 17 markers)
    12  capacity in sectors
    20  grain size in sectors (power of two)
    28  descriptor offset / 36 descriptor size, in sectors
    44  GTEs per GT (512)
    48  redundant GD offset / 56 GD offset (0xffff... = "see footer")
    64  overhead in sectors
    72  unclean shutdown, newline check chars, compression algorithm (1 = deflate)

streamOptimized files carry each grain as `lba:u64 size:u32 deflate-data`,
metadata blocks as 512-byte markers `sectors:u64 0:u32 type:u32`, and a
footer copy of the header (with the real GD offset) before the final EOS
marker.
"""
from __future__ import annotations

import logging
import struct
import zlib
from array import array
from dataclasses import dataclass, replace
from typing import BinaryIO, Iterable, Iterator, List, Optional, Tuple

from ...core.exceptions import MalformedLayout, UnsupportedVariant
from ...core.utils import U, is_zero
from ...disk.extent import Block, Extent, ExtentKind, merge_adjacent
from ...disk.sources import DEFAULT_CHUNK, ByteSource, FileSlice

LOG = logging.getLogger(__name__)

SECTOR = 512
MAGIC = b"KDMV"
GD_AT_END = 0xFFFFFFFFFFFFFFFF

FLAG_NEWLINE_TEST = 1 << 0
FLAG_REDUNDANT_GT = 1 << 1
FLAG_COMPRESSED = 1 << 16
FLAG_MARKERS = 1 << 17

COMPRESSION_NONE = 0
COMPRESSION_DEFLATE = 1

MARKER_EOS = 0
MARKER_GT = 1
MARKER_GD = 2
MARKER_FOOTER = 3

DEFAULT_GRAIN_SECTORS = 128  # 64 KiB
GTES_PER_GT = 512
GTE_ZEROED = 1

_HEADER = struct.Struct("<4sIIQQQQIQQQB4sH")
_GRAIN_MARKER = struct.Struct("<QI")
_META_MARKER = struct.Struct("<QII")
_NEWLINE_CHARS = b"\n \r\n"


@dataclass(frozen=True)
class SparseHeader:
    version: int
    flags: int
    capacity: int
    grain_size: int
    descriptor_offset: int
    descriptor_size: int
    gtes_per_gt: int
    rgd_offset: int
    gd_offset: int
    overhead: int
    unclean_shutdown: int = 0
    compress_algorithm: int = COMPRESSION_NONE

    @classmethod
    def unpack(cls, data: bytes) -> "SparseHeader":
        if len(data) < _HEADER.size:
            raise MalformedLayout(msg="VMDK sparse header is truncated")
        (magic, version, flags, capacity, grain, d_off, d_size, gtes, rgd, gd, overhead,
         unclean, _chars, compress) = _HEADER.unpack_from(data)
        if magic != MAGIC:
            raise MalformedLayout(msg=f"VMDK sparse header magic {magic!r} != {MAGIC!r}")
        return cls(version, flags, capacity, grain, d_off, d_size, gtes, rgd, gd, overhead, unclean, compress)

    def pack(self) -> bytes:
        raw = _HEADER.pack(
            MAGIC, self.version, self.flags, self.capacity, self.grain_size,
            self.descriptor_offset, self.descriptor_size, self.gtes_per_gt,
            self.rgd_offset, self.gd_offset, self.overhead, self.unclean_shutdown,
            _NEWLINE_CHARS, self.compress_algorithm,
        )
        return raw.ljust(SECTOR, b"\x00")

    @property
    def compressed(self) -> bool:
        return bool(self.flags & FLAG_COMPRESSED)

    @property
    def grain_bytes(self) -> int:
        return self.grain_size * SECTOR

    @property
    def num_grains(self) -> int:
        return -(-self.capacity // self.grain_size)

    @property
    def num_gts(self) -> int:
        return -(-self.num_grains // self.gtes_per_gt)

    def validate(self) -> None:
        if self.version not in (1, 2, 3):
            raise UnsupportedVariant(msg=f"VMDK sparse version {self.version} is not supported")
        if not U.is_power_of_two(self.grain_size):
            raise UnsupportedVariant(
                msg=f"VMDK grain size {self.grain_size} sectors is not a power of two",
                context={"grain_size": self.grain_size},
            )
        if self.gtes_per_gt <= 0:
            raise MalformedLayout(msg=f"VMDK header has {self.gtes_per_gt} GTEs per grain table")
        if self.compressed and self.compress_algorithm != COMPRESSION_DEFLATE:
            raise UnsupportedVariant(msg=f"VMDK compression algorithm {self.compress_algorithm} is not supported")


def read_header(r) -> SparseHeader:
    """Header of a sparse extent; streamOptimized files defer to the footer copy."""
    hdr = SparseHeader.unpack(r.read_at(0, SECTOR))
    hdr.validate()
    if hdr.gd_offset == GD_AT_END:
        size = r.size
        if size < 3 * SECTOR:
            raise MalformedLayout(msg="streamOptimized VMDK is too short to hold a footer")
        marker = r.read_at(size - 3 * SECTOR, SECTOR)
        _n, _sz, mtype = _META_MARKER.unpack_from(marker)
        if mtype != MARKER_FOOTER:
            raise MalformedLayout(msg="streamOptimized VMDK footer marker is missing")
        footer = SparseHeader.unpack(r.read_at(size - 2 * SECTOR, SECTOR))
        footer.validate()
        if footer.gd_offset == GD_AT_END:
            raise MalformedLayout(msg="streamOptimized VMDK footer has no grain directory offset")
        hdr = footer
    return hdr


def read_embedded_descriptor(r, hdr: SparseHeader) -> Optional[str]:
    if hdr.descriptor_offset == 0 or hdr.descriptor_size == 0:
        return None
    raw = r.read_at(hdr.descriptor_offset * SECTOR, hdr.descriptor_size * SECTOR, allow_short=True)
    return raw.split(b"\x00", 1)[0].decode("utf-8", "replace")


def read_grain_table(r, hdr: SparseHeader) -> array:
    """One entry per grain: sector offset, 0 (unallocated) or 1 (zeroed)."""
    num_gts = hdr.num_gts
    gd = array("I")
    gd.frombytes(r.read_at(hdr.gd_offset * SECTOR, num_gts * 4))
    if gd.itemsize != 4:  # pragma: no cover
        raise MalformedLayout(msg="platform array('I') is not 32-bit")

    entries = array("I", bytes(4 * hdr.num_grains))
    gt_bytes = hdr.gtes_per_gt * 4
    for gi, gt_sector in enumerate(gd):
        if gt_sector == 0:
            continue
        gt = array("I")
        gt.frombytes(r.read_at(gt_sector * SECTOR, gt_bytes))
        first = gi * hdr.gtes_per_gt
        count = min(hdr.gtes_per_gt, hdr.num_grains - first)
        entries[first:first + count] = gt[:count]
    return entries


class DeflateGrainSource(ByteSource):
    """
    Lazy reader of deflate-compressed grains. Offsets are virtual offsets
    within the extent; each grain is inflated on demand, with the last
    grain cached for sequential reads.
    """

    def __init__(self, sl: FileSlice, hdr: SparseHeader, entries: array):
        self.sl = sl
        self.hdr = hdr
        self.entries = entries
        self.size = hdr.capacity * SECTOR
        self._cache: Tuple[int, bytes] = (-1, b"")

    def describe(self) -> str:
        return f"{self.sl.path} (deflate grains)"

    def paths(self):
        return self.sl.paths()

    def _grain(self, r, index: int) -> bytes:
        if self._cache[0] == index:
            return self._cache[1]
        gb = self.hdr.grain_bytes
        sector = self.entries[index]
        if sector <= GTE_ZEROED:
            data = bytes(gb)
        else:
            head = r.read_at(sector * SECTOR, _GRAIN_MARKER.size)
            lba, size = _GRAIN_MARKER.unpack(head)
            if lba != index * self.hdr.grain_size:
                raise MalformedLayout(
                    msg=f"grain marker LBA {lba} does not match grain {index} in {self.sl.path}",
                    context={"expected_lba": index * self.hdr.grain_size},
                )
            payload = r.read_at(sector * SECTOR + _GRAIN_MARKER.size, size)
            try:
                data = zlib.decompress(payload)
            except zlib.error as e:
                raise MalformedLayout(msg=f"corrupt compressed grain {index} in {self.sl.path}: {e}", cause=e)
            if len(data) > gb:
                raise MalformedLayout(msg=f"grain {index} inflates to {len(data)} bytes (> {gb})")
            data = data.ljust(gb, b"\x00")
        self._cache = (index, data)
        return data

    def iter_bytes(self, offset: int, length: int, chunk_size: int = DEFAULT_CHUNK) -> Iterator[bytes]:
        gb = self.hdr.grain_bytes
        end = offset + length
        if offset < 0 or end > self.size:
            raise MalformedLayout(msg=f"read [{offset}, {end}) outside compressed extent of {self.size} bytes")
        with self.sl.reader() as r:
            pos = offset
            while pos < end:
                gi = pos // gb
                g = self._grain(r, gi)
                start = pos - gi * gb
                n = min(end - pos, gb - start, chunk_size)
                yield g[start:start + n]
                pos += n


def sparse_extents(sl: FileSlice, hdr: SparseHeader, base_offset: int = 0) -> List[Extent]:
    """Map grains of a hosted sparse extent file onto disk extents starting at `base_offset`."""
    with sl.reader() as r:
        entries = read_grain_table(r, hdr)

    capacity_bytes = hdr.capacity * SECTOR
    gb = hdr.grain_bytes
    source: ByteSource = DeflateGrainSource(sl, hdr, entries) if hdr.compressed else sl
    extents: List[Extent] = []
    for gi, sector in enumerate(entries):
        off = gi * gb
        n = min(gb, capacity_bytes - off)
        if sector == 0:
            extents.append(Extent(base_offset + off, n, ExtentKind.SPARSE))
        elif sector == GTE_ZEROED and hdr.version >= 2:
            extents.append(Extent(base_offset + off, n, ExtentKind.ZERO))
        elif hdr.compressed:
            extents.append(Extent(base_offset + off, n, ExtentKind.DATA, source, off))
        else:
            if sector * SECTOR + n > sl.size:
                raise MalformedLayout(msg=f"grain {gi} at sector {sector} lies beyond end of {sl.path}")
            extents.append(Extent(base_offset + off, n, ExtentKind.DATA, source, sector * SECTOR))
    return merge_adjacent(extents)


# ---------------------------------------------------------------------------
# Writers
# ---------------------------------------------------------------------------

def iter_grains(blocks: Iterable[Block], grain_bytes: int) -> Iterator[Tuple[int, bytes]]:
    """
    Assemble an ordered block stream into grains, yielding only grains that
    hold non-zero data. Zero/Sparse runs are skipped without allocation.
    """
    cur = -1
    buf: Optional[bytearray] = None

    def flush() -> Iterator[Tuple[int, bytes]]:
        if cur >= 0 and buf is not None and not is_zero(bytes(buf)):
            yield cur, bytes(buf)

    for b in blocks:
        if b.kind != ExtentKind.DATA:
            continue
        pos = b.offset
        while pos < b.end:
            gi = pos // grain_bytes
            if gi != cur:
                yield from flush()
                cur, buf = gi, bytearray(grain_bytes)
            gstart = gi * grain_bytes
            n = min(b.end, gstart + grain_bytes) - pos
            rel = pos - b.offset
            buf[pos - gstart:pos - gstart + n] = b.data[rel:rel + n]  # type: ignore[index]
            pos += n
    yield from flush()


def _descriptor_sectors(text: str, minimum: int = 20) -> int:
    return max(minimum, -(-len(text.encode("utf-8")) // SECTOR) + 1)


class MonolithicSparseWriter:
    """
    Single-file hosted sparse extent on a seekable file: header, embedded
    descriptor, grain directory and tables at fixed positions, grains
    appended in stream order.
    """

    def __init__(self, capacity_sectors: int, grain_sectors: int = DEFAULT_GRAIN_SECTORS):
        if not U.is_power_of_two(grain_sectors):
            raise UnsupportedVariant(msg=f"VMDK grain size {grain_sectors} sectors is not a power of two")
        self.capacity = capacity_sectors
        self.grain_sectors = grain_sectors

    def write(self, f: BinaryIO, blocks: Iterable[Block], descriptor_text: str) -> int:
        desc_sectors = _descriptor_sectors(descriptor_text)
        hdr = SparseHeader(
            version=1,
            flags=FLAG_NEWLINE_TEST,
            capacity=self.capacity,
            grain_size=self.grain_sectors,
            descriptor_offset=1,
            descriptor_size=desc_sectors,
            gtes_per_gt=GTES_PER_GT,
            rgd_offset=0,
            gd_offset=0,
            overhead=0,
        )
        gd_offset = 1 + desc_sectors
        gd_sectors = -(-hdr.num_gts * 4 // SECTOR)
        gt_sectors = GTES_PER_GT * 4 // SECTOR
        gt_start = gd_offset + gd_sectors
        overhead = U.round_up(gt_start + hdr.num_gts * gt_sectors, self.grain_sectors)
        hdr = replace(hdr, gd_offset=gd_offset, overhead=overhead)

        entries = array("I", bytes(4 * hdr.num_grains))
        next_sector = overhead
        for gi, grain in iter_grains(blocks, hdr.grain_bytes):
            f.seek(next_sector * SECTOR)
            f.write(grain)
            entries[gi] = next_sector
            next_sector += self.grain_sectors

        f.seek(0)
        f.write(hdr.pack())
        f.write(descriptor_text.encode("utf-8").ljust(desc_sectors * SECTOR, b"\x00"))
        gd = array("I", [gt_start + i * gt_sectors for i in range(hdr.num_gts)])
        f.seek(gd_offset * SECTOR)
        f.write(gd.tobytes().ljust(gd_sectors * SECTOR, b"\x00"))
        f.seek(gt_start * SECTOR)
        padded = entries.tobytes().ljust(hdr.num_gts * GTES_PER_GT * 4, b"\x00")
        f.write(padded)
        end = max(next_sector, overhead) * SECTOR
        f.truncate(end)
        return end


class StreamOptimizedWriter:
    """
    streamOptimized output, written strictly sequentially so it can go to a
    pipe or an upload stream: header with GD_AT_END, descriptor, compressed
    grains, then grain tables, directory, footer and EOS marker.
    """

    def __init__(self, capacity_sectors: int, grain_sectors: int = DEFAULT_GRAIN_SECTORS, level: int = 6):
        if not U.is_power_of_two(grain_sectors):
            raise UnsupportedVariant(msg=f"VMDK grain size {grain_sectors} sectors is not a power of two")
        self.capacity = capacity_sectors
        self.grain_sectors = grain_sectors
        self.level = level
        self._pos = 0

    def _emit(self, f: BinaryIO, data: bytes) -> None:
        f.write(data)
        self._pos += len(data)

    def _emit_padded(self, f: BinaryIO, data: bytes) -> None:
        self._emit(f, data.ljust(U.round_up(len(data), SECTOR), b"\x00"))

    def _marker(self, f: BinaryIO, sectors: int, mtype: int) -> None:
        self._emit(f, _META_MARKER.pack(sectors, 0, mtype).ljust(SECTOR, b"\x00"))

    def write(self, f: BinaryIO, blocks: Iterable[Block], descriptor_text: str) -> int:
        self._pos = 0
        desc_sectors = _descriptor_sectors(descriptor_text)
        overhead = U.round_up(1 + desc_sectors, self.grain_sectors)
        hdr = SparseHeader(
            version=3,
            flags=FLAG_NEWLINE_TEST | FLAG_COMPRESSED | FLAG_MARKERS,
            capacity=self.capacity,
            grain_size=self.grain_sectors,
            descriptor_offset=1,
            descriptor_size=desc_sectors,
            gtes_per_gt=GTES_PER_GT,
            rgd_offset=0,
            gd_offset=GD_AT_END,
            overhead=overhead,
            compress_algorithm=COMPRESSION_DEFLATE,
        )
        self._emit(f, hdr.pack())
        self._emit(f, descriptor_text.encode("utf-8").ljust(desc_sectors * SECTOR, b"\x00"))
        self._emit(f, bytes((overhead - 1 - desc_sectors) * SECTOR))

        entries = array("I", bytes(4 * hdr.num_grains))
        for gi, grain in iter_grains(blocks, hdr.grain_bytes):
            entries[gi] = self._pos // SECTOR
            payload = zlib.compress(grain, self.level)
            self._emit_padded(f, _GRAIN_MARKER.pack(gi * self.grain_sectors, len(payload)) + payload)

        gt_sectors = GTES_PER_GT * 4 // SECTOR
        gd = array("I", bytes(4 * hdr.num_gts))
        for t in range(hdr.num_gts):
            gt = entries[t * GTES_PER_GT:(t + 1) * GTES_PER_GT]
            if not any(gt):
                continue
            self._marker(f, gt_sectors, MARKER_GT)
            gd[t] = self._pos // SECTOR
            self._emit(f, gt.tobytes().ljust(gt_sectors * SECTOR, b"\x00"))

        gd_sectors = -(-hdr.num_gts * 4 // SECTOR)
        self._marker(f, gd_sectors, MARKER_GD)
        gd_offset = self._pos // SECTOR
        self._emit_padded(f, gd.tobytes())

        self._marker(f, 1, MARKER_FOOTER)
        self._emit(f, replace(hdr, gd_offset=gd_offset).pack())
        self._marker(f, 0, MARKER_EOS)
        return self._pos
