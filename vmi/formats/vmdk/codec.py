# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vmi/formats/vmdk/codec.py
from __future__ import annotations

import logging
from pathlib import Path, PurePosixPath
from typing import Any, BinaryIO, Dict, Iterable, List, Optional, Union

from ...core.exceptions import MalformedLayout, UnsupportedVariant, wrap_io
from ...core.utils import U
from ...disk.extent import Block, DiskImage, Extent, ExtentKind, merge_adjacent
from ...disk.sources import FileSlice
from ..descriptor import FormatDescriptor, FormatTag, block_stream
from ..raw import as_slice, data_regions, write_sparse
from .descriptor import (
    SECTOR,
    ExtentLine,
    VmdkDescriptor,
    build_descriptor,
    looks_like_descriptor,
)
from .sparse import (
    DEFAULT_GRAIN_SECTORS,
    MAGIC,
    MonolithicSparseWriter,
    SparseHeader,
    StreamOptimizedWriter,
    read_embedded_descriptor,
    read_header,
    sparse_extents,
)

LOG = logging.getLogger(__name__)

CONFIDENCE_SPARSE = 0.9
CONFIDENCE_DESCRIPTOR = 0.8

# Text descriptors are small; anything bigger is not one.
MAX_DESCRIPTOR_BYTES = 64 * 1024

MONOLITHIC_FLAT = "monolithicFlat"
MONOLITHIC_SPARSE = "monolithicSparse"
STREAM_OPTIMIZED = "streamOptimized"
WRITE_VARIANTS = (MONOLITHIC_FLAT, MONOLITHIC_SPARSE, STREAM_OPTIMIZED)

READ_VARIANTS = {
    "monolithicflat",
    "vmfs",
    "monolithicsparse",
    "twogbmaxextentflat",
    "twogbmaxextentsparse",
    "streamoptimized",
}

Source = Union[Path, FileSlice]


def _resolve_ref(base_dir: Path, name: str) -> Path:
    """Extent file named by a descriptor, confined to the descriptor's directory."""
    p = PurePosixPath(name.replace("\\", "/"))
    if p.is_absolute() or ".." in p.parts:
        raise MalformedLayout(
            msg=f"VMDK extent reference {name!r} escapes the descriptor directory",
            context={"reference": name},
        )
    return base_dir.joinpath(*p.parts)


def flat_path_for(sink: Path) -> Path:
    return sink.with_name(f"{sink.stem}-flat.vmdk")


class VmdkCodec:
    tag = FormatTag.VMDK

    def __init__(self, grain_sectors: int = DEFAULT_GRAIN_SECTORS, compress_level: int = 6):
        self.grain_sectors = grain_sectors
        self.compress_level = compress_level

    # ------------------------------------------------------------------
    # probe / open
    # ------------------------------------------------------------------

    def probe(self, path: Source) -> float:
        try:
            sl = as_slice(path)
            if sl.size < 4:
                return 0.0
            head = sl.read_at(0, min(sl.size, 1024))
        except Exception:
            return 0.0
        if head[:4] == MAGIC:
            return CONFIDENCE_SPARSE
        if sl.size <= MAX_DESCRIPTOR_BYTES and looks_like_descriptor(head):
            return CONFIDENCE_DESCRIPTOR
        return 0.0

    def open(self, path: Source, **options: Any) -> DiskImage:
        sl = as_slice(path)
        head = sl.read_at(0, min(sl.size, 4)) if sl.size else b""
        if head == MAGIC:
            desc, extents, info = self._open_hosted(sl)
        else:
            if sl.size > MAX_DESCRIPTOR_BYTES:
                raise MalformedLayout(msg=f"{sl.describe()} is neither a sparse VMDK nor a descriptor file")
            text = sl.read_at(0, sl.size).split(b"\x00", 1)[0].decode("utf-8", "replace")
            desc = VmdkDescriptor.parse(text)
            self._check_variant(desc)
            if sl.base != 0:
                raise UnsupportedVariant(
                    msg=f"descriptor-only VMDK {sl.name!r} inside a container cannot reference extent files"
                )
            extents, info = self._open_extent_lines(desc, sl.path.parent)

        virtual_size = sum(e.length for e in extents)
        geo = desc.geometry
        metadata: Dict[str, Any] = {
            "create_type": desc.create_type,
            "adapter_type": desc.adapter_type,
            "geometry": tuple(geo) if geo else None,
            "cid": desc.get("CID"),
            "descriptor": desc,
            "descriptor_keys": desc.keys(),
            "extent_files": [x.filename for x in desc.extents if x.filename],
        }
        metadata.update(info)
        image = DiskImage(
            virtual_size,
            merge_adjacent(extents),
            descriptor=FormatDescriptor(FormatTag.VMDK, sl.path, metadata),
        )
        LOG.debug(
            "VMDK %s: %s, %s virtual, %d extents",
            sl.describe(), desc.create_type, U.human_bytes(virtual_size), len(image.extents),
        )
        return image

    @staticmethod
    def _check_variant(desc: VmdkDescriptor) -> None:
        if desc.has_parent:
            raise UnsupportedVariant(
                msg=f"VMDK has a parent link (parentCID={desc.get('parentCID')}); snapshot chains are not supported",
                context={"parentCID": desc.get("parentCID")},
            )
        if desc.create_type.lower() not in READ_VARIANTS:
            raise UnsupportedVariant(
                msg=f"VMDK createType {desc.create_type!r} is not supported",
                context={"create_type": desc.create_type},
            )

    def _open_hosted(self, sl: FileSlice):
        with sl.reader() as r:
            hdr = read_header(r)
            text = read_embedded_descriptor(r, hdr)
        if text:
            desc = VmdkDescriptor.parse(text)
            self._check_variant(desc)
        else:
            create_type = STREAM_OPTIMIZED if hdr.compressed else MONOLITHIC_SPARSE
            desc = build_descriptor(hdr.capacity, create_type, [ExtentLine("RW", hdr.capacity, "SPARSE", sl.name)])
        if desc.capacity_sectors and desc.capacity_sectors != hdr.capacity:
            LOG.warning(
                "VMDK %s: descriptor capacity %d sectors != header capacity %d; using header",
                sl.describe(), desc.capacity_sectors, hdr.capacity,
            )
        return desc, sparse_extents(sl, hdr), _header_info(hdr)

    def _open_extent_lines(self, desc: VmdkDescriptor, base_dir: Path):
        extents: List[Extent] = []
        info: Dict[str, Any] = {}
        pos = 0
        for line in desc.extents:
            length = line.sectors * SECTOR
            if line.access == "NOACCESS" or line.type == "ZERO":
                extents.append(Extent(pos, length, ExtentKind.ZERO))
            elif line.type in ("FLAT", "VMFS"):
                extents.extend(self._flat_extents(_resolve_ref(base_dir, line.filename or ""), line, pos))
            elif line.type == "SPARSE":
                ref = as_slice(_resolve_ref(base_dir, line.filename or ""))
                with ref.reader() as r:
                    hdr = read_header(r)
                if hdr.capacity < line.sectors:
                    raise MalformedLayout(
                        msg=f"sparse extent {line.filename!r} holds {hdr.capacity} sectors, descriptor says {line.sectors}"
                    )
                for e in sparse_extents(ref, hdr, pos):
                    if e.offset >= pos + length:
                        break
                    extents.append(e.slice(e.offset, min(e.end, pos + length) - e.offset))
                info.update(_header_info(hdr))
            else:
                raise UnsupportedVariant(
                    msg=f"VMDK extent type {line.type} is not supported",
                    context={"extent_type": line.type},
                )
            pos += length
        return extents, info

    @staticmethod
    def _flat_extents(path: Path, line: ExtentLine, pos: int) -> List[Extent]:
        sl = as_slice(path)
        base = line.offset * SECTOR
        length = line.sectors * SECTOR
        if base + length > sl.size:
            raise MalformedLayout(
                msg=f"flat extent {line.filename!r} is {sl.size} bytes, descriptor needs {base + length}",
                context={"path": str(path)},
            )
        window = sl.sub(base, length)
        if base == 0 and sl.base == 0 and path.is_file():
            regions = data_regions(path, length)
        else:
            regions = [(0, length)]
        out: List[Extent] = []
        cur = 0
        for start, n in regions:
            if start > cur:
                out.append(Extent(pos + cur, start - cur, ExtentKind.SPARSE))
            out.append(Extent(pos + start, n, ExtentKind.DATA, window, start))
            cur = start + n
        if cur < length:
            out.append(Extent(pos + cur, length - cur, ExtentKind.SPARSE))
        return out

    # ------------------------------------------------------------------
    # create
    # ------------------------------------------------------------------

    def variant_for(self, image: DiskImage, variant: Optional[str] = None) -> str:
        """Explicit variant, else the source VMDK's createType, else monolithicSparse."""
        if variant:
            chosen = variant
        else:
            d = image.descriptor
            src = d.metadata.get("create_type") if d is not None and d.tag == FormatTag.VMDK else None
            chosen = {
                "monolithicflat": MONOLITHIC_FLAT,
                "twogbmaxextentflat": MONOLITHIC_FLAT,
                "vmfs": MONOLITHIC_FLAT,
                "streamoptimized": STREAM_OPTIMIZED,
            }.get((src or "").lower(), MONOLITHIC_SPARSE)
        for v in WRITE_VARIANTS:
            if v.lower() == chosen.lower():
                return v
        raise UnsupportedVariant(
            msg=f"cannot write VMDK variant {chosen!r}",
            context={"supported": list(WRITE_VARIANTS)},
        )

    def _descriptor_for(self, image: DiskImage, variant: str, extents: List[ExtentLine], adapter_type: Optional[str]):
        d = image.descriptor
        base = d.metadata.get("descriptor") if d is not None and d.tag == FormatTag.VMDK else None
        return build_descriptor(
            _capacity_sectors(image),
            variant,
            extents,
            base=base if isinstance(base, VmdkDescriptor) else None,
            adapter_type=adapter_type,
        )

    def create(self, image: DiskImage, sink: Path, *, blocks: Optional[Iterable[Block]] = None, **options: Any) -> int:
        sink = Path(sink)
        variant = self.variant_for(image, options.get("variant"))
        capacity = _capacity_sectors(image)
        stream = block_stream(image, blocks)
        adapter = options.get("adapter_type")
        try:
            if variant == MONOLITHIC_FLAT:
                flat = flat_path_for(sink)
                desc = self._descriptor_for(image, variant, [ExtentLine("RW", capacity, "FLAT", flat.name, 0)], adapter)
                with open(flat, "wb") as f:
                    write_sparse(f, stream)
                    f.truncate(capacity * SECTOR)
                text = desc.render()
                with open(sink, "w", encoding="utf-8") as f:
                    f.write(text)
                written = capacity * SECTOR + len(text.encode("utf-8"))
            elif variant == MONOLITHIC_SPARSE:
                desc = self._descriptor_for(image, variant, [ExtentLine("RW", capacity, "SPARSE", sink.name)], adapter)
                writer = MonolithicSparseWriter(capacity, int(options.get("grain_sectors") or self.grain_sectors))
                with open(sink, "w+b") as f:
                    written = writer.write(f, stream, desc.render())
            else:
                with open(sink, "wb") as f:
                    written = self.write_stream(image, f, blocks=stream, **options)
        except OSError as e:
            raise wrap_io(f"failed writing VMDK {sink}", e, path=str(sink)) from e
        LOG.info("VMDK written: %s (%s, %s)", sink, variant, U.human_bytes(written))
        return written

    def write_stream(self, image: DiskImage, f: BinaryIO, *, blocks: Optional[Iterable[Block]] = None, **options: Any) -> int:
        """streamOptimized output onto any sequential file object (pipes, upload streams)."""
        capacity = _capacity_sectors(image)
        name = options.get("name") or "disk.vmdk"
        desc = self._descriptor_for(
            image, STREAM_OPTIMIZED, [ExtentLine("RW", capacity, "SPARSE", name)], options.get("adapter_type")
        )
        writer = StreamOptimizedWriter(
            capacity,
            int(options.get("grain_sectors") or self.grain_sectors),
            int(options.get("compress_level") or self.compress_level),
        )
        return writer.write(f, block_stream(image, blocks), desc.render())

    def artifacts(self, sink: Path, **options: Any) -> List[Path]:
        sink = Path(sink)
        variant = options.get("variant") or ""
        if variant.lower() == MONOLITHIC_FLAT.lower():
            return [sink, flat_path_for(sink)]
        return [sink]


def _capacity_sectors(image: DiskImage) -> int:
    if image.virtual_size % SECTOR:
        raise UnsupportedVariant(
            msg=f"VMDK capacity must be a whole number of {SECTOR}-byte sectors, got {image.virtual_size} bytes",
            context={"virtual_size": image.virtual_size},
        )
    return image.virtual_size // SECTOR


def _header_info(hdr: SparseHeader) -> Dict[str, Any]:
    return {
        "grain_size": hdr.grain_size,
        "sparse_version": hdr.version,
        "compressed": hdr.compressed,
    }
