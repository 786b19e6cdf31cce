# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vmi/formats/vmdk/descriptor.py
"""
VMDK descriptor text.

The descriptor is kept as an ordered list of entries so that rendering a
parsed descriptor reproduces the header keys and ddb.* entries in their
original order; only createType, CID, the extent lines and the geometry
are rewritten by writers.
"""
from __future__ import annotations

import shlex
import zlib
from dataclasses import dataclass, field
from typing import List, NamedTuple, Optional

from ...core.exceptions import MalformedLayout

SECTOR = 512
NO_PARENT_CID = "ffffffff"
DESCRIPTOR_MAGIC = "# Disk DescriptorFile"

# ide caps cylinders at 16383 with 16 heads, scsi adapters use 255/63.
_IDE_MAX_CYLINDERS = 16383

REQUIRED_HEADER_KEYS = ("version", "CID", "parentCID", "createType")


class Geometry(NamedTuple):
    cylinders: int
    heads: int
    sectors: int


@dataclass
class ExtentLine:
    access: str
    sectors: int
    type: str
    filename: Optional[str] = None
    offset: int = 0

    @classmethod
    def parse(cls, line: str) -> "ExtentLine":
        try:
            parts = shlex.split(line)
        except ValueError as e:
            raise MalformedLayout(msg=f"unparseable VMDK extent line {line!r}: {e}")
        if len(parts) < 3:
            raise MalformedLayout(msg=f"invalid VMDK extent line {line!r}")
        access, sectors_s, typ = parts[0].upper(), parts[1], parts[2].upper()
        try:
            sectors = int(sectors_s)
        except ValueError:
            raise MalformedLayout(msg=f"invalid sector count in VMDK extent line {line!r}")
        filename = parts[3] if len(parts) > 3 else None
        offset = 0
        if len(parts) > 4:
            try:
                offset = int(parts[4])
            except ValueError:
                raise MalformedLayout(msg=f"invalid offset in VMDK extent line {line!r}")
        if typ != "ZERO" and not filename:
            raise MalformedLayout(msg=f"VMDK extent line without file name: {line!r}")
        return cls(access, sectors, typ, filename, offset)

    def render(self) -> str:
        if self.type == "ZERO" or not self.filename:
            return f"{self.access} {self.sectors} {self.type}"
        line = f'{self.access} {self.sectors} {self.type} "{self.filename}"'
        if self.type in ("FLAT", "VMFS") or self.offset:
            line += f" {self.offset}"
        return line


@dataclass
class _Entry:
    section: str  # "header" | "ddb"
    key: str
    value: str
    quoted: bool = False


@dataclass
class VmdkDescriptor:
    entries: List[_Entry] = field(default_factory=list)
    extents: List[ExtentLine] = field(default_factory=list)

    # -- parsing --------------------------------------------------------

    @classmethod
    def parse(cls, text: str) -> "VmdkDescriptor":
        d = cls()
        for raw in text.replace("\r\n", "\n").split("\n"):
            line = raw.strip().rstrip("\x00")
            if not line or line.startswith("#"):
                continue
            head = line.split(None, 1)[0].upper()
            if head in ("RW", "RDONLY", "NOACCESS"):
                d.extents.append(ExtentLine.parse(line))
                continue
            if "=" not in line:
                raise MalformedLayout(msg=f"unrecognized VMDK descriptor line {line!r}")
            key, value = (s.strip() for s in line.split("=", 1))
            quoted = len(value) >= 2 and value[0] == value[-1] == '"'
            if quoted:
                value = value[1:-1]
            section = "ddb" if key.startswith("ddb.") else "header"
            d.entries.append(_Entry(section, key, value, quoted))

        if d.get("createType") is None:
            raise MalformedLayout(msg="VMDK descriptor has no createType")
        if not d.extents:
            raise MalformedLayout(msg="VMDK descriptor has no extent lines")
        return d

    # -- access ---------------------------------------------------------

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        for e in self.entries:
            if e.key == key:
                return e.value
        return default

    def set(self, key: str, value: str, *, quoted: Optional[bool] = None) -> None:
        section = "ddb" if key.startswith("ddb.") else "header"
        for e in self.entries:
            if e.key == key:
                e.value = str(value)
                if quoted is not None:
                    e.quoted = quoted
                return
        if quoted is None:
            quoted = section == "ddb" or key in ("createType", "encoding")
        self.entries.append(_Entry(section, key, str(value), quoted))

    def keys(self, section: Optional[str] = None) -> List[str]:
        return [e.key for e in self.entries if section is None or e.section == section]

    @property
    def create_type(self) -> str:
        return self.get("createType") or ""

    @property
    def adapter_type(self) -> Optional[str]:
        return self.get("ddb.adapterType")

    @property
    def has_parent(self) -> bool:
        parent = (self.get("parentCID") or NO_PARENT_CID).lower()
        return parent != NO_PARENT_CID

    @property
    def geometry(self) -> Optional[Geometry]:
        try:
            c = self.get("ddb.geometry.cylinders")
            h = self.get("ddb.geometry.heads")
            s = self.get("ddb.geometry.sectors")
            if c is None or h is None or s is None:
                return None
            return Geometry(int(c), int(h), int(s))
        except ValueError:
            raise MalformedLayout(msg="VMDK descriptor geometry is not numeric")

    @property
    def capacity_sectors(self) -> int:
        return sum(x.sectors for x in self.extents)

    # -- rendering ------------------------------------------------------

    def render(self) -> str:
        out = [DESCRIPTOR_MAGIC]
        for e in self.entries:
            if e.section == "header":
                out.append(f'{e.key}="{e.value}"' if e.quoted else f"{e.key}={e.value}")
        out += ["", "# Extent description"]
        out += [x.render() for x in self.extents]
        out += ["", "# The Disk Data Base", "#DDB", ""]
        for e in self.entries:
            if e.section == "ddb":
                out.append(f'{e.key} = "{e.value}"')
        return "\n".join(out) + "\n"


def default_geometry(capacity_sectors: int, adapter_type: str = "ide") -> Geometry:
    if adapter_type == "ide":
        heads, sectors = 16, 63
        cylinders = min(capacity_sectors // (heads * sectors), _IDE_MAX_CYLINDERS)
    else:
        heads, sectors = 255, 63
        cylinders = capacity_sectors // (heads * sectors)
    return Geometry(max(1, cylinders), heads, sectors)


def deterministic_cid(virtual_size: int, create_type: str) -> str:
    return "%08x" % (zlib.crc32(f"{virtual_size}:{create_type}".encode("ascii")) & 0xFFFFFFFF)


def build_descriptor(
    capacity_sectors: int,
    create_type: str,
    extents: List[ExtentLine],
    *,
    base: Optional[VmdkDescriptor] = None,
    adapter_type: Optional[str] = None,
    geometry: Optional[Geometry] = None,
) -> VmdkDescriptor:
    """
    Descriptor for a written VMDK. Starting from `base` (the source VMDK's
    descriptor) keeps its key order and opaque ddb.* entries.
    """
    d = VmdkDescriptor()
    if base is not None:
        d.entries = [_Entry(e.section, e.key, e.value, e.quoted) for e in base.entries]
    else:
        d.set("version", "1", quoted=False)
        d.set("encoding", "UTF-8", quoted=True)
        d.set("CID", "0", quoted=False)
        d.set("parentCID", NO_PARENT_CID, quoted=False)
        d.set("createType", create_type, quoted=True)

    d.set("version", d.get("version") or "1")
    cid = d.get("CID") if base is not None else None
    d.set("CID", cid or deterministic_cid(capacity_sectors * SECTOR, create_type))
    d.set("parentCID", NO_PARENT_CID)
    d.set("createType", create_type, quoted=True)
    d.extents = list(extents)

    adapter = adapter_type or d.get("ddb.adapterType") or "ide"
    if base is None:
        d.set("ddb.virtualHWVersion", "4")
    old = d.geometry if base is not None else None
    geo = geometry or (old if old is not None and _geometry_fits(old, capacity_sectors) else default_geometry(capacity_sectors, adapter))
    d.set("ddb.geometry.cylinders", str(geo.cylinders))
    d.set("ddb.geometry.heads", str(geo.heads))
    d.set("ddb.geometry.sectors", str(geo.sectors))
    d.set("ddb.adapterType", adapter)
    return d


def _geometry_fits(geo: Geometry, capacity_sectors: int) -> bool:
    return geo.cylinders * geo.heads * geo.sectors <= capacity_sectors


def looks_like_descriptor(head: bytes) -> bool:
    """Text descriptor sniffing on the first bytes of a file."""
    try:
        text = head.split(b"\x00", 1)[0].decode("ascii")
    except UnicodeDecodeError:
        return False
    if text.lstrip().startswith(DESCRIPTOR_MAGIC):
        return True
    return "createtype=" in text.lower().replace(" ", "")

