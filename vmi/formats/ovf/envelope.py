# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vmi/formats/ovf/envelope.py
"""
OVF envelope XML.

Only <References> and <DiskSection> are interpreted and rewritten; every
other element of the envelope (VirtualSystem, NetworkSection, vendor
sections, ...) is kept as parsed and serialized back unchanged.
"""
from __future__ import annotations

import copy
import io
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Any, Dict, List, Optional, Tuple

from defusedxml import DefusedXmlException
from defusedxml.ElementTree import ParseError, fromstring

from ...core.exceptions import MalformedLayout, UnsupportedVariant

OVF_NS = "http://schemas.dmtf.org/ovf/envelope/1"
RASD_NS = "http://schemas.dmtf.org/wbem/wscim/1/cim-schema/2/CIM_ResourceAllocationSettingData"
VSSD_NS = "http://schemas.dmtf.org/wbem/wscim/1/cim-schema/2/CIM_VirtualSystemSettingData"
CIM_NS = "http://schemas.dmtf.org/wbem/wscim/1/common"
XSI_NS = "http://www.w3.org/2001/XMLSchema-instance"
VMW_NS = "http://www.vmware.com/schema/ovf"

STD_PREFIXES = {
    "ovf": OVF_NS,
    "rasd": RASD_NS,
    "vssd": VSSD_NS,
    "cim": CIM_NS,
    "xsi": XSI_NS,
    "vmw": VMW_NS,
}

# registered once; prefixes outside this set serialize as ns0, ns1, ...
for _prefix, _uri in STD_PREFIXES.items():
    ET.register_namespace(_prefix, _uri)

VMDK_STREAM_FORMAT = "http://www.vmware.com/interfaces/specifications/vmdk.html#streamOptimized"
VMDK_SPARSE_FORMAT = "http://www.vmware.com/interfaces/specifications/vmdk.html#sparse"
RAW_FORMAT = "http://www.gnome.org/~markmc/qcow-image-format.html#raw"

# CIM ResourceType values used in the hardware summary.
RT_CPU = "3"
RT_MEMORY = "4"
RT_IDE = "5"
RT_SCSI = "6"
RT_NIC = "10"
RT_CDROM = "15"
RT_DISK = "17"
RT_SATA = "20"

_UNIT_RE = re.compile(r"^\s*byte\s*(?:\*\s*(\d+)\s*\^\s*(\d+))?\s*$", re.IGNORECASE)
_UNIT_WORDS = {"kb": 2 ** 10, "mb": 2 ** 20, "gb": 2 ** 30, "tb": 2 ** 40, "kilobytes": 2 ** 10,
               "megabytes": 2 ** 20, "gigabytes": 2 ** 30}


def _q(ns: str, tag: str) -> str:
    return f"{{{ns}}}{tag}"


def _local(tag: str) -> str:
    return tag.split("}", 1)[1] if tag.startswith("{") else tag


def _ns_of(tag: str) -> Optional[str]:
    return tag[1:].split("}", 1)[0] if tag.startswith("{") else None


def allocation_multiplier(units: Optional[str]) -> int:
    """'byte * 2^30' -> 1073741824; missing units mean bytes."""
    if not units:
        return 1
    m = _UNIT_RE.match(units)
    if m:
        if m.group(1) is None:
            return 1
        return int(m.group(1)) ** int(m.group(2))
    mult = _UNIT_WORDS.get(units.strip().lower())
    if mult is None:
        raise MalformedLayout(msg=f"unsupported OVF allocation units {units!r}")
    return mult


def clean_href(href: str) -> str:
    """Normalize an OVF href to a relative POSIX path; '..' and absolute paths are refused."""
    raw = (href or "").replace("\\", "/")
    if raw.startswith("/") or re.match(r"^[a-zA-Z][a-zA-Z0-9+.-]*://", raw):
        raise MalformedLayout(msg=f"OVF file reference {href!r} is not a relative path")
    parts = [p for p in PurePosixPath(raw).parts if p not in ("", ".")]
    if ".." in parts or not parts:
        raise MalformedLayout(msg=f"OVF file reference {href!r} escapes the package")
    return str(PurePosixPath(*parts))


@dataclass
class FileRef:
    id: str
    href: str
    size: Optional[int] = None
    compression: Optional[str] = None


@dataclass
class DiskRef:
    disk_id: str
    file_ref: Optional[str]
    capacity: int
    populated_size: Optional[int] = None
    format: Optional[str] = None


@dataclass
class HardwareSummary:
    name: Optional[str] = None
    os_id: Optional[str] = None
    os_description: Optional[str] = None
    cpus: Optional[int] = None
    memory_mb: Optional[int] = None
    nics: int = 0
    disks: int = 0
    cdroms: int = 0
    controllers: List[str] = field(default_factory=list)
    virtual_system_type: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "os_id": self.os_id,
            "os_description": self.os_description,
            "cpus": self.cpus,
            "memory_mb": self.memory_mb,
            "nics": self.nics,
            "disks": self.disks,
            "cdroms": self.cdroms,
            "controllers": list(self.controllers),
            "virtual_system_type": self.virtual_system_type,
        }


class Envelope:
    def __init__(self, root: ET.Element):
        if _local(root.tag) != "Envelope":
            raise MalformedLayout(msg=f"OVF root element is <{_local(root.tag)}>, expected <Envelope>")
        self.root = root
        self.ns = _ns_of(root.tag) or OVF_NS

    # -- parsing --------------------------------------------------------

    @classmethod
    def parse(cls, data: bytes) -> "Envelope":
        try:
            root = fromstring(data)
        except ParseError as e:
            raise MalformedLayout(msg=f"OVF envelope is not well-formed XML: {e}", cause=e)
        except DefusedXmlException as e:
            # entity declarations and external references
            raise MalformedLayout(msg=f"OVF envelope rejected: {e}", cause=e)
        return cls(root)

    def _attr(self, el: ET.Element, name: str) -> Optional[str]:
        return el.get(_q(self.ns, name)) or el.get(name)

    def _find(self, path: str) -> Optional[ET.Element]:
        return self.root.find(path.replace("ovf:", f"{{{self.ns}}}"))

    def _findall(self, el: ET.Element, path: str) -> List[ET.Element]:
        return el.findall(path.replace("ovf:", f"{{{self.ns}}}"))

    @property
    def files(self) -> List[FileRef]:
        refs = self._find("ovf:References")
        out: List[FileRef] = []
        if refs is None:
            return out
        for f in self._findall(refs, "ovf:File"):
            fid = self._attr(f, "id")
            href = self._attr(f, "href")
            if not fid or not href:
                raise MalformedLayout(msg="OVF <File> without ovf:id or ovf:href")
            size = self._attr(f, "size")
            out.append(FileRef(fid, clean_href(href), int(size) if size else None, self._attr(f, "compression")))
        return out

    def file_by_id(self, file_id: str) -> FileRef:
        for f in self.files:
            if f.id == file_id:
                return f
        raise MalformedLayout(msg=f"OVF disk references unknown file id {file_id!r}")

    @property
    def disks(self) -> List[DiskRef]:
        section = self._find("ovf:DiskSection")
        out: List[DiskRef] = []
        if section is None:
            return out
        for d in self._findall(section, "ovf:Disk"):
            did = self._attr(d, "diskId") or ""
            cap = self._attr(d, "capacity")
            try:
                capacity = int(cap or 0) * allocation_multiplier(self._attr(d, "capacityAllocationUnits"))
                pop = self._attr(d, "populatedSize")
                populated = int(pop) if pop else None
            except ValueError:
                raise MalformedLayout(msg=f"OVF disk {did!r} has a non-numeric capacity")
            out.append(DiskRef(did, self._attr(d, "fileRef"), capacity, populated, self._attr(d, "format")))
        return out

    def disk_file(self, disk_index: int = 0) -> Tuple[DiskRef, FileRef]:
        disks = [d for d in self.disks if d.file_ref]
        if not disks:
            raise MalformedLayout(msg="OVF envelope references no disk files")
        if not 0 <= disk_index < len(disks):
            raise MalformedLayout(
                msg=f"OVF disk index {disk_index} out of range (envelope has {len(disks)} disks)",
                context={"disks": [d.disk_id for d in disks]},
            )
        disk = disks[disk_index]
        ref = self.file_by_id(disk.file_ref or "")
        if ref.compression and ref.compression.lower() not in ("", "identity"):
            raise UnsupportedVariant(
                msg=f"OVF file {ref.href!r} uses {ref.compression} compression",
                context={"compression": ref.compression},
            )
        return disk, ref

    def hardware(self) -> HardwareSummary:
        hw = HardwareSummary()
        vs = self._find("ovf:VirtualSystem")
        if vs is None:
            vs = self._find("ovf:VirtualSystemCollection/ovf:VirtualSystem")
        if vs is None:
            return hw
        hw.name = (vs.findtext(_q(self.ns, "Name")) or self._attr(vs, "id") or None)
        os_section = vs.find(_q(self.ns, "OperatingSystemSection"))
        if os_section is not None:
            hw.os_id = self._attr(os_section, "id")
            hw.os_description = os_section.findtext(_q(self.ns, "Description"))
        section = vs.find(_q(self.ns, "VirtualHardwareSection"))
        if section is None:
            return hw
        system = section.find(_q(self.ns, "System"))
        if system is not None:
            hw.virtual_system_type = system.findtext(_q(VSSD_NS, "VirtualSystemType"))
        for item in list(section):
            if _local(item.tag) not in ("Item", "StorageItem", "EthernetPortItem"):
                continue
            rt = _rasd_text(item, "ResourceType")
            qty = _rasd_text(item, "VirtualQuantity")
            if rt == RT_CPU and qty:
                hw.cpus = int(qty)
            elif rt == RT_MEMORY and qty:
                units = _rasd_text(item, "AllocationUnits") or "byte * 2^20"
                hw.memory_mb = int(qty) * allocation_multiplier(units) // (2 ** 20)
            elif rt == RT_NIC:
                hw.nics += 1
            elif rt == RT_DISK:
                hw.disks += 1
            elif rt == RT_CDROM:
                hw.cdroms += 1
            elif rt in (RT_IDE, RT_SCSI, RT_SATA):
                hw.controllers.append(_rasd_text(item, "ResourceSubType") or {RT_IDE: "ide", RT_SCSI: "scsi", RT_SATA: "sata"}[rt])
        return hw

    def opaque_sections(self) -> Dict[str, bytes]:
        """Every top-level element not rewritten on write, keyed by element identity."""
        out: Dict[str, bytes] = {}
        seen: Dict[str, int] = {}
        for el in list(self.root):
            name = _local(el.tag)
            if name in ("References", "DiskSection"):
                continue
            ident = self._attr(el, "id")
            key = f"{name}[{ident}]" if ident else name
            n = seen.get(key, 0)
            seen[key] = n + 1
            if n:
                key = f"{key}#{n}"
            el = copy.copy(el)
            el.tail = None
            out[key] = ET.tostring(el)
        return out

    # -- rewriting ------------------------------------------------------

    def with_disk(
        self,
        *,
        file_id: str,
        href: str,
        file_size: int,
        disk_id: str,
        capacity: int,
        disk_format: str,
        populated_size: Optional[int] = None,
        keep_disk_id: Optional[str] = None,
    ) -> "Envelope":
        """
        Copy of the envelope with References and DiskSection replaced by a
        single file and disk. `keep_disk_id` names the source disk whose
        entry (and its unknown attributes) is carried over.
        """
        root = copy.deepcopy(self.root)
        ns = self.ns
        refs = root.find(_q(ns, "References"))
        if refs is None:
            refs = ET.Element(_q(ns, "References"))
            root.insert(0, refs)
        for child in list(refs):
            refs.remove(child)
        ET.SubElement(refs, _q(ns, "File"), {
            _q(ns, "href"): href,
            _q(ns, "id"): file_id,
            _q(ns, "size"): str(file_size),
        })

        section = root.find(_q(ns, "DiskSection"))
        if section is None:
            section = ET.Element(_q(ns, "DiskSection"))
            ET.SubElement(section, _q(ns, "Info")).text = "Virtual disk information"
            root.insert(list(root).index(refs) + 1, section)
        kept: Optional[ET.Element] = None
        for d in section.findall(_q(ns, "Disk")):
            if kept is None and keep_disk_id is not None and self._attr(d, "diskId") == keep_disk_id:
                kept = d
            section.remove(d)
        disk = kept if kept is not None else ET.Element(_q(ns, "Disk"))
        disk.set(_q(ns, "diskId"), disk_id)
        disk.set(_q(ns, "fileRef"), file_id)
        disk.set(_q(ns, "capacity"), str(capacity))
        disk.set(_q(ns, "capacityAllocationUnits"), "byte")
        disk.set(_q(ns, "format"), disk_format)
        if populated_size is not None:
            disk.set(_q(ns, "populatedSize"), str(populated_size))
        elif _q(ns, "populatedSize") in disk.attrib:
            del disk.attrib[_q(ns, "populatedSize")]
        section.append(disk)
        return Envelope(root)

    def render(self) -> bytes:
        tree = ET.ElementTree(self.root)
        buf = io.BytesIO()
        tree.write(buf, encoding="UTF-8", xml_declaration=True)
        return buf.getvalue()

    # -- construction ---------------------------------------------------

    @classmethod
    def minimal(cls, name: str) -> "Envelope":
        """Skeleton envelope for images that did not come from an OVF."""
        ns = OVF_NS
        root = ET.Element(_q(ns, "Envelope"))
        ET.SubElement(root, _q(ns, "References"))
        ds = ET.SubElement(root, _q(ns, "DiskSection"))
        ET.SubElement(ds, _q(ns, "Info")).text = "Virtual disk information"
        vs = ET.SubElement(root, _q(ns, "VirtualSystem"), {_q(ns, "id"): name})
        ET.SubElement(vs, _q(ns, "Info")).text = "A virtual machine"
        ET.SubElement(vs, _q(ns, "Name")).text = name
        hw = ET.SubElement(vs, _q(ns, "VirtualHardwareSection"))
        ET.SubElement(hw, _q(ns, "Info")).text = "Virtual hardware requirements"
        item = ET.SubElement(hw, _q(ns, "Item"))
        ET.SubElement(item, _q(RASD_NS, "ElementName")).text = "Hard disk 1"
        ET.SubElement(item, _q(RASD_NS, "HostResource")).text = "ovf:/disk/vmdisk1"
        ET.SubElement(item, _q(RASD_NS, "InstanceID")).text = "1"
        ET.SubElement(item, _q(RASD_NS, "ResourceType")).text = RT_DISK
        return cls(root)


def _rasd_text(item: ET.Element, name: str) -> Optional[str]:
    for child in item:
        if _local(child.tag) == name:
            return (child.text or "").strip() or None
    return None
