# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vmi/formats/ovf/codec.py
"""
OVF packages: a directory holding `<name>.ovf` (+ `.mf`) and disk files, or
an OVA tar with the same members. OVA members are read in place as slices
of the tar file, never extracted.
"""
from __future__ import annotations

import io
import logging
import tarfile
import time
from pathlib import Path, PurePosixPath
from typing import Any, Dict, Iterable, Iterator, List, Optional, Union

from ...core.exceptions import MalformedLayout, UnsupportedVariant, wrap_io
from ...core.utils import U
from ...disk.extent import Block, DiskImage
from ...disk.sources import FileSlice
from ..descriptor import FormatDescriptor, FormatTag
from ..raw import RawCodec, as_slice
from ..vmdk.codec import MONOLITHIC_FLAT, STREAM_OPTIMIZED, VmdkCodec
from .envelope import RAW_FORMAT, VMDK_SPARSE_FORMAT, VMDK_STREAM_FORMAT, Envelope, clean_href
from .manifest import Manifest, digest_chunks, normalize_algorithm

LOG = logging.getLogger(__name__)

OVF_CONFIDENCE = 0.95
_SNIFF_BYTES = 4096

Source = Union[Path, FileSlice]


class Package:
    """Named members of an OVF directory package or OVA tar."""

    def __init__(self, path: Path, ovf_name: str, members: Dict[str, FileSlice], *, is_ova: bool):
        self.path = path
        self.ovf_name = ovf_name
        self.members = members
        self.is_ova = is_ova

    @property
    def manifest_name(self) -> str:
        name = str(PurePosixPath(self.ovf_name).with_suffix(".mf"))
        if self.is_ova and name not in self.members:
            for other in self.members:
                if other.lower().endswith(".mf"):
                    return other
        return name

    def member(self, name: str) -> Optional[FileSlice]:
        key = clean_href(name)
        if key in self.members:
            return self.members[key]
        if not self.is_ova:
            p = self.path.parent.joinpath(*PurePosixPath(key).parts)
            if p.is_file():
                sl = FileSlice(p, name=key)
                self.members[key] = sl
                return sl
        return None

    def read(self, name: str) -> bytes:
        sl = self.member(name)
        if sl is None:
            raise MalformedLayout(msg=f"OVF package {self.path} has no member {name!r}")
        return sl.read_at(0, sl.size)

    def chunks(self, name: str) -> Optional[Iterator[bytes]]:
        sl = self.member(name)
        if sl is None:
            return None
        return sl.iter_bytes(0, sl.size)

    @classmethod
    def open(cls, path: Path) -> "Package":
        path = Path(path)
        if _is_tar(path):
            return cls._open_ova(path)
        if not path.is_file():
            raise MalformedLayout(msg=f"OVF descriptor {path} does not exist")
        return cls(path, path.name, {path.name: FileSlice(path)}, is_ova=False)

    @classmethod
    def _open_ova(cls, path: Path) -> "Package":
        members: Dict[str, FileSlice] = {}
        ovf_name: Optional[str] = None
        try:
            with tarfile.open(path, mode="r:") as tar:
                for m in tar:
                    if not m.isreg():
                        LOG.debug("OVA %s: skipping non-regular member %r", path, m.name)
                        continue
                    name = clean_href(m.name)
                    members[name] = FileSlice(path, m.offset_data, m.size, name=name)
                    if ovf_name is None and name.lower().endswith(".ovf"):
                        ovf_name = name
        except tarfile.ReadError as e:
            raise UnsupportedVariant(msg=f"{path} is not an uncompressed OVA tar: {e}", cause=e)
        except OSError as e:
            raise wrap_io(f"cannot read OVA {path}", e, path=str(path)) from e
        if ovf_name is None:
            raise MalformedLayout(msg=f"OVA {path} contains no .ovf descriptor")
        return cls(path, ovf_name, members, is_ova=True)


def _is_tar(path: Path) -> bool:
    try:
        return path.is_file() and tarfile.is_tarfile(path)
    except OSError:
        return False


def _first_tar_member(path: Path) -> Optional[str]:
    try:
        with tarfile.open(path, mode="r:") as tar:
            m = tar.next()
            return m.name if m is not None else None
    except (tarfile.TarError, OSError):
        return None


def _writes_ova(sink: Path, options: Dict[str, Any]) -> bool:
    """`package` (ova|ovf) wins; otherwise the sink extension decides."""
    package = (options.get("package") or "").lower()
    if package:
        return package == "ova"
    return sink.suffix.lower() == ".ova"


def _looks_like_envelope(head: bytes) -> bool:
    text = head.lstrip(b"\xef\xbb\xbf \t\r\n")
    return text.startswith(b"<") and b"Envelope" in text


class OvfCodec:
    tag = FormatTag.OVF

    def __init__(self, vmdk: Optional[VmdkCodec] = None, raw: Optional[RawCodec] = None):
        self.vmdk = vmdk or VmdkCodec()
        self.raw = raw or RawCodec()

    def probe(self, path: Source) -> float:
        if not isinstance(path, FileSlice):
            p = Path(path)
            if _is_tar(p):
                first = _first_tar_member(p)
                return OVF_CONFIDENCE if first and first.lower().endswith(".ovf") else 0.0
        try:
            sl = as_slice(path)
            head = sl.read_at(0, min(sl.size, _SNIFF_BYTES))
        except Exception:
            return 0.0
        return OVF_CONFIDENCE if _looks_like_envelope(head) else 0.0

    def open(self, path: Source, **options: Any) -> DiskImage:
        if isinstance(path, FileSlice):
            raise UnsupportedVariant(msg="nested OVF packages are not supported")
        pkg = Package.open(Path(path))
        env = Envelope.parse(pkg.read(pkg.ovf_name))

        manifest: Optional[Manifest] = None
        mf = pkg.member(pkg.manifest_name)
        if mf is not None:
            manifest = Manifest.parse(pkg.read(pkg.manifest_name).decode("utf-8", "replace"))
            if options.get("verify", True):
                verified = manifest.verify(pkg.chunks)
                LOG.info("OVF manifest verified: %d files (%s)", len(verified), manifest.algorithm)
        else:
            LOG.warning("OVF %s has no manifest; disk files are not verified", pkg.path)

        disk_index = int(options.get("disk_index") or 0)
        disk, ref = env.disk_file(disk_index)
        sl = pkg.member(ref.href)
        if sl is None:
            raise MalformedLayout(
                msg=f"OVF disk file {ref.href!r} is missing from {pkg.path}",
                context={"file": ref.href},
            )
        if ref.size is not None and ref.size != sl.size:
            LOG.warning("OVF file %s: envelope size %d != actual %d", ref.href, ref.size, sl.size)

        inner_codec = self.vmdk if self.vmdk.probe(sl) > 0 else self.raw
        inner = inner_codec.open(sl)
        if disk.capacity and disk.capacity != inner.virtual_size:
            LOG.warning(
                "OVF disk %s: declared capacity %d != disk file virtual size %d",
                disk.disk_id, disk.capacity, inner.virtual_size,
            )

        metadata: Dict[str, Any] = {
            "envelope": env,
            "package": "ova" if pkg.is_ova else "ovf",
            "ovf_name": pkg.ovf_name,
            "disk_index": disk_index,
            "disk_id": disk.disk_id,
            "disk_format": inner_codec.tag.value,
            "disks": [
                {"disk_id": d.disk_id, "file_ref": d.file_ref, "capacity": d.capacity, "format": d.format}
                for d in env.disks
            ],
            "files": [f.href for f in env.files],
            "hardware": env.hardware().to_dict(),
            "manifest_algorithm": manifest.algorithm if manifest else None,
            "opaque_sections": sorted(env.opaque_sections()),
            "inner": inner.descriptor.metadata if inner.descriptor else {},
        }
        return inner.with_extents(
            inner.extents,
            descriptor=FormatDescriptor(FormatTag.OVF, pkg.path, metadata),
        )

    # ------------------------------------------------------------------
    # create
    # ------------------------------------------------------------------

    def _names(self, sink: Path, disk_format: str) -> Dict[str, str]:
        stem = sink.stem
        ext = "vmdk" if disk_format == "vmdk" else "img"
        return {"ovf": f"{stem}.ovf", "disk": f"{stem}-disk1.{ext}", "mf": f"{stem}.mf"}

    def create(self, image: DiskImage, sink: Path, *, blocks: Optional[Iterable[Block]] = None, **options: Any) -> int:
        sink = Path(sink)
        disk_format = (options.get("disk_format") or "vmdk").lower()
        if disk_format not in ("vmdk", "raw"):
            raise UnsupportedVariant(msg=f"OVF disk format {disk_format!r} is not supported (vmdk, raw)")
        names = self._names(sink, disk_format)
        is_ova = _writes_ova(sink, options)
        disk_path = self._disk_path(sink, names, is_ova)

        src = image.descriptor
        src_meta = src.metadata if src is not None and src.tag == FormatTag.OVF else {}
        algorithm = normalize_algorithm(options.get("manifest_algorithm") or src_meta.get("manifest_algorithm"))

        if disk_format == "vmdk":
            variant = options.get("variant") or STREAM_OPTIMIZED
            if variant == MONOLITHIC_FLAT:
                raise UnsupportedVariant(msg="OVF packages carry single-file VMDKs; monolithicFlat is not supported here")
            self.vmdk.create(image, disk_path, blocks=blocks, variant=variant)
            fmt_uri = VMDK_STREAM_FORMAT if variant == STREAM_OPTIMIZED else VMDK_SPARSE_FORMAT
        else:
            self.raw.create(image, disk_path, blocks=blocks)
            fmt_uri = RAW_FORMAT

        disk_sl = FileSlice(disk_path)
        base_env = src_meta.get("envelope")
        if not isinstance(base_env, Envelope):
            base_env = Envelope.minimal(options.get("name") or sink.stem)
        env = base_env.with_disk(
            file_id="file1",
            href=names["disk"],
            file_size=disk_sl.size,
            disk_id=src_meta.get("disk_id") or "vmdisk1",
            capacity=image.virtual_size,
            disk_format=fmt_uri,
            populated_size=image.allocated_bytes,
            keep_disk_id=src_meta.get("disk_id"),
        )
        ovf_bytes = env.render()

        manifest = Manifest(algorithm)
        manifest.entries[names["ovf"]] = digest_chunks([ovf_bytes], algorithm)
        manifest.entries[names["disk"]] = digest_chunks(disk_sl.iter_bytes(0, disk_sl.size), algorithm)
        mf_bytes = manifest.render().encode("utf-8")

        try:
            if is_ova:
                written = self._write_ova(sink, names, ovf_bytes, disk_path, mf_bytes)
                U.safe_unlink(disk_path)
            else:
                (sink.parent / names["ovf"]).write_bytes(ovf_bytes)
                (sink.parent / names["mf"]).write_bytes(mf_bytes)
                written = len(ovf_bytes) + disk_sl.size + len(mf_bytes)
        except OSError as e:
            raise wrap_io(f"failed writing OVF package {sink}", e, path=str(sink)) from e
        LOG.info("OVF written: %s (%s disk, %s, manifest %s)", sink, disk_format, U.human_bytes(written), algorithm)
        return written

    @staticmethod
    def _disk_path(sink: Path, names: Dict[str, str], is_ova: bool) -> Path:
        if is_ova:
            return sink.with_name(f".{sink.name}.{names['disk']}.part")
        return sink.parent / names["disk"]

    @staticmethod
    def _write_ova(sink: Path, names: Dict[str, str], ovf_bytes: bytes, disk_path: Path, mf_bytes: bytes) -> int:
        mtime = int(time.time())

        def info(name: str, size: int) -> tarfile.TarInfo:
            ti = tarfile.TarInfo(name)
            ti.size = size
            ti.mode = 0o644
            ti.mtime = mtime
            return ti

        with tarfile.open(sink, mode="w", format=tarfile.USTAR_FORMAT) as tar:
            tar.addfile(info(names["ovf"], len(ovf_bytes)), io.BytesIO(ovf_bytes))
            with open(disk_path, "rb") as f:
                tar.addfile(info(names["disk"], disk_path.stat().st_size), f)
            tar.addfile(info(names["mf"], len(mf_bytes)), io.BytesIO(mf_bytes))
        return sink.stat().st_size

    def artifacts(self, sink: Path, **options: Any) -> List[Path]:
        sink = Path(sink)
        disk_format = (options.get("disk_format") or "vmdk").lower()
        names = self._names(sink, disk_format)
        if _writes_ova(sink, options):
            return [sink, self._disk_path(sink, names, True)]
        return [sink.parent / names["ovf"], sink.parent / names["disk"], sink.parent / names["mf"]]
