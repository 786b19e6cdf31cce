# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vmi/inspect.py
"""
Inspect: detection plus the parse stage of a codec, with no writing. Disk
content is never copied; only container metadata (and, for sparse formats,
allocation tables) is read.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

from .cloud.adapter import CloudAdapter
from .cloud.models import ProviderTag, is_cloud_ref, parse_cloud_ref
from .config import Config
from .disk.extent import DiskImage, ExtentKind
from .formats.descriptor import FormatTag
from .formats.registry import FormatRegistry
from .pipeline.endpoints import AdapterResolver

LOG = logging.getLogger(__name__)

# format metadata that is not plain data (parsed objects kept for writers)
_INTERNAL_KEYS = {"descriptor", "envelope", "inner"}


@dataclass
class ExtentSummary:
    count: int = 0
    data: int = 0
    zero: int = 0
    sparse: int = 0
    allocated_bytes: int = 0
    sparse_ratio: float = 0.0

    @classmethod
    def of(cls, image: DiskImage) -> "ExtentSummary":
        kinds = [e.kind for e in image.extents]
        return cls(
            count=len(kinds),
            data=kinds.count(ExtentKind.DATA),
            zero=kinds.count(ExtentKind.ZERO),
            sparse=kinds.count(ExtentKind.SPARSE),
            allocated_bytes=image.allocated_bytes,
            sparse_ratio=image.sparse_ratio,
        )


@dataclass
class Metadata:
    source: str
    format: str
    virtual_size: Optional[int]
    extents: Optional[ExtentSummary] = None
    geometry: Optional[Tuple[int, int, int]] = None
    fields: Dict[str, Any] = field(default_factory=dict)

    @property
    def sparse_ratio(self) -> Optional[float]:
        return self.extents.sparse_ratio if self.extents else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "format": self.format,
            "virtual_size": self.virtual_size,
            "extents": None if self.extents is None else {
                "count": self.extents.count,
                "data": self.extents.data,
                "zero": self.extents.zero,
                "sparse": self.extents.sparse,
                "allocated_bytes": self.extents.allocated_bytes,
                "sparse_ratio": round(self.extents.sparse_ratio, 6),
            },
            "geometry": list(self.geometry) if self.geometry else None,
            "fields": self.fields,
        }


def _plain(metadata: Mapping[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for k, v in metadata.items():
        if k in _INTERNAL_KEYS:
            continue
        out[k] = list(v) if isinstance(v, tuple) else v
    return out


def metadata_of(image: DiskImage, source: str) -> Metadata:
    d = image.descriptor
    meta = dict(d.metadata) if d is not None else {}
    fields = _plain(meta)
    geometry = meta.get("geometry")
    if d is not None and d.tag == FormatTag.OVF:
        inner = meta.get("inner") or {}
        geometry = inner.get("geometry")
        fields["disk"] = _plain(inner)
    return Metadata(
        source=source,
        format=d.tag.value if d is not None and d.tag is not None else "unknown",
        virtual_size=image.virtual_size,
        extents=ExtentSummary.of(image),
        geometry=tuple(geometry) if geometry else None,
        fields=fields,
    )


def inspect(
    source: str,
    *,
    fmt: Optional[str] = None,
    config: Optional[Config] = None,
    registry: Optional[FormatRegistry] = None,
    adapters: Optional[Mapping[ProviderTag, CloudAdapter]] = None,
    options: Optional[Dict[str, Any]] = None,
) -> Metadata:
    """Metadata for a local image path or a cloud image reference. `options` go to the codec's open."""
    cfg = config or Config()
    if is_cloud_ref(source):
        handle = parse_cloud_ref(source, default_region=cfg.aws.region)
        info = AdapterResolver(cfg, adapters)(handle.provider).describe(handle)
        size = info.get("virtual_size")
        return Metadata(
            source=handle.ref,
            format=handle.provider.value,
            virtual_size=int(size) if size is not None else None,
            fields=dict(info),
        )

    reg = registry or FormatRegistry.default(zero_block_size=cfg.pipeline.zero_block_size)
    path = Path(source).expanduser()
    with reg.open(path, FormatTag.parse(fmt) if fmt else None, **(options or {})) as image:
        md = metadata_of(image, str(path))
    LOG.debug("Inspected %s: %s, %s bytes", path, md.format, md.virtual_size)
    return md
