# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vmi/formats/descriptor.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Protocol

from ..core.exceptions import UnknownFormat
from ..disk.extent import Block, DiskImage


class FormatTag(str, Enum):
    RAW = "raw"
    VMDK = "vmdk"
    OVF = "ovf"
    DEVICE = "device"

    @classmethod
    def parse(cls, s: str) -> "FormatTag":
        t = (s or "").strip().lower()
        if t == "ova":
            return cls.OVF
        if t in ("img", "bin"):
            return cls.RAW
        try:
            return cls(t)
        except ValueError:
            raise UnknownFormat(msg=f"unknown format tag {s!r}", context={"known": [x.value for x in cls]})


@dataclass
class FormatDescriptor:
    """
    A concrete format instance: tag + path + container metadata.

    `metadata` carries format-specific fields (VMDK descriptor entries,
    adapter type, geometry; OVF manifest algorithm, disk references,
    opaque envelope sections) so a writer of the same format can
    reproduce them.

    A source descriptor without a tag is detected when it is opened.
    """
    tag: Optional[FormatTag]
    path: Optional[Path] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.path is not None:
            self.path = Path(self.path)


class Codec(Protocol):
    """What every format handler provides; the set of handlers is closed (see registry)."""

    tag: FormatTag

    def probe(self, path: Path) -> float: ...

    def open(self, path: Path, **options: Any) -> DiskImage: ...

    def create(self, image: DiskImage, sink: Path, *, blocks: Optional[Iterable[Block]] = None, **options: Any) -> int: ...

    # files `create` writes for these options, with the variant already resolved
    def artifacts(self, sink: Path, **options: Any) -> List[Path]: ...


def block_stream(image: DiskImage, blocks: Optional[Iterable[Block]], chunk_size: int = 1024 * 1024) -> Iterator[Block]:
    """The pipeline hands writers a pre-fetched block stream; standalone calls read the image directly."""
    if blocks is None:
        return image.blocks(chunk_size)
    return iter(blocks)
