# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vmi/formats/registry.py
"""
Format detection and dispatch.

Detection asks each codec for a confidence score in the fixed order of
PRIORITY and keeps the highest score; on equal scores the codec earlier in
PRIORITY wins. The registry is built once and never mutated afterwards.
"""
from __future__ import annotations

import logging
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from ..core.exceptions import IOFailure, UnknownFormat
from ..disk.extent import DiskImage
from .descriptor import Codec, FormatDescriptor, FormatTag
from .device import DeviceCodec
from .ovf.codec import OvfCodec
from .raw import DEFAULT_ZERO_BLOCK, RawCodec
from .vmdk.codec import VmdkCodec

LOG = logging.getLogger(__name__)

PRIORITY: Tuple[FormatTag, ...] = (FormatTag.OVF, FormatTag.VMDK, FormatTag.RAW)

_EXTENSIONS = {
    ".vmdk": FormatTag.VMDK,
    ".ovf": FormatTag.OVF,
    ".ova": FormatTag.OVF,
    ".img": FormatTag.RAW,
    ".raw": FormatTag.RAW,
    ".bin": FormatTag.RAW,
}


class FormatRegistry:
    def __init__(self, codecs: Mapping[FormatTag, Codec], priority: Tuple[FormatTag, ...] = PRIORITY):
        missing = [t for t in priority if t not in codecs]
        if missing:
            raise ValueError(f"priority names codecs that are not registered: {missing}")
        self._codecs = MappingProxyType(dict(codecs))
        self.priority = tuple(priority)

    @classmethod
    def default(cls, *, zero_block_size: int = DEFAULT_ZERO_BLOCK) -> "FormatRegistry":
        raw = RawCodec(zero_block_size)
        vmdk = VmdkCodec()
        return cls({
            FormatTag.OVF: OvfCodec(vmdk, raw),
            FormatTag.VMDK: vmdk,
            FormatTag.RAW: raw,
            FormatTag.DEVICE: DeviceCodec(),
        })

    @property
    def codecs(self) -> Mapping[FormatTag, Codec]:
        return self._codecs

    def resolve(self, tag: Union[FormatTag, str]) -> Codec:
        t = tag if isinstance(tag, FormatTag) else FormatTag.parse(tag)
        codec = self._codecs.get(t)
        if codec is None:
            raise UnknownFormat(msg=f"no codec registered for {t.value}")
        return codec

    def scores(self, source: Path) -> Dict[FormatTag, float]:
        return {t: float(self._codecs[t].probe(source)) for t in self.priority}

    def detect(self, source: Path) -> FormatDescriptor:
        source = Path(source)
        if not source.exists():
            raise IOFailure(msg=f"source {source} does not exist", cause=FileNotFoundError(str(source)))
        scores = self.scores(source)
        best: Optional[FormatTag] = None
        for tag in self.priority:
            # strict '>' keeps the earlier (higher-priority) codec on ties
            if scores[tag] > 0 and (best is None or scores[tag] > scores[best]):
                best = tag
        if best is None:
            raise UnknownFormat(
                msg=f"cannot determine the format of {source}",
                context={"scores": {t.value: s for t, s in scores.items()}},
            )
        LOG.debug("Detected %s as %s (scores %s)", source, best.value, {t.value: s for t, s in scores.items()})
        return FormatDescriptor(best, source, {"confidence": scores[best]})

    def open(self, source: Path, tag: Optional[Union[FormatTag, str]] = None, **options: Any) -> DiskImage:
        """Open `source` with an explicit codec, or the detected one."""
        t = self.detect(source).tag if tag is None else (tag if isinstance(tag, FormatTag) else FormatTag.parse(tag))
        return self.resolve(t).open(Path(source), **options)

    @staticmethod
    def tag_for_destination(path: Path) -> FormatTag:
        """Destination format from the path: block devices are DEVICE, otherwise by extension."""
        p = Path(path)
        if str(p).startswith("/dev/"):
            return FormatTag.DEVICE
        tag = _EXTENSIONS.get(p.suffix.lower())
        if tag is None:
            raise UnknownFormat(
                msg=f"cannot infer the output format of {p}; pass --format",
                context={"extensions": sorted(_EXTENSIONS)},
            )
        return tag
