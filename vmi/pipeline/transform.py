# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vmi/pipeline/transform.py
"""
Streaming transforms. They rewrite the extent list only; no disk content is
read or buffered.
"""
from __future__ import annotations

import logging
from typing import Optional

from ..cloud.gcp import GIB
from ..cloud.models import CloudTarget, ProviderTag
from ..core.utils import U
from ..disk.extent import DiskImage, Extent, ExtentKind, merge_adjacent
from ..formats.descriptor import FormatTag

LOG = logging.getLogger(__name__)

SECTOR = 512


def pad_to_multiple(image: DiskImage, multiple: int) -> DiskImage:
    """Grow the image to a multiple of `multiple` bytes with a trailing Sparse extent."""
    size = U.round_up(image.virtual_size, multiple)
    if size == image.virtual_size:
        return image
    LOG.debug("Padding %d -> %d bytes (multiple of %d)", image.virtual_size, size, multiple)
    tail = Extent(image.virtual_size, size - image.virtual_size, ExtentKind.SPARSE)
    return image.with_extents(merge_adjacent(list(image.extents) + [tail]), virtual_size=size)


def alignment_for(destination: object) -> Optional[int]:
    """Size granularity required by a destination, or None."""
    if isinstance(destination, CloudTarget):
        return GIB if destination.provider == ProviderTag.GCP else SECTOR
    tag = getattr(destination, "tag", None)
    if tag in (FormatTag.VMDK, FormatTag.OVF):
        return SECTOR
    return None


def prepare(image: DiskImage, destination: object) -> DiskImage:
    multiple = alignment_for(destination)
    if multiple is None:
        return image
    return pad_to_multiple(image, multiple)
