# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vmi/disk/__init__.py
from .extent import (
    Block,
    DiskImage,
    Extent,
    ExtentKind,
    ImageSource,
    content_equal,
    diff,
    merge_adjacent,
    validate_layout,
)
from .sources import ByteSource, BytesSource, FileSlice

__all__ = [
    "Block",
    "ByteSource",
    "BytesSource",
    "DiskImage",
    "Extent",
    "ExtentKind",
    "FileSlice",
    "ImageSource",
    "content_equal",
    "diff",
    "merge_adjacent",
    "validate_layout",
]
