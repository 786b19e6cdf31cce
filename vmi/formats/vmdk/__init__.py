# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
from .codec import MONOLITHIC_FLAT, MONOLITHIC_SPARSE, STREAM_OPTIMIZED, VmdkCodec
from .descriptor import ExtentLine, Geometry, VmdkDescriptor, build_descriptor, default_geometry
from .sparse import SparseHeader

__all__ = [
    "MONOLITHIC_FLAT",
    "MONOLITHIC_SPARSE",
    "STREAM_OPTIMIZED",
    "VmdkCodec",
    "ExtentLine",
    "Geometry",
    "VmdkDescriptor",
    "build_descriptor",
    "default_geometry",
    "SparseHeader",
]
