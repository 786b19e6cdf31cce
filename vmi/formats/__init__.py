# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
from .descriptor import Codec, FormatDescriptor, FormatTag
from .device import DeviceCodec
from .ovf.codec import OvfCodec
from .raw import RawCodec
from .registry import PRIORITY, FormatRegistry
from .vmdk.codec import VmdkCodec

__all__ = [
    "Codec",
    "FormatDescriptor",
    "FormatTag",
    "DeviceCodec",
    "OvfCodec",
    "RawCodec",
    "PRIORITY",
    "FormatRegistry",
    "VmdkCodec",
]
