# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
from .codec import OvfCodec, Package
from .envelope import Envelope, HardwareSummary
from .manifest import Manifest

__all__ = ["OvfCodec", "Package", "Envelope", "HardwareSummary", "Manifest"]
