# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vmi/core/__init__.py
from .exceptions import (
    Cancelled,
    ErrorKind,
    Fatal,
    ImageNotFound,
    ImportRejected,
    IntegrityViolation,
    IOFailure,
    MalformedLayout,
    OperationTimeout,
    UnknownFormat,
    UnsupportedVariant,
    VmiError,
)

__all__ = [
    "Cancelled",
    "ErrorKind",
    "Fatal",
    "ImageNotFound",
    "ImportRejected",
    "IntegrityViolation",
    "IOFailure",
    "MalformedLayout",
    "OperationTimeout",
    "UnknownFormat",
    "UnsupportedVariant",
    "VmiError",
]
