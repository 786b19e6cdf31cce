# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vmi/__init__.py
"""
vmi - virtual machine images made simple

Convert disk images between raw, VMDK and OVF/OVA and to or from AWS AMIs
and GCE images, and inspect their metadata.

Usage as a library:

    from vmi import ConversionJob, ConversionPipeline, FormatDescriptor, FormatTag

    job = ConversionJob(
        FormatDescriptor(None, "disk.img"),
        FormatDescriptor(FormatTag.VMDK, "disk.vmdk"),
    )
    outcome = ConversionPipeline().run(job)

    from vmi.inspect import inspect
    print(inspect("disk.vmdk").geometry)
"""

__version__ = "0.1.0"

from .config import Config
from .core.exceptions import (
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
from .disk import DiskImage, Extent, ExtentKind, diff, merge_adjacent
from .formats import FormatDescriptor, FormatRegistry, FormatTag
from .pipeline import CancelToken, ConversionJob, ConversionPipeline, Failed, JobState, Succeeded

__all__ = [
    "__version__",
    "Config",
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
    "DiskImage",
    "Extent",
    "ExtentKind",
    "diff",
    "merge_adjacent",
    "FormatDescriptor",
    "FormatRegistry",
    "FormatTag",
    "CancelToken",
    "ConversionJob",
    "ConversionPipeline",
    "Failed",
    "JobState",
    "Succeeded",
]
