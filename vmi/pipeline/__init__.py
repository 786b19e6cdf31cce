# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
from .endpoints import AdapterResolver, build_adapter, parse_destination, parse_source, transfer_settings
from .job import CancelToken, ConversionJob, Failed, JobState, Outcome, Succeeded
from .pipeline import BlockFeed, ConversionPipeline
from .progress import (
    LoggingProgressReporter,
    NoopProgressReporter,
    ProgressReporter,
    RichProgressReporter,
    create_progress_reporter,
)
from .transform import pad_to_multiple

__all__ = [
    "AdapterResolver",
    "build_adapter",
    "parse_destination",
    "parse_source",
    "transfer_settings",
    "CancelToken",
    "ConversionJob",
    "Failed",
    "JobState",
    "Outcome",
    "Succeeded",
    "BlockFeed",
    "ConversionPipeline",
    "LoggingProgressReporter",
    "NoopProgressReporter",
    "ProgressReporter",
    "RichProgressReporter",
    "create_progress_reporter",
    "pad_to_multiple",
]
