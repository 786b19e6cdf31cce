# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vmi/pipeline/progress.py
"""
Progress reporters for conversions.

- RichProgressReporter: animated bar on a TTY
- LoggingProgressReporter: periodic log lines (works everywhere)
- NoopProgressReporter: silent
"""
from __future__ import annotations

import logging
import sys
from abc import ABC, abstractmethod
from typing import Any, Optional

from rich.console import Console
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
    TimeRemainingColumn,
    TransferSpeedColumn,
)

from ..core.utils import U, is_tty


class ProgressReporter(ABC):
    @abstractmethod
    def start(self, description: str, total: Optional[int] = None) -> None:
        ...

    @abstractmethod
    def update(self, delta: int) -> None:
        """Advance by `delta` logical bytes."""
        ...

    @abstractmethod
    def finish(self) -> None:
        ...


class RichProgressReporter(ProgressReporter):
    def __init__(self, console: Optional[Console] = None, refresh_hz: float = 10.0):
        self.console = console or Console(stderr=True)
        self.refresh_hz = refresh_hz
        self.progress: Optional[Progress] = None
        self.task_id: Optional[Any] = None

    def start(self, description: str, total: Optional[int] = None) -> None:
        self.progress = Progress(
            SpinnerColumn(style="bright_green"),
            TextColumn("[progress.description]{task.description}", style="bold cyan"),
            BarColumn(complete_style="bright_blue", finished_style="bright_green", pulse_style="magenta"),
            DownloadColumn(),
            TransferSpeedColumn(),
            TimeRemainingColumn(),
            TimeElapsedColumn(),
            console=self.console,
            transient=False,
            refresh_per_second=max(1, int(self.refresh_hz)),
        )
        self.progress.start()
        self.task_id = self.progress.add_task(description, total=total if total and total > 0 else None)

    def update(self, delta: int) -> None:
        if self.progress is not None and self.task_id is not None:
            self.progress.update(self.task_id, advance=delta)

    def finish(self) -> None:
        if self.progress is not None:
            self.progress.stop()
            self.progress = None


class LoggingProgressReporter(ProgressReporter):
    def __init__(self, logger: logging.Logger, log_every_bytes: int = 1024 * 1024 * 1024):
        self.logger = logger
        self.log_every_bytes = log_every_bytes
        self.done = 0
        self.total: Optional[int] = None
        self.last_log_mark = 0
        self.description = ""

    def start(self, description: str, total: Optional[int] = None) -> None:
        self.description = description
        self.total = total
        self.done = 0
        self.last_log_mark = 0
        self.logger.info("Starting: %s (%s)", description, U.human_bytes(total))

    def update(self, delta: int) -> None:
        self.done += delta
        if self.done - self.last_log_mark < self.log_every_bytes:
            return
        self.last_log_mark = self.done
        if self.total:
            self.logger.info(
                "%s: %s / %s (%.1f%%)",
                self.description,
                U.human_bytes(self.done),
                U.human_bytes(self.total),
                self.done * 100.0 / self.total,
            )
        else:
            self.logger.info("%s: %s", self.description, U.human_bytes(self.done))

    def finish(self) -> None:
        self.logger.info("Finished: %s (%s)", self.description, U.human_bytes(self.done))


class NoopProgressReporter(ProgressReporter):
    def start(self, description: str, total: Optional[int] = None) -> None:
        pass

    def update(self, delta: int) -> None:
        pass

    def finish(self) -> None:
        pass


def create_progress_reporter(logger: logging.Logger, *, show_progress: bool = True, quiet: bool = False) -> ProgressReporter:
    """Rich bar on an interactive stderr, log lines otherwise, nothing when quiet."""
    if not show_progress or quiet:
        return NoopProgressReporter()
    if is_tty(sys.stderr):
        return RichProgressReporter()
    return LoggingProgressReporter(logger)
