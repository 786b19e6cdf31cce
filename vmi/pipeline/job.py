# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vmi/pipeline/job.py
from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from ..cloud.models import CloudImageHandle, CloudTarget
from ..core.exceptions import ErrorKind, VmiError, kind_of
from ..formats.descriptor import FormatDescriptor

Endpoint = Union[FormatDescriptor, CloudImageHandle, CloudTarget]


class JobState(str, Enum):
    IDLE = "Idle"
    READING = "Reading"
    TRANSFORMING = "Transforming"
    WRITING = "Writing"
    DONE = "Done"
    FAILED = "Failed"


# allowed transitions; Failed is reachable from every non-terminal state
_NEXT = {
    JobState.IDLE: {JobState.READING},
    JobState.READING: {JobState.TRANSFORMING},
    JobState.TRANSFORMING: {JobState.WRITING},
    JobState.WRITING: {JobState.DONE},
    JobState.DONE: set(),
    JobState.FAILED: set(),
}


class CancelToken:
    """Cooperative cancellation flag shared by a job, its producer and its writer."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    def is_set(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)


@dataclass(frozen=True)
class Succeeded:
    bytes_written: int
    checksum: str
    algorithm: str = "sha256"
    result: Optional[Any] = None

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Failed:
    kind: ErrorKind
    message: str
    chain: Tuple[str, ...] = ()
    error: Optional[BaseException] = field(default=None, compare=False, repr=False)

    @property
    def ok(self) -> bool:
        return False

    @classmethod
    def from_exception(cls, e: BaseException) -> "Failed":
        if isinstance(e, VmiError):
            return cls(e.kind, e.msg, tuple(e.cause_chain()), e)
        return cls(kind_of(e), str(e) or type(e).__name__, (f"{type(e).__name__}: {e}",), e)


Outcome = Union[Succeeded, Failed]


@dataclass
class Progress:
    bytes_done: int = 0
    bytes_total: int = 0
    # most blocks ever waiting between reader and writer
    max_queued: int = 0

    @property
    def fraction(self) -> float:
        return self.bytes_done / self.bytes_total if self.bytes_total else 0.0


@dataclass
class ConversionJob:
    """
    One conversion: source endpoint to destination endpoint.

    `options` carries codec options for the destination writer (variant,
    disk_format, manifest_algorithm, name, ...); `source_options` those for
    the source reader (disk_index, verify).
    """
    source: Endpoint
    destination: Endpoint
    options: Dict[str, Any] = field(default_factory=dict)
    source_options: Dict[str, Any] = field(default_factory=dict)
    cancel: CancelToken = field(default_factory=CancelToken)
    state: JobState = JobState.IDLE
    history: List[Tuple[JobState, float]] = field(default_factory=list)
    progress: Progress = field(default_factory=Progress)
    outcome: Optional[Outcome] = None

    def __post_init__(self) -> None:
        if not self.history:
            self.history.append((self.state, time.monotonic()))

    @property
    def states(self) -> List[JobState]:
        return [s for s, _ in self.history]

    @property
    def finished(self) -> bool:
        return self.state in (JobState.DONE, JobState.FAILED)

    def transition(self, new: JobState) -> None:
        if new != JobState.FAILED and new not in _NEXT[self.state]:
            raise RuntimeError(f"illegal job transition {self.state.value} -> {new.value}")
        if new == JobState.FAILED and self.finished:
            raise RuntimeError(f"job already finished in {self.state.value}")
        self.state = new
        self.history.append((new, time.monotonic()))

    def succeed(self, outcome: Succeeded) -> None:
        self.transition(JobState.DONE)
        self.outcome = outcome

    def fail(self, e: BaseException) -> Failed:
        outcome = Failed.from_exception(e)
        self.transition(JobState.FAILED)
        self.outcome = outcome
        return outcome
