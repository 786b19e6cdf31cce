# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
"""
Retry utilities with exponential backoff.

Used for transient transfer failures inside the cloud adapters; everything
else propagates on the first failure.
"""

from __future__ import annotations

import logging
import random
import time
from typing import Callable, Optional, Tuple, Type, TypeVar, Union

T = TypeVar("T")


def backoff_delay(attempt: int, base_backoff_s: float, max_backoff_s: float, jitter_s: float = 0.0) -> float:
    """Delay before retry number `attempt` (1-based)."""
    delay = min(base_backoff_s * (2 ** (attempt - 1)), max_backoff_s)
    if jitter_s > 0:
        delay += random.uniform(0, jitter_s)
    return max(0.0, delay)


def retry_operation(
    operation: Callable[[], T],
    *,
    max_attempts: int = 3,
    base_backoff_s: float = 2.0,
    max_backoff_s: float = 60.0,
    jitter_s: float = 1.0,
    exceptions: Union[Type[BaseException], Tuple[Type[BaseException], ...]] = Exception,
    operation_name: str = "operation",
    logger: Optional[logging.Logger] = None,
    log_level: int = logging.WARNING,
    sleep: Callable[[float], None] = time.sleep,
    should_stop: Optional[Callable[[], bool]] = None,
) -> T:
    """
    Retry an operation (function call) with exponential backoff.

    Args:
        operation: Callable that returns T
        max_attempts: Maximum number of attempts (default: 3)
        base_backoff_s: Base backoff time in seconds (default: 2.0)
        max_backoff_s: Maximum backoff time in seconds (default: 60.0)
        jitter_s: Random jitter to add to backoff in seconds (default: 1.0)
        exceptions: Exception type(s) to catch and retry (default: Exception)
        operation_name: Name for logging (default: "operation")
        logger: Logger to use for warnings (default: None, no logging)
        log_level: Log level for retry messages (default: logging.WARNING)
        sleep: Sleep function, replaceable in tests
        should_stop: When it returns True no further attempt is made

    Returns:
        Result of the operation

    Example:
        etag = retry_operation(
            lambda: store.upload_part(upload_id, 3, data),
            max_attempts=4,
            exceptions=IOFailure,
            operation_name="upload part 3",
            logger=log,
        )
    """
    max_attempts = max(1, int(max_attempts))

    for attempt in range(1, max_attempts + 1):
        try:
            return operation()
        except exceptions as e:
            if attempt >= max_attempts or (should_stop is not None and should_stop()):
                if logger:
                    logger.log(
                        logging.ERROR,
                        "%s failed after %d attempts: %s",
                        operation_name,
                        attempt,
                        e,
                    )
                raise

            sleep_time = backoff_delay(attempt, base_backoff_s, max_backoff_s, jitter_s)
            if logger:
                logger.log(
                    log_level,
                    "%s failed (attempt %d/%d): %s. Retrying in %.2fs...",
                    operation_name,
                    attempt,
                    max_attempts,
                    e,
                    sleep_time,
                )
            sleep(sleep_time)

    raise RuntimeError(f"{operation_name} failed with no exception recorded")
