# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vmi/cloud/poll.py
from __future__ import annotations

import logging
import time
from typing import Any, Callable, Optional

from ..core.exceptions import Cancelled, ImportRejected, OperationTimeout
from .models import ImageStatus, ImportStatus

LOG = logging.getLogger(__name__)


def poll_until(
    fetch: Callable[[], ImportStatus],
    *,
    interval_s: float = 15.0,
    timeout_s: float = 3600.0,
    cancel: Optional[Any] = None,
    what: str = "provider operation",
    clock: Callable[[], float] = time.monotonic,
    sleep: Optional[Callable[[float], None]] = None,
    logger: Optional[logging.Logger] = None,
) -> ImportStatus:
    """
    Poll `fetch()` until it reports Available (returned) or Failed
    (ImportRejected). Raises OperationTimeout past the deadline and Cancelled
    when `cancel` is set; the provider object is then left as it is.
    """
    log = logger or LOG
    deadline = clock() + timeout_s
    last: Optional[ImageStatus] = None

    def wait(seconds: float) -> None:
        if sleep is not None:
            sleep(seconds)
        elif cancel is not None:
            cancel.wait(seconds)
        else:
            time.sleep(seconds)

    while True:
        if cancel is not None and cancel.is_set():
            log.warning("%s: cancelled while pending; provider-side object left as is", what)
            raise Cancelled(msg=f"{what} cancelled")

        st = fetch()
        if st.status != last:
            log.info("%s: %s%s", what, st.status.value, f" ({st.message})" if st.message else "")
            last = st.status
        elif st.progress is not None:
            log.debug("%s: %s %.0f%%", what, st.status.value, st.progress)

        if st.status == ImageStatus.AVAILABLE:
            return st
        if st.status == ImageStatus.FAILED:
            message = st.message or "no reason given"
            raise ImportRejected(
                msg=f"{what} failed: {message}",
                context={"provider_message": message, "image_id": st.image_id},
            )

        remaining = deadline - clock()
        if remaining <= 0:
            raise OperationTimeout(
                msg=f"{what} still {st.status.value} after {timeout_s:.0f}s",
                context={"timeout_s": timeout_s},
            )
        wait(min(interval_s, remaining))
