# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vmi/cloud/transfer.py
"""
Object storage transfer.

The provider SDK calls live outside this package; adapters talk to an
ObjectStore and an ImageService. MultipartWriter turns a sequential byte
stream (a serialized disk) into a bounded-concurrency multipart upload.
"""
from __future__ import annotations

import logging
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Any, Callable, Dict, Iterator, List, Optional, Protocol, Set, Tuple

import requests
import requests.adapters

from ..core.exceptions import Cancelled, IOFailure, wrap_io
from ..core.retry import retry_operation
from .models import CloudImageHandle, CloudTarget, ImportStatus

LOG = logging.getLogger(__name__)

DEFAULT_PART_SIZE = 8 * 1024 * 1024


class ObjectStore(Protocol):
    def begin_upload(self, key: str) -> str: ...

    def upload_part(self, upload_id: str, key: str, part_number: int, data: bytes) -> str: ...

    def complete_upload(self, upload_id: str, key: str, parts: List[Tuple[int, str]]) -> None: ...

    def abort_upload(self, upload_id: str, key: str) -> None: ...

    def size(self, key: str) -> Optional[int]: ...

    def iter_download(self, key: str, chunk_size: int) -> Iterator[bytes]: ...

    def delete(self, key: str) -> None: ...


class ImageService(Protocol):
    def start_import(self, key: str, target: CloudTarget, disk_format: str, **meta: Any) -> str: ...

    def poll_import(self, task_id: str) -> ImportStatus: ...

    def describe_image(self, handle: CloudImageHandle) -> Optional[Dict[str, Any]]: ...

    def start_export(self, handle: CloudImageHandle, key: str, disk_format: str) -> str: ...

    def poll_export(self, task_id: str) -> ImportStatus: ...


class MultipartWriter:
    """
    Sequential file-like sink. Bytes are cut into `part_size` parts which
    are uploaded by at most `max_concurrency` worker threads; `write` blocks
    while that many parts are in flight. Parts are retried on IOFailure;
    a part that keeps failing aborts the whole upload.
    """

    def __init__(
        self,
        store: ObjectStore,
        key: str,
        *,
        part_size: int = DEFAULT_PART_SIZE,
        max_concurrency: int = 4,
        part_retries: int = 3,
        backoff_base_s: float = 1.0,
        backoff_cap_s: float = 30.0,
        cancel: Optional[Any] = None,
        sleep: Optional[Callable[[float], None]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        if part_size <= 0:
            raise ValueError("part_size must be positive")
        self.store = store
        self.key = key
        self.part_size = int(part_size)
        self.max_concurrency = max(1, int(max_concurrency))
        self.part_retries = max(0, int(part_retries))
        self.backoff_base_s = backoff_base_s
        self.backoff_cap_s = backoff_cap_s
        self.cancel = cancel
        self.logger = logger or LOG
        self._sleep = sleep

        self._buf = bytearray()
        self._next_part = 1
        self._parts: Dict[int, str] = {}
        self._inflight: Set[Future] = set()
        self._lock = threading.Lock()
        self._error: Optional[BaseException] = None
        self._closed = False
        self._aborted = False
        self.bytes_written = 0
        self.attempts: Dict[int, int] = {}

        self.upload_id = store.begin_upload(key)
        self._pool = ThreadPoolExecutor(max_workers=self.max_concurrency, thread_name_prefix="vmi-part")
        self.logger.debug("Multipart upload %s started for %s", self.upload_id, key)

    # -- file-like surface ---------------------------------------------

    def writable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return False

    def readable(self) -> bool:
        return False

    def tell(self) -> int:
        return self.bytes_written

    def flush(self) -> None:
        pass

    def write(self, data: Any) -> int:
        self._check()
        mv = memoryview(data).cast("B")
        n = len(mv)
        self._buf += mv
        self.bytes_written += n
        while len(self._buf) >= self.part_size:
            chunk = bytes(self._buf[:self.part_size])
            del self._buf[:self.part_size]
            self._submit(chunk)
        return n

    def __enter__(self) -> "MultipartWriter":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is not None:
            self.abort()
        else:
            self.close()

    # -- parts ----------------------------------------------------------

    def _cancelled(self) -> bool:
        return self.cancel is not None and self.cancel.is_set()

    def _check(self) -> None:
        if self._closed:
            raise ValueError("write to closed MultipartWriter")
        if self._cancelled():
            raise Cancelled(msg=f"upload of {self.key} cancelled")
        if self._error is not None:
            self._fail()

    def _fail(self) -> None:
        err = self._error
        self.abort()
        assert err is not None
        raise err

    def _submit(self, chunk: bytes) -> None:
        while len(self._inflight) >= self.max_concurrency:
            done, _ = wait(self._inflight, return_when=FIRST_COMPLETED)
            self._reap(done)
            if self._error is not None:
                self._fail()
        number = self._next_part
        self._next_part += 1
        fut = self._pool.submit(self._upload_part, number, chunk)
        self._inflight.add(fut)

    def _reap(self, done) -> None:
        for fut in done:
            self._inflight.discard(fut)
            exc = fut.exception()
            if exc is not None and self._error is None:
                self._error = exc

    def _upload_part(self, number: int, chunk: bytes) -> None:
        def attempt() -> str:
            with self._lock:
                self.attempts[number] = self.attempts.get(number, 0) + 1
            return self.store.upload_part(self.upload_id, self.key, number, chunk)

        kwargs: Dict[str, Any] = {}
        if self._sleep is not None:
            kwargs["sleep"] = self._sleep
        etag = retry_operation(
            attempt,
            max_attempts=self.part_retries + 1,
            base_backoff_s=self.backoff_base_s,
            max_backoff_s=self.backoff_cap_s,
            jitter_s=0.0,
            exceptions=IOFailure,
            operation_name=f"upload part {number} of {self.key}",
            logger=self.logger,
            should_stop=self._cancelled,
            **kwargs,
        )
        with self._lock:
            self._parts[number] = etag

    def close(self) -> None:
        if self._closed:
            return
        self._check()
        if self._buf or self._next_part == 1:
            self._submit(bytes(self._buf))
            self._buf.clear()
        done, _ = wait(self._inflight)
        self._reap(done)
        if self._error is not None:
            self._fail()
        if self._cancelled():
            self.abort()
            raise Cancelled(msg=f"upload of {self.key} cancelled")
        parts = sorted(self._parts.items())
        try:
            self.store.complete_upload(self.upload_id, self.key, parts)
        except BaseException:
            self.abort()
            raise
        self._closed = True
        self._pool.shutdown(wait=True)
        self.logger.debug("Multipart upload %s complete: %d parts, %d bytes", self.upload_id, len(parts), self.bytes_written)

    def abort(self) -> None:
        if self._aborted or self._closed:
            return
        self._aborted = True
        self._closed = True
        for fut in self._inflight:
            fut.cancel()
        self._pool.shutdown(wait=True)
        try:
            self.store.abort_upload(self.upload_id, self.key)
        except Exception as e:
            self.logger.warning("Aborting multipart upload %s failed: %s", self.upload_id, e)
        else:
            self.logger.info("Multipart upload %s of %s aborted", self.upload_id, self.key)


class SignedUrlObjectStore:
    """
    ObjectStore over pre-signed HTTP URLs.

    `signer(method, key, params)` returns a URL for one request; `coordinator`
    (the provider SDK side) starts, completes and aborts multipart uploads.
    """

    def __init__(
        self,
        signer: Callable[[str, str, Dict[str, Any]], str],
        coordinator: Any,
        *,
        connect_timeout_s: float = 10.0,
        read_timeout_s: float = 300.0,
        session: Optional[requests.Session] = None,
    ):
        self.signer = signer
        self.coordinator = coordinator
        self.timeout = (connect_timeout_s, read_timeout_s)
        self._session = session

    @classmethod
    def from_config(
        cls, signer: Callable[[str, str, Dict[str, Any]], str], coordinator: Any, transfer: Any, **kw: Any
    ) -> "SignedUrlObjectStore":
        """Store with the connect/read timeouts of a `transfer:` config section."""
        return cls(
            signer,
            coordinator,
            connect_timeout_s=transfer.connect_timeout_s,
            read_timeout_s=transfer.read_timeout_s,
            **kw,
        )

    @property
    def session(self) -> requests.Session:
        if self._session is None:
            session = requests.Session()
            adapter = requests.adapters.HTTPAdapter(pool_connections=10, pool_maxsize=32, max_retries=0)
            session.mount("http://", adapter)
            session.mount("https://", adapter)
            self._session = session
        return self._session

    def begin_upload(self, key: str) -> str:
        return self.coordinator.begin_upload(key)

    def complete_upload(self, upload_id: str, key: str, parts: List[Tuple[int, str]]) -> None:
        self.coordinator.complete_upload(upload_id, key, parts)

    def abort_upload(self, upload_id: str, key: str) -> None:
        self.coordinator.abort_upload(upload_id, key)

    def upload_part(self, upload_id: str, key: str, part_number: int, data: bytes) -> str:
        url = self.signer("PUT", key, {"upload_id": upload_id, "part_number": part_number})
        try:
            r = self.session.put(url, data=data, timeout=self.timeout)
            r.raise_for_status()
        except requests.RequestException as e:
            raise wrap_io(f"part {part_number} upload of {key} failed", e, key=key, part=part_number) from e
        return r.headers.get("ETag", "").strip('"') or str(part_number)

    def size(self, key: str) -> Optional[int]:
        url = self.signer("HEAD", key, {})
        try:
            r = self.session.head(url, timeout=self.timeout)
            if r.status_code == 404:
                return None
            r.raise_for_status()
        except requests.RequestException as e:
            raise wrap_io(f"HEAD {key} failed", e, key=key) from e
        length = r.headers.get("content-length")
        return int(length) if length is not None else None

    def iter_download(self, key: str, chunk_size: int = 1024 * 1024) -> Iterator[bytes]:
        url = self.signer("GET", key, {})
        try:
            with self.session.get(url, stream=True, timeout=self.timeout) as r:
                r.raise_for_status()
                for chunk in r.iter_content(chunk_size=chunk_size):
                    if chunk:
                        yield chunk
        except requests.RequestException as e:
            raise wrap_io(f"download of {key} failed", e, key=key) from e

    def delete(self, key: str) -> None:
        url = self.signer("DELETE", key, {})
        try:
            r = self.session.delete(url, timeout=self.timeout)
            if r.status_code != 404:
                r.raise_for_status()
        except requests.RequestException as e:
            raise wrap_io(f"delete of {key} failed", e, key=key) from e
