# SPDX-License-Identifier: LGPL-3.0-or-later
"""
Unit tests for multipart uploads and the signed-URL object store
"""

import threading
import time

import pytest
import requests

from fakes.fake_cloud import FakeObjectStore, no_sleep
from fakes.images import pattern
from vmi.config import Config
from vmi.core.exceptions import Cancelled, IOFailure
from vmi.cloud.transfer import MultipartWriter, SignedUrlObjectStore


def _write_all(writer, data, step):
    for i in range(0, len(data), step):
        writer.write(data[i:i + step])


@pytest.mark.unit
class TestMultipartWriter:
    def test_parts_reassemble_in_order(self):
        store = FakeObjectStore()
        data = pattern(10 * 777)
        with MultipartWriter(store, "k", part_size=1000, max_concurrency=3, sleep=no_sleep) as w:
            _write_all(w, data, 777)
        assert store.objects["k"] == data
        assert w.bytes_written == len(data)
        assert sorted(w.attempts) == list(range(1, 9))
        assert store.completed == [w.upload_id]
        assert store.aborted == []

    def test_failed_part_is_retried(self):
        """A part that fails once is sent again and the upload completes."""
        store = FakeObjectStore(fail_parts={1: 1})
        data = pattern(2500)
        with MultipartWriter(store, "k", part_size=1000, sleep=no_sleep) as w:
            w.write(data)
        assert w.attempts[1] == 2
        assert w.attempts[2] == 1
        assert store.part_attempts(1) == 2
        assert store.objects["k"] == data

    def test_persistent_failure_aborts(self):
        store = FakeObjectStore(fail_parts={2: 10})
        with pytest.raises(IOFailure):
            with MultipartWriter(store, "k", part_size=100, part_retries=2, sleep=no_sleep) as w:
                w.write(pattern(250))
        assert w.attempts[2] == 3
        assert store.aborted == [w.upload_id]
        assert "k" not in store.objects

    def test_in_flight_parts_are_bounded(self):
        class SlowStore(FakeObjectStore):
            def __init__(self):
                super().__init__()
                self.active = 0
                self.peak = 0
                self.gauge = threading.Lock()

            def upload_part(self, upload_id, key, part_number, data):
                with self.gauge:
                    self.active += 1
                    self.peak = max(self.peak, self.active)
                time.sleep(0.01)
                try:
                    return super().upload_part(upload_id, key, part_number, data)
                finally:
                    with self.gauge:
                        self.active -= 1

        store = SlowStore()
        data = pattern(20 * 64)
        with MultipartWriter(store, "k", part_size=64, max_concurrency=2) as w:
            _write_all(w, data, 64)
        assert 1 <= store.peak <= 2
        assert store.objects["k"] == data

    def test_cancel_aborts(self):
        store = FakeObjectStore()
        cancel = threading.Event()
        with pytest.raises(Cancelled):
            with MultipartWriter(store, "k", part_size=100, cancel=cancel) as w:
                w.write(pattern(150))
                cancel.set()
                w.write(pattern(10))
        assert store.aborted == [w.upload_id]
        assert store.completed == []

    def test_empty_stream_uploads_one_empty_part(self):
        store = FakeObjectStore()
        with MultipartWriter(store, "empty") as w:
            pass
        assert store.objects["empty"] == b""
        with pytest.raises(ValueError):
            w.write(b"late")

    def test_file_like_surface(self):
        w = MultipartWriter(FakeObjectStore(), "k", part_size=10)
        assert w.writable() and not w.seekable() and not w.readable()
        w.write(memoryview(b"abc"))
        assert w.tell() == 3
        w.close()

    def test_part_size_must_be_positive(self):
        with pytest.raises(ValueError):
            MultipartWriter(FakeObjectStore(), "k", part_size=0)


class FakeResponse:
    def __init__(self, status_code=200, headers=None, body=b""):
        self.status_code = status_code
        self.headers = headers or {}
        self.body = body

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error", response=self)

    def iter_content(self, chunk_size):
        for i in range(0, len(self.body), chunk_size):
            yield self.body[i:i + chunk_size]

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class FakeSession:
    def __init__(self, responses):
        self.responses = responses
        self.calls = []

    def _respond(self, method, url, **kw):
        self.calls.append((method, url, kw))
        r = self.responses[method]
        if isinstance(r, Exception):
            raise r
        return r

    def put(self, url, **kw):
        return self._respond("PUT", url, **kw)

    def head(self, url, **kw):
        return self._respond("HEAD", url, **kw)

    def get(self, url, **kw):
        return self._respond("GET", url, **kw)

    def delete(self, url, **kw):
        return self._respond("DELETE", url, **kw)


def _signer(method, key, params):
    query = "&".join(f"{k}={v}" for k, v in sorted(params.items()))
    return f"https://bucket.example/{key}?sig={method}&{query}"


@pytest.mark.unit
class TestSignedUrlObjectStore:
    def test_upload_part_returns_etag(self):
        session = FakeSession({"PUT": FakeResponse(headers={"ETag": '"abc123"'})})
        store = SignedUrlObjectStore(_signer, None, session=session, read_timeout_s=5.0)
        assert store.upload_part("u1", "vmi/x.vmdk", 3, b"data") == "abc123"
        method, url, kw = session.calls[0]
        assert method == "PUT"
        assert "part_number=3" in url and "upload_id=u1" in url
        assert kw["data"] == b"data"
        assert kw["timeout"] == (10.0, 5.0)

    def test_timeouts_from_transfer_config(self):
        transfer = Config.from_dict({"transfer": {"connect_timeout_s": 3, "read_timeout_s": 42}}).transfer
        session = FakeSession({"PUT": FakeResponse(headers={"ETag": '"e"'})})
        store = SignedUrlObjectStore.from_config(_signer, None, transfer, session=session)
        store.upload_part("u1", "k", 1, b"x")
        assert session.calls[0][2]["timeout"] == (3.0, 42.0)

    def test_transport_errors_become_io_failures(self):
        session = FakeSession({"PUT": requests.ConnectionError("reset")})
        store = SignedUrlObjectStore(_signer, None, session=session)
        with pytest.raises(IOFailure) as ei:
            store.upload_part("u1", "k", 1, b"x")
        assert isinstance(ei.value.cause, requests.ConnectionError)
        assert ei.value.context["part"] == 1

    def test_http_errors_become_io_failures(self):
        session = FakeSession({"PUT": FakeResponse(status_code=503)})
        store = SignedUrlObjectStore(_signer, None, session=session)
        with pytest.raises(IOFailure):
            store.upload_part("u1", "k", 1, b"x")

    def test_size_and_download(self):
        session = FakeSession({
            "HEAD": FakeResponse(headers={"content-length": "6"}),
            "GET": FakeResponse(body=b"abcdef"),
        })
        store = SignedUrlObjectStore(_signer, None, session=session)
        assert store.size("k") == 6
        assert list(store.iter_download("k", chunk_size=4)) == [b"abcd", b"ef"]

    def test_missing_objects(self):
        session = FakeSession({"HEAD": FakeResponse(status_code=404), "DELETE": FakeResponse(status_code=404)})
        store = SignedUrlObjectStore(_signer, None, session=session)
        assert store.size("gone") is None
        store.delete("gone")

    def test_coordinator_calls(self):
        class Coordinator:
            def __init__(self):
                self.calls = []

            def begin_upload(self, key):
                self.calls.append(("begin", key))
                return "u9"

            def complete_upload(self, upload_id, key, parts):
                self.calls.append(("complete", upload_id, parts))

            def abort_upload(self, upload_id, key):
                self.calls.append(("abort", upload_id))

        coord = Coordinator()
        store = SignedUrlObjectStore(_signer, coord, session=FakeSession({}))
        assert store.begin_upload("k") == "u9"
        store.complete_upload("u9", "k", [(1, "e1")])
        store.abort_upload("u9", "k")
        assert coord.calls == [("begin", "k"), ("complete", "u9", [(1, "e1")]), ("abort", "u9")]


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
