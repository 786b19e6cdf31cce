# SPDX-License-Identifier: LGPL-3.0-or-later
"""
In-memory stand-ins for the provider side of the cloud adapters.

FakeObjectStore records every part attempt and can be scripted to fail a
part a number of times before it succeeds. FakeImageService keeps images in
a dict and answers polls from scripted status lists.
"""
import itertools
import threading

from vmi.cloud.models import ImageStatus, ImportStatus
from vmi.core.exceptions import IOFailure


class FakeObjectStore:
    def __init__(self, fail_parts=None, fail_delete=False):
        # part number -> how many attempts fail before one succeeds
        self.fail_parts = dict(fail_parts or {})
        self.fail_delete = fail_delete
        self.objects = {}
        self.uploads = {}
        self.attempts = []
        self.completed = []
        self.aborted = []
        self.deleted = []
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def begin_upload(self, key):
        with self._lock:
            upload_id = f"up-{next(self._ids)}"
            self.uploads[upload_id] = {"key": key, "parts": {}}
        return upload_id

    def upload_part(self, upload_id, key, part_number, data):
        with self._lock:
            attempt = 1 + sum(1 for u, n in self.attempts if u == upload_id and n == part_number)
            self.attempts.append((upload_id, part_number))
            if attempt <= self.fail_parts.get(part_number, 0):
                raise IOFailure(
                    msg=f"injected failure of part {part_number} (attempt {attempt})",
                    cause=ConnectionResetError("connection reset by peer"),
                )
            self.uploads[upload_id]["parts"][part_number] = bytes(data)
        return f"etag-{part_number}"

    def complete_upload(self, upload_id, key, parts):
        with self._lock:
            stored = self.uploads[upload_id]["parts"]
            numbers = [n for n, _etag in parts]
            assert numbers == sorted(stored), f"parts {numbers} != uploaded {sorted(stored)}"
            self.objects[key] = b"".join(stored[n] for n in numbers)
            self.completed.append(upload_id)

    def abort_upload(self, upload_id, key):
        with self._lock:
            self.aborted.append(upload_id)
            self.uploads.pop(upload_id, None)

    def size(self, key):
        data = self.objects.get(key)
        return None if data is None else len(data)

    def iter_download(self, key, chunk_size):
        data = self.objects[key]
        for i in range(0, len(data), chunk_size):
            yield data[i:i + chunk_size]

    def delete(self, key):
        if self.fail_delete:
            raise IOFailure(msg=f"injected delete failure for {key}")
        self.deleted.append(key)
        self.objects.pop(key, None)

    def part_attempts(self, part_number):
        return sum(1 for _u, n in self.attempts if n == part_number)


class FakeImageService:
    def __init__(self, store, *, image_id="ami-0123456789abcdef0", import_statuses=None, export_statuses=None):
        self.store = store
        self.image_id = image_id
        self.import_statuses = list(import_statuses or [])
        self.export_statuses = list(export_statuses or [])
        self.images = {}
        self.imports = []
        self.exports = []
        self.polls = 0
        self._tasks = itertools.count(1)

    # -- import ---------------------------------------------------------

    def start_import(self, key, target, disk_format, **meta):
        task = f"import-{next(self._tasks)}"
        self.imports.append({
            "task": task,
            "key": key,
            "target": target,
            "disk_format": disk_format,
            "meta": meta,
            "payload": self.store.objects[key],
        })
        return task

    def poll_import(self, task_id):
        self.polls += 1
        if self.import_statuses:
            st = self.import_statuses.pop(0)
        else:
            st = ImportStatus(ImageStatus.AVAILABLE, image_id=self.image_id)
        if st.status == ImageStatus.AVAILABLE:
            self.images[st.image_id or self.image_id] = {"payload": self.imports[-1]["payload"]}
        return st

    # -- describe / export ------------------------------------------------

    def add_image(self, image_id, payload, **info):
        self.images[image_id] = dict(info, payload=payload)

    def describe_image(self, handle):
        img = self.images.get(handle.image_id)
        if img is None:
            return None
        return {k: v for k, v in img.items() if k != "payload"}

    def start_export(self, handle, key, disk_format):
        task = f"export-{next(self._tasks)}"
        self.store.objects[key] = self.images[handle.image_id]["payload"]
        self.exports.append({"task": task, "key": key, "disk_format": disk_format})
        return task

    def poll_export(self, task_id):
        self.polls += 1
        if self.export_statuses:
            return self.export_statuses.pop(0)
        return ImportStatus(ImageStatus.AVAILABLE)


def no_sleep(_seconds):
    pass


factory_calls = []


def client_factory(section, transfer):
    """`client_factory` target for config-driven tests; records what it was handed."""
    factory_calls.append((section, transfer))
    store = FakeObjectStore()
    return store, FakeImageService(store)
