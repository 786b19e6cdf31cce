# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vmi/cloud/adapter.py
"""
Shared import/export flow of the cloud adapters:

  import: serialize the DiskImage into the provider's upload format and
          stream it through a MultipartWriter, start the provider import,
          poll until Available/Failed.
  export: check the image exists, run the provider export, download the
          object into work_dir and open it with the matching codec.
"""
from __future__ import annotations

import importlib
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, BinaryIO, Callable, Dict, Iterable, Optional, Tuple

from ..core.exceptions import Cancelled, Fatal, ImageNotFound, wrap_fatal, wrap_io
from ..core.utils import U
from ..disk.extent import Block, DiskImage
from .models import CloudImageHandle, CloudTarget, ImageStatus, ProviderTag
from .poll import poll_until
from .transfer import DEFAULT_PART_SIZE, ImageService, MultipartWriter, ObjectStore

LOG = logging.getLogger(__name__)


@dataclass
class TransferSettings:
    part_size: int = DEFAULT_PART_SIZE
    max_concurrency: int = 4
    part_retries: int = 3
    backoff_base_s: float = 1.0
    backoff_cap_s: float = 30.0
    poll_interval_s: float = 15.0
    poll_timeout_s: float = 3600.0
    work_dir: Optional[Path] = None
    download_chunk: int = 1024 * 1024


class CloudAdapter:
    provider: ProviderTag
    payload_suffix = ".bin"
    payload_format = "raw"
    # virtual size granularity the provider requires
    alignment = 512

    def __init__(
        self,
        store: ObjectStore,
        images: ImageService,
        *,
        prefix: str = "vmi/",
        settings: Optional[TransferSettings] = None,
        sleep: Optional[Callable[[float], None]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.store = store
        self.images = images
        self.prefix = prefix
        self.settings = settings or TransferSettings()
        self.logger = logger or LOG
        self._sleep = sleep

    # -- provider specifics -------------------------------------------

    def write_payload(self, image: DiskImage, f: BinaryIO, blocks: Optional[Iterable[Block]]) -> None:
        raise NotImplementedError

    def open_export(self, path: Path, cleanup: list) -> DiskImage:
        raise NotImplementedError

    def import_meta(self) -> Dict[str, Any]:
        return {}

    def export_format(self) -> str:
        return self.payload_format

    # -- import ---------------------------------------------------------

    def object_key(self, name: str) -> str:
        return f"{self.prefix}{name}{self.payload_suffix}"

    def import_image(
        self,
        image: DiskImage,
        target: CloudTarget,
        *,
        blocks: Optional[Iterable[Block]] = None,
        cancel: Optional[Any] = None,
        name: Optional[str] = None,
    ) -> CloudImageHandle:
        name = target.name or name or "vmi-image"
        key = self.object_key(name)
        s = self.settings
        self.logger.info("Uploading %s to %s (%s)", U.human_bytes(image.virtual_size), key, self.provider.value)
        writer = MultipartWriter(
            self.store,
            key,
            part_size=s.part_size,
            max_concurrency=s.max_concurrency,
            part_retries=s.part_retries,
            backoff_base_s=s.backoff_base_s,
            backoff_cap_s=s.backoff_cap_s,
            cancel=cancel,
            sleep=self._sleep,
            logger=self.logger,
        )
        with writer:
            self.write_payload(image, writer, blocks)

        task = self.images.start_import(key, target, self.payload_format, name=name, **self.import_meta())
        self.logger.info("Import task %s started for %s", task, key)
        st = poll_until(
            lambda: self.images.poll_import(task),
            interval_s=s.poll_interval_s,
            timeout_s=s.poll_timeout_s,
            cancel=cancel,
            what=f"{self.provider.value} import {task}",
            sleep=self._sleep,
            logger=self.logger,
        )
        image_id = st.image_id or name
        handle = CloudImageHandle(
            self.provider,
            image_id,
            target.location,
            ImageStatus.AVAILABLE,
            {"task_id": task, "object_key": key, "bytes_uploaded": writer.bytes_written},
        )
        self._drop_object(key)
        self.logger.info("Image available: %s", handle.ref)
        return handle

    # -- export / describe ----------------------------------------------

    def describe(self, handle: CloudImageHandle) -> Dict[str, Any]:
        info = self.images.describe_image(handle)
        if info is None:
            raise ImageNotFound(
                msg=f"{handle.ref} does not exist",
                context={"provider": handle.provider.value, "image_id": handle.image_id},
            )
        return info

    def export_image(self, handle: CloudImageHandle, *, cancel: Optional[Any] = None) -> DiskImage:
        self.describe(handle)
        s = self.settings
        key = f"{self.prefix}export/{handle.image_id}{self.payload_suffix}"
        task = self.images.start_export(handle, key, self.export_format())
        poll_until(
            lambda: self.images.poll_export(task),
            interval_s=s.poll_interval_s,
            timeout_s=s.poll_timeout_s,
            cancel=cancel,
            what=f"{self.provider.value} export {task}",
            sleep=self._sleep,
            logger=self.logger,
        )
        path = self._download(key, cancel)
        cleanup = [lambda: U.safe_unlink(path)]
        try:
            image = self.open_export(path, cleanup)
        except BaseException:
            for fn in cleanup:
                fn()
            raise
        finally:
            self._drop_object(key)
        for fn in cleanup:
            image.add_cleanup(fn)
        return image

    def _download(self, key: str, cancel: Optional[Any]) -> Path:
        work = Path(self.settings.work_dir or tempfile.gettempdir())
        U.ensure_dir(work)
        fd, name = tempfile.mkstemp(prefix="vmi-export-", suffix=self.payload_suffix, dir=work)
        path = Path(name)
        total = 0
        try:
            with os.fdopen(fd, "wb") as f:
                for chunk in self.store.iter_download(key, self.settings.download_chunk):
                    if cancel is not None and cancel.is_set():
                        raise Cancelled(msg=f"download of {key} cancelled")
                    f.write(chunk)
                    total += len(chunk)
        except OSError as e:
            U.safe_unlink(path)
            raise wrap_io(f"cannot store download of {key}", e, path=str(path)) from e
        except BaseException:
            U.safe_unlink(path)
            raise
        self.logger.info("Downloaded %s (%s) to %s", key, U.human_bytes(total), path)
        return path

    def _drop_object(self, key: str) -> None:
        try:
            self.store.delete(key)
        except Exception as e:
            self.logger.warning("Could not delete staging object %s: %s", key, e)


def load_client_factory(dotted: str) -> Callable[..., Tuple[ObjectStore, ImageService]]:
    """
    Resolve `module:callable`. The callable takes (provider_section,
    transfer_section) and returns (ObjectStore, ImageService).
    """
    if not dotted or ":" not in dotted:
        raise Fatal(code=2, msg=f"client_factory must be 'module:callable', got {dotted!r}")
    mod_name, attr = dotted.split(":", 1)
    try:
        mod = importlib.import_module(mod_name)
    except ImportError as e:
        raise wrap_fatal(f"cannot import client factory module {mod_name!r}: {e}", e) from e
    fn = getattr(mod, attr, None)
    if not callable(fn):
        raise Fatal(code=2, msg=f"client factory {dotted!r} is not callable")
    return fn
