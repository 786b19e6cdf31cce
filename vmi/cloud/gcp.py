# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vmi/cloud/gcp.py
"""
GCE images are imported from a gzip-compressed GNU tar holding a single
member `disk.raw` whose size is a multiple of 1 GiB.
"""
from __future__ import annotations

import gzip
import logging
import tarfile
from pathlib import Path
from typing import Any, BinaryIO, Dict, Iterable, Optional

from ..core.exceptions import MalformedLayout, wrap_io
from ..core.utils import U, is_zero
from ..disk.extent import Block, DiskImage
from ..formats.descriptor import block_stream
from ..formats.raw import DenseReader, RawCodec
from .adapter import CloudAdapter
from .models import ProviderTag

LOG = logging.getLogger(__name__)

GIB = 1024 ** 3
GCE_MEMBER = "disk.raw"


class GceImageAdapter(CloudAdapter):
    provider = ProviderTag.GCP
    payload_suffix = ".tar.gz"
    payload_format = "tar.gz"
    alignment = GIB

    def __init__(self, store, images, *, family: Optional[str] = None, compress_level: int = 6, **kw: Any):
        super().__init__(store, images, **kw)
        self.family = family
        self.compress_level = compress_level
        self.raw = RawCodec()

    def write_payload(self, image: DiskImage, f: BinaryIO, blocks: Optional[Iterable[Block]]) -> None:
        size = U.round_up(image.virtual_size, GIB)
        if size != image.virtual_size:
            LOG.info("Padding %s to %s for GCE", U.human_bytes(image.virtual_size), U.human_bytes(size))
        info = tarfile.TarInfo(GCE_MEMBER)
        info.size = size
        info.mode = 0o644
        with gzip.GzipFile(fileobj=f, mode="wb", compresslevel=self.compress_level, mtime=0) as gz:
            with tarfile.open(fileobj=gz, mode="w|", format=tarfile.GNU_FORMAT) as tar:
                tar.addfile(info, DenseReader(block_stream(image, blocks), size))

    def import_meta(self) -> Dict[str, Any]:
        return {"family": self.family} if self.family else {}

    def open_export(self, path: Path, cleanup: list) -> DiskImage:
        raw_path = path.with_name(path.name[: -len(self.payload_suffix)] + ".raw")
        cleanup.append(lambda: U.safe_unlink(raw_path))
        try:
            with tarfile.open(path, mode="r:gz") as tar:
                member = next((m for m in tar if m.isreg() and m.name.lstrip("./") == GCE_MEMBER), None)
                if member is None:
                    raise MalformedLayout(msg=f"GCE export {path.name} has no {GCE_MEMBER} member")
                src = tar.extractfile(member)
                if src is None:
                    raise MalformedLayout(msg=f"GCE export {path.name}: {GCE_MEMBER} is not readable")
                _copy_sparse(src, raw_path, member.size)
        except (tarfile.TarError, EOFError, gzip.BadGzipFile) as e:
            raise MalformedLayout(msg=f"GCE export {path.name} is not a gzip tar: {e}", cause=e)
        except OSError as e:
            raise wrap_io(f"cannot unpack GCE export {path.name}", e, path=str(path)) from e
        return self.raw.open(raw_path)


def _copy_sparse(src: BinaryIO, dst: Path, size: int, chunk: int = 1024 * 1024) -> None:
    """Stream `size` bytes into `dst`, leaving all-zero chunks as holes."""
    with open(dst, "wb") as out:
        pos = 0
        while pos < size:
            data = src.read(min(chunk, size - pos))
            if not data:
                raise MalformedLayout(msg=f"{GCE_MEMBER} truncated at {pos} of {size} bytes")
            if not is_zero(data):
                out.seek(pos)
                out.write(data)
            pos += len(data)
        out.truncate(size)
