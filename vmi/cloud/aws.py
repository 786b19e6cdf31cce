# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vmi/cloud/aws.py
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, BinaryIO, Dict, Iterable, Optional

from ..core.exceptions import Fatal
from ..disk.extent import Block, DiskImage
from ..formats.descriptor import block_stream
from ..formats.raw import RawCodec, write_dense
from ..formats.vmdk.codec import VmdkCodec
from .adapter import CloudAdapter
from .models import ProviderTag

LOG = logging.getLogger(__name__)

AWS_DISK_FORMATS = ("vmdk", "raw")


class AwsAmiAdapter(CloudAdapter):
    """
    AMI import/export through VM Import: the disk goes up as a
    streamOptimized VMDK (default) or a raw stream.
    """

    provider = ProviderTag.AWS

    def __init__(self, store, images, *, disk_format: str = "vmdk", role_name: Optional[str] = None, **kw: Any):
        super().__init__(store, images, **kw)
        fmt = (disk_format or "vmdk").lower()
        if fmt not in AWS_DISK_FORMATS:
            raise Fatal(code=2, msg=f"aws.disk_format must be one of {AWS_DISK_FORMATS}, got {disk_format!r}")
        self.disk_format = fmt
        self.role_name = role_name
        self.payload_format = fmt
        self.payload_suffix = ".vmdk" if fmt == "vmdk" else ".raw"
        self.vmdk = VmdkCodec()
        self.raw = RawCodec()

    def write_payload(self, image: DiskImage, f: BinaryIO, blocks: Optional[Iterable[Block]]) -> None:
        if self.disk_format == "vmdk":
            self.vmdk.write_stream(image, f, blocks=blocks, name="disk.vmdk")
        else:
            write_dense(f, block_stream(image, blocks))

    def import_meta(self) -> Dict[str, Any]:
        return {"role_name": self.role_name} if self.role_name else {}

    def open_export(self, path: Path, cleanup: list) -> DiskImage:
        codec = self.vmdk if self.vmdk.probe(path) > 0 else self.raw
        return codec.open(path)
