# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vmi/formats/device.py
"""
Device sink: write a disk image raw onto an existing block device (or a
pre-existing file). The target's prior content is unknown, so Zero and
Sparse ranges are written out as explicit zeros. The target is never
truncated or removed.
"""
from __future__ import annotations

import logging
import os
import stat
from pathlib import Path
from typing import Any, Iterable, List, Optional

from ..core.exceptions import Fatal, UnsupportedVariant, wrap_io
from ..core.utils import U
from ..disk.extent import Block, DiskImage
from ..disk.sources import file_size
from .descriptor import FormatTag, block_stream
from .raw import write_dense

LOG = logging.getLogger(__name__)


class DeviceCodec:
    tag = FormatTag.DEVICE

    def probe(self, path: Path) -> float:
        # Never detected; selected explicitly.
        return 0.0

    def open(self, path: Path, **options: Any) -> DiskImage:
        raise UnsupportedVariant(msg="the device format is a write-only sink; read the device as raw")

    def create(self, image: DiskImage, sink: Path, *, blocks: Optional[Iterable[Block]] = None, **options: Any) -> int:
        sink = Path(sink)
        try:
            st = os.stat(sink)
        except FileNotFoundError:
            raise Fatal(code=2, msg=f"device sink {sink} does not exist")
        except OSError as e:
            raise wrap_io(f"cannot stat device sink {sink}", e, path=str(sink)) from e

        is_block = stat.S_ISBLK(st.st_mode)
        if not (is_block or stat.S_ISREG(st.st_mode)):
            raise Fatal(code=2, msg=f"device sink {sink} is neither a block device nor a regular file")
        if is_block:
            capacity = file_size(sink)
            if capacity < image.virtual_size:
                raise Fatal(
                    code=2,
                    msg=f"device {sink} holds {U.human_bytes(capacity)}, image needs {U.human_bytes(image.virtual_size)}",
                )

        try:
            # r+b: no O_TRUNC, no O_CREAT
            with open(sink, "r+b") as f:
                written = write_dense(f, block_stream(image, blocks))
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            raise wrap_io(f"failed writing device {sink}", e, path=str(sink)) from e
        LOG.info("Device written: %s (%s)", sink, U.human_bytes(written))
        return written

    def artifacts(self, sink: Path, **options: Any) -> List[Path]:
        # Device targets are never removed.
        return []
