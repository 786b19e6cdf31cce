# SPDX-License-Identifier: LGPL-3.0-or-later
"""Small disk image builders shared by the tests."""
from pathlib import Path

from vmi.disk.extent import DiskImage, Extent, ExtentKind
from vmi.disk.sources import BytesSource

MIB = 1024 * 1024


def pattern(n, seed=1):
    """`n` non-zero, non-repeating-looking bytes."""
    return bytes(((i * 131 + seed * 17) % 251) + 1 for i in range(n))


def write_raw(path, size, regions=()):
    """Sparse file of `size` bytes with `(offset, data)` regions written in."""
    path = Path(path)
    with open(path, "wb") as f:
        f.truncate(size)
        for offset, data in regions:
            f.seek(offset)
            f.write(data)
    return path


def memory_image(*parts, descriptor=None):
    """
    DiskImage from `(kind, length_or_bytes)` parts laid end to end; Data
    parts are given as bytes.
    """
    extents = []
    pos = 0
    for kind, value in parts:
        if kind == ExtentKind.DATA:
            src = BytesSource(value)
            extents.append(Extent(pos, len(value), kind, src, 0))
            pos += len(value)
        else:
            extents.append(Extent(pos, value, kind))
            pos += value
    return DiskImage(pos, extents, descriptor=descriptor)


def dense(image):
    return image.read_at(0, image.virtual_size)
