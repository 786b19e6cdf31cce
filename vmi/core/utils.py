# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vmi/core/utils.py
from __future__ import annotations

import hashlib
import json
import os
import sys
from pathlib import Path
from typing import Any, Iterable, Optional


ZERO_CHUNK = bytes(1024 * 1024)


def is_tty(stream=None) -> bool:
    """True if `stream` (stdout by default) is attached to a terminal."""
    stream = stream if stream is not None else sys.stdout
    try:
        return bool(stream.isatty())
    except Exception:
        return False


class U:
    @staticmethod
    def ensure_dir(p: Path) -> None:
        p.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def json_dump(obj: Any) -> str:
        try:
            return json.dumps(obj, indent=2, sort_keys=True, default=str)
        except Exception:
            return repr(obj)

    @staticmethod
    def human_bytes(n: Optional[int]) -> str:
        if n is None:
            return "unknown"
        x = float(n)
        for unit in ["B", "KiB", "MiB", "GiB", "TiB", "PiB"]:
            if x < 1024 or unit == "PiB":
                return f"{x:.2f} {unit}" if unit != "B" else f"{int(x)} {unit}"
            x /= 1024
        return f"{n} B"

    @staticmethod
    def checksum_chunks(chunks: Iterable[bytes], algo: str = "sha256") -> str:
        h = hashlib.new(algo)
        for blk in chunks:
            h.update(blk)
        return h.hexdigest()

    @staticmethod
    def update_zeros(h: Any, n: int) -> None:
        """Feed `n` zero bytes into a running hash without allocating them."""
        view = memoryview(ZERO_CHUNK)
        while n > 0:
            k = min(n, len(ZERO_CHUNK))
            h.update(view[:k])
            n -= k

    @staticmethod
    def same_file(a: Path, b: Path) -> bool:
        try:
            return os.path.samefile(a, b)
        except OSError:
            return Path(a).resolve() == Path(b).resolve()

    @staticmethod
    def safe_unlink(p: Path, *, missing_ok: bool = True) -> None:
        try:
            p.unlink()
        except FileNotFoundError:
            if not missing_ok:
                raise

    @staticmethod
    def round_up(n: int, multiple: int) -> int:
        if multiple <= 0:
            return n
        return ((n + multiple - 1) // multiple) * multiple

    @staticmethod
    def is_power_of_two(n: int) -> bool:
        return n > 0 and (n & (n - 1)) == 0

    @staticmethod
    def human_to_bytes(s: str) -> int:
        """
        Parse human sizes:
          - "10G", "10GiB", "10GB"
          - "512M", "512MiB"
          - "1024" (bytes)
        """
        raw = str(s).strip()
        if not raw:
            raise ValueError("empty size")

        t = raw.upper().replace(" ", "")
        t = t.replace("KIB", "KI").replace("MIB", "MI").replace("GIB", "GI").replace("TIB", "TI")
        t = t.replace("KB", "K").replace("MB", "M").replace("GB", "G").replace("TB", "T")
        t = t.rstrip("B")

        multipliers = {
            "": 1,
            "K": 1024,
            "KI": 1024,
            "M": 1024**2,
            "MI": 1024**2,
            "G": 1024**3,
            "GI": 1024**3,
            "T": 1024**4,
            "TI": 1024**4,
        }

        num = ""
        suf = ""
        for i, ch in enumerate(t):
            if ch.isdigit() or ch == ".":
                num += ch
            else:
                suf = t[i:]
                break

        if not num or suf not in multipliers:
            raise ValueError(f"unknown size suffix: {suf!r} in {raw!r}")

        return int(float(num) * multipliers[suf])


def is_zero(data: bytes) -> bool:
    """True if `data` is all zero bytes."""
    n = len(data)
    if n <= len(ZERO_CHUNK):
        return memoryview(ZERO_CHUNK)[:n] == data
    return data.count(0) == n
