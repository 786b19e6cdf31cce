# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vmi/formats/ovf/manifest.py
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional

from ...core.exceptions import IntegrityViolation, MalformedLayout, UnsupportedVariant
from ...core.utils import U

LOG = logging.getLogger(__name__)

# Manifest algorithm spelling -> hashlib name
ALGORITHMS = {"SHA1": "sha1", "SHA256": "sha256", "SHA512": "sha512"}
DEFAULT_ALGORITHM = "SHA256"

_LINE_RE = re.compile(r"^\s*(?P<algo>[A-Za-z0-9]+)\s*\((?P<name>.+)\)\s*=\s*(?P<digest>[0-9a-fA-F]+)\s*$")


@dataclass
class Manifest:
    algorithm: str = DEFAULT_ALGORITHM
    entries: Dict[str, str] = field(default_factory=dict)
    line_algorithms: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def parse(cls, text: str) -> "Manifest":
        m = cls()
        algos = set()
        for lineno, raw in enumerate(text.splitlines(), 1):
            if not raw.strip():
                continue
            mt = _LINE_RE.match(raw)
            if not mt:
                raise MalformedLayout(msg=f"invalid OVF manifest line {lineno}: {raw.strip()!r}")
            algo = mt.group("algo").upper()
            if algo not in ALGORITHMS:
                raise UnsupportedVariant(msg=f"unsupported OVF manifest algorithm {algo}")
            algos.add(algo)
            name = mt.group("name").strip()
            m.entries[name] = mt.group("digest").lower()
            m.line_algorithms[name] = algo
        if len(algos) > 1:
            LOG.warning("OVF manifest mixes algorithms %s; verifying each line with its own", sorted(algos))
        if algos:
            m.algorithm = sorted(algos)[0]
        return m

    def algorithm_for(self, name: str) -> str:
        return self.line_algorithms.get(name, self.algorithm)

    def render(self) -> str:
        return "".join(f"{self.algorithm}({name})= {digest}\n" for name, digest in self.entries.items())

    def verify(self, open_chunks: Callable[[str], Optional[Iterable[bytes]]]) -> List[str]:
        """
        Check every listed file. `open_chunks(name)` yields the file's bytes,
        or returns None when the package has no such file.
        """
        verified: List[str] = []
        for name, expected in self.entries.items():
            chunks = open_chunks(name)
            if chunks is None:
                raise IntegrityViolation(
                    msg=f"OVF manifest lists {name!r} but the package does not contain it",
                    context={"file": name},
                )
            algo = self.algorithm_for(name)
            actual = digest_chunks(chunks, algo)
            if actual != expected:
                raise IntegrityViolation(
                    msg=f"{algo} checksum mismatch for {name!r}",
                    context={"file": name, "expected": expected, "actual": actual, "algorithm": algo},
                )
            LOG.debug("Manifest OK: %s(%s)", algo, name)
            verified.append(name)
        return verified


def digest_chunks(chunks: Iterable[bytes], algorithm: str) -> str:
    return U.checksum_chunks(chunks, ALGORITHMS[algorithm.upper()])


def normalize_algorithm(name: Optional[str]) -> str:
    algo = (name or DEFAULT_ALGORITHM).upper().replace("-", "")
    if algo not in ALGORITHMS:
        raise UnsupportedVariant(msg=f"unsupported OVF manifest algorithm {name!r}")
    return algo
