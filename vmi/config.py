# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vmi/config.py
"""
YAML configuration.

A config file maps onto a tree of dataclasses; every section is optional
and every field has a default. Later files override earlier ones
(per-key inside sections). Unknown sections or keys are rejected.

    pipeline:
      chunk_size: 1M
      queue_depth: 8
    transfer:
      part_size: 8M
      max_concurrency: 4
    aws:
      region: us-east-1
      bucket: my-import-bucket
      client_factory: mycompany.vmi_clients:aws
"""
from __future__ import annotations

import hashlib
import logging
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

import yaml

from .core.exceptions import Fatal, wrap_fatal
from .core.utils import U

LOG = logging.getLogger(__name__)

ENV_CONFIG = "VMI_CONFIG"

# keys holding byte sizes accept "8M", "64KiB", ...
_SIZE_KEYS = {"chunk_size", "zero_block_size", "part_size"}


@dataclass
class PipelineConfig:
    chunk_size: int = 1024 * 1024
    queue_depth: int = 8
    zero_block_size: int = 64 * 1024
    checksum_algo: str = "sha256"
    work_dir: Optional[Path] = None


@dataclass
class TransferConfig:
    part_size: int = 8 * 1024 * 1024
    max_concurrency: int = 4
    part_retries: int = 3
    backoff_base_s: float = 1.0
    backoff_cap_s: float = 30.0
    connect_timeout_s: float = 10.0
    read_timeout_s: float = 300.0


@dataclass
class PollConfig:
    interval_s: float = 15.0
    timeout_s: float = 3600.0


@dataclass
class AwsConfig:
    region: Optional[str] = None
    bucket: Optional[str] = None
    prefix: str = "vmi/"
    disk_format: str = "vmdk"  # vmdk|raw
    role_name: Optional[str] = None
    client_factory: Optional[str] = None


@dataclass
class GcpConfig:
    project: Optional[str] = None
    bucket: Optional[str] = None
    prefix: str = "vmi/"
    family: Optional[str] = None
    client_factory: Optional[str] = None


@dataclass
class LoggingConfig:
    verbose: int = 0
    quiet: int = 0
    log_file: Optional[str] = None
    json: bool = False


@dataclass
class Config:
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    transfer: TransferConfig = field(default_factory=TransferConfig)
    poll: PollConfig = field(default_factory=PollConfig)
    aws: AwsConfig = field(default_factory=AwsConfig)
    gcp: GcpConfig = field(default_factory=GcpConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    # ---------------------------------------------------------------------
    # loading
    # ---------------------------------------------------------------------

    @staticmethod
    def read_file(path: Path) -> Dict[str, Any]:
        p = Path(path).expanduser()
        try:
            text = p.read_text(encoding="utf-8")
        except OSError as e:
            raise wrap_fatal(f"cannot read config {p}: {e}", e, path=str(p)) from e
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise wrap_fatal(f"invalid YAML in {p}: {e}", e, path=str(p)) from e
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise Fatal(code=2, msg=f"config {p} must be a mapping at top level, got {type(data).__name__}")
        return data

    @staticmethod
    def merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        out = dict(base)
        for k, v in override.items():
            if isinstance(v, dict) and isinstance(out.get(k), dict):
                out[k] = Config.merge(out[k], v)
            else:
                out[k] = v
        return out

    @classmethod
    def load_many(cls, paths: Sequence[Path], logger: Optional[logging.Logger] = None) -> "Config":
        log = logger or LOG
        merged: Dict[str, Any] = {}
        for p in paths:
            log.debug("Loading config %s", p)
            merged = cls.merge(merged, cls.read_file(Path(p)))
        return cls.from_dict(merged)

    @classmethod
    def load(
        cls,
        paths: Optional[Iterable[str]] = None,
        *,
        env: Optional[Dict[str, str]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> "Config":
        """
        Load the given config files, or the one named by $VMI_CONFIG when
        none are given. No file at all yields the defaults.
        """
        chosen: List[Path] = [Path(p) for p in (paths or [])]
        if not chosen:
            default = (os.environ if env is None else env).get(ENV_CONFIG)
            if default:
                chosen = [Path(default)]
        return cls.load_many(chosen, logger=logger)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Config":
        sections = {f.name: f for f in fields(cls)}
        unknown = sorted(set(data) - set(sections))
        if unknown:
            raise Fatal(code=2, msg=f"unknown config section(s): {', '.join(unknown)}")
        kw: Dict[str, Any] = {}
        for name, f in sections.items():
            section_cls = type(f.default_factory())  # type: ignore[misc]
            raw = data.get(name) or {}
            if not isinstance(raw, dict):
                raise Fatal(code=2, msg=f"config section {name!r} must be a mapping")
            kw[name] = _build_section(name, section_cls, raw)
        cfg = cls(**kw)
        cfg.validate()
        return cfg

    # ---------------------------------------------------------------------
    # validation / views
    # ---------------------------------------------------------------------

    def validate(self) -> None:
        p, t = self.pipeline, self.transfer
        for name, value in (
            ("pipeline.chunk_size", p.chunk_size),
            ("pipeline.queue_depth", p.queue_depth),
            ("pipeline.zero_block_size", p.zero_block_size),
            ("transfer.part_size", t.part_size),
            ("transfer.max_concurrency", t.max_concurrency),
        ):
            if value <= 0:
                raise Fatal(code=2, msg=f"{name} must be positive, got {value}")
        if t.part_retries < 0:
            raise Fatal(code=2, msg=f"transfer.part_retries must be >= 0, got {t.part_retries}")
        if p.checksum_algo.lower() not in hashlib.algorithms_available:
            raise Fatal(code=2, msg=f"pipeline.checksum_algo {p.checksum_algo!r} is not a hashlib algorithm")
        if self.aws.disk_format not in ("vmdk", "raw"):
            raise Fatal(code=2, msg=f"aws.disk_format must be vmdk or raw, got {self.aws.disk_format!r}")
        if self.poll.interval_s <= 0 or self.poll.timeout_s <= 0:
            raise Fatal(code=2, msg="poll.interval_s and poll.timeout_s must be positive")

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        wd = d["pipeline"].get("work_dir")
        d["pipeline"]["work_dir"] = str(wd) if wd is not None else None
        return d


def _build_section(section: str, section_cls: type, raw: Dict[str, Any]) -> Any:
    known = {f.name: f for f in fields(section_cls)}
    unknown = sorted(set(raw) - set(known))
    if unknown:
        raise Fatal(code=2, msg=f"unknown key(s) in config section {section!r}: {', '.join(unknown)}")
    defaults = section_cls()
    kw: Dict[str, Any] = {}
    for key, value in raw.items():
        kw[key] = _coerce(f"{section}.{key}", key, value, getattr(defaults, key))
    return section_cls(**kw)


def _coerce(where: str, key: str, value: Any, default: Any) -> Any:
    if value is None:
        return default
    try:
        if key in _SIZE_KEYS:
            return U.human_to_bytes(value) if isinstance(value, str) else int(value)
        if key == "work_dir":
            return Path(str(value)).expanduser()
        if isinstance(default, bool):
            if not isinstance(value, bool):
                raise ValueError(f"expected true/false, got {value!r}")
            return value
        if isinstance(default, int):
            return int(value)
        if isinstance(default, float):
            return float(value)
        return str(value)
    except (TypeError, ValueError) as e:
        raise wrap_fatal(f"invalid value for {where}: {e}", e) from e
