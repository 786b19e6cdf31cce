# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vmi/pipeline/endpoints.py
"""
Turn command-line locations into job endpoints and build the cloud adapters
they need from configuration.
"""
from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional

from ..cloud.adapter import CloudAdapter, TransferSettings, load_client_factory
from ..cloud.aws import AwsAmiAdapter
from ..cloud.gcp import GceImageAdapter
from ..cloud.models import ProviderTag, is_cloud_ref, parse_cloud_ref, parse_cloud_target
from ..config import Config
from ..core.exceptions import Fatal
from ..formats.descriptor import FormatDescriptor, FormatTag
from ..formats.registry import FormatRegistry
from .job import Endpoint

LOG = logging.getLogger(__name__)


def parse_source(location: str, config: Config, *, fmt: Optional[str] = None) -> Endpoint:
    if is_cloud_ref(location):
        return parse_cloud_ref(location, default_region=config.aws.region)
    tag = FormatTag.parse(fmt) if fmt else None
    return FormatDescriptor(tag, Path(location).expanduser())


def parse_destination(location: str, config: Config, *, fmt: Optional[str] = None) -> Endpoint:
    if is_cloud_ref(location):
        return parse_cloud_target(location)
    path = Path(location).expanduser()
    tag = FormatTag.parse(fmt) if fmt else FormatRegistry.tag_for_destination(path)
    return FormatDescriptor(tag, path)


def transfer_settings(config: Config) -> TransferSettings:
    t, p = config.transfer, config.poll
    return TransferSettings(
        part_size=t.part_size,
        max_concurrency=t.max_concurrency,
        part_retries=t.part_retries,
        backoff_base_s=t.backoff_base_s,
        backoff_cap_s=t.backoff_cap_s,
        poll_interval_s=p.interval_s,
        poll_timeout_s=p.timeout_s,
        work_dir=config.pipeline.work_dir,
        download_chunk=config.pipeline.chunk_size,
    )


def build_adapter(provider: ProviderTag, config: Config, **kw: Any) -> CloudAdapter:
    """
    Adapter for `provider` with collaborators from the configured
    `client_factory`. The factory is called with the provider config section
    and the `transfer` section (HTTP timeouts for SignedUrlObjectStore) and
    returns (ObjectStore, ImageService).
    """
    section = config.aws if provider == ProviderTag.AWS else config.gcp
    if not section.client_factory:
        raise Fatal(
            code=2,
            msg=f"{provider.value}.client_factory is not configured; cannot reach the provider",
        )
    store, images = load_client_factory(section.client_factory)(section, config.transfer)
    settings = transfer_settings(config)
    if provider == ProviderTag.AWS:
        return AwsAmiAdapter(
            store,
            images,
            disk_format=config.aws.disk_format,
            role_name=config.aws.role_name,
            prefix=config.aws.prefix,
            settings=settings,
            **kw,
        )
    return GceImageAdapter(
        store,
        images,
        family=config.gcp.family,
        prefix=config.gcp.prefix,
        settings=settings,
        **kw,
    )


class AdapterResolver:
    """Builds adapters on first use; pre-built adapters (tests, embedding) win."""

    def __init__(
        self,
        config: Config,
        adapters: Optional[Mapping[ProviderTag, CloudAdapter]] = None,
        factory: Callable[..., CloudAdapter] = build_adapter,
    ):
        self.config = config
        self._adapters: Dict[ProviderTag, CloudAdapter] = dict(adapters or {})
        self._factory = factory
        self._lock = threading.Lock()

    def __call__(self, provider: ProviderTag) -> CloudAdapter:
        with self._lock:
            adapter = self._adapters.get(provider)
            if adapter is None:
                adapter = self._factory(provider, self.config)
                self._adapters[provider] = adapter
            return adapter
