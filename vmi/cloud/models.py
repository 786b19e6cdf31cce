# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vmi/cloud/models.py
from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Optional, Union

from ..core.exceptions import Fatal

AMI_ID_RE = re.compile(r"^ami-[0-9a-f]{8,17}$")
# GCE: lowercase letter, then up to 62 of [-a-z0-9], not ending in '-'
GCE_NAME_RE = re.compile(r"^[a-z](?:[-a-z0-9]{0,61}[a-z0-9])?$")


class ProviderTag(str, Enum):
    AWS = "aws"
    GCP = "gcp"


class ImageStatus(str, Enum):
    PENDING = "pending"
    AVAILABLE = "available"
    FAILED = "failed"


@dataclass(frozen=True)
class CloudImageHandle:
    """
    A provider image object. `image_id` is the AMI id or GCE image name;
    `location` the AWS region or GCP project.
    """
    provider: ProviderTag
    image_id: str
    location: str
    status: ImageStatus = ImageStatus.PENDING
    details: Dict[str, Any] = field(default_factory=dict, compare=False)

    def __post_init__(self) -> None:
        if not self.image_id:
            raise Fatal(code=2, msg=f"{self.provider.value} image identifier must be non-empty")
        if not self.location:
            raise Fatal(code=2, msg=f"{self.provider.value} image {self.image_id} has no region/project")

    def with_status(self, status: ImageStatus, **details: Any) -> "CloudImageHandle":
        merged = dict(self.details)
        merged.update(details)
        return replace(self, status=status, details=merged)

    @property
    def ref(self) -> str:
        scheme = "aws" if self.provider == ProviderTag.AWS else "gce"
        return f"{scheme}://{self.location}/{self.image_id}"


@dataclass(frozen=True)
class CloudTarget:
    """Where an import goes: `aws://<region>[/<name>]` or `gce://<project>[/<name>]`."""
    provider: ProviderTag
    location: str
    name: Optional[str] = None


_SCHEMES = {"aws": ProviderTag.AWS, "gce": ProviderTag.GCP, "gcp": ProviderTag.GCP}


def is_cloud_ref(s: str) -> bool:
    text = str(s)
    return text.split("://", 1)[0].lower() in _SCHEMES if "://" in text else bool(AMI_ID_RE.match(text))


def parse_cloud_ref(s: str, *, default_region: Optional[str] = None) -> CloudImageHandle:
    """Existing image reference: `aws://region/ami-…`, bare `ami-…`, or `gce://project/name`."""
    text = str(s).strip()
    if AMI_ID_RE.match(text):
        if not default_region:
            raise Fatal(code=2, msg=f"{text}: bare AMI id needs a region (aws.region in config)")
        return CloudImageHandle(ProviderTag.AWS, text, default_region)
    provider, location, name = _split(text)
    if not name:
        raise Fatal(code=2, msg=f"{text}: missing image identifier")
    if provider == ProviderTag.AWS and not AMI_ID_RE.match(name):
        raise Fatal(code=2, msg=f"{text}: {name!r} is not an AMI id (ami-[0-9a-f]{{8,17}})")
    return CloudImageHandle(provider, name, location)


def parse_cloud_target(s: str) -> CloudTarget:
    provider, location, name = _split(str(s).strip())
    if name and provider == ProviderTag.GCP and not GCE_NAME_RE.match(name):
        raise Fatal(code=2, msg=f"{s}: {name!r} is not a valid GCE image name")
    return CloudTarget(provider, location, name)


def _split(text: str):
    if "://" not in text:
        raise Fatal(code=2, msg=f"{text!r} is not a cloud reference (aws://, gce://)")
    scheme, rest = text.split("://", 1)
    provider = _SCHEMES.get(scheme.lower())
    if provider is None:
        raise Fatal(code=2, msg=f"unknown cloud scheme {scheme!r}")
    parts = [p for p in rest.split("/") if p]
    if not parts:
        raise Fatal(code=2, msg=f"{text}: missing region/project")
    if len(parts) > 2:
        raise Fatal(code=2, msg=f"{text}: too many path components")
    return provider, parts[0], parts[1] if len(parts) > 1 else None


@dataclass(frozen=True)
class ImportStatus:
    """One observation of a provider-side operation."""
    status: ImageStatus
    image_id: Optional[str] = None
    message: Optional[str] = None
    progress: Optional[float] = None


HandleOrTarget = Union[CloudImageHandle, CloudTarget]
