# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
from .adapter import CloudAdapter, TransferSettings, load_client_factory
from .aws import AwsAmiAdapter
from .gcp import GceImageAdapter
from .models import (
    CloudImageHandle,
    CloudTarget,
    ImageStatus,
    ImportStatus,
    ProviderTag,
    is_cloud_ref,
    parse_cloud_ref,
    parse_cloud_target,
)
from .poll import poll_until
from .transfer import ImageService, MultipartWriter, ObjectStore, SignedUrlObjectStore

__all__ = [
    "CloudAdapter",
    "TransferSettings",
    "load_client_factory",
    "AwsAmiAdapter",
    "GceImageAdapter",
    "CloudImageHandle",
    "CloudTarget",
    "ImageStatus",
    "ImportStatus",
    "ProviderTag",
    "is_cloud_ref",
    "parse_cloud_ref",
    "parse_cloud_target",
    "poll_until",
    "ImageService",
    "MultipartWriter",
    "ObjectStore",
    "SignedUrlObjectStore",
]
