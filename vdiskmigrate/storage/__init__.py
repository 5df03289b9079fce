# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
"""Array drivers behind one StorageProvider contract."""
from __future__ import annotations

from .base import (
    CinderMappingContext,
    MappingContext,
    NetAppMappingContext,
    PureMappingContext,
    StorageAccessInfo,
    StorageProvider,
    Volume,
    VolumeInfo,
)
from .factory import StorageVendor, create_storage_provider, resolve_vendor

__all__ = [
    "CinderMappingContext",
    "MappingContext",
    "NetAppMappingContext",
    "PureMappingContext",
    "StorageAccessInfo",
    "StorageProvider",
    "StorageVendor",
    "Volume",
    "VolumeInfo",
    "create_storage_provider",
    "resolve_vendor",
]
