# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vdiskmigrate/storage/factory.py
"""Vendor name -> provider class dispatch."""
from __future__ import annotations

import logging
from enum import Enum
from typing import Dict, Type, Union

from ..core.exceptions import ConfigError
from .base import StorageAccessInfo, StorageProvider
from .cinder import CinderStorageProvider
from .netapp import NetAppStorageProvider
from .pure import PureStorageProvider


class StorageVendor(str, Enum):
    PURE = "pure"
    NETAPP = "netapp"
    CINDER = "cinder"


_ALIASES: Dict[str, StorageVendor] = {
    "pure": StorageVendor.PURE,
    "purestorage": StorageVendor.PURE,
    "netapp": StorageVendor.NETAPP,
    "ontap": StorageVendor.NETAPP,
    "cinder": StorageVendor.CINDER,
    "openstack": StorageVendor.CINDER,
}

_PROVIDERS: Dict[StorageVendor, Type[StorageProvider]] = {
    StorageVendor.PURE: PureStorageProvider,
    StorageVendor.NETAPP: NetAppStorageProvider,
    StorageVendor.CINDER: CinderStorageProvider,
}


def resolve_vendor(vendor: Union[str, StorageVendor]) -> StorageVendor:
    if isinstance(vendor, StorageVendor):
        return vendor
    key = (vendor or "").strip().lower()
    try:
        return _ALIASES[key]
    except KeyError:
        raise ConfigError(
            code=2,
            msg=f"Unsupported storage vendor '{vendor}' (supported: {', '.join(sorted(_ALIASES))})",
            context={"vendor": vendor},
        )


def create_storage_provider(
    vendor: Union[str, StorageVendor],
    access_info: StorageAccessInfo,
    logger: logging.Logger,
) -> StorageProvider:
    """Build an unconnected provider for ``vendor``."""
    cls = _PROVIDERS[resolve_vendor(vendor)]
    return cls(logger, access_info)
