# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vdiskmigrate/__init__.py
"""
vdiskmigrate - VM disk migration data plane

Moves VMware VM disks onto block-storage volumes, either by CBT incremental
replication over NBD or by an array-offloaded (XCOPY) clone on the ESXi host.

    from vdiskmigrate import ReplicationEngine, AcceleratedCopyOrchestrator
"""

__version__ = "0.1.0"

from .accelerated import AcceleratedCopyOptions, AcceleratedCopyOrchestrator
from .replication import ReplicationEngine, ReplicationOptions, VDDKEndpoint
from .storage import StorageAccessInfo, StorageProvider, StorageVendor, create_storage_provider

__all__ = [
    "__version__",
    "AcceleratedCopyOptions",
    "AcceleratedCopyOrchestrator",
    "ReplicationEngine",
    "ReplicationOptions",
    "StorageAccessInfo",
    "StorageProvider",
    "StorageVendor",
    "VDDKEndpoint",
    "create_storage_provider",
]
