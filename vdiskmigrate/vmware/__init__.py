# SPDX-License-Identifier: LGPL-3.0-or-later
from .client import VMwareClient, VSphereSettings, parse_backing_filename
from .vm_ops import MIGRATION_SNAPSHOT_NAME, ChangedArea, DiskChangeInfo, VMDisk, VMOperations

__all__ = [
    "ChangedArea",
    "DiskChangeInfo",
    "MIGRATION_SNAPSHOT_NAME",
    "VMDisk",
    "VMOperations",
    "VMwareClient",
    "VSphereSettings",
    "parse_backing_filename",
]
