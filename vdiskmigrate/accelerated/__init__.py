# SPDX-License-Identifier: LGPL-3.0-or-later
from .orchestrator import (
    XCOPY_GROUP_NAME,
    AcceleratedCopyOptions,
    AcceleratedCopyOrchestrator,
    OperatorFactory,
    array_volume_name,
)

__all__ = [
    "XCOPY_GROUP_NAME",
    "AcceleratedCopyOptions",
    "AcceleratedCopyOrchestrator",
    "OperatorFactory",
    "array_volume_name",
]
