# SPDX-License-Identifier: LGPL-3.0-or-later
from .clone_tracker import CloneResult, CloneState, CloneStatus, CloneTracker
from .host_operator import CloneTask, ESXiHostOperator

__all__ = [
    "CloneResult",
    "CloneState",
    "CloneStatus",
    "CloneTask",
    "CloneTracker",
    "ESXiHostOperator",
]
