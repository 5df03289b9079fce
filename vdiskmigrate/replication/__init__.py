# SPDX-License-Identifier: LGPL-3.0-or-later
from .engine import CBT_PRIMING_SNAPSHOT, ReplicationEngine, ReplicationOptions, VDDKEndpoint

__all__ = [
    "CBT_PRIMING_SNAPSHOT",
    "ReplicationEngine",
    "ReplicationOptions",
    "VDDKEndpoint",
]
