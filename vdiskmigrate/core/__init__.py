# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
"""Shared plumbing: errors, logging, retry/poll, command runner, config."""

from .exceptions import (
    CancelledError,
    CloneError,
    ConfigError,
    ConnectivityError,
    DeviceTimeoutError,
    Fatal,
    NotFoundError,
    PollTimeoutError,
    RemoteCommandError,
    ReplicationError,
    StateMismatchError,
    StorageError,
    TimeoutKindError,
    TransportError,
    VDiskMigrateError,
    VMwareError,
)
from .logger import Log

__all__ = [
    "CancelledError",
    "CloneError",
    "ConfigError",
    "ConnectivityError",
    "DeviceTimeoutError",
    "Fatal",
    "Log",
    "NotFoundError",
    "PollTimeoutError",
    "RemoteCommandError",
    "ReplicationError",
    "StateMismatchError",
    "StorageError",
    "TimeoutKindError",
    "TransportError",
    "VDiskMigrateError",
    "VMwareError",
]
