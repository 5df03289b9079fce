# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vdiskmigrate/provisioning.py
"""
Provisioning collaborator seen from the data plane.

The component that owns the helper instance implements this to attach a
target volume and report its block device path, and to detach it again.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any


class VolumeAttacher(ABC):
    @abstractmethod
    def attach_volume(self, target: Any) -> str:
        """Attach ``target`` (a VMDisk or a Volume) and return its device path."""

    @abstractmethod
    def detach_volume(self, target: Any) -> None:
        ...
