# SPDX-License-Identifier: LGPL-3.0-or-later
from __future__ import annotations

from .cinder_client import CatalogSettings, CinderClient

__all__ = ["CatalogSettings", "CinderClient"]
