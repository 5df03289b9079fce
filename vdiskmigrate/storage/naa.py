# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vdiskmigrate/storage/naa.py
"""
NAA identifier helpers.

Canonical form is ``naa.<lowercase hex>``. Some sources (Cinder connection
info, multipath WWIDs) report the SCSI designator with a leading ``3``
(``36...``); that form normalizes to the same canonical value.
"""
from __future__ import annotations

from typing import Optional

NAA_PREFIX = "naa."


def _strip_naa(value: str) -> str:
    v = (value or "").strip()
    if v.lower().startswith(NAA_PREFIX):
        v = v[len(NAA_PREFIX):]
    return v


def build_naa(prefix: str, serial: str) -> str:
    return f"{NAA_PREFIX}{prefix.lower()}{serial.strip().lower()}"


def normalize_naa(value: str) -> str:
    """
    'naa.3624A9370ABC' -> 'naa.624a9370abc'; '624a9370abc' -> 'naa.624a9370abc'.
    """
    v = _strip_naa(value).lower()
    if v.startswith("36"):
        v = v[1:]
    return f"{NAA_PREFIX}{v}"


def extract_serial(naa: str, prefix: str) -> str:
    """
    Array serial from an NAA carrying the vendor ``prefix``, uppercased.

    Raises ValueError when the NAA belongs to another vendor.
    """
    body = _strip_naa(normalize_naa(naa))
    p = prefix.lower()
    if not body.startswith(p):
        raise ValueError(f"NAA {naa!r} does not carry vendor prefix {prefix!r}")
    return body[len(p):].upper()


def naa_from_device_path(path: str) -> Optional[str]:
    """'/dev/disk/by-id/naa.3624a93...' -> 'naa.624a93...'; None when the path has no NAA."""
    p = (path or "").strip()
    idx = p.lower().find(NAA_PREFIX)
    if idx < 0:
        return None
    tail = p[idx:].split("/", 1)[0]
    if len(tail) <= len(NAA_PREFIX):
        return None
    return normalize_naa(tail)


def fc_uid_to_wwpn(fc_uid: str) -> str:
    """
    ESXi 'fc.WWNN:WWPN' adapter UID -> 'AA:BB:CC:DD:EE:FF:00:11'.
    """
    uid = (fc_uid or "").strip()
    if not uid.lower().startswith("fc."):
        raise ValueError(f"fc uid {fc_uid!r} does not start with 'fc.'")
    parts = uid[3:].split(":")
    if len(parts) != 2 or not parts[1]:
        raise ValueError(f"fc uid {fc_uid!r} is not in the expected fc.WWNN:WWPN format")
    wwpn = parts[1].upper()
    if len(wwpn) % 2 != 0:
        raise ValueError(f"WWPN {wwpn!r} length isn't even")
    return ":".join(wwpn[i:i + 2] for i in range(0, len(wwpn), 2))


def compact_wwn(wwn: str) -> str:
    return (wwn or "").replace(":", "").upper()
