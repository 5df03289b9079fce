# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vdiskmigrate/core/config.py
"""
Configuration loading.

A migration run is described by one YAML (or JSON) document with a section
per collaborator::

    vsphere:
      host: vcenter.example.com
      user: administrator@vsphere.local
      password_env: VSPHERE_PASSWORD
      insecure: true
      vddk_libdir: /opt/vmware-vix-disklib-distrib
    storage:
      vendor: pure
      hostname: flasharray.example.com
      username: pureuser
      password_env: PURE_PASSWORD
    openstack:
      auth_url: https://keystone.example.com:5000/v3
      username: admin
      password_env: OS_PASSWORD
      project_name: migration
    esxi_ssh:
      user: root
      identity: ~/.ssh/esxi_ed25519
    replication:
      max_iterations: 20
    accelerated:
      volume_type: pure-iscsi
      cinder_backend_hint: pure

Secrets are either given inline (``password``) or by naming an environment
variable (``password_env``); the inline value wins.

Typed option objects are built by ``from_config`` classmethods living next to
the code that consumes them.
"""
from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional, Union

import yaml

from .exceptions import ConfigError


def load_config(path: Union[str, Path]) -> Dict[str, Any]:
    p = Path(path).expanduser()
    if not p.exists():
        raise ConfigError(code=2, msg=f"Config file not found: {p}", context={"path": str(p)})
    raw = p.read_text(encoding="utf-8")
    try:
        if p.suffix.lower() == ".json":
            data = json.loads(raw)
        else:
            data = yaml.safe_load(raw)
    except (ValueError, yaml.YAMLError) as e:
        raise ConfigError(code=2, msg=f"Failed to parse config {p}: {e}", cause=e, context={"path": str(p)})
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(code=2, msg=f"Config root must be a mapping: {p}", context={"path": str(p)})
    return data


def _present(v: Any) -> bool:
    """True if v is meaningfully present (empty/whitespace-only strings count as missing)."""
    if v is None:
        return False
    if isinstance(v, str):
        return v.strip() != ""
    return True


def section(conf: Mapping[str, Any], name: str) -> Dict[str, Any]:
    sec = conf.get(name) or {}
    if not isinstance(sec, dict):
        raise ConfigError(code=2, msg=f"Config section '{name}' must be a mapping", context={"section": name})
    return sec


def resolve_secret(conf: Mapping[str, Any], value_key: str, env_key: Optional[str] = None) -> Optional[str]:
    """
    Resolve a secret from (inline value) or (env var named by ``<value_key>_env``).
    """
    direct = conf.get(value_key)
    if _present(direct):
        return str(direct)
    envname = conf.get(env_key or f"{value_key}_env")
    if _present(envname):
        return os.environ.get(str(envname))
    return None


def require(conf: Mapping[str, Any], keys: Iterable[str], *, where: str) -> None:
    missing = [k for k in keys if not _present(conf.get(k))]
    if missing:
        raise ConfigError(
            code=2,
            msg=f"Missing required config key(s) in '{where}': {', '.join(missing)}",
            context={"section": where, "missing": missing},
        )


def as_bool(v: Any, default: bool = False) -> bool:
    if v is None:
        return default
    if isinstance(v, bool):
        return v
    s = str(v).strip().lower()
    if s in ("1", "true", "yes", "on", "y"):
        return True
    if s in ("0", "false", "no", "off", "n", ""):
        return False
    raise ConfigError(code=2, msg=f"Not a boolean: {v!r}")


def as_int(v: Any, default: int) -> int:
    if v is None or v == "":
        return default
    try:
        return int(v)
    except (TypeError, ValueError) as e:
        raise ConfigError(code=2, msg=f"Not an integer: {v!r}", cause=e)


def as_float(v: Any, default: float) -> float:
    if v is None or v == "":
        return default
    try:
        return float(v)
    except (TypeError, ValueError) as e:
        raise ConfigError(code=2, msg=f"Not a number: {v!r}", cause=e)
