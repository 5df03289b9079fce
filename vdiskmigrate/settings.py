# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vdiskmigrate/settings.py
"""
Typed views over one loaded config document.

Layout (YAML or JSON):

    vsphere:      host, user, password | password_env, insecure, vddk_libdir, ...
    storage:      vendor, hostname, username, password | password_env, ...
    openstack:    auth_url, username, password | password_env, project_name, ...
    esxi_ssh:     user, identity | password | password_env, port, ...
    replication:  max_iterations, server_settle_s, cold, ...
    accelerated:  volume_type, cinder_backend_host | cinder_backend_hint, ...

Each builder reads one section and raises ConfigError for missing keys.
"""
from __future__ import annotations

import logging
from typing import Any, Mapping

from .accelerated.orchestrator import AcceleratedCopyOptions, OperatorFactory
from .core.config import section
from .esxi.host_operator import ESXiHostOperator
from .openstack.cinder_client import CatalogSettings
from .replication.engine import ReplicationOptions
from .ssh.ssh_config import SSHConfig
from .storage.base import StorageAccessInfo
from .vmware.client import VSphereSettings


def vsphere_settings(conf: Mapping[str, Any]) -> VSphereSettings:
    return VSphereSettings.from_config(section(conf, "vsphere"))


def storage_access_info(conf: Mapping[str, Any]) -> StorageAccessInfo:
    return StorageAccessInfo.from_config(section(conf, "storage"))


def catalog_settings(conf: Mapping[str, Any]) -> CatalogSettings:
    return CatalogSettings.from_config(section(conf, "openstack"))


def ssh_config_for_host(conf: Mapping[str, Any], host: str) -> SSHConfig:
    """SSH settings for an ESXi host only known at run time (resolved from vCenter)."""
    return SSHConfig.from_config(section(conf, "esxi_ssh"), host)


def replication_options(conf: Mapping[str, Any]) -> ReplicationOptions:
    return ReplicationOptions.from_config(section(conf, "replication"))


def accelerated_options(conf: Mapping[str, Any]) -> AcceleratedCopyOptions:
    return AcceleratedCopyOptions.from_config(section(conf, "accelerated"))


def esxi_operator_factory(logger: logging.Logger, conf: Mapping[str, Any]) -> OperatorFactory:
    def build(host: str) -> ESXiHostOperator:
        return ESXiHostOperator(logger, ssh_config_for_host(conf, host))

    return build
