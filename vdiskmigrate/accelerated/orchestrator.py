# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vdiskmigrate/accelerated/orchestrator.py
"""
Array-offloaded disk copy.

Instead of streaming blocks through the helper, each disk is cloned on the
ESXi host straight onto a raw array LUN (``vmkfstools -i ... -d rdm:``), which
lets the array do the copy with XCOPY. Per disk:

  create LUN -> manage into Cinder -> resolve renamed LUN -> map to the
  migration group -> rescan + wait for device -> clone -> unmap -> attach

The LUN is managed into Cinder before it is mapped: managing renames it on
the array, so every later step addresses it by the post-rename name.
"""
from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass
from typing import Any, Callable, List, Mapping, Optional

from ..core.config import as_float, as_int
from ..core.exceptions import CloneError, ConfigError, VDiskMigrateError
from ..core.logger import Log
from ..esxi.clone_tracker import CloneResult, CloneTracker
from ..esxi.host_operator import ESXiHostOperator
from ..openstack.cinder_client import CinderClient
from ..provisioning import VolumeAttacher
from ..storage.base import MappingContext, StorageProvider, Volume
from ..vmware.vm_ops import VMDisk, VMOperations

XCOPY_GROUP_NAME = "vdiskmigrate-xcopy-group"
DEFAULT_VOLUME_PREFIX = "vdiskmigrate"

_UNSAFE_NAME_RE = re.compile(r"[^A-Za-z0-9-]+")

OperatorFactory = Callable[[str], ESXiHostOperator]


def array_volume_name(prefix: str, vm_name: str, disk_name: str) -> str:
    """``<prefix>-<vm>-<disk>`` with anything an array would reject folded to '-'."""
    raw = f"{prefix}-{vm_name}-{disk_name}"
    return _UNSAFE_NAME_RE.sub("-", raw).strip("-")


@dataclass
class AcceleratedCopyOptions:
    volume_prefix: str = DEFAULT_VOLUME_PREFIX
    group_name: str = XCOPY_GROUP_NAME

    # Cinder import: a fixed backend host wins over discovery by hint
    cinder_backend_host: str = ""
    cinder_backend_hint: str = ""
    volume_type: str = ""

    device_retries: int = 5
    device_interval_s: float = 5.0

    clone_poll_interval_s: float = 10.0
    clone_startup_timeout_s: float = 300.0
    clone_stall_timeout_s: float = 300.0

    catalog_wait_interval_s: float = 2.0
    catalog_wait_timeout_s: float = 180.0

    @classmethod
    def from_config(cls, conf: Mapping[str, Any]) -> "AcceleratedCopyOptions":
        """Build from the ``accelerated`` section."""
        return cls(
            volume_prefix=str(conf.get("volume_prefix") or DEFAULT_VOLUME_PREFIX),
            group_name=str(conf.get("group_name") or XCOPY_GROUP_NAME),
            cinder_backend_host=str(conf.get("cinder_backend_host") or ""),
            cinder_backend_hint=str(conf.get("cinder_backend_hint") or ""),
            volume_type=str(conf.get("volume_type") or ""),
            device_retries=max(1, as_int(conf.get("device_retries"), 5)),
            device_interval_s=as_float(conf.get("device_interval_s"), 5.0),
            clone_poll_interval_s=as_float(conf.get("clone_poll_interval_s"), 10.0),
            clone_startup_timeout_s=as_float(conf.get("clone_startup_timeout_s"), 300.0),
            clone_stall_timeout_s=as_float(conf.get("clone_stall_timeout_s"), 300.0),
            catalog_wait_interval_s=as_float(conf.get("catalog_wait_interval_s"), 2.0),
            catalog_wait_timeout_s=as_float(conf.get("catalog_wait_timeout_s"), 180.0),
        )


class AcceleratedCopyOrchestrator:
    def __init__(
        self,
        logger: logging.Logger,
        vm_ops: VMOperations,
        provider: StorageProvider,
        catalog: CinderClient,
        operator_factory: OperatorFactory,
        *,
        attacher: Optional[VolumeAttacher] = None,
        options: Optional[AcceleratedCopyOptions] = None,
        stop_event: Optional[threading.Event] = None,
    ):
        self.logger = logger
        self.vm_ops = vm_ops
        self.provider = provider
        self.catalog = catalog
        self.operator_factory = operator_factory
        self.attacher = attacher
        self.options = options or AcceleratedCopyOptions()
        self.stop_event = stop_event

    def supports_xcopy(self) -> bool:
        # Capability is not queried; arrays behind a provider are assumed VAAI capable.
        self.logger.debug("XCOPY support assumed for %s", self.provider.who_am_i())
        return True

    # ----------------------------
    # shared steps
    # ----------------------------

    def _open_operator(self) -> ESXiHostOperator:
        host_ip = self.vm_ops.get_host_ip()
        host = self.vm_ops.client.vm_runtime_host(self.vm_ops.vm)
        self.logger.info("ESXi host: %s (IP: %s)", getattr(host, "name", "?"), host_ip)
        return self.operator_factory(host_ip)

    def _backend_host(self) -> str:
        opts = self.options
        if opts.cinder_backend_host:
            return opts.cinder_backend_host
        return self.catalog.discover_backend_host(opts.cinder_backend_hint)

    def _unmap_quietly(self, group: str, volume: Volume, ctx: MappingContext) -> None:
        try:
            self.provider.unmap_volume_from_group(group, volume, ctx)
        except VDiskMigrateError as e:
            Log.warn(self.logger, f"Failed to unmap {volume.name} from {group}: {e}")

    def _clone(self, operator: ESXiHostOperator, disk: VMDisk, volume: Volume) -> None:
        opts = self.options
        operator.wait_for_device(
            volume.naa,
            retries=opts.device_retries,
            interval_s=opts.device_interval_s,
            stop_event=self.stop_event,
        )
        task = operator.start_rdm_clone(disk.backing_file, volume.naa)
        status = CloneTracker(
            self.logger,
            operator,
            task,
            label=disk.name,
            poll_interval_s=opts.clone_poll_interval_s,
            startup_timeout_s=opts.clone_startup_timeout_s,
            stall_timeout_s=opts.clone_stall_timeout_s,
            stop_event=self.stop_event,
        ).wait()
        if status.result != CloneResult.SUCCEEDED:
            raise CloneError(
                code=80,
                msg=f"Clone of disk {disk.name} to {volume.naa} {status.result.value if status.result else 'failed'}: "
                    f"{status.error or 'stopped before completion'}",
                context={"disk": disk.name, "naa": volume.naa, "pid": task.pid, "percent": round(status.percent, 1)},
            )

    # ----------------------------
    # fresh volumes
    # ----------------------------

    def _copy_disk(self, operator: ESXiHostOperator, hba_ids: List[str], backend_host: str, disk: VMDisk) -> Volume:
        opts = self.options
        vm_name = self.vm_ops.vm_name
        name = array_volume_name(opts.volume_prefix, vm_name, disk.name)

        Log.step(self.logger, f"Creating volume {name} ({self.provider.size_gib(disk.size)} GiB) on {self.provider.who_am_i()}")
        created = self.provider.create_volume(name, disk.size)

        managed = self.catalog.manage_existing(
            backend_host,
            created.name,
            name,
            opts.volume_type,
            interval_s=opts.catalog_wait_interval_s,
            timeout_s=opts.catalog_wait_timeout_s,
            stop_event=self.stop_event,
        )
        catalog_id = str(managed["id"])
        created.openstack_vol = catalog_id

        # managing renamed the LUN on the array
        volume = self.provider.resolve_cinder_volume_to_lun(catalog_id)
        volume.openstack_vol = catalog_id
        self.logger.info("Disk %s: array volume %s, NAA %s, Cinder volume %s",
                         disk.name, volume.name, volume.naa, catalog_id)

        ctx = self.provider.create_or_update_initiator_group(opts.group_name, hba_ids)
        # a partial map (some hosts connected) must still be undone
        mapped = volume
        try:
            mapped = self.provider.map_volume_to_group(opts.group_name, volume, ctx)
            self._clone(operator, disk, mapped)
        finally:
            self._unmap_quietly(opts.group_name, mapped, ctx)

        if self.attacher is not None:
            disk.path = self.attacher.attach_volume(mapped)
            self.logger.info("Disk %s attached at %s", disk.name, disk.path)
        return mapped

    def copy_disks(self, disks: Optional[List[VMDisk]] = None) -> List[Volume]:
        """
        Copy every disk of the VM onto a fresh array volume managed into
        Cinder. ``disks`` defaults to the VM's current inventory. The VM is
        powered off first.
        """
        vm_name = self.vm_ops.vm_name
        Log.banner(self.logger, f"Storage-accelerated copy of {vm_name}")

        self.vm_ops.power_off()
        if not self.supports_xcopy():
            raise ConfigError(code=2, msg=f"{self.provider.who_am_i()} does not support XCOPY")
        if not self.options.volume_type:
            raise ConfigError(code=2, msg="accelerated.volume_type is required to manage volumes into Cinder")

        disks = disks if disks is not None else self.vm_ops.get_vm_disks()
        backend_host = self._backend_host()
        volumes: List[Volume] = []

        with self._open_operator() as operator:
            hba_ids = operator.get_hba_identifiers()
            for idx, disk in enumerate(disks, 1):
                Log.step(self.logger, f"Processing disk {idx}/{len(disks)}: {disk.name}")
                volumes.append(self._copy_disk(operator, hba_ids, backend_host, disk))
                Log.ok(self.logger, f"Disk {disk.name} copied via XCOPY")

        Log.ok(self.logger, f"Storage-accelerated copy of {vm_name} completed ({len(volumes)} disk(s))")
        return volumes

    # ----------------------------
    # pre-existing volumes
    # ----------------------------

    def copy_to_existing_volume(self, disk: VMDisk, volume: Volume) -> Volume:
        """
        Clone ``disk`` onto an array volume that existed before the migration.
        The volume's original group mappings are captured first and restored
        after the copy; restore problems are only logged.
        """
        group = self.options.group_name
        with self._open_operator() as operator:
            hba_ids = operator.get_hba_identifiers()
            ctx = self.provider.create_or_update_initiator_group(group, hba_ids)
            original = self.provider.get_mapped_groups(volume, ctx)
            self.logger.info("Volume %s is currently mapped to groups: %s", volume.name, original)

            mapped = volume
            try:
                mapped = self.provider.map_volume_to_group(group, volume, ctx)
                self._clone(operator, disk, mapped)
            finally:
                self._unmap_quietly(group, mapped, ctx)
                self._restore_mappings(operator, mapped, original, ctx)
        return mapped

    def _restore_mappings(self, operator: ESXiHostOperator, volume: Volume, groups: List[str], ctx: MappingContext) -> None:
        for g in groups:
            if g == self.options.group_name:
                continue
            self.logger.info("Mapping %s back to original group %s", volume.name, g)
            try:
                self.provider.map_volume_to_group(g, volume, ctx)
            except VDiskMigrateError as e:
                Log.warn(self.logger, f"Failed to map {volume.name} back to group {g}: {e}")
        try:
            operator.rescan_storage(delete=True)
        except VDiskMigrateError as e:
            Log.warn(self.logger, f"Rescan for dead devices failed on {operator.host}: {e}")
