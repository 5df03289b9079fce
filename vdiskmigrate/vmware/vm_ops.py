# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vdiskmigrate/vmware/vm_ops.py
"""
VM-level operations used by the data plane: disk inventory, the migration
snapshot, changed-block queries, CBT and power state.

Every vSphere call goes through ``_call`` so an expired session
(``NotAuthenticated``) is handled uniformly: reconnect, look the VM up again
and retry the call once.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, TypeVar

from pyVmomi import vim, vmodl

from ..core.exceptions import NotFoundError, VMwareError, VDiskMigrateError, wrap_vmware
from ..core.logger import Log
from .client import VMwareClient, parse_backing_filename

MIGRATION_SNAPSHOT_NAME = "migration-snap"

T = TypeVar("T")


@dataclass
class ChangedArea:
    start: int
    length: int


@dataclass
class DiskChangeInfo:
    start_offset: int = 0
    length: int = 0
    changed_areas: List[ChangedArea] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not self.changed_areas


@dataclass
class VMDisk:
    name: str
    size: int = 0
    boot: bool = False
    datastore: str = ""
    disk_key: int = 0
    backing_file: str = ""
    change_id: str = ""
    # moref value of the snapshot the backing file belongs to
    snap_name: str = ""
    snap_backing_disk: str = ""
    # target device path once the volume is attached to the helper
    path: str = ""
    device: Any = field(default=None, repr=False, compare=False)


def _change_id(device: Any) -> str:
    backing = getattr(device, "backing", None)
    cid = getattr(backing, "changeId", None) or ""
    if not cid:
        raise VMwareError(
            code=50,
            msg=f"CBT is not enabled on disk {getattr(device, 'key', '?')}",
            context={"device_key": getattr(device, "key", None)},
        )
    return str(cid)


def _iter_snapshot_tree(trees: Iterable[Any]) -> Iterable[Any]:
    for node in trees or []:
        yield node
        yield from _iter_snapshot_tree(getattr(node, "childSnapshotList", None) or [])


class VMOperations:
    def __init__(
        self,
        logger: logging.Logger,
        client: VMwareClient,
        vm_name: str,
        *,
        vm: Any = None,
        stop_event: Optional[threading.Event] = None,
    ):
        self.logger = logger
        self.client = client
        self.vm_name = vm_name
        self.stop_event = stop_event
        self._vm = vm

    @property
    def vm(self) -> Any:
        if self._vm is None:
            self._vm = self.client.get_vm_by_name(self.vm_name)
        return self._vm

    def refresh_vm(self) -> None:
        self.client.reconnect()
        self._vm = self.client.get_vm_by_name(self.vm_name, refresh=True)

    def _call(self, operation: str, fn: Callable[[Any], T]) -> T:
        try:
            try:
                return fn(self.vm)
            except vim.fault.NotAuthenticated:
                self.logger.info("vSphere session expired during %s; refreshing VM reference", operation)
                self.refresh_vm()
                return fn(self.vm)
        except VDiskMigrateError:
            raise
        except vmodl.MethodFault as e:
            msg = getattr(e, "msg", None) or str(e)
            raise wrap_vmware(f"failed to {operation}: {msg}", e, vm=self.vm_name)

    def _wait(self, task: Any) -> Any:
        return self.client.wait_for_task(task, stop_event=self.stop_event)

    # ----------------------------
    # inventory
    # ----------------------------

    def get_vm_disks(self) -> List[VMDisk]:
        """Virtual disks in device order; the first one is flagged as boot."""
        devices = self._call("read hardware", lambda vm: list(vm.config.hardware.device))
        disks: List[VMDisk] = []
        for dev in devices:
            if not isinstance(dev, vim.vm.device.VirtualDisk):
                continue
            backing = getattr(dev, "backing", None)
            file_name = str(getattr(backing, "fileName", "") or "")
            ds_obj = getattr(backing, "datastore", None)
            datastore = str(getattr(ds_obj, "name", "") or "")
            if not datastore and file_name:
                datastore = parse_backing_filename(file_name)[0]
            label = getattr(getattr(dev, "deviceInfo", None), "label", None) or f"disk-{dev.key}"
            disks.append(
                VMDisk(
                    name=str(label),
                    size=int(getattr(dev, "capacityInBytes", 0) or 0),
                    boot=not disks,
                    datastore=datastore,
                    disk_key=int(dev.key),
                    backing_file=file_name,
                    change_id=str(getattr(backing, "changeId", "") or ""),
                    device=dev,
                )
            )
        self.logger.info("VM %s has %d disk(s)", self.vm_name, len(disks))
        return disks

    def get_host_ip(self, host: Any = None) -> str:
        """Management IP of the ESXi host running the VM: vmk0 if present, else the first vmknic."""
        host = host if host is not None else self.client.vm_runtime_host(self.vm)
        if host is None:
            raise NotFoundError(code=3, msg=f"VM {self.vm_name} has no runtime host", context={"vm": self.vm_name})
        vnics = list(getattr(getattr(getattr(host, "config", None), "network", None), "vnic", None) or [])
        if not vnics:
            raise NotFoundError(code=3, msg=f"No vmkernel NICs on host {getattr(host, 'name', '?')}",
                                context={"host": getattr(host, "name", None)})
        chosen = next((v for v in vnics if v.device == "vmk0"), vnics[0])
        ip = str(chosen.spec.ip.ipAddress or "")
        if not ip:
            raise NotFoundError(code=3, msg=f"{chosen.device} on host {getattr(host, 'name', '?')} has no IP")
        return ip

    # ----------------------------
    # power
    # ----------------------------

    def get_power_state(self) -> str:
        return str(self._call("read power state", lambda vm: vm.runtime.powerState))

    def is_powered_on(self) -> bool:
        return self.get_power_state() == vim.VirtualMachinePowerState.poweredOn

    def power_off(self) -> None:
        if not self.is_powered_on():
            self.logger.info("VM %s is already powered off", self.vm_name)
            return
        Log.step(self.logger, f"Powering off VM {self.vm_name}")
        self._wait(self._call("power off", lambda vm: vm.PowerOffVM_Task()))
        Log.ok(self.logger, f"VM {self.vm_name} powered off")

    # ----------------------------
    # CBT
    # ----------------------------

    def is_cbt_enabled(self) -> bool:
        return bool(self._call("read CBT state", lambda vm: vm.config.changeTrackingEnabled))

    def enable_cbt(self) -> None:
        spec = vim.vm.ConfigSpec(changeTrackingEnabled=True)
        self._wait(self._call("enable CBT", lambda vm: vm.ReconfigVM_Task(spec=spec)))
        self.logger.info("Enabled CBT on VM %s", self.vm_name)

    # ----------------------------
    # snapshots
    # ----------------------------

    def take_snapshot(self, name: str = MIGRATION_SNAPSHOT_NAME) -> None:
        task = self._call(
            "take snapshot",
            lambda vm: vm.CreateSnapshot_Task(name=name, description="", memory=False, quiesce=False),
        )
        self._wait(task)
        self.logger.info("Created snapshot %s on VM %s", name, self.vm_name)

    def list_snapshots(self) -> List[Any]:
        def _roots(vm: Any) -> List[Any]:
            snap = getattr(vm, "snapshot", None)
            return list(snap.rootSnapshotList) if snap is not None else []

        return list(_iter_snapshot_tree(self._call("list snapshots", _roots)))

    def get_snapshot(self, name: str = MIGRATION_SNAPSHOT_NAME) -> Any:
        for node in self.list_snapshots():
            if node.name == name:
                return node.snapshot
        raise NotFoundError(code=3, msg=f"Snapshot {name} not found on VM {self.vm_name}",
                            context={"vm": self.vm_name, "snapshot": name})

    def delete_snapshot(self, name: str = MIGRATION_SNAPSHOT_NAME) -> None:
        snap = self.get_snapshot(name)
        self._wait(self._call("delete snapshot",
                              lambda vm: snap.RemoveSnapshot_Task(removeChildren=False, consolidate=True)))
        self.logger.info("Deleted snapshot %s on VM %s", name, self.vm_name)

    def cleanup_snapshots(self, name: str = MIGRATION_SNAPSHOT_NAME, *, ignore_errors: bool = True) -> int:
        """Remove every snapshot called ``name`` (duplicates included). Returns how many went away."""
        deleted = 0
        for node in self.list_snapshots():
            if node.name != name:
                continue
            try:
                self._wait(self._call("delete snapshot",
                                      lambda vm, s=node.snapshot: s.RemoveSnapshot_Task(removeChildren=True,
                                                                                         consolidate=True)))
                deleted += 1
            except VDiskMigrateError as e:
                if not ignore_errors:
                    raise
                Log.warn(self.logger, f"Failed to delete snapshot {name}: {e} (ignoring error)")
        if deleted:
            self.logger.info("Successfully deleted %d snapshots with name '%s'", deleted, name)
        return deleted

    def update_disk_info(self, disks: List[VMDisk], *, update_change_id: bool = True) -> None:
        """
        Point every disk at the current snapshot: change id, snapshot moref and
        snapshot backing file. Disks are matched by device key. With
        ``update_change_id=False`` the change id (the diff baseline) is kept.
        """
        def _current(vm: Any) -> Any:
            snap = getattr(vm, "snapshot", None)
            return snap.currentSnapshot if snap is not None else None

        current = self._call("read current snapshot", _current)
        if current is None:
            self.logger.debug("VM %s has no snapshot; disk info unchanged", self.vm_name)
            return

        devices = self._call("read snapshot config", lambda vm: list(current.config.hardware.device))
        by_key: Dict[int, Any] = {
            int(d.key): d for d in devices if isinstance(d, vim.vm.device.VirtualDisk)
        }
        snap_value = str(current._moId)
        for disk in disks:
            dev = by_key.get(int(disk.disk_key))
            if dev is None:
                raise NotFoundError(
                    code=3,
                    msg=f"snapshot not found for disk {disk.name} (device key={disk.disk_key})",
                    context={"disk": disk.name, "device_key": disk.disk_key},
                )
            if update_change_id:
                disk.change_id = _change_id(dev)
            disk.snap_backing_disk = str(dev.backing.fileName)
            disk.snap_name = snap_value
            self.logger.debug("Disk %s: snapshot=%s backing=%s change_id=%s",
                              disk.name, disk.snap_name, disk.snap_backing_disk, disk.change_id)

    def query_changed_disk_areas(
        self,
        disk: VMDisk,
        change_id: str,
        snapshot: Any = None,
        offset: int = 0,
    ) -> DiskChangeInfo:
        """
        Changed areas of ``disk`` since ``change_id``. vSphere pages the answer;
        pages are collected until one comes back empty or the accumulated length
        covers the disk.
        """
        result = DiskChangeInfo(start_offset=offset)
        start = offset
        while True:
            page = self._call(
                "query changed disk areas",
                lambda vm, s=start: vm.QueryChangedDiskAreas(
                    snapshot=snapshot, deviceKey=disk.disk_key, startOffset=s, changeId=change_id,
                ),
            )
            areas = list(getattr(page, "changedArea", None) or [])
            if not areas:
                break
            result.changed_areas.extend(ChangedArea(int(a.start), int(a.length)) for a in areas)
            result.length += int(page.length)
            if result.length >= disk.size:
                break
            start = result.length
        return result
