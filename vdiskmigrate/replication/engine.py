# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vdiskmigrate/replication/engine.py
"""
CBT incremental replication.

One full copy per disk from the first snapshot, then incremental passes that
copy only the areas vSphere reports as changed since the previous snapshot.
Between passes the migration snapshot is rotated (refresh disk info, delete,
recreate). The loop ends once a pass finds no changes on any disk, or when the
iteration ceiling is reached.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, TypeVar

from ..core.config import as_bool, as_float, as_int
from ..core.exceptions import CancelledError, ReplicationError, VDiskMigrateError
from ..core.logger import Log
from ..provisioning import VolumeAttacher
from ..transport.nbd_server import NBDServer, NBDServerFactory
from ..vmware.vm_ops import MIGRATION_SNAPSHOT_NAME, VMDisk, VMOperations

T = TypeVar("T")

CBT_PRIMING_SNAPSHOT = "tmp-snap"


@dataclass
class VDDKEndpoint:
    """Where nbdkit's vddk plugin connects to."""

    server: str
    user: str
    password: str = field(default="", repr=False)
    thumbprint: str = ""


@dataclass
class ReplicationOptions:
    max_iterations: int = 20
    server_settle_s: float = 2.0
    snapshot_name: str = MIGRATION_SNAPSHOT_NAME
    cold: bool = False
    enable_cbt: bool = True

    @classmethod
    def from_config(cls, conf: Mapping[str, Any]) -> "ReplicationOptions":
        """Build from the ``replication`` section."""
        opts = cls(
            max_iterations=as_int(conf.get("max_iterations"), 20),
            server_settle_s=as_float(conf.get("server_settle_s"), 2.0),
            snapshot_name=str(conf.get("snapshot_name") or MIGRATION_SNAPSHOT_NAME),
            cold=as_bool(conf.get("cold"), False),
            enable_cbt=as_bool(conf.get("enable_cbt"), True),
        )
        if opts.max_iterations < 1:
            opts.max_iterations = 1
        return opts


class ReplicationEngine:
    def __init__(
        self,
        logger: logging.Logger,
        vm_ops: VMOperations,
        server_factory: NBDServerFactory,
        endpoint: VDDKEndpoint,
        *,
        attacher: Optional[VolumeAttacher] = None,
        options: Optional[ReplicationOptions] = None,
        cutover: Optional[Callable[[], None]] = None,
        stop_event: Optional[threading.Event] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.logger = logger
        self.vm_ops = vm_ops
        self.server_factory = server_factory
        self.endpoint = endpoint
        self.attacher = attacher
        self.options = options or ReplicationOptions()
        self.cutover = cutover
        self.stop_event = stop_event
        self._sleep = sleep
        self._servers: Dict[int, NBDServer] = {}

    # ----------------------------
    # helpers
    # ----------------------------

    def _step(self, operation: str, disk: Optional[VMDisk], fn: Callable[[], T]) -> T:
        if self.stop_event is not None and self.stop_event.is_set():
            raise CancelledError(code=75, msg=f"replication cancelled before {operation}")
        try:
            return fn()
        except (ReplicationError, CancelledError):
            raise
        except (VDiskMigrateError, OSError) as e:
            target = disk.name if disk is not None else self.vm_ops.vm_name
            raise ReplicationError(
                code=70,
                msg=f"{operation} failed for {target}: {e}",
                cause=e,
                context={"operation": operation, "disk": target},
            )

    def _settle(self) -> None:
        if self.options.server_settle_s > 0:
            self._sleep(self.options.server_settle_s)

    def _vm_moref(self) -> str:
        return str(self.vm_ops.vm._moId)

    def _start_server(self, disk: VMDisk) -> None:
        server = self._servers.get(disk.disk_key)
        if server is None:
            server = self.server_factory(disk)
            self._servers[disk.disk_key] = server
        else:
            server.stop()
        ep = self.endpoint
        server.start(self._vm_moref(), ep.server, ep.user, ep.password, ep.thumbprint,
                     disk.snap_name, disk.snap_backing_disk)

    def _stop_servers(self) -> None:
        for key, server in list(self._servers.items()):
            try:
                server.stop()
            except (VDiskMigrateError, OSError) as e:
                Log.warn(self.logger, f"Failed to stop nbdkit for disk key {key}: {e}")
        self._servers.clear()

    def _attach(self, disk: VMDisk) -> str:
        if self.attacher is not None:
            disk.path = self.attacher.attach_volume(disk)
        if not disk.path:
            raise ReplicationError(code=70, msg=f"No target path for disk {disk.name}",
                                   context={"disk": disk.name})
        return disk.path

    def _detach(self, disk: VMDisk) -> None:
        if self.attacher is not None:
            self.attacher.detach_volume(disk)

    def _rotate(self, disks: List[VMDisk]) -> None:
        name = self.options.snapshot_name
        self._step("update disk info", None, lambda: self.vm_ops.update_disk_info(disks))
        self._step("delete snapshot", None, lambda: self.vm_ops.delete_snapshot(name))
        self._step("take snapshot", None, lambda: self.vm_ops.take_snapshot(name))

    # ----------------------------
    # phases
    # ----------------------------

    def ensure_cbt_enabled(self) -> None:
        enabled = self._step("check CBT", None, self.vm_ops.is_cbt_enabled)
        self.logger.info("CBT Enabled: %s", enabled)
        if enabled:
            return
        Log.step(self.logger, "CBT is not enabled. Enabling CBT")
        self._step("enable CBT", None, self.vm_ops.enable_cbt)
        # a snapshot cycle activates tracking on every disk
        self._step("take snapshot", None, lambda: self.vm_ops.take_snapshot(CBT_PRIMING_SNAPSHOT))
        self._step("delete snapshot", None, lambda: self.vm_ops.delete_snapshot(CBT_PRIMING_SNAPSHOT))
        Log.ok(self.logger, "CBT enabled successfully")

    def _full_copy(self, disk: VMDisk) -> None:
        server = self._servers[disk.disk_key]
        path = self._step("attach volume", disk, lambda: self._attach(disk))
        try:
            self._step("full copy", disk, lambda: server.copy_disk(path))
        finally:
            self._step("detach volume", disk, lambda: self._detach(disk))

    def _incremental_pass(self, disks: List[VMDisk], iteration: int) -> bool:
        """Returns True when at least one disk had changes."""
        name = self.options.snapshot_name
        snapshot = self._step("get snapshot", None, lambda: self.vm_ops.get_snapshot(name))
        changed_any = False
        for disk in disks:
            info = self._step(
                "query changed disk areas", disk,
                lambda d=disk: self.vm_ops.query_changed_disk_areas(d, d.change_id, snapshot, 0),
            )
            if info.empty:
                self.logger.info("Iteration %d: no changes on disk %s", iteration, disk.name)
                continue
            changed_any = True
            self.logger.info("Iteration %d: %d changed area(s), %d bytes on disk %s",
                             iteration, len(info.changed_areas), info.length, disk.name)

            self._step("update disk info", disk,
                       lambda d=disk: self.vm_ops.update_disk_info([d], update_change_id=False))
            self._step("restart nbdkit", disk, lambda d=disk: self._start_server(d))
            self._settle()
            path = self._step("attach volume", disk, lambda d=disk: self._attach(d))
            try:
                server = self._servers[disk.disk_key]
                self._step("copy changed blocks", disk,
                           lambda s=server, a=info.changed_areas, p=path: s.copy_changed_blocks(a, p))
            finally:
                self._step("detach volume", disk, lambda d=disk: self._detach(d))
        return changed_any

    def replicate(self, disks: List[VMDisk]) -> List[VMDisk]:
        opts = self.options
        log = Log.bind(self.logger, vm=self.vm_ops.vm_name)
        Log.banner(self.logger, f"Replicating {len(disks)} disk(s) of {self.vm_ops.vm_name}")

        if opts.cold:
            self._step("power off", None, self.vm_ops.power_off)
        if opts.enable_cbt:
            self.ensure_cbt_enabled()

        try:
            self._step("take snapshot", None, lambda: self.vm_ops.take_snapshot(opts.snapshot_name))
            self._step("update disk info", None, lambda: self.vm_ops.update_disk_info(disks))

            for disk in disks:
                self._step("start nbdkit", disk, lambda d=disk: self._start_server(d))
            self._settle()

            Log.step(self.logger, "Iteration 0: full copy")
            for disk in disks:
                self._full_copy(disk)
            self._rotate(disks)

            iteration = 1
            final_pass = False
            while True:
                log.info("Iteration %d: incremental copy", iteration)
                changed_any = self._incremental_pass(disks, iteration)
                if final_pass:
                    break
                if not changed_any or iteration >= opts.max_iterations:
                    if not changed_any:
                        log.info("No changes on any disk after iteration %d", iteration)
                    else:
                        Log.warn(self.logger, f"Reached max iterations ({opts.max_iterations}) with disks still changing")
                    if self.cutover is None:
                        break
                    Log.step(self.logger, "Cutover: running final incremental pass")
                    self._step("cutover", None, self.cutover)
                    final_pass = True
                self._rotate(disks)
                iteration += 1
        finally:
            self._stop_servers()

        self._step("delete snapshot", None, lambda: self.vm_ops.delete_snapshot(opts.snapshot_name))
        Log.ok(self.logger, f"Replication of {self.vm_ops.vm_name} finished after {iteration} iteration(s)")
        return disks
