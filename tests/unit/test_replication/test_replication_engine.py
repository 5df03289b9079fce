# SPDX-License-Identifier: LGPL-3.0-or-later
"""Tests for the CBT incremental replication loop."""
from __future__ import annotations

import logging
import threading
import unittest
from unittest.mock import Mock, call

import pytest

from vdiskmigrate.core.exceptions import CancelledError, ReplicationError, TransportError
from vdiskmigrate.replication.engine import (
    CBT_PRIMING_SNAPSHOT,
    ReplicationEngine,
    ReplicationOptions,
    VDDKEndpoint,
)
from vdiskmigrate.vmware.vm_ops import MIGRATION_SNAPSHOT_NAME, ChangedArea, DiskChangeInfo, VMDisk


def _changed(*areas):
    info = DiskChangeInfo()
    for start, length in areas:
        info.changed_areas.append(ChangedArea(start, length))
        info.length += length
    return info


@pytest.mark.unit
class TestReplicationEngine(unittest.TestCase):
    def setUp(self):
        self.logger = logging.getLogger("vdiskmigrate.tests.replication")
        self.vm_ops = Mock()
        self.vm_ops.vm_name = "web-01"
        self.vm_ops.vm = Mock(_moId="vm-42")
        self.vm_ops.is_cbt_enabled.return_value = True
        self.vm_ops.get_snapshot.return_value = "snapshot-obj"

        self.server = Mock()
        self.server.copy_changed_blocks.return_value = 4096
        self.factory = Mock(return_value=self.server)

        self.attacher = Mock()
        self.attacher.attach_volume.return_value = "/dev/vdb"
        self.sleep = Mock()

        self.disk = VMDisk(name="Hard disk 1", size=10 << 30, disk_key=2000, change_id="52 aa/1")
        self.endpoint = VDDKEndpoint(server="vc.example.com", user="admin", password="pw", thumbprint="AA:BB")

    def _engine(self, **kw):
        opts = kw.pop("options", ReplicationOptions(server_settle_s=0.5))
        return ReplicationEngine(
            self.logger, self.vm_ops, self.factory, self.endpoint,
            attacher=self.attacher, options=opts, sleep=self.sleep, **kw,
        )

    def test_full_copy_then_two_incrementals_then_converges(self):
        self.vm_ops.query_changed_disk_areas.side_effect = [
            _changed((0, 65536)),
            _changed((1 << 20, 4096)),
            DiskChangeInfo(),
        ]

        out = self._engine().replicate([self.disk])

        self.assertEqual(out, [self.disk])
        self.server.copy_disk.assert_called_once_with("/dev/vdb")
        self.assertEqual(self.server.copy_changed_blocks.call_count, 2)
        # initial snapshot plus one per rotation
        self.assertEqual(self.vm_ops.take_snapshot.call_count, 4)
        # one per rotation plus the final teardown
        self.assertEqual(self.vm_ops.delete_snapshot.call_count, 4)
        self.vm_ops.delete_snapshot.assert_called_with(MIGRATION_SNAPSHOT_NAME)
        self.assertEqual(self.vm_ops.query_changed_disk_areas.call_count, 3)
        self.assertEqual(self.attacher.attach_volume.call_count, 3)
        self.assertEqual(self.attacher.detach_volume.call_count, 3)
        self.server.stop.assert_called()

    def test_incremental_refreshes_backing_without_advancing_change_id(self):
        self.vm_ops.query_changed_disk_areas.side_effect = [_changed((0, 512)), DiskChangeInfo()]

        self._engine().replicate([self.disk])

        self.assertIn(call([self.disk], update_change_id=False), self.vm_ops.update_disk_info.call_args_list)
        first_query = self.vm_ops.query_changed_disk_areas.call_args_list[0]
        self.assertEqual(first_query, call(self.disk, self.disk.change_id, "snapshot-obj", 0))

    def test_nbdkit_started_with_snapshot_backing(self):
        self.vm_ops.query_changed_disk_areas.side_effect = [DiskChangeInfo()]

        def _refresh(disks, update_change_id=True):
            for d in disks:
                d.snap_name = "snapshot-7"
                d.snap_backing_disk = "[ds1] web-01/web-01-000001.vmdk"

        self.vm_ops.update_disk_info.side_effect = _refresh

        self._engine().replicate([self.disk])

        self.server.start.assert_called_once_with(
            "vm-42", "vc.example.com", "admin", "pw", "AA:BB",
            "snapshot-7", "[ds1] web-01/web-01-000001.vmdk",
        )
        self.factory.assert_called_once_with(self.disk)
        self.sleep.assert_called_with(0.5)

    def test_stops_at_iteration_ceiling(self):
        self.vm_ops.query_changed_disk_areas.return_value = _changed((0, 4096))

        self._engine(options=ReplicationOptions(max_iterations=3, server_settle_s=0)).replicate([self.disk])

        self.assertEqual(self.vm_ops.query_changed_disk_areas.call_count, 3)
        self.assertEqual(self.server.copy_changed_blocks.call_count, 3)
        self.sleep.assert_not_called()

    def test_cutover_runs_one_final_pass(self):
        self.vm_ops.query_changed_disk_areas.side_effect = [DiskChangeInfo(), _changed((0, 4096))]
        cutover = Mock()

        self._engine(cutover=cutover).replicate([self.disk])

        cutover.assert_called_once_with()
        self.assertEqual(self.vm_ops.query_changed_disk_areas.call_count, 2)
        self.assertEqual(self.server.copy_changed_blocks.call_count, 1)

    def test_disks_without_changes_are_skipped(self):
        other = VMDisk(name="Hard disk 2", size=1 << 30, disk_key=2001, change_id="52 bb/1")
        self.vm_ops.query_changed_disk_areas.side_effect = [
            _changed((0, 4096)), DiskChangeInfo(),
            DiskChangeInfo(), DiskChangeInfo(),
        ]

        self._engine().replicate([self.disk, other])

        self.assertEqual(self.server.copy_changed_blocks.call_count, 1)
        self.assertEqual(self.server.copy_disk.call_count, 2)

    def test_enables_cbt_with_priming_snapshot(self):
        self.vm_ops.is_cbt_enabled.return_value = False

        self._engine().ensure_cbt_enabled()

        self.vm_ops.enable_cbt.assert_called_once_with()
        self.vm_ops.take_snapshot.assert_called_once_with(CBT_PRIMING_SNAPSHOT)
        self.vm_ops.delete_snapshot.assert_called_once_with(CBT_PRIMING_SNAPSHOT)

    def test_cbt_already_enabled_is_left_alone(self):
        self._engine().ensure_cbt_enabled()
        self.vm_ops.enable_cbt.assert_not_called()
        self.vm_ops.take_snapshot.assert_not_called()

    def test_cold_migration_powers_off_first(self):
        self.vm_ops.query_changed_disk_areas.side_effect = [DiskChangeInfo()]
        self._engine(options=ReplicationOptions(cold=True, server_settle_s=0)).replicate([self.disk])
        self.vm_ops.power_off.assert_called_once_with()

    def test_copy_failure_is_wrapped_and_cleans_up(self):
        self.server.copy_disk.side_effect = TransportError(code=70, msg="nbdcopy failed")

        with self.assertRaises(ReplicationError) as cm:
            self._engine().replicate([self.disk])

        err = cm.exception
        self.assertEqual(err.context["operation"], "full copy")
        self.assertEqual(err.context["disk"], "Hard disk 1")
        self.assertIsInstance(err.cause, TransportError)
        self.attacher.detach_volume.assert_called_once_with(self.disk)
        self.server.stop.assert_called()

    def test_cancelled_before_start(self):
        stop = threading.Event()
        stop.set()
        with self.assertRaises(CancelledError):
            self._engine(stop_event=stop).replicate([self.disk])
        self.server.copy_disk.assert_not_called()

    def test_missing_target_path_without_attacher(self):
        engine = ReplicationEngine(self.logger, self.vm_ops, self.factory, self.endpoint, sleep=self.sleep)
        with self.assertRaises(ReplicationError):
            engine.replicate([self.disk])

    def test_options_from_config(self):
        opts = ReplicationOptions.from_config({"max_iterations": "5", "cold": "yes", "server_settle_s": 1})
        self.assertEqual(opts.max_iterations, 5)
        self.assertTrue(opts.cold)
        self.assertEqual(opts.server_settle_s, 1.0)
        self.assertEqual(opts.snapshot_name, MIGRATION_SNAPSHOT_NAME)

    def test_options_clamp_iteration_ceiling(self):
        self.assertEqual(ReplicationOptions.from_config({"max_iterations": 0}).max_iterations, 1)
