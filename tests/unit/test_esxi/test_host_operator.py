# SPDX-License-Identifier: LGPL-3.0-or-later
"""Tests for ESXiHostOperator parsing and command construction over a fake SSH session."""
from __future__ import annotations

import logging
import unittest
from unittest.mock import Mock, patch

import pytest

from vdiskmigrate.core.exceptions import (
    CloneError,
    ConnectivityError,
    DeviceTimeoutError,
    NotFoundError,
    RemoteCommandError,
)
from vdiskmigrate.esxi.host_operator import ESXiHostOperator, parse_clone_error, parse_clone_percent
from vdiskmigrate.ssh.ssh_client import SSHClient, SSHResult
from vdiskmigrate.ssh.ssh_config import SSHConfig

ADAPTERS = """\
HBA Name  Driver      Link State  UID                                           Capabilities  Description
--------  ----------  ----------  --------------------------------------------  ------------  -----------
vmhba0    vmw_ahci    link-n/a    sata.vmhba0                                                 AHCI
vmhba2    nfnic       link-up     fc.20000025b5000001:20000025b500000a          Second Level  Cisco FC
vmhba64   iscsi_vmk   online      iqn.1998-01.com.vmware:esx01-4c4c4544       Second Level  iSCSI
"""

ISCSI = """\
Adapter  Driver     State   UID                                    Description
-------  ---------  ------  -------------------------------------  -----------
vmhba65  iscsi_vmk  online  iqn.1998-01.com.vmware:esx01-soft      iSCSI Software Adapter
"""


def _res(rc=0, stdout=""):
    return SSHResult(rc=rc, stdout=stdout, stderr="", argv=["ssh"], seconds=0.1)


@pytest.mark.unit
class TestHostOperator(unittest.TestCase):
    def setUp(self):
        self.client = Mock(spec=SSHClient)
        self.op = ESXiHostOperator(logging.getLogger("vdiskmigrate.tests.esxi"),
                                   SSHConfig(host="10.0.0.5"), client=self.client)

    def test_context_manager_closes_session(self):
        with self.op as esxi:
            self.assertIs(esxi, self.op)
        self.client.close.assert_called_once_with()
        self.client.check.assert_not_called()

    @patch("vdiskmigrate.core.retry.time.sleep")
    def test_open_retries_connectivity(self, _sleep):
        op = ESXiHostOperator(logging.getLogger("vdiskmigrate.tests.esxi"), SSHConfig(host="10.0.0.6"),
                              connect_attempts=2)
        op._client = self.client
        self.client.check.side_effect = [ConnectivityError(code=65, msg="reset"), None]
        with op:
            pass
        self.assertEqual(self.client.check.call_count, 2)

    def test_session_required(self):
        op = ESXiHostOperator(logging.getLogger("vdiskmigrate.tests.esxi"), SSHConfig(host="10.0.0.7"))
        with self.assertRaises(ConnectivityError):
            op.get_host_version()

    def test_hba_identifiers_from_adapter_list(self):
        self.client.ssh.return_value = ADAPTERS
        self.assertEqual(self.op.get_hba_identifiers(), [
            "fc.20000025b5000001:20000025b500000a",
            "iqn.1998-01.com.vmware:esx01-4c4c4544",
        ])
        self.client.run.assert_not_called()

    def test_hba_identifiers_fall_back_to_iscsi(self):
        self.client.ssh.return_value = ADAPTERS.splitlines()[0]
        self.client.run.return_value = _res(0, ISCSI)
        self.assertEqual(self.op.get_hba_identifiers(), ["iqn.1998-01.com.vmware:esx01-soft"])

    def test_no_hba_identifiers(self):
        self.client.ssh.return_value = ""
        self.client.run.return_value = _res(1, "")
        with self.assertRaises(NotFoundError):
            self.op.get_hba_identifiers()

    def test_host_version(self):
        self.client.ssh.return_value = "   Product: VMware ESXi\n   Version: 8.0.2\n   Build: Releasebuild-22380479\n"
        info = self.op.get_host_version()
        self.assertEqual(info["Version"], "8.0.2")
        self.assertEqual(info["Product"], "VMware ESXi")

    def test_wait_for_device_rescans_between_checks(self):
        self.client.run.side_effect = [_res(1), _res(1), _res(0)]

        path = self.op.wait_for_device("naa.624a9370ab", retries=5, interval_s=0)

        self.assertEqual(path, "/vmfs/devices/disks/naa.624a9370ab")
        rescans = [c for c in self.client.ssh.call_args_list if "adapter rescan --all" in c[0][0]]
        self.assertEqual(len(rescans), 2)

    def test_wait_for_device_timeout(self):
        self.client.run.return_value = _res(1)
        with self.assertRaises(DeviceTimeoutError) as cm:
            self.op.wait_for_device("naa.624a9370ab", retries=3, interval_s=0)
        self.assertEqual(cm.exception.context["naa"], "naa.624a9370ab")
        self.assertEqual(cm.exception.context["attempts"], 3)

    def test_rescan_in_progress_is_tolerated(self):
        self.client.ssh.side_effect = RemoteCommandError(code=66, msg="Rescan already in progress")
        self.op.rescan_storage(delete=True)
        self.assertIn("--type=delete", self.client.ssh.call_args[0][0])

    def test_rescan_failure_propagates(self):
        self.client.ssh.side_effect = RemoteCommandError(code=66, msg="adapter busy")
        with self.assertRaises(RemoteCommandError):
            self.op.rescan_storage()

    def test_list_naa_devices_skips_partitions(self):
        self.client.run.return_value = _res(0, "naa.1\nnaa.1:1\nt10.ATA\nnaa.2\n")
        self.assertEqual(self.op.list_naa_devices(), ["naa.1", "naa.2"])

    def test_datastore_path_to_vmfs(self):
        self.assertEqual(ESXiHostOperator.datastore_path_to_vmfs("[datastore1] vm1/vm1.vmdk"),
                         "/vmfs/volumes/datastore1/vm1/vm1.vmdk")
        self.assertEqual(ESXiHostOperator.datastore_path_to_vmfs("[ds with space]  vm1/a.vmdk"),
                         "/vmfs/volumes/ds with space/vm1/a.vmdk")
        self.assertEqual(ESXiHostOperator.datastore_path_to_vmfs("/vmfs/volumes/x/y.vmdk"), "/vmfs/volumes/x/y.vmdk")

    def test_vmdk_size_from_descriptor(self):
        self.client.read_text.return_value = (
            '# Extent description\nRW 41943040 VMFS "vm1-flat.vmdk"\n\n# The Disk Data Base\n'
        )
        self.assertEqual(self.op.get_vmdk_size("[ds] vm1/vm1.vmdk"), 41943040 * 512)
        self.client.read_text.assert_called_once_with("/vmfs/volumes/ds/vm1/vm1.vmdk")

    def test_vmdk_size_without_extent(self):
        self.client.read_text.return_value = "# nothing here\n"
        with self.assertRaises(NotFoundError):
            self.op.get_vmdk_size("/vmfs/volumes/ds/vm1/vm1.vmdk")

    def test_datastore_backing_naa(self):
        self.client.ssh.return_value = (
            "Volume Name  VMFS UUID  Extent Number  Device Name  Partition\n"
            "datastore1   5f1-aa     0              naa.600a0980aa  1\n"
        )
        self.assertEqual(self.op.get_datastore_backing_naa("datastore1"), "naa.600a0980aa")
        with self.assertRaises(NotFoundError):
            self.op.get_datastore_backing_naa("other")

    def test_power_state(self):
        self.client.ssh.return_value = "Retrieved runtime info\nPowered off"
        self.assertEqual(self.op.get_vm_power_state("12"), "off")

    def test_esxcli_xml(self):
        self.client.ssh.return_value = (
            '<?xml version="1.0" encoding="utf-8"?>'
            '<output xmlns="http://www.vmware.com/Products/ESX/5.0/esxcli/">'
            '<root><list type="structure">'
            '<structure typeName="Adapter"><field name="HBAName"><string>vmhba64</string></field>'
            '<field name="UID"><string>iqn.1998-01.com.vmware:esx01</string></field></structure>'
            '</list></root></output>'
        )
        rows = self.op.esxcli_xml(["storage", "core", "adapter", "list"])
        self.assertEqual(rows, [{"HBAName": "vmhba64", "UID": "iqn.1998-01.com.vmware:esx01"}])

    def test_esxcli_xml_garbage(self):
        self.client.ssh.return_value = "not xml"
        with self.assertRaises(RemoteCommandError):
            self.op.esxcli_xml(["system", "version", "get"])

    @patch("vdiskmigrate.esxi.host_operator.time.time", return_value=1700000000)
    def test_start_rdm_clone(self, _time):
        self.client.run.side_effect = [
            _res(0, "-rw------- 1 root root 512 vm1.vmdk"),
            _res(0, "lrwxrwxrwx naa.624a9370ab"),
        ]
        self.client.ssh.return_value = "[1] 4242\n4242"

        task = self.op.start_rdm_clone("[datastore1] vm1/vm1.vmdk", "naa.624a9370ab")

        self.assertEqual(task.pid, 4242)
        self.assertEqual(task.target_path, "/vmfs/volumes/datastore1/vm1/vm1-rdm-1700000000.vmdk")
        self.assertEqual(task.log_file, "/tmp/vmkfstools_rdm_clone_1700000000.log")
        cmd = self.client.ssh.call_args[0][0]
        self.assertTrue(cmd.startswith("vmkfstools -i /vmfs/volumes/datastore1/vm1/vm1.vmdk "
                                       "-d rdm:/vmfs/devices/disks/naa.624a9370ab "))
        self.assertTrue(cmd.endswith("& echo $!"))

    def test_start_rdm_clone_missing_source(self):
        self.client.run.return_value = _res(1, "ls: /vmfs/volumes/ds/vm1.vmdk: No such file or directory")
        with self.assertRaises(NotFoundError):
            self.op.start_rdm_clone("[ds] vm1.vmdk", "naa.624a9370ab")
        self.client.ssh.assert_not_called()

    def test_start_rdm_clone_missing_device(self):
        self.client.run.side_effect = [_res(0, "vm1.vmdk"), _res(1, "")]
        with self.assertRaises(NotFoundError) as cm:
            self.op.start_rdm_clone("[ds] vm1.vmdk", "naa.624a9370ab")
        self.assertEqual(cm.exception.context["device"], "/vmfs/devices/disks/naa.624a9370ab")

    def test_start_rdm_clone_without_pid(self):
        self.client.run.side_effect = [_res(0, "vm1.vmdk"), _res(0, "dev")]
        self.client.ssh.return_value = "sh: vmkfstools: not found"
        with self.assertRaises(CloneError):
            self.op.start_rdm_clone("[ds] vm1.vmdk", "naa.624a9370ab")

    def test_process_running(self):
        self.client.run.return_value = _res(0, "running\n")
        self.assertTrue(self.op.is_process_running(4242))
        self.assertIn("kill -0 4242", self.client.run.call_args[0][0])
        self.client.run.return_value = _res(0, "")
        self.assertFalse(self.op.is_process_running(4242))


@pytest.mark.unit
class TestCloneLogParsing(unittest.TestCase):
    def test_percent_takes_highest_value(self):
        log = "Destination disk format: raw device mapping\rClone: 12% done.\rClone: 57% done.\rClone: 56% done."
        self.assertEqual(parse_clone_percent(log), 57.0)

    def test_percent_with_fraction_and_noise(self):
        self.assertEqual(parse_clone_percent("Clone: 99.5% done.\nsomething else 100%\n"), 99.5)
        self.assertEqual(parse_clone_percent(""), 0.0)

    def test_error_detection(self):
        self.assertIsNone(parse_clone_error("Clone: 100% done."))
        self.assertEqual(parse_clone_error(" Failed to clone disk: No space left on device \n"),
                         "Failed to clone disk: No space left on device")
        self.assertIsNotNone(parse_clone_error("DiskLib error 0x1"))
