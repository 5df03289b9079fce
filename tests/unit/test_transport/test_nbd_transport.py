# SPDX-License-Identifier: LGPL-3.0-or-later
"""Tests for the nbdkit/libnbd transport with a stand-in ``nbd`` module."""
from __future__ import annotations

import logging
import os
import shutil
import subprocess
import tempfile
import unittest
from unittest.mock import Mock, patch

import pytest

from vdiskmigrate.core.exceptions import TransportError
from vdiskmigrate.transport import nbd_server
from vdiskmigrate.transport.nbd_server import (
    MIN_BLOCK_STATUS_EXTENT,
    BlockStatusData,
    NBDServer,
    get_block_status,
    parse_fraction,
    pwrite_all,
)
from vdiskmigrate.transport.progress import LoggingProgressReporter, MultiProgressReporter, make_progress_reporter
from vdiskmigrate.vmware.vm_ops import ChangedArea, VMDisk

MiB = 1 << 20


class FakeNbdError(Exception):
    pass


class FakeNBD:
    """Serves a byte image; block status replies come from a scripted list of (length, flags) runs."""

    def __init__(self, image: bytes, runs=None, fail_block_status=False):
        self.image = image
        self.runs = runs or [(len(image), 0)]
        self.fail_block_status = fail_block_status
        self.closed = False
        self.preads = []

    def add_meta_context(self, name):
        self.meta = name

    def connect_uri(self, uri):
        self.uri = uri

    def block_status(self, length, offset, callback, flags=0):
        if self.fail_block_status:
            raise FakeNbdError("block status not supported")
        entries = []
        pos = 0
        for run_len, run_flags in self.runs:
            if pos + run_len > offset:
                entries.extend([run_len - max(0, offset - pos), run_flags])
                # one run per call, like CMD_FLAG_REQ_ONE
                break
            pos += run_len
        callback("base:allocation", offset, entries, None)

    def pread(self, length, offset):
        self.preads.append((offset, length))
        return self.image[offset:offset + length]

    def shutdown(self):
        self.closed = True


def fake_nbd_module(handle):
    mod = Mock()
    mod.Error = FakeNbdError
    mod.CMD_FLAG_REQ_ONE = 1
    mod.STATE_HOLE = 1
    mod.STATE_ZERO = 2
    mod.NBD.return_value = handle
    return mod


@pytest.mark.unit
class TestParseFraction(unittest.TestCase):
    def test_values(self):
        self.assertEqual(parse_fraction("42/100\n"), 42)
        self.assertEqual(parse_fraction(" 1 / 3 "), 33)
        self.assertEqual(parse_fraction("3/3"), 100)

    def test_rejects_noise(self):
        for line in ("", "abc", "5/0", "10%", "1/2/3"):
            self.assertIsNone(parse_fraction(line), line)


@pytest.mark.unit
class TestBlockStatus(unittest.TestCase):
    def setUp(self):
        self.logger = logging.getLogger("vdiskmigrate.tests.nbd")

    def test_small_area_is_one_data_run(self):
        handle = FakeNBD(b"", fail_block_status=True)
        blocks = get_block_status(fake_nbd_module(handle), handle, ChangedArea(0, MIN_BLOCK_STATUS_EXTENT - 1),
                                  self.logger)
        self.assertEqual(blocks, [BlockStatusData(0, MIN_BLOCK_STATUS_EXTENT - 1, 0)])

    def test_runs_are_merged_and_clipped(self):
        handle = FakeNBD(b"", runs=[(2 * MiB, 0), (1 * MiB, 0), (4 * MiB, 3), (8 * MiB, 0)])
        blocks = get_block_status(fake_nbd_module(handle), handle, ChangedArea(0, 10 * MiB), self.logger)
        self.assertEqual(blocks, [
            BlockStatusData(0, 3 * MiB, 0),
            BlockStatusData(3 * MiB, 4 * MiB, 3),
            BlockStatusData(7 * MiB, 3 * MiB, 0),
        ])

    def test_error_falls_back_to_whole_area(self):
        handle = FakeNBD(b"", fail_block_status=True)
        with self.assertLogs(self.logger, level="WARNING"):
            blocks = get_block_status(fake_nbd_module(handle), handle, ChangedArea(4 * MiB, 2 * MiB), self.logger)
        self.assertEqual(blocks, [BlockStatusData(4 * MiB, 2 * MiB, 0)])

    def test_no_progress_falls_back_to_whole_area(self):
        handle = Mock()
        handle.block_status.side_effect = lambda length, offset, cb, flags=0: cb("base:allocation", offset, [0, 0], None)
        blocks = get_block_status(fake_nbd_module(handle), handle, ChangedArea(0, 2 * MiB), self.logger)
        self.assertEqual(blocks, [BlockStatusData(0, 2 * MiB, 0)])


@pytest.mark.unit
class TestNBDServer(unittest.TestCase):
    def setUp(self):
        self.logger = logging.getLogger("vdiskmigrate.tests.nbd")

    def test_command_line(self):
        server = NBDServer(self.logger, libdir="/opt/vddk", label="Hard disk 1")
        server._tmp_dir = "/tmp/nbdkit-x"
        cmd = server.build_command("vm-42", "vc.example.com", "admin", "s3cret", "AA:BB",
                                   "snapshot-7", "[ds] vm1/vm1-000001.vmdk")
        self.assertEqual(cmd[:4], ["nbdkit", "--exit-with-parent", "--readonly", "--foreground"])
        self.assertIn("--unix=/tmp/nbdkit-x/nbdkit.sock", cmd)
        self.assertIn("libdir=/opt/vddk", cmd)
        self.assertIn("vm=moref=vm-42", cmd)
        self.assertIn("snapshot=snapshot-7", cmd)
        self.assertEqual(cmd[-1], "[ds] vm1/vm1-000001.vmdk")
        self.assertEqual(server.uri, "nbd+unix:///?socket=/tmp/nbdkit-x/nbdkit.sock")

    @patch("vdiskmigrate.transport.nbd_server.subprocess.Popen")
    def test_start_logs_redacted_command_and_stop_cleans_up(self, popen):
        popen.return_value.poll.return_value = None
        server = NBDServer(self.logger, label="Hard disk 1")

        with self.assertLogs(self.logger, level="INFO") as logs:
            server.start("vm-42", "vc", "admin", "s3cret", "AA", "snapshot-7", "[ds] a.vmdk")

        self.assertTrue(server.is_running())
        self.assertNotIn("s3cret", "\n".join(logs.output))
        self.assertIn("password=<redacted>", "\n".join(logs.output))
        tmp_dir = server._tmp_dir
        self.assertTrue(os.path.isdir(tmp_dir))

        server.stop()

        popen.return_value.kill.assert_called_once_with()
        self.assertFalse(os.path.exists(tmp_dir))
        self.assertFalse(server.is_running())

    @patch("vdiskmigrate.transport.nbd_server.subprocess.Popen")
    def test_start_twice_is_an_error(self, popen):
        popen.return_value.poll.return_value = None
        server = NBDServer(self.logger)
        server.start("vm-42", "vc", "u", "p", "t", "s", "b")
        try:
            with self.assertRaises(TransportError):
                server.start("vm-42", "vc", "u", "p", "t", "s", "b")
        finally:
            server.stop()

    @patch("vdiskmigrate.transport.nbd_server.subprocess.Popen", side_effect=FileNotFoundError("nbdkit"))
    def test_start_without_nbdkit(self, _popen):
        server = NBDServer(self.logger)
        with self.assertRaises(TransportError):
            server.start("vm-42", "vc", "u", "p", "t", "s", "b")
        self.assertIsNone(server._tmp_dir)

    def test_stop_when_never_started(self):
        NBDServer(self.logger).stop()

    def test_socket_requires_running_server(self):
        with self.assertRaises(TransportError):
            NBDServer(self.logger).socket_path

    @patch("vdiskmigrate.transport.nbd_server.subprocess.Popen")
    def test_copy_disk_failure(self, popen):
        popen.return_value.communicate.return_value = ("", "nbdcopy: connection refused\n")
        popen.return_value.returncode = 1
        server = NBDServer(self.logger, label="Hard disk 1", rich_ui=False)
        server._tmp_dir = "/tmp/nbdkit-x"
        reporter = Mock()

        with self.assertRaises(TransportError) as cm:
            server.copy_disk("/dev/vdb", reporter=reporter)

        self.assertIn("connection refused", str(cm.exception))
        argv = popen.call_args[0][0]
        self.assertEqual(argv[0], "nbdcopy")
        self.assertTrue(argv[1].startswith("--progress="))
        self.assertIn("--target-is-zero", argv)
        self.assertEqual(argv[-2:], ["nbd+unix:///?socket=/tmp/nbdkit-x/nbdkit.sock", "/dev/vdb"])
        self.assertEqual(popen.call_args[1]["stderr"], subprocess.PIPE)
        reporter.start.assert_called_once_with("Copying disk Hard disk 1")
        reporter.finish.assert_called_once_with()

    def test_copy_changed_blocks(self):
        image = bytes(range(256)) * (12 * MiB // 256)
        runs = [(4 * MiB, 0), (4 * MiB, 2), (4 * MiB, 0)]
        handle = FakeNBD(image, runs=runs)
        server = NBDServer(self.logger, nbd_module=fake_nbd_module(handle))
        server._tmp_dir = "/tmp/nbdkit-x"

        tmp = os.path.join(self._tmpdir(), "target.img")
        with open(tmp, "wb") as f:
            f.write(b"\xff" * len(image))

        copied = server.copy_changed_blocks([ChangedArea(0, 12 * MiB)], tmp)

        self.assertEqual(copied, 12 * MiB)
        with open(tmp, "rb") as f:
            data = f.read()
        self.assertEqual(data[:4 * MiB], image[:4 * MiB])
        self.assertEqual(data[4 * MiB:8 * MiB], bytes(4 * MiB))
        self.assertEqual(data[8 * MiB:], image[8 * MiB:])
        self.assertTrue(all(4 * MiB > off or off >= 8 * MiB for off, _ in handle.preads))
        self.assertTrue(handle.closed)
        self.assertEqual(handle.meta, "base:allocation")

    def test_copy_changed_blocks_target_missing(self):
        handle = FakeNBD(b"")
        server = NBDServer(self.logger, nbd_module=fake_nbd_module(handle))
        server._tmp_dir = "/tmp/nbdkit-x"
        with self.assertRaises(TransportError):
            server.copy_changed_blocks([ChangedArea(0, 1)], os.path.join(self._tmpdir(), "missing", "x"))
        self.assertTrue(handle.closed)

    def test_factory_labels_servers_by_disk(self):
        build = nbd_server.server_factory(self.logger, libdir="/opt/vddk", is_vcenter=True)
        server = build(VMDisk(name="Hard disk 2"))
        self.assertEqual(server.label, "Hard disk 2")
        self.assertEqual(server.max_pread_len, nbd_server.MAX_PREAD_LEN_VC)

    def _tmpdir(self):
        d = tempfile.mkdtemp(prefix="vdm-test-")
        self.addCleanup(shutil.rmtree, d, True)
        return d


@pytest.mark.unit
class TestPwriteAll(unittest.TestCase):
    def setUp(self):
        d = tempfile.mkdtemp(prefix="vdm-test-")
        self.addCleanup(shutil.rmtree, d, True)
        self.path = os.path.join(d, "target.img")
        with open(self.path, "wb") as f:
            f.write(bytes(64))
        self.fd = os.open(self.path, os.O_RDWR)
        self.addCleanup(os.close, self.fd)

    def test_short_writes_are_resumed(self):
        real_pwrite = os.pwrite

        def short_pwrite(fd, data, offset):
            return real_pwrite(fd, bytes(data[:5]), offset)

        payload = bytes(range(1, 33))
        with patch.object(nbd_server.os, "pwrite", side_effect=short_pwrite) as pwrite:
            written = pwrite_all(self.fd, payload, 16)

        self.assertEqual(written, 32)
        self.assertEqual(pwrite.call_count, 7)
        self.assertEqual(pwrite.call_args_list[1][0][2], 21)
        with open(self.path, "rb") as f:
            data = f.read()
        self.assertEqual(data[16:48], payload)
        self.assertEqual(data[:16], bytes(16))
        self.assertEqual(data[48:], bytes(16))

    def test_no_progress_raises(self):
        with patch.object(nbd_server.os, "pwrite", return_value=0):
            with self.assertRaises(OSError):
                pwrite_all(self.fd, b"abc", 0)


@pytest.mark.unit
class TestProgressReporters(unittest.TestCase):
    def test_logging_reporter_steps(self):
        logger = logging.getLogger("vdiskmigrate.tests.progress")
        reporter = LoggingProgressReporter(logger, step=25)
        reporter.start("Copying disk Hard disk 1")
        with self.assertLogs(logger, level="INFO") as logs:
            for pct in (5, 24, 25, 40, 50, 60, 100):
                reporter.update(pct)
        self.assertEqual([r.getMessage() for r in logs.records], [
            "Copying disk Hard disk 1, Completed: 25%",
            "Copying disk Hard disk 1, Completed: 50%",
            "Copying disk Hard disk 1, Completed: 100%",
        ])

    def test_factory_without_tty(self):
        reporter = make_progress_reporter(logging.getLogger("x"), rich_ui=False)
        self.assertIsInstance(reporter, MultiProgressReporter)
        self.assertEqual(len(reporter.reporters), 1)
