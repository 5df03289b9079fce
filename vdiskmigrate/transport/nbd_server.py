# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vdiskmigrate/transport/nbd_server.py
"""
NBD transport for one snapshot disk.

An nbdkit process with the VDDK plugin exports the snapshot backing file on a
private unix socket. Full copies go through ``nbdcopy``; incremental copies use
the libnbd Python binding (``nbd``) to read only the CBT-reported areas,
skipping holes and zero runs via block status.
"""
from __future__ import annotations

import ctypes
import errno
import logging
import os
import re
import shutil
import subprocess
import tempfile
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable, List, Optional, Sequence

from ..core.exceptions import TransportError, wrap_transport
from ..core.logger import Log
from ..core.utils import U
from ..vmware.vm_ops import ChangedArea, VMDisk
from .progress import ProgressReporter, make_progress_reporter

DEFAULT_VDDK_LIBDIR = "/opt/vmware-vix-disklib-distrib"

MAX_BLOCK_STATUS_LEN = 2 << 30  # 2GB (4GB requests fail over the 32b protocol)
MAX_PREAD_LEN_ESX = 23 << 20  # 23MB (24M requests fail in vddk)
MAX_PREAD_LEN_VC = 2 << 20
MIN_BLOCK_STATUS_EXTENT = 1 << 20
ZERO_CHUNK = 16 << 20

FALLOC_FL_KEEP_SIZE = 0x01
FALLOC_FL_PUNCH_HOLE = 0x02

_FRACTION_RE = re.compile(r"^\s*(\d+)\s*/\s*(\d+)\s*$")


@dataclass
class BlockStatusData:
    offset: int
    length: int
    flags: int


def parse_fraction(line: str) -> Optional[int]:
    """'42/100' -> 42; None for anything else."""
    m = _FRACTION_RE.match(line or "")
    if not m:
        return None
    num, den = int(m.group(1)), int(m.group(2))
    if den <= 0:
        return None
    return int(num * 100 / den)


def get_block_status(nbd_mod: Any, handle: Any, area: ChangedArea, logger: logging.Logger) -> List[BlockStatusData]:
    """
    Allocation runs covering ``area``. Contiguous runs with equal flags are
    merged. Small areas, and areas where the server returns an error or no
    progress, come back as one data run.
    """
    whole = [BlockStatusData(area.start, area.length, 0)]
    if area.length < MIN_BLOCK_STATUS_EXTENT:
        return whole

    blocks: List[BlockStatusData] = []

    def update_blocks(metacontext: str, offset: int, entries: Sequence[int], err: Any) -> int:
        if metacontext != "base:allocation":
            return 0
        for length, flags in zip(entries[::2], entries[1::2]):
            if blocks:
                last = blocks[-1]
                if last.flags == flags and last.offset + last.length == offset:
                    last.length += length
                    offset += length
                    continue
            blocks.append(BlockStatusData(offset, length, flags))
            offset += length
        return 0

    last_offset = area.start
    end_offset = area.start + area.length
    while last_offset < end_offset:
        length = min(end_offset - last_offset, MAX_BLOCK_STATUS_LEN)
        logger.debug("Calling block_status with length=%d offset=%d", length, last_offset)
        try:
            handle.block_status(length, last_offset, update_blocks, flags=nbd_mod.CMD_FLAG_REQ_ONE)
        except nbd_mod.Error as e:
            logger.warning("Error getting block status at offset %d, copying whole area instead: %s", last_offset, e)
            return whole
        if not blocks:
            return whole
        new_offset = blocks[-1].offset + blocks[-1].length
        if new_offset <= last_offset:
            logger.warning("No new block status data at offset %d, copying whole area instead", last_offset)
            return whole
        last_offset = new_offset

    # the last reply may overrun the requested range
    tail = blocks[-1]
    if tail.offset + tail.length > end_offset:
        tail.length = end_offset - tail.offset
    return blocks


def _punch_hole(fd: int, offset: int, length: int) -> None:
    libc = ctypes.CDLL(None, use_errno=True)
    rc = libc.fallocate(
        ctypes.c_int(fd),
        ctypes.c_int(FALLOC_FL_PUNCH_HOLE | FALLOC_FL_KEEP_SIZE),
        ctypes.c_longlong(offset),
        ctypes.c_longlong(length),
    )
    if rc != 0:
        err = ctypes.get_errno()
        raise OSError(err, os.strerror(err))


def pwrite_all(fd: int, data: bytes, offset: int) -> int:
    """os.pwrite that resumes short writes until all of ``data`` is at ``offset``."""
    view = memoryview(data)
    done = 0
    while done < len(view):
        n = os.pwrite(fd, view[done:], offset + done)
        if n <= 0:
            raise OSError(errno.EIO, f"pwrite made no progress at offset {offset + done}")
        done += n
    return done


def zero_range(fd: int, offset: int, length: int, logger: logging.Logger) -> None:
    try:
        _punch_hole(fd, offset, length)
        return
    except (OSError, AttributeError) as e:
        logger.debug("Unable to punch hole %d-%d, falling back to pwrite: %s", offset, offset + length, e)
    count = 0
    zeros = bytes(ZERO_CHUNK)
    while count < length:
        n = min(ZERO_CHUNK, length - count)
        pwrite_all(fd, zeros[:n], offset + count)
        count += n


class NBDServer:
    """One nbdkit export for one disk; restartable."""

    def __init__(
        self,
        logger: logging.Logger,
        *,
        libdir: Optional[str] = None,
        label: str = "disk",
        is_vcenter: bool = False,
        nbdkit_bin: str = "nbdkit",
        nbdcopy_bin: str = "nbdcopy",
        nbd_module: Any = None,
        rich_ui: Optional[bool] = None,
    ):
        self.logger = logger
        self.libdir = libdir or DEFAULT_VDDK_LIBDIR
        self.label = label
        self.max_pread_len = MAX_PREAD_LEN_VC if is_vcenter else MAX_PREAD_LEN_ESX
        self.nbdkit_bin = nbdkit_bin
        self.nbdcopy_bin = nbdcopy_bin
        self.rich_ui = rich_ui
        self._nbd_module = nbd_module
        self._proc: Optional[subprocess.Popen] = None
        self._tmp_dir: Optional[str] = None

    # ----------------------------
    # server lifecycle
    # ----------------------------

    @property
    def socket_path(self) -> str:
        if not self._tmp_dir:
            raise TransportError(code=70, msg=f"nbdkit for {self.label} is not running")
        return os.path.join(self._tmp_dir, "nbdkit.sock")

    @property
    def uri(self) -> str:
        return f"nbd+unix:///?socket={self.socket_path}"

    def is_running(self) -> bool:
        return self._proc is not None and self._proc.poll() is None

    def build_command(
        self,
        vm_moref: str,
        server: str,
        user: str,
        password: str,
        thumbprint: str,
        snapshot_ref: str,
        backing_file: str,
    ) -> List[str]:
        assert self._tmp_dir is not None
        return [
            self.nbdkit_bin,
            "--exit-with-parent",
            "--readonly",
            "--foreground",
            f"--unix={os.path.join(self._tmp_dir, 'nbdkit.sock')}",
            f"--pidfile={os.path.join(self._tmp_dir, 'nbdkit.pid')}",
            "vddk",
            f"libdir={self.libdir}",
            f"server={server}",
            f"user={user}",
            f"password={password}",
            f"thumbprint={thumbprint}",
            "compression=fastlz",
            "transports=file:nbdssl:nbd",
            f"vm=moref={vm_moref}",
            f"snapshot={snapshot_ref}",
            backing_file,
        ]

    def start(
        self,
        vm_moref: str,
        server: str,
        user: str,
        password: str,
        thumbprint: str,
        snapshot_ref: str,
        backing_file: str,
    ) -> None:
        if self.is_running():
            raise TransportError(code=70, msg=f"nbdkit for {self.label} is already running")
        self._tmp_dir = tempfile.mkdtemp(prefix="nbdkit-")
        cmd = self.build_command(vm_moref, server, user, password, thumbprint, snapshot_ref, backing_file)
        self.logger.info("Executing %s", " ".join(U.redact_argv(cmd)))
        try:
            self._proc = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
        except OSError as e:
            self._cleanup_tmp()
            raise wrap_transport("start nbdkit", self.label, e, backing_file=backing_file)

    def stop(self, timeout_s: float = 10.0) -> None:
        proc, self._proc = self._proc, None
        if proc is not None and proc.poll() is None:
            self.logger.debug("Stopping nbdkit with pid=%d", proc.pid)
            proc.kill()
            try:
                proc.wait(timeout=timeout_s)
            except subprocess.TimeoutExpired:
                Log.warn(self.logger, f"nbdkit pid={proc.pid} did not exit within {timeout_s}s")
        self._cleanup_tmp()

    def _cleanup_tmp(self) -> None:
        if self._tmp_dir:
            shutil.rmtree(self._tmp_dir, ignore_errors=True)
            self._tmp_dir = None

    # ----------------------------
    # full copy
    # ----------------------------

    def copy_disk(self, dest: str, *, reporter: Optional[ProgressReporter] = None) -> None:
        """Copy the whole export to ``dest`` (assumed zeroed) with nbdcopy."""
        reporter = reporter or make_progress_reporter(self.logger, rich_ui=self.rich_ui)
        read_fd, write_fd = os.pipe()
        cmd = [self.nbdcopy_bin, f"--progress={write_fd}", "--target-is-zero", self.uri, dest]
        self.logger.info("Executing %s", " ".join(cmd))

        def pump() -> None:
            with os.fdopen(read_fd, "r", encoding="utf-8", errors="replace") as f:
                for line in f:
                    pct = parse_fraction(line)
                    if pct is None:
                        self.logger.debug("Unparsable nbdcopy progress line: %r", line)
                        continue
                    reporter.update(pct)

        reporter.start(f"Copying disk {self.label}")
        reader = threading.Thread(target=pump, name=f"nbdcopy-progress-{self.label}", daemon=True)
        start = time.monotonic()
        try:
            try:
                proc = subprocess.Popen(
                    cmd,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.PIPE,
                    pass_fds=(write_fd,),
                    text=True,
                )
            finally:
                os.close(write_fd)
            reader.start()
            _, stderr = proc.communicate()
        except OSError as e:
            os.close(read_fd)
            raise wrap_transport("nbdcopy", self.label, e, dest=dest)
        finally:
            if reader.is_alive():
                reader.join(timeout=5.0)
            reporter.finish()

        if proc.returncode != 0:
            raise TransportError(
                code=70,
                msg=f"nbdcopy failed for {self.label} (rc={proc.returncode}): {(stderr or '').strip()[:400]}",
                context={"disk": self.label, "dest": dest, "rc": proc.returncode},
            )
        self.logger.info("Full copy of %s finished in %.1fs", self.label, time.monotonic() - start)

    # ----------------------------
    # changed blocks
    # ----------------------------

    def _nbd(self) -> Any:
        if self._nbd_module is None:
            import nbd  # libnbd Python binding

            self._nbd_module = nbd
        return self._nbd_module

    def copy_changed_blocks(self, changed_areas: Iterable[ChangedArea], dest: str) -> int:
        """Copy only ``changed_areas`` into ``dest``. Returns bytes written."""
        nbd_mod = self._nbd()
        areas = list(changed_areas)
        total = sum(a.length for a in areas)
        start = time.monotonic()
        copied = 0

        try:
            handle = nbd_mod.NBD()
            handle.add_meta_context("base:allocation")
            handle.connect_uri(self.uri)
        except nbd_mod.Error as e:
            raise wrap_transport("connect to nbdkit", self.label, e, uri=self.uri)

        try:
            fd = os.open(dest, os.O_WRONLY)
        except OSError as e:
            handle.shutdown()
            raise wrap_transport("open target", self.label, e, dest=dest)

        try:
            for area in areas:
                for block in get_block_status(nbd_mod, handle, area, self.logger):
                    copied += self._copy_range(nbd_mod, handle, fd, block)
                if total:
                    self.logger.debug("Progress: %.2f%%", min(copied, total) * 100.0 / total)
            os.fsync(fd)
        except nbd_mod.Error as e:
            raise wrap_transport("read changed blocks", self.label, e, dest=dest)
        except OSError as e:
            raise wrap_transport("write changed blocks", self.label, e, dest=dest)
        finally:
            os.close(fd)
            handle.shutdown()

        self.logger.info(
            "Copied %s of changed blocks (%d areas) for %s in %.1fs",
            U.human_bytes(copied), len(areas), self.label, time.monotonic() - start,
        )
        return copied

    def _copy_range(self, nbd_mod: Any, handle: Any, fd: int, block: BlockStatusData) -> int:
        if block.flags & (nbd_mod.STATE_ZERO | nbd_mod.STATE_HOLE):
            zero_range(fd, block.offset, block.length, self.logger)
            return block.length

        count = 0
        while count < block.length:
            length = min(block.length - count, self.max_pread_len)
            offset = block.offset + count
            buf = handle.pread(length, offset)
            count += pwrite_all(fd, buf, offset)
        return count


NBDServerFactory = Callable[[VMDisk], NBDServer]


def server_factory(
    logger: logging.Logger,
    *,
    libdir: Optional[str] = None,
    is_vcenter: bool = False,
    rich_ui: Optional[bool] = None,
) -> NBDServerFactory:
    def build(disk: VMDisk) -> NBDServer:
        return NBDServer(logger, libdir=libdir, label=disk.name, is_vcenter=is_vcenter, rich_ui=rich_ui)

    return build
