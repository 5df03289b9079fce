# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vdiskmigrate/esxi/host_operator.py
"""
Remote operations on one ESXi host, driven over SSH.

Every fact the data plane needs from the host has exactly one accessor here,
and each accessor owns exactly one command and its parser. Nothing is cached:
callers re-ask when they need a fresh answer.
"""
from __future__ import annotations

import logging
import posixpath
import re
import shlex
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from defusedxml import ElementTree as ET

from ..core.exceptions import (
    CloneError,
    ConnectivityError,
    DeviceTimeoutError,
    NotFoundError,
    RemoteCommandError,
)
from ..core.logger import Log
from ..core.retry import poll_until, retry_operation
from ..ssh.ssh_client import SSHClient
from ..ssh.ssh_config import SSHConfig

DEVICE_DIR = "/vmfs/devices/disks"
VOLUMES_DIR = "/vmfs/volumes"

_HBA_PREFIXES = ("iqn.", "fc.", "nqn.")
_IQN_RE = re.compile(r"iqn\.[^\s]+")
_CLONE_PCT_RE = re.compile(r"^Clone:\s*([0-9]+(?:\.[0-9]+)?)%\s*done\.?$")
_DATASTORE_PATH_RE = re.compile(r"^\[(.+?)\]\s*(.*)$")

SECTOR_SIZE = 512


@dataclass
class CloneTask:
    """A background vmkfstools clone started on the host."""
    pid: int
    log_file: str
    target_path: str
    source_path: str
    device_path: str = ""
    started_at: float = field(default_factory=time.time)


def _q(s: str) -> str:
    return shlex.quote(s)


def _local_tag(tag: str) -> str:
    # esxcli XML is namespaced; match on the local element name only.
    return tag.rsplit("}", 1)[-1]


def parse_clone_percent(text: str) -> float:
    """
    Highest "Clone: N% done" value in a vmkfstools log.
    vmkfstools rewrites the progress line in place with carriage returns.
    """
    best = 0.0
    for line in (text or "").replace("\r", "\n").split("\n"):
        m = _CLONE_PCT_RE.match(line.strip())
        if m:
            best = max(best, float(m.group(1)))
    return best


def parse_clone_error(text: str) -> Optional[str]:
    low = (text or "").lower()
    if "failed" in low or "error" in low:
        return (text or "").strip()
    return None


class ESXiHostOperator:
    """
    Session-scoped operator for one ESXi host.

    Use as a context manager; the SSH session is closed on every exit path:

        with ESXiHostOperator(logger, SSHConfig(host="10.0.0.5")) as esxi:
            uids = esxi.get_hba_identifiers()
    """

    def __init__(
        self,
        logger: logging.Logger,
        cfg: SSHConfig,
        *,
        client: Optional[SSHClient] = None,
        connect_attempts: int = 3,
    ):
        self.logger = logger
        self.cfg = cfg
        self.connect_attempts = max(1, int(connect_attempts))
        self._client = client
        self._opened = client is not None

    # ----------------------------
    # session
    # ----------------------------

    @property
    def host(self) -> str:
        return self.cfg.host

    @property
    def client(self) -> SSHClient:
        if self._client is None:
            raise ConnectivityError(code=65, msg=f"ESXi session to {self.host} is not open",
                                    context={"host": self.host})
        return self._client

    def open(self) -> "ESXiHostOperator":
        if self._client is None:
            self._client = SSHClient(self.logger, self.cfg)
        retry_operation(
            self._client.check,
            max_attempts=self.connect_attempts,
            base_backoff_s=2.0,
            exceptions=ConnectivityError,
            operation_name=f"ssh connect {self.host}",
            logger=self.logger,
        )
        self._opened = True
        Log.step(self.logger, f"Connected to ESXi host {self.host}")
        return self

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self.logger.debug("Closed ESXi session to %s", self.host)
        self._client = None
        self._opened = False

    def __enter__(self) -> "ESXiHostOperator":
        if not self._opened:
            self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.close()
        return False

    def _ssh(self, cmd: str, *, timeout: Optional[float] = None) -> str:
        return self.client.ssh(cmd, timeout=timeout)

    def _out(self, cmd: str, *, timeout: Optional[float] = None) -> str:
        """stdout of a command whose exit status carries no meaning."""
        return self.client.run(cmd, timeout=timeout, check=False).stdout

    # ----------------------------
    # host facts
    # ----------------------------

    def get_host_version(self) -> Dict[str, str]:
        """Key/value pairs from ``esxcli system version get`` (Product, Version, Build, ...)."""
        out = self._ssh("esxcli system version get")
        info: Dict[str, str] = {}
        for line in out.splitlines():
            if ":" not in line:
                continue
            k, v = line.split(":", 1)
            info[k.strip()] = v.strip()
        return info

    def list_storage_adapter_uids(self) -> List[str]:
        out = self._ssh("esxcli storage core adapter list")
        uids: List[str] = []
        for line in out.splitlines():
            line = line.strip()
            if not line or line.startswith("HBA Name"):
                continue
            for tok in line.split():
                tok = tok.strip().lower()
                if tok.startswith(_HBA_PREFIXES) and tok not in uids:
                    uids.append(tok)
        return uids

    def list_iscsi_iqns(self) -> List[str]:
        out = self._out("esxcli iscsi adapter list")
        iqns: List[str] = []
        for m in _IQN_RE.findall(out):
            m = m.strip().lower()
            if m not in iqns:
                iqns.append(m)
        return iqns

    def get_hba_identifiers(self) -> List[str]:
        """
        Initiator identities of this host: adapter UIDs, or the software iSCSI
        IQNs when the adapter listing carries none.
        """
        uids = self.list_storage_adapter_uids()
        if not uids:
            uids = self.list_iscsi_iqns()
        if not uids:
            raise NotFoundError(code=3, msg=f"No HBA identifiers found on host {self.host}",
                                context={"host": self.host})
        self.logger.info("Host %s HBA identifiers: %s", self.host, ", ".join(uids))
        return uids

    # ----------------------------
    # devices
    # ----------------------------

    @staticmethod
    def device_path(naa: str) -> str:
        return f"{DEVICE_DIR}/{naa.strip()}"

    def is_device_visible(self, naa: str) -> bool:
        res = self.client.run(f"ls -l {_q(self.device_path(naa))}", check=False)
        return res.rc == 0

    def list_naa_devices(self) -> List[str]:
        out = self._out(f"ls {DEVICE_DIR}/")
        devs = []
        for line in out.splitlines():
            name = line.strip()
            # naa.xxx:1 entries are partitions
            if name.startswith("naa.") and ":" not in name:
                devs.append(name)
        return devs

    def rescan_storage(self, delete: bool = False) -> None:
        cmd = "esxcli storage core adapter rescan --all"
        if delete:
            cmd += " --type=delete"
        try:
            self._ssh(cmd, timeout=600)
        except RemoteCommandError as e:
            if "already in progress" in str(e):
                self.logger.info("Storage rescan already in progress on %s", self.host)
                return
            raise
        self.logger.debug("Storage rescan%s completed on %s", " (delete)" if delete else "", self.host)

    def wait_for_device(
        self,
        naa: str,
        retries: int = 5,
        interval_s: float = 5.0,
        stop_event: Optional[threading.Event] = None,
    ) -> str:
        """
        Alternate a visibility check and an adapter rescan until the device
        node appears. Returns the device path.
        """
        path = self.device_path(naa)

        def _visible() -> Optional[str]:
            if self.is_device_visible(naa):
                return path
            try:
                self.rescan_storage()
            except RemoteCommandError as e:
                Log.warn(self.logger, f"Rescan failed on {self.host}: {e}")
            return None

        found = poll_until(
            _visible,
            interval_s=interval_s,
            max_attempts=retries,
            stop_event=stop_event,
            operation_name=f"wait for device {naa}",
            logger=self.logger,
            timeout_error=DeviceTimeoutError,
            host=self.host,
            naa=naa,
        )
        self.logger.info("Device %s is visible on %s", naa, self.host)
        return found

    # ----------------------------
    # paths and files
    # ----------------------------

    @staticmethod
    def datastore_path_to_vmfs(path: str) -> str:
        """'[ds] dir/disk.vmdk' -> '/vmfs/volumes/ds/dir/disk.vmdk'; filesystem paths pass through."""
        p = (path or "").strip()
        m = _DATASTORE_PATH_RE.match(p)
        if not m:
            return p
        return f"{VOLUMES_DIR}/{m.group(1)}/{m.group(2).strip()}"

    def path_exists(self, path: str) -> bool:
        return self.client.exists(path)

    def get_vmdk_size(self, descriptor: str) -> int:
        """Provisioned size from the descriptor's flat extent line (sectors x 512)."""
        path = self.datastore_path_to_vmfs(descriptor)
        text = self.client.read_text(path)
        for line in text.splitlines():
            line = line.strip()
            if "-flat.vmdk" in line and "VMFS" in line:
                fields = line.split()
                if len(fields) >= 2 and fields[1].isdigit():
                    return int(fields[1]) * SECTOR_SIZE
        raise NotFoundError(code=3, msg=f"No flat extent found in descriptor {path}",
                            context={"host": self.host, "path": path})

    def get_datastore_backing_naa(self, datastore: str) -> str:
        out = self._ssh("esxcli storage vmfs extent list")
        for line in out.splitlines():
            if datastore not in line:
                continue
            for tok in line.split():
                if tok.startswith("naa."):
                    return tok
        raise NotFoundError(code=3, msg=f"Could not find NAA device for datastore {datastore}",
                            context={"host": self.host, "datastore": datastore})

    def get_vm_power_state(self, vmid: str) -> str:
        out = self._ssh(f"vim-cmd vmsvc/power.getstate {_q(str(vmid))}")
        if "Powered on" in out:
            return "on"
        if "Powered off" in out:
            return "off"
        if "Suspended" in out:
            return "suspended"
        return "unknown"

    def esxcli_xml(self, args: Sequence[str]) -> List[Dict[str, str]]:
        """
        Run ``esxcli --formatter=xml <args>`` and flatten the structure list
        into one dict per row (field name -> string value).
        """
        cmd = "esxcli --formatter=xml " + " ".join(_q(a) for a in args)
        out = self._ssh(cmd)
        try:
            root = ET.fromstring(out)
        except ET.ParseError as e:
            raise RemoteCommandError(code=66, msg=f"Unparseable esxcli XML from {self.host}: {e}", cause=e,
                                     context={"host": self.host, "command": cmd})
        rows: List[Dict[str, str]] = []
        for node in root.iter():
            if _local_tag(node.tag) != "structure":
                continue
            row: Dict[str, str] = {}
            for fld in node:
                if _local_tag(fld.tag) != "field":
                    continue
                name = fld.get("name")
                if not name:
                    continue
                value = next(iter(fld), None)
                row[name] = (value.text or "").strip() if value is not None else (fld.text or "").strip()
            rows.append(row)
        return rows

    # ----------------------------
    # clone
    # ----------------------------

    def start_rdm_clone(self, source_vmdk: str, device_naa: str, target_name: Optional[str] = None) -> CloneTask:
        """
        Start ``vmkfstools -i <src> -d rdm:<device> <descriptor>`` in the background.

        The RDM descriptor lands next to the source with a timestamped name so
        retries never collide with a leftover descriptor.
        """
        src = self.datastore_path_to_vmfs(source_vmdk)
        check = self._out(f"ls -l {_q(src)} 2>&1")
        if "No such file" in check or not check.strip():
            raise NotFoundError(code=3, msg=f"Source VMDK does not exist: {src}",
                                context={"host": self.host, "path": src})

        dev = self.device_path(device_naa)
        if not self.is_device_visible(device_naa):
            raise NotFoundError(code=3, msg=f"Target device does not exist: {dev}",
                                context={"host": self.host, "device": dev})

        ts = int(time.time())
        src_dir, base = posixpath.split(src)
        stem = target_name or (base[: -len(".vmdk")] if base.endswith(".vmdk") else base)
        descriptor = f"{src_dir}/{stem}-rdm-{ts}.vmdk"
        log_file = f"/tmp/vmkfstools_rdm_clone_{ts}.log"

        clone_cmd = f"vmkfstools -i {_q(src)} -d rdm:{_q(dev)} {_q(descriptor)}"
        Log.step(self.logger, f"Starting RDM clone on {self.host}: {clone_cmd}")
        out = self._ssh(f"{clone_cmd} >{_q(log_file)} 2>&1 </dev/null & echo $!")

        tokens = out.split()
        if not tokens or not tokens[-1].isdigit():
            raise CloneError(code=80, msg=f"Could not read vmkfstools PID from {out!r}",
                             context={"host": self.host, "source": src, "device": dev})
        task = CloneTask(
            pid=int(tokens[-1]),
            log_file=log_file,
            target_path=descriptor,
            source_path=src,
            device_path=dev,
        )
        self.logger.info("vmkfstools started on %s with PID %d (log: %s)", self.host, task.pid, log_file)
        return task

    def is_process_running(self, pid: int) -> bool:
        out = self._out(f"kill -0 {int(pid)} 2>/dev/null && echo running || true")
        return "running" in out

    def read_clone_log(self, log_file: str) -> str:
        return self.client.read_text(log_file)

    def read_clone_log_percent(self, log_file: str) -> float:
        return parse_clone_percent(self.read_clone_log(log_file))

    def clone_log_has_error(self, log_file: str) -> bool:
        return parse_clone_error(self.read_clone_log(log_file)) is not None
