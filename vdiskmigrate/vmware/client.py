# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vdiskmigrate/vmware/client.py
from __future__ import annotations

"""
vSphere / vCenter connection for vdiskmigrate.
"""

import hashlib
import logging
import re
import socket
import ssl
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

from pyVim.connect import Disconnect, SmartConnect
from pyVmomi import vim, vmodl

from ..core.config import as_bool, as_float, as_int, require, resolve_secret
from ..core.exceptions import CancelledError, NotFoundError, VMwareError, wrap_vmware

_BACKING_RE = re.compile(r"\[(.+?)\]\s+(.*)")


@dataclass
class VSphereSettings:
    host: str
    user: str
    password: str = field(default="", repr=False)
    port: int = 443
    insecure: bool = False
    timeout: Optional[float] = None
    vm_name: str = ""
    # nbdkit vddk plugin
    vddk_libdir: Optional[Path] = None
    thumbprint: Optional[str] = None
    task_poll_s: float = 1.0

    @classmethod
    def from_config(cls, conf: Mapping[str, Any]) -> "VSphereSettings":
        """Build from the ``vsphere`` section."""
        require(conf, ("host", "user"), where="vsphere")
        libdir = conf.get("vddk_libdir")
        timeout = conf.get("timeout")
        return cls(
            host=str(conf["host"]).strip(),
            user=str(conf["user"]).strip(),
            password=resolve_secret(conf, "password") or "",
            port=as_int(conf.get("port"), 443),
            insecure=as_bool(conf.get("insecure"), False),
            timeout=as_float(timeout, 0.0) or None,
            vm_name=str(conf.get("vm_name") or ""),
            vddk_libdir=Path(str(libdir)).expanduser() if libdir else None,
            thumbprint=str(conf.get("thumbprint") or "") or None,
            task_poll_s=as_float(conf.get("task_poll_s"), 1.0),
        )


def parse_backing_filename(file_name: str) -> Tuple[str, str]:
    """
    Parse VMware style backing fileName:
      "[datastore] path/to/file.ext" -> ("datastore", "path/to/file.ext")
    """
    m = _BACKING_RE.match(file_name or "")
    if not m:
        raise VMwareError(code=50, msg=f"Could not parse backing filename: {file_name!r}")
    return m.group(1), m.group(2)


class VMwareClient:
    """
    vSphere/vCenter session plus the inventory lookups the data plane needs.
    """

    def __init__(
        self,
        logger: logging.Logger,
        host: str,
        user: str,
        password: str,
        *,
        port: int = 443,
        insecure: bool = False,
        timeout: Optional[float] = None,
        task_poll_s: float = 1.0,
    ) -> None:
        self.logger = logger
        self.host = (host or "").strip()
        self.user = (user or "").strip()
        self.password = (password or "").strip()
        self.port = int(port)
        self.insecure = bool(insecure)
        self.timeout = timeout
        self.task_poll_s = task_poll_s

        self.si: Any = None

        # caches
        self._vm_obj_by_name_cache: Dict[str, Any] = {}

    @classmethod
    def from_settings(cls, logger: logging.Logger, s: VSphereSettings) -> "VMwareClient":
        return cls(
            logger, s.host, s.user, s.password,
            port=s.port, insecure=s.insecure, timeout=s.timeout, task_poll_s=s.task_poll_s,
        )

    @classmethod
    def from_config(cls, logger: logging.Logger, cfg: Mapping[str, Any]) -> "VMwareClient":
        return cls.from_settings(logger, VSphereSettings.from_config(cfg))

    def has_creds(self) -> bool:
        return bool(self.host and self.user and self.password)

    # Context managers

    def __enter__(self) -> "VMwareClient":
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        try:
            self.disconnect()
        finally:
            if exc_type is not None:
                self.logger.error("Exception in context: %s: %s", getattr(exc_type, "__name__", exc_type), exc_val)
        return False

    # Connection

    def _ssl_context(self) -> ssl.SSLContext:
        """
        Create SSL context for vSphere connections.

        SECURITY WARNING: When insecure=True, TLS certificate verification is completely
        disabled. Only use insecure mode in trusted network environments with
        self-signed certificates.
        """
        if self.insecure:
            self.logger.warning(
                "TLS certificate verification is DISABLED (insecure=True). "
                "Connections are vulnerable to Man-in-the-Middle attacks."
            )
            ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
            ctx.check_hostname = False
            ctx.verify_mode = ssl.CERT_NONE
            return ctx
        return ssl.create_default_context()

    def connect(self) -> None:
        ctx = self._ssl_context()
        old_timeout = socket.getdefaulttimeout()
        try:
            if self.timeout is not None:
                socket.setdefaulttimeout(self.timeout)
            self.si = SmartConnect(
                host=self.host,
                user=self.user,
                pwd=self.password,
                port=self.port,
                sslContext=ctx,
            )
            self.logger.info("Connected to vSphere: %s:%s", self.host, self.port)
        except (vmodl.MethodFault, OSError) as e:
            self.si = None
            raise wrap_vmware(f"Failed to connect to vSphere: {e}", e, code=61, host=self.host)
        finally:
            socket.setdefaulttimeout(old_timeout)

    def disconnect(self) -> None:
        try:
            if self.si is not None:
                Disconnect(self.si)
        except (vmodl.MethodFault, OSError) as e:
            self.logger.error("Error during disconnect: %s", e)
        finally:
            self.si = None
            self._vm_obj_by_name_cache = {}

    def reconnect(self) -> None:
        self.logger.info("Re-authenticating to vSphere %s", self.host)
        self.disconnect()
        self.connect()

    def _content(self) -> Any:
        if not self.si:
            raise VMwareError(code=50, msg="Not connected")
        try:
            return self.si.RetrieveContent()
        except vmodl.MethodFault as e:
            raise wrap_vmware(f"Failed to retrieve content: {e}", e)

    def is_vcenter(self) -> bool:
        about = getattr(self._content(), "about", None)
        return getattr(about, "apiType", "") == "VirtualCenter"

    def server_thumbprint(self) -> str:
        """SHA-1 fingerprint of the server certificate, colon separated (what VDDK expects)."""
        try:
            pem = ssl.get_server_certificate((self.host, self.port))
        except OSError as e:
            raise wrap_vmware(f"Failed to fetch certificate from {self.host}: {e}", e, host=self.host)
        digest = hashlib.sha1(ssl.PEM_cert_to_DER_cert(pem)).hexdigest().upper()
        return ":".join(digest[i:i + 2] for i in range(0, len(digest), 2))

    # VM lookup

    def get_vm_by_name(self, name: str, *, refresh: bool = False) -> Any:
        n = (name or "").strip()
        if not n:
            raise NotFoundError(code=3, msg="Empty VM name")
        if not refresh and n in self._vm_obj_by_name_cache:
            return self._vm_obj_by_name_cache[n]

        content = self._content()
        view = content.viewManager.CreateContainerView(content.rootFolder, [vim.VirtualMachine], True)
        try:
            for vm_obj in view.view:
                if getattr(vm_obj, "name", None) == n:
                    self._vm_obj_by_name_cache[n] = vm_obj
                    return vm_obj
        finally:
            try:
                view.Destroy()
            except vmodl.MethodFault as e:
                self.logger.debug("Container view cleanup failed: %s", e)
        raise NotFoundError(code=3, msg=f"VM not found: {n}", context={"vm": n})

    @staticmethod
    def vm_runtime_host(vm_obj: Any) -> Any:
        rt = getattr(vm_obj, "runtime", None)
        return getattr(rt, "host", None) if rt else None

    # Tasks

    def wait_for_task(self, task: Any, *, stop_event: Optional[threading.Event] = None) -> Any:
        while task.info.state not in (vim.TaskInfo.State.success, vim.TaskInfo.State.error):
            if stop_event is not None and stop_event.wait(self.task_poll_s):
                raise CancelledError(code=75, msg=f"Wait for task {task.info.key} cancelled")
            if stop_event is None:
                time.sleep(self.task_poll_s)
        if task.info.state == vim.TaskInfo.State.error:
            err = task.info.error
            msg = getattr(err, "msg", None) or str(err)
            raise VMwareError(code=50, msg=f"Task {task.info.descriptionId or task.info.key} failed: {msg}",
                              cause=err if isinstance(err, BaseException) else None)
        return task.info.result
