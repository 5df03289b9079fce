# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vdiskmigrate/openstack/cinder_client.py
"""
Small Keystone v3 + Cinder v3 REST client.

Only the calls the data plane needs are implemented: volume lifecycle,
connection actions, manage-existing (catalog import) and the cinder-volume
service listing used to discover a backend host string.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional

import requests

from ..core.config import as_bool, require, resolve_secret
from ..core.exceptions import ConfigError, ConnectivityError, NotFoundError, StorageError
from ..core.http import DEFAULT_TIMEOUT_S, json_or_empty, new_session, request
from ..core.logger import Log
from ..core.retry import poll_until

MANAGE_API_VERSION = "volume 3.8"
VOLUME_SERVICE_TYPE = "volumev3"


@dataclass
class CatalogSettings:
    auth_url: str
    username: str
    password: str = field(default="", repr=False)
    project_name: str = ""
    domain_name: str = "Default"
    region_name: str = ""
    interface: str = "public"
    verify_ssl: bool = True

    @property
    def identity_url(self) -> str:
        u = self.auth_url.rstrip("/")
        return u if u.endswith("/v3") else f"{u}/v3"

    @classmethod
    def from_config(cls, conf: Mapping[str, Any]) -> "CatalogSettings":
        """Build from the ``openstack`` section."""
        require(conf, ("auth_url", "username", "project_name"), where="openstack")
        return cls(
            auth_url=str(conf["auth_url"]).strip(),
            username=str(conf["username"]),
            password=resolve_secret(conf, "password") or "",
            project_name=str(conf["project_name"]),
            domain_name=str(conf.get("domain_name") or "Default"),
            region_name=str(conf.get("region_name") or ""),
            interface=str(conf.get("interface") or "public"),
            verify_ssl=not as_bool(conf.get("insecure"), False),
        )


class CinderClient:
    def __init__(
        self,
        logger: logging.Logger,
        settings: CatalogSettings,
        *,
        session: Optional[requests.Session] = None,
        timeout_s: float = DEFAULT_TIMEOUT_S,
    ):
        self.logger = logger
        self.settings = settings
        self.timeout_s = timeout_s
        self.session = session or new_session(verify=settings.verify_ssl)
        self._token: Optional[str] = None
        self._endpoint: Optional[str] = None

    # ----------------------------
    # auth
    # ----------------------------

    def authenticate(self) -> None:
        s = self.settings
        body = {
            "auth": {
                "identity": {
                    "methods": ["password"],
                    "password": {
                        "user": {"name": s.username, "domain": {"name": s.domain_name}, "password": s.password},
                    },
                },
                "scope": {"project": {"name": s.project_name, "domain": {"name": s.domain_name}}},
            }
        }
        resp = request(
            self.session, "POST", f"{s.identity_url}/auth/tokens",
            operation="keystone auth", target=s.auth_url, timeout=self.timeout_s, json=body,
        )
        token = resp.headers.get("X-Subject-Token")
        if not token:
            raise ConnectivityError(code=61, msg=f"Keystone at {s.auth_url} returned no token",
                                    context={"auth_url": s.auth_url})
        catalog = (json_or_empty(resp).get("token") or {}).get("catalog") or []
        self._endpoint = self._pick_endpoint(catalog)
        self._token = token
        self.session.headers["X-Auth-Token"] = token
        self.logger.info("Authenticated to Keystone at %s (region=%s)", s.auth_url, s.region_name or "-")
        self.logger.debug("Block storage endpoint: %s", self._endpoint)

    def _pick_endpoint(self, catalog: Iterable[Mapping[str, Any]]) -> str:
        s = self.settings
        for svc in catalog:
            if svc.get("type") != VOLUME_SERVICE_TYPE:
                continue
            for ep in svc.get("endpoints") or []:
                if ep.get("interface") != s.interface:
                    continue
                region = ep.get("region_id") or ep.get("region") or ""
                if s.region_name and region != s.region_name:
                    continue
                return str(ep["url"]).rstrip("/")
        raise NotFoundError(
            code=3,
            msg=f"No {VOLUME_SERVICE_TYPE} {s.interface} endpoint in region '{s.region_name or '*'}'",
            context={"region": s.region_name, "interface": s.interface},
        )

    @property
    def endpoint(self) -> str:
        if self._endpoint is None:
            self.authenticate()
        assert self._endpoint is not None
        return self._endpoint

    def close(self) -> None:
        self.session.close()
        self._token = None
        self._endpoint = None

    def __enter__(self) -> "CinderClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.close()
        return False

    # ----------------------------
    # transport
    # ----------------------------

    def _call(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        target: str,
        headers: Optional[Dict[str, str]] = None,
        **kwargs: Any,
    ) -> requests.Response:
        url = f"{self.endpoint}/{path.lstrip('/')}"
        try:
            return request(self.session, method, url, operation=operation, target=target,
                           timeout=self.timeout_s, headers=headers, **kwargs)
        except ConnectivityError as e:
            # expired token: authenticate once and replay
            if (e.context or {}).get("status") != 401:
                raise
            self.logger.info("Keystone token rejected; re-authenticating")
            self.authenticate()
            return request(self.session, method, url, operation=operation, target=target,
                           timeout=self.timeout_s, headers=headers, **kwargs)

    # ----------------------------
    # volumes
    # ----------------------------

    def create_volume(
        self,
        name: str,
        size_gb: int,
        *,
        volume_type: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        vol: Dict[str, Any] = {"name": name, "size": int(size_gb)}
        if volume_type:
            vol["volume_type"] = volume_type
        if metadata:
            vol["metadata"] = dict(metadata)
        resp = self._call("POST", "volumes", operation="create volume", target=name, json={"volume": vol})
        return json_or_empty(resp).get("volume") or {}

    def get_volume(self, volume_id: str) -> Dict[str, Any]:
        resp = self._call("GET", f"volumes/{volume_id}", operation="get volume", target=volume_id)
        return json_or_empty(resp).get("volume") or {}

    def list_volumes(self, *, name: Optional[str] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {}
        if name:
            params["name"] = name
        if limit:
            params["limit"] = int(limit)
        resp = self._call("GET", "volumes/detail", operation="list volumes",
                          target=self.settings.project_name, params=params)
        return list(json_or_empty(resp).get("volumes") or [])

    def find_volume(self, name: str) -> Dict[str, Any]:
        vols = self.list_volumes(name=name)
        if not vols:
            raise NotFoundError(code=3, msg=f"Cinder volume {name} not found", context={"volume": name})
        return vols[0]

    def delete_volume(self, volume_id: str) -> None:
        self._call("DELETE", f"volumes/{volume_id}", operation="delete volume", target=volume_id)

    def volume_action(self, volume_id: str, action: str, body: Mapping[str, Any]) -> Dict[str, Any]:
        resp = self._call("POST", f"volumes/{volume_id}/action", operation=action, target=volume_id,
                          json={action: dict(body)})
        return json_or_empty(resp)

    def initialize_connection(self, volume_id: str, connector: Mapping[str, Any]) -> Dict[str, Any]:
        self.logger.info("Calling initialize_connection for volume %s with connector: %s", volume_id, dict(connector))
        return self.volume_action(volume_id, "os-initialize_connection", {"connector": dict(connector)})

    def terminate_connection(self, volume_id: str, connector: Mapping[str, Any]) -> None:
        self.volume_action(volume_id, "os-terminate_connection", {"connector": dict(connector)})

    def wait_for_volume_status(
        self,
        volume_id: str,
        status: str = "available",
        *,
        interval_s: float = 2.0,
        timeout_s: float = 180.0,
        stop_event: Optional[threading.Event] = None,
    ) -> Dict[str, Any]:
        def check() -> Optional[Dict[str, Any]]:
            vol = self.get_volume(volume_id)
            current = str(vol.get("status") or "")
            if current == status:
                return vol
            if current.startswith("error"):
                raise StorageError(
                    code=60,
                    msg=f"Cinder volume {volume_id} went to status '{current}' while waiting for '{status}'",
                    context={"volume": volume_id, "status": current},
                )
            return None

        return poll_until(
            check,
            interval_s=interval_s,
            timeout_s=timeout_s,
            stop_event=stop_event,
            operation_name=f"wait for volume {volume_id} {status}",
            logger=self.logger,
            volume=volume_id,
            status=status,
        )

    # ----------------------------
    # catalog import
    # ----------------------------

    def manage_existing(
        self,
        host: str,
        ref_name: str,
        name: str,
        volume_type: str,
        *,
        wait: bool = True,
        interval_s: float = 2.0,
        timeout_s: float = 180.0,
        stop_event: Optional[threading.Event] = None,
    ) -> Dict[str, Any]:
        """
        Import an existing backend LUN into Cinder. The backend renames the
        LUN to its own naming scheme once the volume is managed.
        """
        empty = [k for k, v in (("host", host), ("ref_name", ref_name), ("name", name),
                                ("volume_type", volume_type)) if not (v or "").strip()]
        if empty:
            raise ConfigError(code=2, msg=f"manage_existing: empty field(s): {', '.join(empty)}",
                              context={"missing": empty})
        body = {
            "volume": {
                "host": host,
                "ref": {"source-name": ref_name},
                "name": name,
                "volume_type": volume_type,
                "description": f"Volume for {name}",
                "bootable": False,
                "availability_zone": None,
            }
        }
        Log.step(self.logger, f"Managing backend LUN {ref_name} into Cinder as {name}")
        resp = self._call("POST", "manageable_volumes", operation="manage volume", target=ref_name,
                          headers={"OpenStack-API-Version": MANAGE_API_VERSION}, json=body)
        if resp.status_code != 202:
            raise StorageError(
                code=60,
                msg=f"manage volume failed for {ref_name}: expected status 202, got {resp.status_code}",
                context={"ref": ref_name, "status": resp.status_code},
            )
        vol = json_or_empty(resp).get("volume") or {}
        vol_id = str(vol.get("id") or "")
        if not vol_id:
            raise StorageError(code=60, msg=f"manage volume for {ref_name} returned no volume id",
                               context={"ref": ref_name})
        if wait:
            vol = self.wait_for_volume_status(vol_id, "available", interval_s=interval_s,
                                              timeout_s=timeout_s, stop_event=stop_event)
        Log.ok(self.logger, f"Managed {ref_name} as Cinder volume {vol_id}")
        return vol

    def list_services(self, binary: str = "cinder-volume") -> List[Dict[str, Any]]:
        resp = self._call("GET", "os-services", operation="list services", target=binary,
                          params={"binary": binary})
        return list(json_or_empty(resp).get("services") or [])

    def discover_backend_host(self, backend_hint: str = "") -> str:
        """First up+enabled cinder-volume host (``host@backend#pool``) containing ``backend_hint``."""
        hint = (backend_hint or "").lower()
        for svc in self.list_services("cinder-volume"):
            host = str(svc.get("host") or "")
            if svc.get("state") != "up" or svc.get("status") != "enabled":
                continue
            if hint and hint not in host.lower():
                continue
            self.logger.info("Using Cinder backend host %s", host)
            return host
        raise NotFoundError(
            code=3,
            msg=f"No up and enabled cinder-volume service matches '{backend_hint}'",
            context={"hint": backend_hint},
        )
