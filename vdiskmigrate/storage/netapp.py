# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vdiskmigrate/storage/netapp.py
"""
NetApp ONTAP provider over the ONTAP REST API.

LUN serial numbers are 12 ASCII characters; the NAA carries them hex-encoded
after the NetApp OUI prefix.
"""
from __future__ import annotations

import binascii
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

import requests

from ..core.exceptions import NotFoundError, StorageError, wrap_storage
from ..core.http import DEFAULT_TIMEOUT_S, json_or_empty, new_session, request
from ..core.logger import Log
from .base import NetAppMappingContext, StorageAccessInfo, StorageProvider, Volume, VolumeInfo
from .naa import NAA_PREFIX, normalize_naa

LUN_FIELDS = "serial_number,space,location,create_time,svm"


class NetAppStorageProvider(StorageProvider):
    vendor = "netapp"
    naa_prefix = "600a0980"

    def __init__(self, logger: logging.Logger, access_info: StorageAccessInfo, *, timeout_s: float = DEFAULT_TIMEOUT_S):
        super().__init__(logger, access_info)
        self.base_url = f"https://{access_info.hostname}/api"
        self.timeout_s = timeout_s
        self._session: Optional[requests.Session] = None

    # ----------------------------
    # http
    # ----------------------------

    def _call(self, method: str, path: str, *, operation: str, target: str, **kwargs: Any) -> Any:
        self._ensure_connected()
        assert self._session is not None
        resp = request(
            self._session, method, self.base_url + path,
            operation=operation, target=target, timeout=self.timeout_s, **kwargs,
        )
        return json_or_empty(resp)

    # ----------------------------
    # session
    # ----------------------------

    def connect(self) -> None:
        ai = self.access_info
        self._session = new_session(verify=ai.verify_ssl)
        self._session.auth = (ai.username, ai.password)
        # _call reconnects while not connected; mark first, undo on failure.
        self._connected = True
        try:
            cluster = self._cluster_info()
        except Exception:
            self.disconnect()
            raise
        self.logger.info("Connected to NetApp ONTAP cluster: %s, version: %s",
                         cluster.get("name"), (cluster.get("version") or {}).get("full"))

    def disconnect(self) -> None:
        if self._session is not None:
            self._session.close()
        self._session = None
        super().disconnect()

    def _cluster_info(self) -> Dict[str, Any]:
        return self._call("GET", "/cluster", operation="get cluster", target=self.access_info.hostname)

    def _check_session(self) -> None:
        self._cluster_info()

    # ----------------------------
    # NAA
    # ----------------------------

    def build_naa(self, serial: str) -> str:
        hex_serial = binascii.hexlify(serial.encode("ascii")).decode("ascii")
        return f"{NAA_PREFIX}{self.naa_prefix}{hex_serial.lower()}"

    def extract_serial(self, naa: str) -> str:
        """Decode the hex-encoded ASCII serial back out of a NetApp NAA."""
        body = normalize_naa(naa)[len(NAA_PREFIX):]
        if not body.startswith(self.naa_prefix):
            raise ValueError(f"NAA {naa!r} is not from NetApp (expected prefix: {self.naa_prefix})")
        try:
            return binascii.unhexlify(body[len(self.naa_prefix):]).decode("ascii")
        except (binascii.Error, UnicodeDecodeError) as e:
            raise ValueError(f"Failed to decode NAA serial from {naa!r}: {e}")

    # ----------------------------
    # LUN helpers
    # ----------------------------

    def _list_luns(self, name_filter: Optional[str] = None) -> List[Dict[str, Any]]:
        params = {"fields": LUN_FIELDS}
        if name_filter:
            params["name"] = name_filter
        data = self._call("GET", "/storage/luns", params=params, operation="list LUNs",
                          target=name_filter or self.access_info.hostname)
        return list(data.get("records") or [])

    def _lun_by_name(self, name: str) -> Dict[str, Any]:
        # Full paths match exactly; bare names (volume-xxx-cinder) need a wildcard.
        luns = self._list_luns(name if name.startswith("/") else f"*{name}*")
        if not luns:
            raise NotFoundError(code=3, msg=f"LUN {name} not found", context={"lun": name})
        return luns[0]

    def _to_volume(self, lun: Dict[str, Any]) -> Volume:
        serial = str(lun.get("serial_number") or "")
        return Volume(
            name=lun.get("name", ""),
            size=int((lun.get("space") or {}).get("size") or 0),
            id=lun.get("uuid", ""),
            serial_number=serial,
            naa=self.build_naa(serial) if serial else "",
        )

    def _to_info(self, lun: Dict[str, Any]) -> VolumeInfo:
        serial = str(lun.get("serial_number") or "")
        return VolumeInfo(
            name=lun.get("name", ""),
            size=int((lun.get("space") or {}).get("size") or 0),
            created=str(lun.get("create_time") or ""),
            naa=self.build_naa(serial) if serial else "",
        )

    def _default_volume_path_and_svm(self) -> Tuple[str, str]:
        """
        /vol/<volume> and SVM name of the first existing LUN. New LUNs land
        next to the ones the Cinder backend already manages.
        """
        luns = self._list_luns()
        if not luns:
            raise StorageError(code=60, msg="No existing LUNs found to determine volume path and SVM",
                               context={"host": self.access_info.hostname})
        lun = luns[0]
        parts = str(lun.get("name") or "").split("/")
        if len(parts) < 4 or parts[1] != "vol":
            raise StorageError(code=60, msg=f"Unexpected LUN path format: {lun.get('name')}",
                               context={"lun": lun.get("name")})
        svm = (lun.get("svm") or {}).get("name") or ""
        if not svm:
            raise StorageError(code=60, msg=f"SVM name not found for LUN: {lun.get('name')}",
                               context={"lun": lun.get("name")})
        volume_path = f"/vol/{parts[2]}"
        self.logger.info("Discovered NetApp volume path: %s, SVM: %s from LUN: %s", volume_path, svm, lun["name"])
        return volume_path, svm

    # ----------------------------
    # volumes
    # ----------------------------

    def create_volume(self, name: str, size_bytes: int) -> Volume:
        size = self.rounded_size(size_bytes)
        volume_path, svm = self._default_volume_path_and_svm()
        lun_path = f"{volume_path}/{name}"

        existing = self._list_luns(lun_path)
        if existing:
            self.logger.info("NetApp LUN %s already exists; reusing it", lun_path)
            return self._to_volume(existing[0])

        Log.step(self.logger, f"Creating NetApp LUN {lun_path} ({self.size_gib(size_bytes)} GiB) on SVM {svm}")
        body = {
            "name": lun_path,
            "svm": {"name": svm},
            "space": {"size": size},
            "os_type": "vmware",
        }
        data = self._call("POST", "/storage/luns", params={"return_records": "true"}, json=body,
                          operation="create LUN", target=lun_path)
        records = data.get("records") or []
        if not records:
            raise StorageError(code=60, msg=f"LUN creation succeeded but no records returned for {name}",
                               context={"lun": lun_path})
        vol = self._to_volume(records[0])
        self.logger.info("Created NetApp LUN: %s, serial: %s", vol.name, vol.serial_number)
        return vol

    def delete_volume(self, name: str) -> None:
        lun = self._lun_by_name(name)
        self.logger.info("Deleting NetApp LUN: %s (UUID: %s)", lun["name"], lun["uuid"])
        self._call("DELETE", f"/storage/luns/{lun['uuid']}", operation="delete LUN", target=name)

    def get_volume_info(self, name: str) -> VolumeInfo:
        luns = self._list_luns(name)
        if not luns:
            raise NotFoundError(code=3, msg=f"LUN {name} not found", context={"lun": name})
        return self._to_info(luns[0])

    def list_all_volumes(self) -> List[VolumeInfo]:
        return [self._to_info(lun) for lun in self._list_luns()]

    # ----------------------------
    # igroups
    # ----------------------------

    def _list_igroups(self) -> List[Dict[str, Any]]:
        data = self._call("GET", "/protocols/san/igroups", params={"fields": "uuid,name,initiators"},
                          operation="list igroups", target=self.access_info.hostname)
        return list(data.get("records") or [])

    def create_or_update_initiator_group(self, group_name: str, hba_identifiers: Sequence[str]) -> NetAppMappingContext:
        """Existing igroups holding any of the host's initiators; none are created."""
        wanted = {h.lower() for h in hba_identifiers}
        matched: List[Tuple[str, str]] = []
        for ig in self._list_igroups():
            names = [str(i.get("name") or "") for i in (ig.get("initiators") or [])]
            self.logger.debug("Checking igroup %s, initiators: %s", ig.get("name"), names)
            if any(n.lower() in wanted for n in names):
                self.logger.info("Adding igroup %s to mapping context", ig["name"])
                matched.append((ig["name"], ig["uuid"]))
        if not matched:
            raise NotFoundError(
                code=3,
                msg=f"No igroups found matching any of the provided IQNs/WWNs: {list(hba_identifiers)}",
                context={"group": group_name},
            )
        return NetAppMappingContext(igroups=tuple(matched), group_name=group_name)

    def _target_igroups(self, group_name: str, ctx: NetAppMappingContext) -> List[Tuple[str, Optional[str]]]:
        if not ctx.group_name or group_name == ctx.group_name:
            return list(ctx.igroups)
        # a restore of an original mapping names an igroup directly
        return [(group_name, ctx.igroup_uuid(group_name))]

    def _igroup_uuid(self, name: str, known: Optional[str]) -> str:
        if known:
            return known
        for ig in self._list_igroups():
            if ig.get("name") == name:
                return ig["uuid"]
        raise NotFoundError(code=3, msg=f"igroup {name} not found", context={"igroup": name})

    # ----------------------------
    # mapping
    # ----------------------------

    def map_volume_to_group(self, group_name: str, volume: Volume, ctx: Any) -> Volume:
        nctx = self._context(ctx, NetAppMappingContext)
        lun = self._lun_by_name(volume.name)
        svm = (lun.get("svm") or {}).get("name") or ""
        for ig_name, ig_uuid in self._target_igroups(group_name, nctx):
            self.logger.info("Mapping LUN %s to igroup %s", volume.name, ig_name)
            body = {
                "svm": {"name": svm},
                "lun": {"uuid": lun["uuid"]},
                "igroup": {"uuid": self._igroup_uuid(ig_name, ig_uuid)},
            }
            try:
                self._call("POST", "/protocols/san/lun-maps", json=body,
                           operation="map LUN", target=volume.name)
            except StorageError as e:
                if "already mapped" in str(e):
                    self.logger.info("LUN %s already mapped to igroup %s", volume.name, ig_name)
                    continue
                raise
        return volume

    def unmap_volume_from_group(self, group_name: str, volume: Volume, ctx: Any) -> None:
        nctx = self._context(ctx, NetAppMappingContext)
        try:
            lun = self._lun_by_name(volume.name)
        except NotFoundError as e:
            Log.warn(self.logger, f"Failed to get LUN {volume.name} for unmapping: {e}")
            return
        for ig_name, ig_uuid in self._target_igroups(group_name, nctx):
            self.logger.info("Unmapping LUN %s from igroup %s", volume.name, ig_name)
            try:
                uuid = self._igroup_uuid(ig_name, ig_uuid)
                self._call("DELETE", f"/protocols/san/lun-maps/{lun['uuid']}/{uuid}",
                           operation="unmap LUN", target=volume.name)
            except NotFoundError as e:
                Log.warn(self.logger, f"Mapping of LUN {volume.name} to igroup {ig_name} already gone: {e}")

    def get_mapped_groups(self, volume: Volume, ctx: Any) -> List[str]:
        self._context(ctx, NetAppMappingContext)
        lun = self._lun_by_name(volume.name)
        data = self._call("GET", "/protocols/san/lun-maps", params={"lun.uuid": lun["uuid"]},
                          operation="list LUN maps", target=volume.name)
        return [r["igroup"]["name"] for r in (data.get("records") or []) if (r.get("igroup") or {}).get("name")]

    # ----------------------------
    # resolution
    # ----------------------------

    def resolve_cinder_volume_to_lun(self, catalog_id: str) -> Volume:
        luns = self._list_luns(f"*{catalog_id}*")
        if not luns:
            raise NotFoundError(code=3, msg=f"No LUN found matching Cinder volume ID {catalog_id}",
                                context={"catalog_id": catalog_id})
        vol = self._to_volume(luns[0])
        vol.openstack_vol = catalog_id
        self.logger.info("Resolved Cinder volume %s to LUN %s", catalog_id, vol.name)
        return vol

    def get_volume_from_naa(self, naa: str) -> Volume:
        try:
            serial = self.extract_serial(naa)
        except ValueError as e:
            raise wrap_storage("resolve NAA", naa, e)
        for lun in self._list_luns():
            if str(lun.get("serial_number") or "").upper() == serial.upper():
                return self._to_volume(lun)
        raise NotFoundError(code=3, msg=f"No NetApp LUN found with NAA {naa} (serial: {serial})",
                            context={"naa": naa})
