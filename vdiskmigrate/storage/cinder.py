# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vdiskmigrate/storage/cinder.py
"""
Generic provider that drives an arbitrary Cinder backend through the block
storage API instead of talking to the array directly.

Mapping is expressed as Cinder connection actions: each ESXi initiator gets
an ``os-initialize_connection`` with a connector naming the initiator group
as its host, and the NAA is read back from the returned connection info.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set

from ..core.exceptions import NotFoundError, StorageError, VDiskMigrateError, wrap_storage
from ..core.logger import Log
from ..core.utils import GiB
from ..openstack.cinder_client import CatalogSettings, CinderClient
from .base import CinderMappingContext, StorageAccessInfo, StorageProvider, Volume, VolumeInfo
from .naa import naa_from_device_path, normalize_naa


def esxi_connector(initiator: str, group_name: str) -> Dict[str, str]:
    return {
        "initiator": initiator,
        "host": group_name,
        "platform": "VMware_ESXi",
        "os_type": "vmware",
    }


def naa_from_connection_info(resp: Optional[Mapping[str, Any]]) -> str:
    """
    NAA from an initialize_connection response, trying ``device_path``,
    ``naa``, ``wwn`` and ``target_wwn`` in that order. '' when none is usable.
    """
    if not resp:
        return ""
    data = ((resp.get("connection_info") or {}).get("data")) or {}
    if not isinstance(data, Mapping):
        return ""

    device_path = data.get("device_path")
    if isinstance(device_path, str):
        naa = naa_from_device_path(device_path)
        if naa:
            return naa
    for key in ("naa", "wwn"):
        v = data.get(key)
        if isinstance(v, str) and v.strip():
            return normalize_naa(v)
    target_wwn = data.get("target_wwn")
    if isinstance(target_wwn, list):
        target_wwn = target_wwn[0] if target_wwn else None
    if isinstance(target_wwn, str) and target_wwn.strip():
        return f"naa.{target_wwn.strip().lower()}"
    return ""


class CinderStorageProvider(StorageProvider):
    vendor = "cinder"
    naa_prefix = ""

    def __init__(
        self,
        logger: logging.Logger,
        access_info: StorageAccessInfo,
        *,
        client: Optional[CinderClient] = None,
        wait_interval_s: float = 2.0,
        wait_timeout_s: float = 180.0,
    ):
        super().__init__(logger, access_info)
        self._client = client
        self.wait_interval_s = wait_interval_s
        self.wait_timeout_s = wait_timeout_s
        # group -> initiators already registered by a precreate pass
        self._precreated: Dict[str, Set[str]] = {}

    # ----------------------------
    # session
    # ----------------------------

    def _settings(self) -> CatalogSettings:
        ai = self.access_info
        return CatalogSettings(
            auth_url=ai.hostname,
            username=ai.username,
            password=ai.password,
            project_name=ai.project_name,
            domain_name=ai.domain_name or "Default",
            region_name=ai.region_name,
            verify_ssl=ai.verify_ssl,
        )

    def connect(self) -> None:
        if self._client is None:
            self._client = CinderClient(self.logger, self._settings())
        self._client.authenticate()
        self._connected = True
        self.logger.info("Connected to Cinder at %s (region=%s)",
                         self.access_info.hostname, self.access_info.region_name or "-")

    def disconnect(self) -> None:
        if self._client is not None:
            self._client.close()
        super().disconnect()

    def _check_session(self) -> None:
        self.client.list_volumes(limit=1)

    @property
    def client(self) -> CinderClient:
        self._ensure_connected()
        assert self._client is not None
        return self._client

    # ----------------------------
    # volumes
    # ----------------------------

    @staticmethod
    def _volume_naa(vol: Mapping[str, Any]) -> str:
        meta = vol.get("metadata") or {}
        for key in ("naa", "wwn", "serial"):
            v = meta.get(key)
            if v:
                return normalize_naa(str(v))
        return ""

    def _to_volume(self, vol: Mapping[str, Any]) -> Volume:
        vol_id = str(vol.get("id") or "")
        return Volume(
            name=str(vol.get("name") or ""),
            size=int(vol.get("size") or 0) * GiB,
            id=vol_id,
            serial_number=vol_id,
            naa=self._volume_naa(vol),
            openstack_vol=vol_id or None,
        )

    def _to_info(self, vol: Mapping[str, Any]) -> VolumeInfo:
        return VolumeInfo(
            name=str(vol.get("name") or ""),
            size=int(vol.get("size") or 0) * GiB,
            created=str(vol.get("created_at") or ""),
            naa=self._volume_naa(vol),
        )

    def create_volume(self, name: str, size_bytes: int) -> Volume:
        gb = self.size_gib(size_bytes)
        Log.step(self.logger, f"Creating Cinder volume {name} ({gb} GiB)")
        created = self.client.create_volume(name, gb)
        vol_id = str(created.get("id") or "")
        if not vol_id:
            raise wrap_storage("create volume", name, size_gb=gb)
        vol = self.client.wait_for_volume_status(
            vol_id, "available", interval_s=self.wait_interval_s, timeout_s=self.wait_timeout_s,
        )
        return self._to_volume(vol)

    def delete_volume(self, name: str) -> None:
        vol = self.client.find_volume(name)
        self.client.delete_volume(str(vol["id"]))
        self.logger.info("Deleted Cinder volume %s (%s)", name, vol["id"])

    def get_volume_info(self, name: str) -> VolumeInfo:
        return self._to_info(self.client.find_volume(name))

    def list_all_volumes(self) -> List[VolumeInfo]:
        return [self._to_info(v) for v in self.client.list_volumes()]

    # ----------------------------
    # mapping
    # ----------------------------

    def create_or_update_initiator_group(self, group_name: str, hba_identifiers: Sequence[str]) -> CinderMappingContext:
        precreate = self.access_info.precreate_host
        self.logger.info("Initiator group %s: iqns=%s precreate=%s",
                         group_name, list(hba_identifiers), precreate)
        if not hba_identifiers:
            raise NotFoundError(code=3, msg="No initiators provided", context={"group": group_name})

        created: List[str] = []
        if precreate:
            done = self._precreated.setdefault(group_name, set())
            for idx, iqn in enumerate(hba_identifiers):
                if iqn in done:
                    self.logger.debug("Host for IQN %s already precreated for %s", iqn, group_name)
                elif self._precreate_host(group_name, idx, iqn):
                    done.add(iqn)
            created = [group_name for iqn in hba_identifiers if iqn in done]
        return CinderMappingContext(
            initiator_group_name=group_name,
            iqns=tuple(hba_identifiers),
            created_hosts=tuple(created),
        )

    def _precreate_host(self, group_name: str, idx: int, iqn: str) -> bool:
        """
        Register the initiator on the backend by attaching a throwaway 1 GiB
        volume once. Failures only cost the optimization.
        """
        temp_name = f"vj-init-{group_name}-{idx}"
        self.logger.info("Creating temp vol %s to precreate host for IQN %s", temp_name, iqn)
        try:
            temp = self.create_volume(temp_name, GiB)
        except VDiskMigrateError as e:
            Log.warn(self.logger, f"temp create failed: {e}")
            return False

        connector = esxi_connector(iqn, group_name)
        ok = True
        try:
            self.client.initialize_connection(temp.id, connector)
        except VDiskMigrateError as e:
            Log.warn(self.logger, f"init connection failed for {iqn}: {e}")
            ok = False
        for label, fn in (("terminate connection", lambda: self.client.terminate_connection(temp.id, connector)),
                          ("delete temp volume", lambda: self.client.delete_volume(temp.id))):
            try:
                fn()
            except VDiskMigrateError as e:
                Log.warn(self.logger, f"{label} failed for {temp_name}: {e}")
        return ok

    def map_volume_to_group(self, group_name: str, volume: Volume, ctx: Any) -> Volume:
        cctx = self._context(ctx, CinderMappingContext)
        if not cctx.iqns:
            raise StorageError(code=60, msg="iqns missing in mapping context", context={"volume": volume.name})
        vol = self.client.find_volume(volume.name)
        vol_id = str(vol["id"])

        connection_info: Optional[Dict[str, Any]] = None
        for iqn in cctx.iqns:
            resp = self.client.initialize_connection(vol_id, esxi_connector(iqn, group_name))
            if connection_info is None:
                connection_info = resp
            self.logger.info("Initialized connection for volume %s to iqn %s", volume.name, iqn)

        volume.id = vol_id
        volume.naa = naa_from_connection_info(connection_info)
        if not volume.naa:
            Log.warn(self.logger, f"Could not extract NAA from connection info for {volume.name}")
        self.logger.info("Extracted NAA: %s for volume %s", volume.naa, volume.name)
        return volume

    def unmap_volume_from_group(self, group_name: str, volume: Volume, ctx: Any) -> None:
        cctx = self._context(ctx, CinderMappingContext)
        if not cctx.iqns:
            return
        vol = self.client.find_volume(volume.name)
        for iqn in cctx.iqns:
            try:
                self.client.terminate_connection(str(vol["id"]), esxi_connector(iqn, group_name))
            except VDiskMigrateError as e:
                Log.warn(self.logger, f"terminate failed for {iqn}: {e}")

    def get_mapped_groups(self, volume: Volume, ctx: Any) -> List[str]:
        self._context(ctx, CinderMappingContext)
        vol = self.client.find_volume(volume.name)
        return [str(a["host_name"]) for a in (vol.get("attachments") or []) if a.get("host_name")]

    # ----------------------------
    # resolution
    # ----------------------------

    def resolve_cinder_volume_to_lun(self, catalog_id: str) -> Volume:
        return self._to_volume(self.client.get_volume(catalog_id))

    def get_volume_from_naa(self, naa: str) -> Volume:
        want = normalize_naa(naa)
        for v in self.client.list_volumes():
            if self._volume_naa(v) == want:
                return self._to_volume(v)
        raise NotFoundError(code=3, msg=f"No Cinder volume with NAA {naa}", context={"naa": naa})
