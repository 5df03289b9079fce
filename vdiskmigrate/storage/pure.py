# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vdiskmigrate/storage/pure.py
"""Pure Storage FlashArray provider (purestorage REST 1.x client)."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence

import purestorage

from ..core.exceptions import ConnectivityError, NotFoundError, wrap_storage
from ..core.logger import Log
from ..core.retry import retry_operation
from .base import PureMappingContext, StorageAccessInfo, StorageProvider, Volume, VolumeInfo
from .naa import compact_wwn, fc_uid_to_wwpn

ERR_MSG_NOT_EXIST = "does not exist"
ERR_MSG_ALREADY_EXISTS = "already exists"
ERR_MSG_COULD_NOT_BE_FOUND = "could not be found"
ERR_MSG_NOT_CONNECTED = "is not connected"


def _is_http_error(err: Exception, *markers: str) -> bool:
    if not isinstance(err, purestorage.PureHTTPError):
        return False
    text = str(getattr(err, "text", "") or err)
    return err.code == 400 and any(m in text for m in markers)


class PureStorageProvider(StorageProvider):
    """
    Volumes map to Purity hosts directly; host groups are not used because a
    host cannot belong to two groups.
    """

    vendor = "pure"
    naa_prefix = "624a9370"

    def __init__(self, logger: logging.Logger, access_info: StorageAccessInfo):
        super().__init__(logger, access_info)
        self._array: Optional[Any] = None

    # ----------------------------
    # session
    # ----------------------------

    def connect(self) -> None:
        ai = self.access_info
        try:
            self._array = purestorage.FlashArray(
                ai.hostname,
                username=ai.username,
                password=ai.password,
                verify_https=ai.verify_ssl,
            )
            array_info = retry_operation(
                lambda: self._array.get(),
                max_attempts=3,
                operation_name="pure login",
                exceptions=(purestorage.PureError,),
                logger=self.logger,
            )
        except purestorage.PureError as e:
            self._array = None
            raise ConnectivityError(
                code=61,
                msg=f"Failed to connect to FlashArray {ai.hostname}: {e}",
                cause=e,
                context={"host": ai.hostname},
            )
        self._connected = True
        self.logger.info("Connected to Pure array: name='%s', id='%s'",
                         array_info.get("array_name"), array_info.get("id"))

    def disconnect(self) -> None:
        if self._array is not None:
            try:
                self._array.invalidate_cookie()
            except purestorage.PureError as e:
                Log.warn(self.logger, f"Pure session close failed: {e}")
        self._array = None
        super().disconnect()

    def _check_session(self) -> None:
        self.array.get()

    @property
    def array(self) -> Any:
        self._ensure_connected()
        return self._array

    # ----------------------------
    # volumes
    # ----------------------------

    def _to_volume(self, v: Dict[str, Any]) -> Volume:
        serial = str(v.get("serial") or "")
        return Volume(
            name=v["name"],
            size=int(v.get("size") or 0),
            id=serial,
            serial_number=serial,
            naa=self.build_naa(serial) if serial else "",
        )

    def _to_info(self, v: Dict[str, Any]) -> VolumeInfo:
        serial = str(v.get("serial") or "")
        return VolumeInfo(
            name=v["name"],
            size=int(v.get("size") or 0),
            created=str(v.get("created") or ""),
            naa=self.build_naa(serial) if serial else "",
        )

    def _get(self, name: str) -> Dict[str, Any]:
        try:
            return self.array.get_volume(name)
        except purestorage.PureError as e:
            if _is_http_error(e, ERR_MSG_NOT_EXIST, ERR_MSG_COULD_NOT_BE_FOUND):
                raise NotFoundError(code=3, msg=f"Pure volume {name} not found", cause=e,
                                    context={"volume": name})
            raise wrap_storage("get volume", name, e)

    def create_volume(self, name: str, size_bytes: int) -> Volume:
        size = self.rounded_size(size_bytes)
        Log.step(self.logger, f"Creating Pure volume {name} ({self.size_gib(size_bytes)} GiB)")
        try:
            created = self.array.create_volume(name, size)
        except purestorage.PureError as e:
            if not _is_http_error(e, ERR_MSG_ALREADY_EXISTS):
                raise wrap_storage("create volume", name, e, size=size)
            self.logger.info("Pure volume %s already exists; reusing it", name)
            created = self._get(name)
        vol = self._to_volume(created)
        if not vol.serial_number:
            vol = self._to_volume(self._get(name))
        return vol

    def delete_volume(self, name: str) -> None:
        try:
            self.array.destroy_volume(name)
            self.array.eradicate_volume(name)
        except purestorage.PureError as e:
            if _is_http_error(e, ERR_MSG_NOT_EXIST, ERR_MSG_COULD_NOT_BE_FOUND):
                self.logger.warning("Volume deletion failed with message: %s", getattr(e, "text", e))
                return
            raise wrap_storage("delete volume", name, e)
        self.logger.info("Deleted Pure volume %s", name)

    def get_volume_info(self, name: str) -> VolumeInfo:
        return self._to_info(self._get(name))

    def list_all_volumes(self) -> List[VolumeInfo]:
        try:
            vols = self.array.list_volumes()
        except purestorage.PureError as e:
            raise wrap_storage("list volumes", self.access_info.hostname, e)
        return [self._to_info(v) for v in vols]

    # ----------------------------
    # mapping
    # ----------------------------

    def create_or_update_initiator_group(self, group_name: str, hba_identifiers: Sequence[str]) -> PureMappingContext:
        """
        Pick the Purity hosts whose IQN or FC WWN matches one of the ESXi
        adapters. Nothing is created on the array.
        """
        wanted_iqns = {h.lower() for h in hba_identifiers if h.lower().startswith("iqn.")}
        wanted_wwns = set()
        for h in hba_identifiers:
            if not h.lower().startswith("fc."):
                continue
            try:
                wanted_wwns.add(compact_wwn(fc_uid_to_wwpn(h)))
            except ValueError as e:
                Log.warn(self.logger, f"Failed to extract WWPN from adapter {h}: {e}")

        try:
            hosts = self.array.list_hosts()
        except purestorage.PureError as e:
            raise wrap_storage("list hosts", self.access_info.hostname, e)

        matched: List[str] = []
        for h in hosts:
            iqns = [str(i).lower() for i in (h.get("iqn") or [])]
            wwns = [compact_wwn(str(w)) for w in (h.get("wwn") or [])]
            self.logger.debug("Checking host %s, iqns: %s, wwns: %s", h["name"], iqns, wwns)
            if wanted_iqns.intersection(iqns) or wanted_wwns.intersection(wwns):
                if h["name"] not in matched:
                    matched.append(h["name"])

        if not matched:
            raise NotFoundError(
                code=3,
                msg=f"No Pure hosts match any of the provided IQNs/FC adapters: {list(hba_identifiers)}",
                context={"group": group_name},
            )
        self.logger.info("Initiator group %s resolves to Pure hosts: %s", group_name, ", ".join(matched))
        return PureMappingContext(hosts=tuple(matched), group_name=group_name)

    def _target_hosts(self, group_name: str, ctx: PureMappingContext) -> List[str]:
        # The migration group fans out to the matched hosts; any other name is a Purity host.
        if not ctx.group_name or group_name == ctx.group_name:
            return list(ctx.hosts)
        return [group_name]

    def map_volume_to_group(self, group_name: str, volume: Volume, ctx: Any) -> Volume:
        pctx = self._context(ctx, PureMappingContext)
        for host in self._target_hosts(group_name, pctx):
            self.logger.info("Connecting host %s to volume %s", host, volume.name)
            try:
                self.array.connect_host(host, volume.name)
            except purestorage.PureError as e:
                if _is_http_error(e, ERR_MSG_ALREADY_EXISTS):
                    self.logger.debug("Connection already exists for host %s and volume %s", host, volume.name)
                    continue
                raise wrap_storage("connect host", volume.name, e, host=host)
        return volume

    def unmap_volume_from_group(self, group_name: str, volume: Volume, ctx: Any) -> None:
        pctx = self._context(ctx, PureMappingContext)
        for host in self._target_hosts(group_name, pctx):
            self.logger.info("Disconnecting host %s from volume %s", host, volume.name)
            try:
                self.array.disconnect_host(host, volume.name)
            except purestorage.PureError as e:
                if _is_http_error(e, ERR_MSG_NOT_CONNECTED, ERR_MSG_NOT_EXIST, ERR_MSG_COULD_NOT_BE_FOUND):
                    self.logger.warning("Disconnection failed with message: %s", getattr(e, "text", e))
                    continue
                raise wrap_storage("disconnect host", volume.name, e, host=host)

    def get_mapped_groups(self, volume: Volume, ctx: Any) -> List[str]:
        self._context(ctx, PureMappingContext)
        try:
            conns = self.array.list_volume_private_connections(volume.name)
        except purestorage.PureError as e:
            raise wrap_storage("list volume connections", volume.name, e)
        return [c["host"] for c in conns if c.get("host")]

    # ----------------------------
    # resolution
    # ----------------------------

    @staticmethod
    def cinder_volume_name(catalog_id: str) -> str:
        return f"volume-{catalog_id}-cinder"

    def resolve_cinder_volume_to_lun(self, catalog_id: str) -> Volume:
        name = self.cinder_volume_name(catalog_id)
        vol = self._to_volume(self._get(name))
        vol.openstack_vol = catalog_id
        self.logger.info("Resolved cinder volume %s to Pure volume %s (%s)", catalog_id, vol.name, vol.naa)
        return vol

    def get_volume_from_naa(self, naa: str) -> Volume:
        try:
            serial = self.extract_serial(naa)
        except ValueError as e:
            raise wrap_storage("resolve NAA", naa, e)
        try:
            vols = self.array.list_volumes()
        except purestorage.PureError as e:
            raise wrap_storage("list volumes", self.access_info.hostname, e)
        for v in vols:
            if str(v.get("serial") or "").upper() == serial:
                return self._to_volume(v)
        raise NotFoundError(code=3, msg=f"No Pure volume with NAA {naa}", context={"naa": naa})
