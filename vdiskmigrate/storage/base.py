# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vdiskmigrate/storage/base.py
"""
Storage provider contract.

A provider wraps one array (or the generic Cinder backend) and exposes the
small set of operations the accelerated copy path needs: volume lifecycle,
initiator-group mapping and NAA resolution. Mapping state travels in a
vendor-specific MappingContext produced by ``create_or_update_initiator_group``
and consumed only by the provider that produced it.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, ClassVar, List, Mapping, Optional, Sequence, Tuple, Type, TypeVar, Union

from ..core.config import as_bool, require, resolve_secret
from ..core.exceptions import ConnectivityError, StateMismatchError
from ..core.utils import U
from .naa import build_naa, extract_serial


@dataclass
class Volume:
    name: str
    size: int = 0
    id: str = ""
    serial_number: str = ""
    naa: str = ""
    # Cinder volume id once the array volume has been managed into the catalog
    openstack_vol: Optional[str] = None


@dataclass
class VolumeInfo:
    name: str
    size: int = 0
    created: str = ""
    naa: str = ""


@dataclass(frozen=True)
class PureMappingContext:
    vendor: ClassVar[str] = "pure"
    hosts: Tuple[str, ...] = ()
    # initiator group the hosts were resolved for; other names are Purity hosts
    group_name: str = ""


@dataclass(frozen=True)
class NetAppMappingContext:
    vendor: ClassVar[str] = "netapp"
    # igroup name -> igroup uuid
    igroups: Tuple[Tuple[str, str], ...] = ()
    group_name: str = ""

    def igroup_uuid(self, name: str) -> Optional[str]:
        for n, uuid in self.igroups:
            if n == name:
                return uuid
        return None


@dataclass(frozen=True)
class CinderMappingContext:
    vendor: ClassVar[str] = "cinder"
    initiator_group_name: str = ""
    iqns: Tuple[str, ...] = ()
    created_hosts: Tuple[str, ...] = ()


MappingContext = Union[PureMappingContext, NetAppMappingContext, CinderMappingContext]
CtxT = TypeVar("CtxT", PureMappingContext, NetAppMappingContext, CinderMappingContext)


@dataclass
class StorageAccessInfo:
    hostname: str
    username: str = ""
    password: str = field(default="", repr=False)
    skip_ssl_verification: bool = False
    vendor_type: str = ""

    # generic Cinder backend only
    project_name: str = ""
    domain_name: str = "Default"
    region_name: str = ""
    precreate_host: bool = False

    @property
    def verify_ssl(self) -> bool:
        return not self.skip_ssl_verification

    @classmethod
    def from_config(cls, conf: Mapping[str, Any]) -> "StorageAccessInfo":
        """Build from the ``storage`` section."""
        require(conf, ("vendor", "hostname"), where="storage")
        return cls(
            hostname=str(conf["hostname"]).strip(),
            username=str(conf.get("username") or ""),
            password=resolve_secret(conf, "password") or "",
            skip_ssl_verification=as_bool(conf.get("skip_ssl_verification"), False),
            vendor_type=str(conf["vendor"]).strip().lower(),
            project_name=str(conf.get("project_name") or ""),
            domain_name=str(conf.get("domain_name") or "Default"),
            region_name=str(conf.get("region_name") or ""),
            precreate_host=as_bool(conf.get("precreate_host"), False),
        )


class StorageProvider(ABC):
    """Base class for array drivers."""

    vendor: ClassVar[str] = ""
    naa_prefix: ClassVar[str] = ""

    def __init__(self, logger: logging.Logger, access_info: StorageAccessInfo):
        self.logger = logger
        self.access_info = access_info
        self._connected = False

    # ----------------------------
    # session
    # ----------------------------

    @abstractmethod
    def connect(self) -> None:
        ...

    def disconnect(self) -> None:
        self._connected = False

    def is_connected(self) -> bool:
        return self._connected

    @abstractmethod
    def _check_session(self) -> None:
        """One cheap authenticated call; raises on failure."""

    def validate_credentials(self) -> None:
        """Reconnect if the session was dropped, then make one authenticated call."""
        if not self.is_connected():
            self.connect()
        try:
            self._check_session()
        except ConnectivityError:
            raise
        except Exception as e:
            raise ConnectivityError(
                code=61,
                msg=f"{self.who_am_i()} credential validation failed: {e}",
                cause=e,
                context={"host": self.access_info.hostname},
            )

    def _ensure_connected(self) -> None:
        if not self.is_connected():
            self.connect()

    def __enter__(self) -> "StorageProvider":
        self._ensure_connected()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.disconnect()
        return False

    # ----------------------------
    # volumes
    # ----------------------------

    @abstractmethod
    def create_volume(self, name: str, size_bytes: int) -> Volume:
        ...

    @abstractmethod
    def delete_volume(self, name: str) -> None:
        ...

    @abstractmethod
    def get_volume_info(self, name: str) -> VolumeInfo:
        ...

    @abstractmethod
    def list_all_volumes(self) -> List[VolumeInfo]:
        ...

    def get_all_volume_naas(self) -> List[str]:
        return [v.naa for v in self.list_all_volumes() if v.naa]

    # ----------------------------
    # mapping
    # ----------------------------

    @abstractmethod
    def create_or_update_initiator_group(self, group_name: str, hba_identifiers: Sequence[str]) -> MappingContext:
        ...

    @abstractmethod
    def map_volume_to_group(self, group_name: str, volume: Volume, ctx: MappingContext) -> Volume:
        ...

    @abstractmethod
    def unmap_volume_from_group(self, group_name: str, volume: Volume, ctx: MappingContext) -> None:
        ...

    @abstractmethod
    def get_mapped_groups(self, volume: Volume, ctx: MappingContext) -> List[str]:
        ...

    # ----------------------------
    # resolution
    # ----------------------------

    @abstractmethod
    def resolve_cinder_volume_to_lun(self, catalog_id: str) -> Volume:
        ...

    @abstractmethod
    def get_volume_from_naa(self, naa: str) -> Volume:
        ...

    def who_am_i(self) -> str:
        return self.vendor

    # ----------------------------
    # helpers
    # ----------------------------

    @staticmethod
    def rounded_size(size_bytes: int) -> int:
        """Bytes rounded up to a whole GiB."""
        return U.round_up_to_gib(size_bytes)

    @staticmethod
    def size_gib(size_bytes: int) -> int:
        return U.ceil_gib(size_bytes)

    def build_naa(self, serial: str) -> str:
        return build_naa(self.naa_prefix, serial)

    def extract_serial(self, naa: str) -> str:
        return extract_serial(naa, self.naa_prefix)

    def _context(self, ctx: Any, expected: Type[CtxT]) -> CtxT:
        if not isinstance(ctx, expected):
            raise StateMismatchError(
                code=4,
                msg=f"{self.who_am_i()} provider got a foreign mapping context: {type(ctx).__name__}",
                context={"expected": expected.__name__, "got": type(ctx).__name__},
            )
        return ctx


__all__ = [
    "CinderMappingContext",
    "MappingContext",
    "NetAppMappingContext",
    "PureMappingContext",
    "StorageAccessInfo",
    "StorageProvider",
    "Volume",
    "VolumeInfo",
]
