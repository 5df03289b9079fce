# SPDX-License-Identifier: LGPL-3.0-or-later
"""Tests for the provider contract helpers and the vendor factory."""
from __future__ import annotations

import logging
import unittest
from unittest.mock import patch

import pytest

from vdiskmigrate.core.exceptions import ConfigError, StateMismatchError
from vdiskmigrate.core.utils import GiB
from vdiskmigrate.storage.base import (
    CinderMappingContext,
    NetAppMappingContext,
    PureMappingContext,
    StorageAccessInfo,
    StorageProvider,
    Volume,
)
from vdiskmigrate.storage.cinder import CinderStorageProvider
from vdiskmigrate.storage.factory import StorageVendor, create_storage_provider, resolve_vendor
from vdiskmigrate.storage.netapp import NetAppStorageProvider
from vdiskmigrate.storage.pure import PureStorageProvider


@pytest.mark.unit
class TestSizing:
    def test_rounds_up_to_whole_gib(self):
        assert StorageProvider.rounded_size(3 * GiB + 200) == 4 * GiB
        assert StorageProvider.size_gib(3 * GiB + 200) == 4

    def test_exact_gib_is_unchanged(self):
        assert StorageProvider.rounded_size(2 * GiB) == 2 * GiB

    def test_zero(self):
        assert StorageProvider.size_gib(0) == 0


@pytest.mark.unit
class TestMappingContexts:
    def test_contexts_are_frozen(self):
        ctx = PureMappingContext(hosts=("esx01",), group_name="g")
        with pytest.raises(Exception):
            ctx.hosts = ("other",)  # type: ignore[misc]

    def test_netapp_igroup_lookup(self):
        ctx = NetAppMappingContext(igroups=(("esx-ig", "uuid-1"),), group_name="g")
        assert ctx.igroup_uuid("esx-ig") == "uuid-1"
        assert ctx.igroup_uuid("missing") is None

    def test_vendor_tags(self):
        assert PureMappingContext.vendor == "pure"
        assert NetAppMappingContext.vendor == "netapp"
        assert CinderMappingContext.vendor == "cinder"


@pytest.mark.unit
class TestForeignContext(unittest.TestCase):
    def setUp(self):
        self.logger = logging.getLogger("vdiskmigrate.tests.storage")
        self.info = StorageAccessInfo(hostname="array.example.com", username="u", password="p")

    def test_pure_rejects_netapp_context(self):
        provider = PureStorageProvider(self.logger, self.info)
        with self.assertRaises(StateMismatchError) as cm:
            provider.map_volume_to_group("g", Volume(name="v"), NetAppMappingContext())
        self.assertEqual(cm.exception.context["expected"], "PureMappingContext")

    def test_netapp_rejects_cinder_context(self):
        provider = NetAppStorageProvider(self.logger, self.info)
        with self.assertRaises(StateMismatchError):
            provider.unmap_volume_from_group("g", Volume(name="v"), CinderMappingContext(iqns=("iqn.x",)))

    def test_cinder_rejects_pure_context(self):
        provider = CinderStorageProvider(self.logger, self.info)
        with self.assertRaises(StateMismatchError):
            provider.get_mapped_groups(Volume(name="v"), PureMappingContext(hosts=("h",)))


@pytest.mark.unit
class TestStorageAccessInfo(unittest.TestCase):
    def test_from_config(self):
        info = StorageAccessInfo.from_config({
            "vendor": "Pure",
            "hostname": " array.example.com ",
            "username": "pureuser",
            "password": "secret",
            "skip_ssl_verification": True,
        })
        self.assertEqual(info.hostname, "array.example.com")
        self.assertEqual(info.vendor_type, "pure")
        self.assertFalse(info.verify_ssl)
        self.assertNotIn("secret", repr(info))

    @patch.dict("os.environ", {"ARRAY_PW": "from-env"})
    def test_password_from_env(self):
        info = StorageAccessInfo.from_config({"vendor": "netapp", "hostname": "h", "password_env": "ARRAY_PW"})
        self.assertEqual(info.password, "from-env")

    def test_missing_keys(self):
        with self.assertRaises(ConfigError):
            StorageAccessInfo.from_config({"vendor": "pure"})


@pytest.mark.unit
class TestFactory(unittest.TestCase):
    def setUp(self):
        self.logger = logging.getLogger("vdiskmigrate.tests.storage")
        self.info = StorageAccessInfo(hostname="h")

    def test_vendor_aliases(self):
        self.assertIs(resolve_vendor("PURE"), StorageVendor.PURE)
        self.assertIs(resolve_vendor("ontap"), StorageVendor.NETAPP)
        self.assertIs(resolve_vendor(" openstack "), StorageVendor.CINDER)
        self.assertIs(resolve_vendor(StorageVendor.NETAPP), StorageVendor.NETAPP)

    def test_builds_each_provider(self):
        self.assertIsInstance(create_storage_provider("pure", self.info, self.logger), PureStorageProvider)
        self.assertIsInstance(create_storage_provider("netapp", self.info, self.logger), NetAppStorageProvider)
        self.assertIsInstance(create_storage_provider("cinder", self.info, self.logger), CinderStorageProvider)

    def test_provider_is_not_connected(self):
        provider = create_storage_provider(StorageVendor.PURE, self.info, self.logger)
        self.assertFalse(provider.is_connected())
        self.assertEqual(provider.who_am_i(), "pure")

    def test_unknown_vendor(self):
        with self.assertRaises(ConfigError) as cm:
            resolve_vendor("emc")
        self.assertEqual(cm.exception.code, 2)
