# SPDX-License-Identifier: LGPL-3.0-or-later
"""Tests for config loading and the typed value helpers."""
from __future__ import annotations

import pytest

from vdiskmigrate.core.config import as_bool, as_float, as_int, load_config, require, resolve_secret, section
from vdiskmigrate.core.exceptions import ConfigError


@pytest.mark.unit
class TestLoadConfig:
    def test_yaml(self, tmp_path):
        p = tmp_path / "run.yaml"
        p.write_text("vsphere:\n  host: vc\n  insecure: true\nreplication:\n  max_iterations: 5\n", encoding="utf-8")

        conf = load_config(p)

        assert conf["vsphere"] == {"host": "vc", "insecure": True}
        assert conf["replication"]["max_iterations"] == 5

    def test_json(self, tmp_path):
        p = tmp_path / "run.json"
        p.write_text('{"storage": {"vendor": "pure"}}', encoding="utf-8")
        assert load_config(str(p)) == {"storage": {"vendor": "pure"}}

    def test_empty_document(self, tmp_path):
        p = tmp_path / "empty.yaml"
        p.write_text("", encoding="utf-8")
        assert load_config(p) == {}

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError) as ei:
            load_config(tmp_path / "nope.yaml")
        assert ei.value.code == 2

    @pytest.mark.parametrize("name,text", [
        ("bad.yaml", "vsphere: [unclosed\n"),
        ("bad.json", "{not json"),
        ("list.yaml", "- a\n- b\n"),
    ])
    def test_malformed(self, tmp_path, name, text):
        p = tmp_path / name
        p.write_text(text, encoding="utf-8")
        with pytest.raises(ConfigError):
            load_config(p)


@pytest.mark.unit
class TestHelpers:
    def test_section(self):
        assert section({"a": {"x": 1}}, "a") == {"x": 1}
        assert section({}, "a") == {}
        with pytest.raises(ConfigError):
            section({"a": ["x"]}, "a")

    def test_require_reports_every_missing_key(self):
        with pytest.raises(ConfigError) as ei:
            require({"host": " ", "user": "root"}, ("host", "user", "password"), where="vsphere")
        assert ei.value.context == {"section": "vsphere", "missing": ["host", "password"]}

    def test_resolve_secret_prefers_inline(self, monkeypatch):
        monkeypatch.setenv("PURE_PASSWORD", "from-env")
        assert resolve_secret({"password": "inline", "password_env": "PURE_PASSWORD"}, "password") == "inline"
        assert resolve_secret({"password_env": "PURE_PASSWORD"}, "password") == "from-env"
        assert resolve_secret({"password_env": "UNSET_VARIABLE_FOR_TEST"}, "password") is None
        assert resolve_secret({}, "password") is None

    def test_as_bool(self):
        assert as_bool(None, True) is True
        assert as_bool("yes") is True
        assert as_bool("OFF") is False
        with pytest.raises(ConfigError):
            as_bool("maybe")

    def test_numbers(self):
        assert as_int("7", 1) == 7
        assert as_int("", 3) == 3
        assert as_float(None, 2.5) == 2.5
        assert as_float("0.5", 1.0) == 0.5
        with pytest.raises(ConfigError):
            as_int("seven", 1)
        with pytest.raises(ConfigError):
            as_float([], 1.0)
