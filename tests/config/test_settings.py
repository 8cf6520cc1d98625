"""Tests for loading edit settings from YAML."""

from decimal import Decimal

import pytest
import yaml

from invoice_config import DEFAULT_SETTINGS_PATH, get_active_settings
from invoice_config.loader import compute_checksum, load_yaml_file
from invoice_kernel.domain.settings import DEFAULT_SETTINGS, EditSettings


def write_settings(tmp_path, body):
    path = tmp_path / "settings.yaml"
    path.write_text(body, encoding="utf-8")
    return path


class TestDefaults:
    def test_packaged_defaults_match_code_defaults(self):
        assert get_active_settings() == DEFAULT_SETTINGS

    def test_packaged_file_is_versioned(self):
        assert load_yaml_file(DEFAULT_SETTINGS_PATH)["version"] == 1

    def test_config_trace_logged(self, captured_logs):
        get_active_settings()
        (trace,) = [r for r in captured_logs() if r["message"] == "INVOICE_CONFIG_TRACE"]
        assert trace["source"] == str(DEFAULT_SETTINGS_PATH)
        assert len(trace["checksum"]) == 64
        assert trace["logger"] == "invoice_kernel.config"


class TestOverrides:
    def test_file_values(self, tmp_path):
        path = write_settings(
            tmp_path,
            "edit_settings:\n  low_stock_threshold: 3\n  total_tolerance: '0.05'\n",
        )
        settings = get_active_settings(path)
        assert settings.low_stock_threshold == 3
        assert settings.total_tolerance == Decimal("0.05")
        assert settings.currency == "MYR"

    def test_keyword_overrides(self):
        settings = get_active_settings(overrides={"old_invoice_days": 90})
        assert settings.old_invoice_days == 90

    def test_checksum_changes_with_values(self):
        assert compute_checksum({"a": 1}) != compute_checksum({"a": 2})
        assert compute_checksum({"a": 1, "b": 2}) == compute_checksum({"b": 2, "a": 1})


class TestRejections:
    def test_unknown_key(self, tmp_path):
        path = write_settings(tmp_path, "edit_settings:\n  low_stok_threshold: 3\n")
        with pytest.raises(ValueError, match="Unknown edit settings"):
            get_active_settings(path)

    def test_missing_section(self, tmp_path):
        with pytest.raises(ValueError, match="edit_settings"):
            get_active_settings(write_settings(tmp_path, "version: 1\n"))

    def test_empty_file(self, tmp_path):
        with pytest.raises(ValueError):
            get_active_settings(write_settings(tmp_path, ""))

    def test_invalid_value(self):
        with pytest.raises(ValueError):
            get_active_settings(overrides={"conflict_recheck_seconds": 0})

    def test_malformed_yaml(self, tmp_path):
        with pytest.raises(yaml.YAMLError):
            get_active_settings(write_settings(tmp_path, "edit_settings: [unclosed\n"))

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            get_active_settings(tmp_path / "absent.yaml")

    def test_negative_threshold_rejected_directly(self):
        with pytest.raises(ValueError):
            EditSettings(low_stock_threshold=-1)
