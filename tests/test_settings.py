"""
Tests for acorn_builder.config.settings module.

This test suite covers:
- Settings loading and saving
- Default settings initialization
- Settings persistence to JSON file
- Type conversion helpers (get_int, get_float, get_path)
- Error handling for corrupted settings files
"""

import json
from pathlib import Path

from acorn_builder.config import settings


class TestLoadSettings:
    """Tests for load_settings() function."""

    def test_load_defaults_when_no_file(self, tmp_path, monkeypatch):
        """Test that default settings are loaded when file doesn't exist."""
        monkeypatch.setattr(settings, "SETTINGS_PATH", tmp_path / "missing" / "settings.json")

        settings.settings_store.values = {}
        settings.load_settings()

        assert settings.settings_store.values["fetch_max_workers"] == 4
        assert settings.settings_store.values["ready_sentinel"] == "___SHELL_READY___"

    def test_load_merges_with_defaults(
        self, temp_settings_file, sample_settings_data, monkeypatch
    ):
        """Test that loaded settings override defaults and keep the rest."""
        temp_settings_file.write_text(json.dumps(sample_settings_data))
        monkeypatch.setattr(settings, "SETTINGS_PATH", temp_settings_file)

        settings.settings_store.values = {}
        settings.load_settings()

        assert settings.settings_store.values["fetch_max_workers"] == 8
        assert settings.settings_store.values["squashfs_compression"] == "xz"
        assert settings.settings_store.values["fetch_retries"] == 2

    def test_load_corrupted_file_uses_defaults(self, temp_settings_file, monkeypatch):
        """Test that a corrupted JSON file falls back to defaults."""
        temp_settings_file.write_text("{not json")
        monkeypatch.setattr(settings, "SETTINGS_PATH", temp_settings_file)

        settings.load_settings()

        assert settings.settings_store.values == settings.DEFAULT_SETTINGS

    def test_load_ignores_non_object_document(self, temp_settings_file, monkeypatch):
        temp_settings_file.write_text(json.dumps(["not", "a", "dict"]))
        monkeypatch.setattr(settings, "SETTINGS_PATH", temp_settings_file)

        settings.load_settings()

        assert settings.settings_store.values == settings.DEFAULT_SETTINGS


class TestSetSetting:
    """Tests for set_setting() persistence."""

    def test_set_setting_persists(self, tmp_path):
        """Test that set_setting writes the whole store to disk."""
        settings.set_setting("qemu_memory_gb", 8)

        saved = json.loads(settings.SETTINGS_PATH.read_text())
        assert saved["qemu_memory_gb"] == 8
        assert settings.get_setting("qemu_memory_gb") == 8


class TestTypedGetters:
    """Tests for typed accessors."""

    def test_get_int_converts_strings(self):
        settings.settings_store.values["fetch_retries"] = "5"

        assert settings.get_int("fetch_retries") == 5

    def test_get_int_falls_back_on_garbage(self):
        settings.settings_store.values["fetch_retries"] = "many"

        assert settings.get_int("fetch_retries", 2) == 2

    def test_get_float(self):
        settings.settings_store.values["fetch_backoff_seconds"] = "1.5"

        assert settings.get_float("fetch_backoff_seconds") == 1.5

    def test_get_float_missing_key_uses_default(self):
        assert settings.get_float("no_such_key", 3.0) == 3.0

    def test_get_path_expands_user(self):
        settings.settings_store.values["cache_dir"] = "~/acorn-cache"

        assert settings.get_path("cache_dir") == Path("~/acorn-cache").expanduser()

    def test_get_path_uses_default_when_unset(self):
        del settings.settings_store.values["cache_dir"]

        assert settings.get_path("cache_dir") == Path(settings.DEFAULT_CACHE_DIR)
