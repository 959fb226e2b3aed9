"""Settings storage for builder configuration."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


SETTINGS_PATH = Path(
    os.environ.get(
        "ACORN_BUILDER_SETTINGS_PATH",
        Path.home() / ".config" / "acorn-builder" / "settings.json",
    )
)

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_CACHE_DIR = str(Path.home() / ".cache" / "acorn-builder")
DEFAULT_READY_SENTINEL = "___SHELL_READY___"
DEFAULT_PROMPT_SENTINEL = "___PROMPT___"
DEFAULT_FAILURE_SIGNATURES = [
    "Kernel panic",
    "not syncing",
    "Unable to mount root",
    "can't find /init",
    "emergency shell",
]

DEFAULT_SETTINGS: dict[str, Any] = {
    "cache_dir": DEFAULT_CACHE_DIR,
    "fetch_max_workers": 4,
    "fetch_retries": 2,
    "fetch_backoff_seconds": 0.5,
    "fetch_timeout_seconds": 600,
    "stage_lock_timeout_seconds": 300,
    "boot_timeout_seconds": 120,
    "ready_sentinel": DEFAULT_READY_SENTINEL,
    "prompt_sentinel": DEFAULT_PROMPT_SENTINEL,
    "failure_signatures": list(DEFAULT_FAILURE_SIGNATURES),
    "squashfs_compression": "zstd",
    "squashfs_block_size": "1M",
    "source_date_epoch": 1700000000,
    "iso_label": "ACORNOS",
    "qemu_memory_gb": 4,
    "qemu_smp": 4,
    "qemu_cpu_mode": "max",
    "qemu_disk_size": None,
    "qemu_uefi": False,
    "min_free_disk_gb": 10,
    "preflight_mirror_url": "https://dl-cdn.alpinelinux.org/alpine/",
    "preflight_network_timeout_seconds": 10,
    "apk_required_keys": [],
}


@dataclass
class SettingsStore:
    values: dict[str, Any] = field(default_factory=dict)


settings_store = SettingsStore()


def load_settings() -> None:
    settings_store.values = dict(DEFAULT_SETTINGS)
    if not SETTINGS_PATH.exists():
        return
    try:
        data = json.loads(SETTINGS_PATH.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return
    if isinstance(data, dict):
        settings_store.values.update(data)


def save_settings() -> None:
    SETTINGS_PATH.parent.mkdir(parents=True, exist_ok=True)
    SETTINGS_PATH.write_text(
        json.dumps(settings_store.values, indent=2, sort_keys=True),
        encoding="utf-8",
    )


def get_setting(key: str, default: Any | None = None) -> Any:
    return settings_store.values.get(key, default)


def set_setting(key: str, value: Any) -> None:
    settings_store.values[key] = value
    save_settings()


def get_int(key: str, default: int = 0) -> int:
    value = get_setting(key, default)
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def get_float(key: str, default: float = 0.0) -> float:
    value = get_setting(key, default)
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def get_path(key: str) -> Path:
    return Path(get_setting(key, DEFAULT_SETTINGS.get(key))).expanduser()


load_settings()
