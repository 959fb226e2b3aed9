"""
Pytest configuration and shared fixtures for acorn-builder tests.

This module provides common fixtures and fakes used across all test modules:
isolated settings, recipe factories, a scripted fetcher and a scripted
console standing in for the network and the emulator.
"""

import asyncio
import hashlib
import json
from pathlib import Path
from typing import Any, Dict, List

import pytest

from acorn_builder.config import settings
from acorn_builder.domain import Digest, Recipe, TransformStep
from acorn_builder.exceptions import SourceFetchError
from acorn_builder.harness.console import ConsoleClosed


# ==============================================================================
# Settings Fixtures
# ==============================================================================


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path, monkeypatch):
    """
    Auto-use fixture giving every test default settings and a private cache.

    The settings file and the cache directory both live under tmp_path, so
    set_setting() never touches the real home directory.
    """
    monkeypatch.setattr(settings, "SETTINGS_PATH", tmp_path / "config" / "settings.json")
    settings.settings_store.values = dict(settings.DEFAULT_SETTINGS)
    settings.settings_store.values["cache_dir"] = str(tmp_path / "cache")
    yield settings.settings_store.values
    settings.settings_store.values = dict(settings.DEFAULT_SETTINGS)


@pytest.fixture
def temp_settings_file(tmp_path) -> Path:
    """
    Fixture providing a temporary settings file path.

    Args:
        tmp_path: pytest's built-in temporary directory fixture.

    Returns:
        Path to a settings.json inside a fresh directory.
    """
    settings_dir = tmp_path / "settings"
    settings_dir.mkdir()
    return settings_dir / "settings.json"


@pytest.fixture
def sample_settings_data() -> Dict[str, Any]:
    """Fixture providing a partial settings document."""
    return {
        "fetch_max_workers": 8,
        "squashfs_compression": "xz",
        "qemu_memory_gb": 2,
    }


@pytest.fixture
def mock_subprocess_run(mocker):
    """
    Fixture providing a mock for subprocess.run.

    Returns:
        Mock object for subprocess.run
    """
    return mocker.patch("subprocess.run")


# ==============================================================================
# Recipe Fixtures
# ==============================================================================


def sha256_of(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


@pytest.fixture
def make_recipe():
    """
    Factory fixture building a Recipe whose digest matches ``content``.

    Usage:
        recipe = make_recipe("pkgtool", b"payload", sources=["https://a/pkgtool"])
    """

    def _make(
        name: str,
        content: bytes = b"payload",
        sources: List[str] | None = None,
        transforms: List[Dict[str, Any]] | None = None,
        depends_on: List[str] | None = None,
        digest: str | None = None,
        **kwargs,
    ) -> Recipe:
        return Recipe(
            name=name,
            sources=tuple(sources or [f"https://mirror.example/{name}.bin"]),
            digest=Digest.parse(digest or f"sha256:{sha256_of(content)}"),
            transforms=tuple(TransformStep.from_dict(step) for step in transforms or []),
            depends_on=tuple(depends_on or []),
            **kwargs,
        )

    return _make


@pytest.fixture
def recipes_file(tmp_path) -> Path:
    """Fixture providing a recipe description on disk."""
    path = tmp_path / "recipes.json"
    path.write_text(
        json.dumps(
            {
                "recipes": [
                    {
                        "name": "pkgtool",
                        "version": "1.0",
                        "sources": ["https://a.example/pkgtool", "https://b.example/pkgtool"],
                        "digest": f"sha256:{sha256_of(b'pkgtool')}",
                    }
                ]
            }
        )
    )
    return path


class FakeFetcher:
    """
    Fetcher serving scripted responses per source.

    ``responses`` maps a source to bytes (written to dest) or to an
    exception instance (raised). Unknown sources fail as unreachable.
    ``delay`` seconds pass before each response, like a slow mirror.
    """

    def __init__(self, responses: Dict[str, Any] | None = None, delay: float = 0.0):
        self.responses = dict(responses or {})
        self.delay = delay
        self.calls: List[str] = []

    async def fetch(self, recipe_name: str, source: str, dest: Path) -> Path:
        self.calls.append(source)
        if self.delay:
            await asyncio.sleep(self.delay)
        response = self.responses.get(source)
        if response is None:
            raise SourceFetchError(recipe_name, source, "unreachable")
        if isinstance(response, Exception):
            raise response
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_bytes(response)
        return dest


@pytest.fixture
def fake_fetcher() -> FakeFetcher:
    return FakeFetcher()


# ==============================================================================
# Harness Fixtures
# ==============================================================================


class FakeConsole:
    """
    Console replaying a script of lines.

    Each script item is a line (str), None for a read that times out, or
    ConsoleClosed to end the stream. Items queued with ``after_send`` are
    appended to the script when the matching command is sent.
    """

    def __init__(self, script=(), after_send: Dict[str, List[Any]] | None = None, clock=None):
        self.script = list(script)
        self.after_send = dict(after_send or {})
        self.sent: List[str] = []
        self.closed = False
        self.clock = clock

    def read_line(self, timeout: float):
        if not self.script:
            if self.clock is not None:
                self.clock.advance(timeout)
            return None
        item = self.script.pop(0)
        if item is ConsoleClosed:
            raise ConsoleClosed("stream ended")
        if item is None and self.clock is not None:
            self.clock.advance(timeout)
        return item

    def send(self, text: str) -> None:
        if self.closed:
            raise ConsoleClosed("console closed")
        command = text.rstrip("\n")
        self.sent.append(command)
        self.script.extend(self.after_send.get(command, []))

    def close(self) -> None:
        self.closed = True


class FakeClock:
    """Monotonic clock advanced explicitly by the fake console."""

    def __init__(self, start: float = 100.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_console(fake_clock):
    """Factory fixture for a FakeConsole driven by the shared fake clock."""

    def _make(script=(), after_send=None) -> FakeConsole:
        return FakeConsole(script, after_send=after_send, clock=fake_clock)

    return _make


# ==============================================================================
# Rootfs Fixtures
# ==============================================================================


@pytest.fixture
def alpine_rootfs(tmp_path) -> Path:
    """A minimal stand-in for an unpacked Alpine minirootfs."""
    from acorn_builder.compose.definitions import (
        BOOT_SERVICES,
        SHUTDOWN_SERVICES,
        SYSINIT_SERVICES,
    )

    root = tmp_path / "alpine"
    for directory in ("bin", "sbin", "etc/init.d", "usr/bin", "lib"):
        (root / directory).mkdir(parents=True, exist_ok=True)
    (root / "bin" / "busybox").write_bytes(b"ELF busybox")
    (root / "sbin" / "openrc").write_bytes(b"ELF openrc")
    (root / "etc" / "passwd").write_text("root:x:0:0:root:/root:/bin/ash\n")
    (root / "etc" / "group").write_text("root:x:0:root\n")
    (root / "etc" / "hostname").write_text("localhost\n")
    (root / "etc" / "motd").write_text("Welcome to Alpine!\n")
    (root / "etc" / "issue").write_text("Welcome to Alpine Linux\n")
    (root / "etc" / "inittab").write_text("::sysinit:/sbin/openrc sysinit\n")
    (root / "etc" / "fstab").write_text("/dev/cdrom /media/cdrom iso9660 noauto,ro 0 0\n")
    services = SYSINIT_SERVICES + BOOT_SERVICES + SHUTDOWN_SERVICES + (
        "networking",
        "dhcpcd",
        "sshd",
        "chronyd",
    )
    for service in services:
        script = root / "etc" / "init.d" / service
        script.write_text("#!/sbin/openrc-run\n")
        script.chmod(0o755)
    return root
