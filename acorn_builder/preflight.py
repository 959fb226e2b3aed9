"""Host prerequisite checks run before any expensive build work.

Tools, disk space, KVM and the reachability of the Alpine mirror.

Usage:
    report = run_preflight(cache_dir)
    if not report.is_ok():
        for check in report.errors():
            print(check.name, check.suggestion)
"""

from __future__ import annotations

import asyncio
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlsplit

import aiohttp

from acorn_builder.config.settings import get_float, get_int, get_setting
from acorn_builder.harness.emulator import kvm_available
from acorn_builder.logging import LoggerFactory

log = LoggerFactory.for_pipeline()

PASS = "pass"
FAIL = "fail"
WARN = "warn"

# (tool, purpose, install hint)
REQUIRED_TOOLS = (
    ("tar", "Extract package archives", "sudo dnf install tar"),
    ("mksquashfs", "Build squashfs image", "sudo dnf install squashfs-tools"),
    ("cpio", "Build initramfs", "sudo dnf install cpio"),
    ("gzip", "Compress initramfs", "sudo dnf install gzip"),
    ("grub-mkrescue", "Build bootable ISO", "sudo dnf install grub2-tools-extra"),
    ("xorriso", "Build bootable ISO", "sudo dnf install xorriso"),
    ("qemu-system-x86_64", "Run boot tests", "sudo dnf install qemu-system-x86"),
    ("qemu-img", "Create boot test disks", "sudo dnf install qemu-img"),
)

GIB = 1024 ** 3

DEFAULT_MIRROR_URL = "https://dl-cdn.alpinelinux.org/alpine/"


@dataclass
class CheckResult:
    name: str
    status: str
    message: str
    suggestion: str | None = None

    @classmethod
    def pass_(cls, name: str, message: str) -> CheckResult:
        return cls(name, PASS, message)

    @classmethod
    def fail(cls, name: str, message: str, suggestion: str) -> CheckResult:
        return cls(name, FAIL, message, suggestion)

    @classmethod
    def warn(cls, name: str, message: str, suggestion: str | None = None) -> CheckResult:
        return cls(name, WARN, message, suggestion)

    @property
    def passed(self) -> bool:
        return self.status != FAIL


@dataclass
class PreflightReport:
    checks: list[CheckResult] = field(default_factory=list)

    def is_ok(self) -> bool:
        return all(check.passed for check in self.checks)

    def errors(self) -> list[CheckResult]:
        return [check for check in self.checks if not check.passed]

    def warnings(self) -> list[CheckResult]:
        return [check for check in self.checks if check.status == WARN]

    @property
    def passed_count(self) -> int:
        return sum(1 for check in self.checks if check.passed)

    def summary_lines(self) -> list[str]:
        lines = []
        for check in self.checks:
            lines.append(f"[{check.status.upper()}] {check.name}: {check.message}")
            if check.suggestion:
                lines.append(f"     Suggestion: {check.suggestion}")
        verdict = "passed" if self.is_ok() else "failed"
        lines.append(f"Preflight {verdict}: {self.passed_count}/{len(self.checks)} checks ok")
        return lines


def check_tool(tool: str, purpose: str, install_hint: str) -> CheckResult:
    path = shutil.which(tool)
    if path:
        return CheckResult.pass_(f"{tool} tool", f"Found at {path} ({purpose})")
    return CheckResult.fail(f"{tool} tool", f"Not found (needed for: {purpose})", install_hint)


def check_host_tools(tools=REQUIRED_TOOLS) -> list[CheckResult]:
    return [check_tool(tool, purpose, hint) for tool, purpose, hint in tools]


def _existing_ancestor(path: Path) -> Path:
    path = Path(path).expanduser().absolute()
    while not path.exists() and path != path.parent:
        path = path.parent
    return path


def check_disk_space(path: Path, min_gb: int | None = None) -> CheckResult:
    """Check free space on the filesystem holding ``path``.

    ``path`` need not exist yet; the nearest existing parent is measured.
    """
    required_gb = get_int("min_free_disk_gb", 10) if min_gb is None else min_gb
    target = _existing_ancestor(Path(path))
    try:
        usage = shutil.disk_usage(target)
    except OSError as error:
        return CheckResult.fail(
            "Disk space",
            f"Failed to check available disk space at {target}: {error}",
            "Check that the build directory is accessible",
        )
    available_gb = usage.free / GIB
    if usage.free >= required_gb * GIB:
        return CheckResult.pass_(
            "Disk space", f"{available_gb:.1f} GB available (need {required_gb:.1f} GB)"
        )
    return CheckResult.fail(
        "Disk space",
        f"Only {available_gb:.1f} GB available, need {required_gb:.1f} GB",
        "Free up disk space or use a different cache directory",
    )


def check_kvm() -> CheckResult:
    if kvm_available():
        return CheckResult.pass_("KVM", "/dev/kvm present, boot tests use hardware acceleration")
    return CheckResult.warn(
        "KVM",
        "/dev/kvm missing, boot tests fall back to software emulation",
        "Load the kvm module or add your user to the kvm group",
    )


async def check_network_async(url: str | None = None, timeout: float | None = None) -> CheckResult:
    """HEAD the Alpine mirror; any HTTP response counts as reachable."""
    url = url or get_setting("preflight_mirror_url", DEFAULT_MIRROR_URL)
    seconds = get_float("preflight_network_timeout_seconds", 10.0) if timeout is None else timeout
    host = urlsplit(url).hostname or url
    try:
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=seconds)) as session:
            async with session.head(url, allow_redirects=True) as resp:
                log.debug(f"Mirror {url} answered HTTP {resp.status}")
    except (aiohttp.ClientError, asyncio.TimeoutError) as error:
        log.debug(f"Mirror {url} unreachable: {error!r}")
        return CheckResult.fail(
            "Network",
            f"Alpine mirror unreachable ({host})",
            "Check your internet connection or try again later",
        )
    return CheckResult.pass_("Network", f"Alpine mirror reachable ({host})")


def check_network(url: str | None = None, timeout: float | None = None) -> CheckResult:
    return asyncio.run(check_network_async(url, timeout))


def run_preflight(
    cache_dir: Path, min_gb: int | None = None, check_mirrors: bool = True
) -> PreflightReport:
    report = PreflightReport()
    report.checks.extend(check_host_tools())
    report.checks.append(check_disk_space(cache_dir, min_gb))
    report.checks.append(check_kvm())
    if check_mirrors:
        report.checks.append(check_network())
    for check in report.checks:
        if check.status == FAIL:
            log.warning(f"Preflight {check.name}: {check.message}")
        else:
            log.debug(f"Preflight {check.name}: {check.message}")
    return report
