"""QEMU command construction and process launch for boot tests.

Usage:
    from acorn_builder.harness.emulator import QemuCommand, launch_emulator

    emulator = launch_emulator(QemuCommand(cdrom=iso_path))
    try:
        line = emulator.console.read_line(timeout=5)
    finally:
        emulator.terminate()
"""

from __future__ import annotations

import os
import shutil
import subprocess
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Sequence

from acorn_builder.artifacts.command_runners import run_checked_command
from acorn_builder.config.settings import get_int, get_setting
from acorn_builder.exceptions import GeneratorError, HarnessError
from acorn_builder.harness.console import ProcessConsole
from acorn_builder.logging import LoggerFactory

log = LoggerFactory.for_harness(job_id="emulator")

QEMU_BINARY = "qemu-system-x86_64"

OVMF_CANDIDATES = (
    "/usr/share/edk2/ovmf/OVMF_CODE.fd",
    "/usr/share/OVMF/OVMF_CODE.fd",
    "/usr/share/OVMF/OVMF_CODE_4M.fd",
    "/usr/share/qemu/OVMF.fd",
    "/usr/share/edk2-ovmf/x64/OVMF_CODE.fd",
    "/run/libvirt/nix-ovmf/OVMF_CODE.fd",
)


def kvm_available() -> bool:
    return os.path.exists("/dev/kvm")


def find_ovmf(candidates: Sequence[str] = OVMF_CANDIDATES) -> Path | None:
    """First existing OVMF firmware image, if any."""
    for candidate in candidates:
        path = Path(candidate)
        if path.is_file():
            return path
    return None


@dataclass
class QemuCommand:
    """Builder for a headless QEMU invocation with the console on stdio."""

    cdrom: Path | None = None
    disk: Path | None = None
    memory_gb: int = 4
    smp: int = 4
    cpu_mode: str = "max"
    kvm: bool | None = None
    ovmf: Path | None = None
    network: bool = True
    binary: str = QEMU_BINARY
    extra_args: list[str] = field(default_factory=list)

    @classmethod
    def from_settings(cls, cdrom: Path | None = None, **overrides) -> QemuCommand:
        values = {
            "cdrom": cdrom,
            "memory_gb": get_int("qemu_memory_gb", 4),
            "smp": get_int("qemu_smp", 4),
            "cpu_mode": get_setting("qemu_cpu_mode", "max"),
            "ovmf": find_ovmf() if get_setting("qemu_uefi", False) else None,
        }
        values.update(overrides)
        return cls(**values)

    def build(self) -> list[str]:
        args = [self.binary]
        use_kvm = kvm_available() if self.kvm is None else self.kvm
        if use_kvm:
            args += ["-enable-kvm", "-cpu", "host"]
        else:
            args += ["-cpu", self.cpu_mode]
        args += ["-smp", str(self.smp), "-m", f"{self.memory_gb}G"]

        if self.cdrom is not None:
            args += [
                "-device",
                "virtio-scsi-pci,id=scsi0",
                "-device",
                "scsi-cd,drive=cdrom0,bus=scsi0.0",
                "-drive",
                f"id=cdrom0,if=none,format=raw,readonly=on,file={self.cdrom}",
            ]
        if self.disk is not None:
            args += ["-drive", f"file={self.disk},format=qcow2,if=virtio"]
        if self.ovmf is not None:
            args += ["-drive", f"if=pflash,format=raw,readonly=on,file={self.ovmf}"]
        if self.network:
            args += ["-netdev", "user,id=net0", "-device", "virtio-net-pci,netdev=net0"]
        else:
            args += ["-nic", "none"]

        args += ["-nographic", "-serial", "mon:stdio", "-no-reboot"]
        args += list(self.extra_args)
        return args


def create_scratch_disk(directory: Path, size: str) -> Path:
    """Create an empty qcow2 disk with qemu-img."""
    disk = Path(directory) / "scratch.qcow2"
    run_checked_command(["qemu-img", "create", "-f", "qcow2", str(disk), size], stage_id="boot-test")
    return disk


class EmulatorProcess:
    """A running emulator, its console, and the temporary resources it owns."""

    def __init__(
        self,
        process: subprocess.Popen,
        console: ProcessConsole,
        temp_dir: Path | None = None,
    ):
        self.process = process
        self.console = console
        self.temp_dir = temp_dir

    @property
    def running(self) -> bool:
        return self.process.poll() is None

    def terminate(self, grace_seconds: float = 5.0) -> None:
        """Kill the emulator and release its console and temporary files."""
        if self.process.poll() is None:
            self.process.terminate()
            try:
                self.process.wait(timeout=grace_seconds)
            except subprocess.TimeoutExpired:
                log.warning(f"Emulator pid {self.process.pid} ignored SIGTERM; killing")
                self.process.kill()
                self.process.wait()
        self.console.close()
        if self.temp_dir is not None and self.temp_dir.exists():
            shutil.rmtree(self.temp_dir, ignore_errors=True)
        log.debug(f"Emulator pid {self.process.pid} torn down (exit {self.process.returncode})")


def launch_emulator(
    command: QemuCommand | Sequence[str],
    disk_size: str | None = None,
) -> EmulatorProcess:
    """Start the emulator with stdin/stdout piped and stderr merged into stdout.

    Args:
        command: QemuCommand, or a raw argument list
        disk_size: Attach a fresh qcow2 scratch disk of this size (e.g. "8G")

    Raises:
        HarnessError: The emulator or its scratch disk could not be started
    """
    temp_dir = None
    if disk_size is None and isinstance(command, QemuCommand):
        disk_size = get_setting("qemu_disk_size")
    try:
        if isinstance(command, QemuCommand):
            if disk_size:
                temp_dir = Path(tempfile.mkdtemp(prefix="acorn-boot-"))
                command.disk = create_scratch_disk(temp_dir, disk_size)
            argv = command.build()
        else:
            argv = [str(part) for part in command]
        log.info(f"Launching emulator: {' '.join(argv)}")
        process = subprocess.Popen(
            argv,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
        )
    except (OSError, GeneratorError) as error:
        if temp_dir is not None:
            shutil.rmtree(temp_dir, ignore_errors=True)
        raise HarnessError(f"Failed to start emulator: {error}") from error
    return EmulatorProcess(process, ProcessConsole(process), temp_dir)
