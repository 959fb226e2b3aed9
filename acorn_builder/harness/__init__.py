"""Automated boot testing against an emulated machine."""

from acorn_builder.harness.console import Console, ConsoleClosed, ProcessConsole
from acorn_builder.harness.emulator import EmulatorProcess, QemuCommand, find_ovmf, launch_emulator
from acorn_builder.harness.session import (
    CommandResult,
    SessionState,
    TestSession,
    Verdict,
    VerdictStatus,
    run_test,
)

__all__ = [
    "CommandResult",
    "Console",
    "ConsoleClosed",
    "EmulatorProcess",
    "ProcessConsole",
    "QemuCommand",
    "SessionState",
    "TestSession",
    "Verdict",
    "VerdictStatus",
    "find_ovmf",
    "launch_emulator",
    "run_test",
]
