"""Command execution utilities for external tools."""

from __future__ import annotations

import os
import subprocess
from pathlib import Path
from typing import IO, Mapping, Sequence

from acorn_builder.exceptions import GeneratorError
from acorn_builder.logging import LoggerFactory

log = LoggerFactory.for_artifacts()


def _command_env(extra_env: Mapping[str, str] | None) -> dict[str, str] | None:
    if not extra_env:
        return None
    env = dict(os.environ)
    env.update(extra_env)
    return env


def _failure_message(stderr: str | bytes | None, stdout: str | bytes | None) -> str:
    def _text(value):
        if value is None:
            return ""
        if isinstance(value, bytes):
            value = value.decode("utf-8", errors="replace")
        return value.strip()

    return _text(stderr) or _text(stdout) or "Command failed"


def run_checked_command(
    command: Sequence[str],
    input_text: str | None = None,
    *,
    stage_id: str = "command",
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> str:
    """Run a command and raise GeneratorError if it fails."""
    command = [str(part) for part in command]
    log.debug(f"Running command: {' '.join(command)}")
    try:
        result = subprocess.run(
            command,
            input=input_text,
            text=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=cwd,
            env=_command_env(env),
        )
    except OSError as error:
        raise GeneratorError(stage_id, command, str(error)) from error
    if result.returncode != 0:
        message = _failure_message(result.stderr, result.stdout)
        log.debug(f"Command failed with code {result.returncode}: {message}")
        raise GeneratorError(stage_id, command, message)
    return result.stdout


def run_checked_to_file(
    command: Sequence[str],
    stdout_target: IO[bytes],
    input_text: str | None = None,
    *,
    stage_id: str = "command",
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> None:
    """Run a command whose binary stdout is written to an open file."""
    command = [str(part) for part in command]
    log.debug(f"Running command: {' '.join(command)}")
    try:
        result = subprocess.run(
            command,
            input=input_text.encode("utf-8") if input_text is not None else None,
            stdout=stdout_target,
            stderr=subprocess.PIPE,
            cwd=cwd,
            env=_command_env(env),
        )
    except OSError as error:
        raise GeneratorError(stage_id, command, str(error)) from error
    if result.returncode != 0:
        message = _failure_message(result.stderr, None)
        log.debug(f"Command failed with code {result.returncode}: {message}")
        raise GeneratorError(stage_id, command, message)


__all__ = [
    "run_checked_command",
    "run_checked_to_file",
]
