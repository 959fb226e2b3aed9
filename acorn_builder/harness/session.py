"""Boot-test session state machine.

A TestSession reads the emulator console line by line against a single
deadline. Boot chatter is ignored until the ready sentinel arrives; scripted
commands are then sent one at a time, each completing when the prompt
sentinel shows the shell is idle again.

States:
    STARTING -> AWAITING_READY -> READY -> EXECUTING -> COMPLETED
    AWAITING_READY / EXECUTING -> TIMED_OUT
    any non-terminal state -> FAILED

Main API:
    run_test(image, timeout, commands) -> Verdict
"""

from __future__ import annotations

import subprocess
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Sequence

from acorn_builder.config.settings import (
    DEFAULT_FAILURE_SIGNATURES,
    DEFAULT_PROMPT_SENTINEL,
    DEFAULT_READY_SENTINEL,
    get_float,
    get_setting,
)
from acorn_builder.harness.console import Console, ConsoleClosed, clean_line
from acorn_builder.harness.emulator import EmulatorProcess, QemuCommand, launch_emulator
from acorn_builder.logging import LoggerFactory


class SessionState(Enum):
    STARTING = "starting"
    AWAITING_READY = "awaiting_ready"
    READY = "ready"
    EXECUTING = "executing"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (SessionState.COMPLETED, SessionState.TIMED_OUT, SessionState.FAILED)


class VerdictStatus(Enum):
    PASSED = "passed"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


@dataclass
class CommandResult:
    command: str
    output: list[str] = field(default_factory=list)


@dataclass
class Verdict:
    status: VerdictStatus
    reason: str = ""
    state: SessionState = SessionState.COMPLETED
    history: list[SessionState] = field(default_factory=list)
    transcript: list[CommandResult] = field(default_factory=list)
    elapsed: float = 0.0

    @property
    def passed(self) -> bool:
        return self.status is VerdictStatus.PASSED


class _Terminal(Exception):
    """Internal signal carrying the terminal state out of the read loop."""

    def __init__(self, state: SessionState, reason: str):
        self.state = state
        self.reason = reason
        super().__init__(reason)


class TestSession:
    """One boot test over an already-running emulator console.

    The session never launches anything itself; ``process`` is only polled so
    an emulator that exits without closing its stream is still noticed.
    """

    __test__ = False

    def __init__(
        self,
        console: Console,
        process: subprocess.Popen | None = None,
        *,
        ready_sentinel: str | None = None,
        prompt_sentinel: str | None = None,
        failure_signatures: Sequence[str] | None = None,
        clock: Callable[[], float] = time.monotonic,
        poll_interval: float = 0.5,
    ):
        self.console = console
        self.process = process
        self.ready_sentinel = ready_sentinel or get_setting("ready_sentinel", DEFAULT_READY_SENTINEL)
        self.prompt_sentinel = prompt_sentinel or get_setting(
            "prompt_sentinel", DEFAULT_PROMPT_SENTINEL
        )
        if failure_signatures is None:
            failure_signatures = get_setting("failure_signatures", DEFAULT_FAILURE_SIGNATURES)
        self.failure_signatures = list(failure_signatures)
        self.clock = clock
        self.poll_interval = poll_interval
        self.state = SessionState.STARTING
        self.history: list[SessionState] = [SessionState.STARTING]
        self.transcript: list[CommandResult] = []
        self.log = LoggerFactory.for_harness()
        self._deadline = 0.0

    def _transition(self, state: SessionState) -> None:
        self.log.debug(f"Session {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)

    def _next_line(self) -> str | None:
        remaining = self._deadline - self.clock()
        if remaining <= 0:
            raise _Terminal(SessionState.TIMED_OUT, f"no response before deadline in {self.state.value}")
        try:
            line = self.console.read_line(min(remaining, self.poll_interval))
        except ConsoleClosed as error:
            raise _Terminal(SessionState.FAILED, f"console closed: {error}") from None
        if line is None:
            self._check_process()
            return None
        line = clean_line(line)
        self.log.trace(f"console: {line}")
        for signature in self.failure_signatures:
            if signature in line:
                raise _Terminal(SessionState.FAILED, f"failure signature {signature!r}: {line.strip()}")
        return line

    def _check_process(self) -> None:
        if self.process is None:
            return
        code = self.process.poll()
        if code is not None:
            raise _Terminal(SessionState.FAILED, f"emulator exited with code {code}")

    def _is_prompt(self, line: str) -> bool:
        return line.strip() == self.prompt_sentinel

    def _await_ready(self) -> None:
        while True:
            line = self._next_line()
            if line is not None and line.strip() == self.ready_sentinel:
                self.log.info("Ready sentinel received")
                return

    def _await_prompt(self, result: CommandResult | None = None) -> None:
        while True:
            line = self._next_line()
            if line is None:
                continue
            if self._is_prompt(line):
                return
            if result is None:
                continue
            echoed = line.strip()
            if echoed in (result.command, f"# {result.command}") and not result.output:
                continue
            result.output.append(line)

    def run(self, commands: Sequence[str] = (), timeout: float | None = None) -> Verdict:
        """Drive the session to a terminal state and return its verdict."""
        if timeout is None:
            timeout = get_float("boot_timeout_seconds", 120.0)
        started = self.clock()
        self._deadline = started + timeout
        reason = ""
        try:
            self._transition(SessionState.AWAITING_READY)
            self._await_ready()
            self._transition(SessionState.READY)
            if commands:
                self._await_prompt()
                self._transition(SessionState.EXECUTING)
                for command in commands:
                    result = CommandResult(command)
                    self.transcript.append(result)
                    self.log.debug(f"Sending command: {command}")
                    try:
                        self.console.send(command + "\n")
                    except ConsoleClosed as error:
                        raise _Terminal(SessionState.FAILED, f"console closed: {error}") from None
                    self._await_prompt(result)
            self._transition(SessionState.COMPLETED)
        except _Terminal as terminal:
            reason = terminal.reason
            self._transition(terminal.state)

        elapsed = self.clock() - started
        status = {
            SessionState.COMPLETED: VerdictStatus.PASSED,
            SessionState.TIMED_OUT: VerdictStatus.TIMED_OUT,
        }.get(self.state, VerdictStatus.FAILED)
        verdict = Verdict(
            status=status,
            reason=reason,
            state=self.state,
            history=list(self.history),
            transcript=list(self.transcript),
            elapsed=elapsed,
        )
        if verdict.passed:
            self.log.success(f"Boot test passed in {elapsed:.1f}s")
        else:
            self.log.error(f"Boot test {status.value}: {reason}")
        return verdict


def run_test(
    image: Path,
    timeout: float | None = None,
    commands: Sequence[str] = (),
    launcher: Callable[[QemuCommand], EmulatorProcess] = launch_emulator,
    **session_options,
) -> Verdict:
    """Boot ``image`` in the emulator and run a TestSession against it.

    The emulator is terminated and its temporary files removed on every
    outcome, including errors raised while the session runs.

    Raises:
        HarnessError: The emulator could not be started
    """
    emulator = launcher(QemuCommand.from_settings(cdrom=Path(image)))
    try:
        session = TestSession(emulator.console, emulator.process, **session_options)
        return session.run(commands, timeout)
    finally:
        emulator.terminate()
