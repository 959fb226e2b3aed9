"""Line-oriented console streams with read deadlines."""

from __future__ import annotations

import os
import re
import select
import subprocess
import time
from typing import Protocol

from acorn_builder.logging import LoggerFactory

log = LoggerFactory.for_harness(job_id="console")

_ANSI_ESCAPE = re.compile(r"\x1b\[[0-?]*[ -/]*[@-~]|\x1b[@-Z\\-_]")


class ConsoleClosed(Exception):
    """Raised when the console stream reaches end of file."""

    pass


class Console(Protocol):
    def read_line(self, timeout: float) -> str | None:
        """Next line without its terminator, or None if nothing arrived in time.

        Raises:
            ConsoleClosed: The stream has ended
        """
        ...

    def send(self, text: str) -> None:
        ...

    def close(self) -> None:
        ...


def clean_line(line: str) -> str:
    """Strip terminal escape sequences and carriage returns."""
    return _ANSI_ESCAPE.sub("", line).replace("\r", "")


class ProcessConsole:
    """Console attached to a child process's stdin/stdout pipes.

    A partial line (such as a shell prompt without a trailing newline) is
    returned once no further output has arrived for ``partial_idle`` seconds.
    """

    def __init__(
        self,
        process: subprocess.Popen,
        encoding: str = "utf-8",
        partial_idle: float = 0.25,
    ):
        self.process = process
        self.encoding = encoding
        self.partial_idle = partial_idle
        self._fd = process.stdout.fileno()
        self._buffer = b""
        self._eof = False

    def _pop_line(self, size: int) -> str:
        raw, self._buffer = self._buffer[:size], self._buffer[size:]
        return raw.decode(self.encoding, errors="replace").rstrip("\r\n")

    def read_line(self, timeout: float) -> str | None:
        deadline = time.monotonic() + max(timeout, 0.0)
        while True:
            newline = self._buffer.find(b"\n")
            if newline >= 0:
                return self._pop_line(newline + 1)
            if self._eof:
                if self._buffer:
                    return self._pop_line(len(self._buffer))
                raise ConsoleClosed("console stream closed")

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            wait = min(remaining, self.partial_idle) if self._buffer else remaining
            ready, _, _ = select.select([self._fd], [], [], wait)
            if not ready:
                if self._buffer:
                    return self._pop_line(len(self._buffer))
                return None
            chunk = os.read(self._fd, 4096)
            if chunk:
                self._buffer += chunk
            else:
                self._eof = True

    def send(self, text: str) -> None:
        try:
            self.process.stdin.write(text.encode(self.encoding))
            self.process.stdin.flush()
        except (BrokenPipeError, ValueError) as error:
            raise ConsoleClosed(f"cannot write to console: {error}") from error

    def close(self) -> None:
        for stream in (self.process.stdin, self.process.stdout):
            if stream is None:
                continue
            try:
                stream.close()
            except OSError as error:
                log.debug(f"Error closing console stream: {error}")
