"""Loguru configuration for acorn-builder.

Every subsystem logs through a logger bound with ``source``, ``job_id`` and
``tags`` extras so the console line and the structured log can both be
filtered by subsystem:

    log = LoggerFactory.for_cache()
    log.info("Stage iso reused")

Log levels:
    ERROR     stage failures, integrity violations
    INFO      stage decisions (reuse or rebuild), fetches, verdicts
    DEBUG     external commands, fingerprints, console chatter
    TRACE     raw cache lookups and per-chunk download progress
"""

from __future__ import annotations

import os
import sys
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from loguru import Logger

from loguru import logger

DEFAULT_LOG_DIR = Path(
    os.environ.get(
        "ACORN_BUILDER_LOG_DIR",
        Path.home() / ".local" / "state" / "acorn-builder" / "logs",
    )
)

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{extra[source]: <10}</cyan> | "
    "<blue>{extra[job_id]: <18}</blue> | "
    "{message}"
)
FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | "
    "{extra[source]: <10} | {extra[job_id]: <18} | {message}"
)
DEBUG_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | "
    "{extra[source]: <10} | {extra[job_id]: <18} | {extra[tags]} | {message}"
)


def _is_progress_noise(record) -> bool:
    """Download progress shows at TRACE, or when something promotes it to INFO."""
    if "progress" not in record["extra"].get("tags", []):
        return False
    level = record["level"].no
    return logger.level("TRACE").no < level < logger.level("INFO").no


def _is_lookup_noise(record) -> bool:
    if "cache lookup" not in record["message"].lower():
        return False
    return record["level"].no > logger.level("TRACE").no


def _combined_filter(record) -> bool:
    """Console filter dropping download progress and raw cache lookups."""
    return not (_is_progress_noise(record) or _is_lookup_noise(record))


def setup_logging(
    *,
    debug: bool = False,
    trace: bool = False,
    log_dir: Path | None = None,
) -> Logger:
    """
    Replace loguru's default sink with the acorn-builder sinks.

    Sinks:
    - stderr: INFO (DEBUG with ``debug``, TRACE with ``trace``), filtered
    - build.log: INFO+, 7 day retention
    - debug.log: only with ``debug`` or ``trace``, 3 day retention
    - structured.jsonl: INFO+ as serialized JSON records

    Args:
        debug: Enable DEBUG level logging
        trace: Enable TRACE level logging (very verbose)
        log_dir: Directory for the log files (default: DEFAULT_LOG_DIR)
    """
    logger.remove()
    logger.configure(extra={"job_id": "-", "tags": [], "source": "BUILD"})

    console_level = "TRACE" if trace else "DEBUG" if debug else "INFO"
    logger.add(
        sys.stderr,
        level=console_level,
        enqueue=True,
        backtrace=False,
        diagnose=False,
        filter=_combined_filter,
        colorize=True,
        format=CONSOLE_FORMAT,
    )

    log_dir = Path(log_dir or DEFAULT_LOG_DIR)
    log_dir.mkdir(parents=True, exist_ok=True)

    logger.add(
        log_dir / "build.log",
        level="INFO",
        rotation="5 MB",
        retention="7 days",
        compression="zip",
        enqueue=True,
        backtrace=False,
        diagnose=False,
        format=FILE_FORMAT,
    )

    if debug or trace:
        logger.add(
            log_dir / "debug.log",
            level="TRACE" if trace else "DEBUG",
            rotation="10 MB",
            retention="3 days",
            compression="zip",
            enqueue=True,
            backtrace=True,
            diagnose=True,
            format=DEBUG_FORMAT,
        )

    logger.add(
        log_dir / "structured.jsonl",
        level="INFO",
        rotation="10 MB",
        retention="7 days",
        compression="zip",
        enqueue=True,
        serialize=True,
        format="{message}",
    )

    return logger


def get_logger(
    *,
    job_id: str | None = None,
    tags: Iterable[str] | None = None,
    source: str | None = None,
) -> Logger:
    """Return the global logger bound with whichever extras are given."""
    extras: dict[str, object] = {}
    if job_id is not None:
        extras["job_id"] = job_id
    if tags is not None:
        extras["tags"] = list(tags)
    if source is not None:
        extras["source"] = source
    return logger.bind(**extras)


def _job_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:8]}"


@contextmanager
def operation_context(operation: str, **details):
    """
    Log the start and the outcome of a long-running operation with its duration.

    Example:
        with operation_context("build", output="out/") as log:
            log.debug("Walking stage graph")
    """
    job_id = _job_id(operation)
    title = operation.capitalize()

    with logger.contextualize(job_id=job_id, operation=operation, **details):
        log = logger.bind(source=operation, job_id=job_id, tags=[operation])
        started = time.time()
        log.info(f"{title} started", **details)
        try:
            yield log
        except Exception as error:
            log.error(
                f"{title} failed",
                error=str(error),
                error_type=type(error).__name__,
                duration_seconds=round(time.time() - started, 2),
            )
            raise
        log.success(f"{title} completed", duration_seconds=round(time.time() - started, 2))


class LoggerFactory:
    """Bound loggers for each subsystem."""

    @staticmethod
    def for_recipes(job_id: str | None = None) -> Logger:
        """Recipe resolution: mirror fetches, verification, transforms."""
        return logger.bind(
            job_id=job_id or _job_id("resolve"), source="recipes", tags=["recipes", "fetch"]
        )

    @staticmethod
    def for_cache() -> Logger:
        return logger.bind(source="cache", tags=["cache"])

    @staticmethod
    def for_compose() -> Logger:
        return logger.bind(source="compose", tags=["compose", "staging"])

    @staticmethod
    def for_artifacts() -> Logger:
        """External image generators and the commands they run."""
        return logger.bind(source="artifacts", tags=["artifacts", "command"])

    @staticmethod
    def for_harness(job_id: str | None = None) -> Logger:
        """One boot-test session; ``job_id`` ties console lines to it."""
        return logger.bind(
            job_id=job_id or _job_id("boot"), source="harness", tags=["harness", "qemu"]
        )

    @staticmethod
    def for_pipeline() -> Logger:
        return logger.bind(source="pipeline", tags=["pipeline"])


class ThrottledLogger:
    """
    Emit at most one message per key per interval.

    Used for download progress, where every chunk would otherwise log.
    """

    def __init__(self, log: Logger, interval_seconds: float = 5.0):
        self.log = log
        self.interval = interval_seconds
        self.last_log_time: dict[str, float] = {}

    def debug(self, key: str, message: str, **kwargs) -> None:
        self._emit("DEBUG", key, message, **kwargs)

    def info(self, key: str, message: str, **kwargs) -> None:
        self._emit("INFO", key, message, **kwargs)

    def _emit(self, level: str, key: str, message: str, **kwargs) -> None:
        now = time.time()
        if now - self.last_log_time.get(key, 0) < self.interval:
            return
        self.log.log(level, message, **kwargs)
        self.last_log_time[key] = now
