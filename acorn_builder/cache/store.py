"""Per-stage rebuild cache with atomic commits and per-stage locking.

Usage:
    from acorn_builder.cache import RebuildCache

    with RebuildCache(cache_dir) as cache:
        run = cache.run_stage("rootfs-squashfs", fingerprint, build_squashfs)
        if run.rebuilt:
            ...

Each committed stage is one JSON document under ``<cache_dir>/stages``.
Lookups never take a lock; a rebuild holds the stage lock (thread lock plus
an ``fcntl.flock`` on ``<cache_dir>/locks/<stage_id>.lock``) from the
re-check through the commit.
"""

from __future__ import annotations

import fcntl
import json
import os
import re
import shutil
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Generator, Sequence, Union

from acorn_builder.config.settings import get_float, get_path
from acorn_builder.exceptions import CacheNotOpenError, StageLockTimeoutError
from acorn_builder.logging import LoggerFactory

log = LoggerFactory.for_cache()

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


@dataclass(frozen=True)
class CacheEntry:
    stage_id: str
    fingerprint: str
    outputs: tuple[Path, ...]
    timestamp: float

    def outputs_exist(self) -> bool:
        return all(path.exists() for path in self.outputs)

    def to_dict(self) -> dict:
        return {
            "stage_id": self.stage_id,
            "fingerprint": self.fingerprint,
            "outputs": [str(path) for path in self.outputs],
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict) -> CacheEntry:
        return cls(
            stage_id=str(data["stage_id"]),
            fingerprint=str(data["fingerprint"]),
            outputs=tuple(Path(item) for item in data["outputs"]),
            timestamp=float(data["timestamp"]),
        )


@dataclass(frozen=True)
class Reuse:
    """Prior output is valid for the requested fingerprint."""

    entry: CacheEntry

    @property
    def outputs(self) -> tuple[Path, ...]:
        return self.entry.outputs


@dataclass(frozen=True)
class Rebuild:
    """The stage must be rebuilt; ``reason`` says why."""

    reason: str


Decision = Union[Reuse, Rebuild]


@dataclass(frozen=True)
class StageRun:
    """Result of :meth:`RebuildCache.run_stage`."""

    entry: CacheEntry
    rebuilt: bool

    @property
    def outputs(self) -> tuple[Path, ...]:
        return self.entry.outputs


def _as_outputs(value: Path | Sequence[Path]) -> tuple[Path, ...]:
    if isinstance(value, (str, os.PathLike)):
        return (Path(value),)
    return tuple(Path(item) for item in value)


class RebuildCache:
    """Decide per stage whether prior output may be reused."""

    def __init__(
        self,
        cache_dir: Path | None = None,
        lock_timeout: float | None = None,
        poll_interval: float = 0.1,
    ):
        self.cache_dir = Path(cache_dir) if cache_dir else get_path("cache_dir")
        self.stages_dir = self.cache_dir / "stages"
        self.locks_dir = self.cache_dir / "locks"
        self.lock_timeout = (
            get_float("stage_lock_timeout_seconds", 300.0) if lock_timeout is None else lock_timeout
        )
        self.poll_interval = poll_interval
        self.read_only = False
        self._open = False
        self._guard = threading.Lock()
        self._stage_locks: dict[str, threading.Lock] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self) -> RebuildCache:
        try:
            self.stages_dir.mkdir(parents=True, exist_ok=True)
            self.locks_dir.mkdir(parents=True, exist_ok=True)
            writable = os.access(self.locks_dir, os.W_OK) and os.access(self.stages_dir, os.W_OK)
        except OSError as error:
            log.warning(f"Cannot create cache directories under {self.cache_dir}: {error}")
            writable = False
        self.read_only = not writable
        if self.read_only:
            log.warning(f"Rebuild cache {self.cache_dir} opened read-only; commits are skipped")
        self._open = True
        log.debug(f"Rebuild cache opened at {self.cache_dir}")
        return self

    def close(self) -> None:
        self._open = False
        log.debug(f"Rebuild cache closed at {self.cache_dir}")

    @property
    def is_open(self) -> bool:
        return self._open

    def __enter__(self) -> RebuildCache:
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _require_open(self) -> None:
        if not self._open:
            raise CacheNotOpenError(str(self.cache_dir))

    # ------------------------------------------------------------------
    # Entries
    # ------------------------------------------------------------------

    def _entry_path(self, stage_id: str) -> Path:
        return self.stages_dir / f"{_UNSAFE_CHARS.sub('_', stage_id)}.json"

    def lookup(self, stage_id: str) -> CacheEntry | None:
        """Return the committed entry for ``stage_id``; corrupt documents count as missing."""
        self._require_open()
        path = self._entry_path(stage_id)
        log.trace(f"Cache lookup for stage {stage_id}")
        if not path.exists():
            return None
        try:
            return CacheEntry.from_dict(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, ValueError, KeyError, TypeError) as error:
            log.warning(f"Ignoring unreadable cache entry {path}: {error}")
            return None

    def should_rebuild(self, stage_id: str, fingerprint: str) -> Decision:
        entry = self.lookup(stage_id)
        if entry is None:
            return Rebuild("no cache entry")
        if entry.fingerprint != fingerprint:
            return Rebuild(f"fingerprint changed ({entry.fingerprint[:12]} -> {fingerprint[:12]})")
        missing = [str(path) for path in entry.outputs if not path.exists()]
        if missing:
            return Rebuild(f"output missing: {', '.join(missing)}")
        return Reuse(entry)

    def commit(
        self, stage_id: str, fingerprint: str, outputs: Path | Sequence[Path]
    ) -> CacheEntry:
        """Record a successful build. The document is replaced atomically."""
        self._require_open()
        entry = CacheEntry(
            stage_id=stage_id,
            fingerprint=fingerprint,
            outputs=_as_outputs(outputs),
            timestamp=time.time(),
        )
        if self.read_only:
            log.warning(f"Cache is read-only; not recording stage {stage_id}")
            return entry
        path = self._entry_path(stage_id)
        tmp = path.with_name(f".{path.name}.{uuid.uuid4().hex[:8]}.tmp")
        try:
            tmp.write_text(json.dumps(entry.to_dict(), indent=2), encoding="utf-8")
            os.replace(tmp, path)
        finally:
            tmp.unlink(missing_ok=True)
        log.debug(f"Committed stage {stage_id} fingerprint {fingerprint[:12]}")
        return entry

    def invalidate(self, stage_id: str) -> bool:
        self._require_open()
        path = self._entry_path(stage_id)
        if not path.exists():
            return False
        path.unlink()
        log.info(f"Invalidated stage {stage_id}")
        return True

    def clear(self) -> None:
        self._require_open()
        if self.stages_dir.exists():
            shutil.rmtree(self.stages_dir)
        self.stages_dir.mkdir(parents=True, exist_ok=True)
        log.info(f"Cleared rebuild cache at {self.cache_dir}")

    def entries(self) -> list[CacheEntry]:
        self._require_open()
        found = []
        for path in sorted(self.stages_dir.glob("*.json")):
            try:
                found.append(CacheEntry.from_dict(json.loads(path.read_text(encoding="utf-8"))))
            except (OSError, ValueError, KeyError, TypeError) as error:
                log.warning(f"Ignoring unreadable cache entry {path}: {error}")
        return found

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    def _thread_lock(self, stage_id: str) -> threading.Lock:
        with self._guard:
            return self._stage_locks.setdefault(stage_id, threading.Lock())

    @contextmanager
    def stage_lock(self, stage_id: str) -> Generator[None, None, None]:
        """Hold the rebuild lock for one stage.

        Raises:
            StageLockTimeoutError: The lock was not acquired within lock_timeout
        """
        self._require_open()
        deadline = time.monotonic() + self.lock_timeout
        thread_lock = self._thread_lock(stage_id)
        if not thread_lock.acquire(timeout=max(self.lock_timeout, 0)):
            raise StageLockTimeoutError(stage_id, self.lock_timeout)
        try:
            if self.read_only:
                yield
                return
            lock_path = self.locks_dir / f"{_UNSAFE_CHARS.sub('_', stage_id)}.lock"
            with open(lock_path, "w", encoding="utf-8") as handle:
                while True:
                    try:
                        fcntl.flock(handle, fcntl.LOCK_EX | fcntl.LOCK_NB)
                        break
                    except BlockingIOError:
                        if time.monotonic() >= deadline:
                            raise StageLockTimeoutError(stage_id, self.lock_timeout)
                        time.sleep(self.poll_interval)
                log.trace(f"Acquired lock for stage {stage_id}")
                try:
                    yield
                finally:
                    fcntl.flock(handle, fcntl.LOCK_UN)
        finally:
            thread_lock.release()

    def run_stage(
        self,
        stage_id: str,
        fingerprint: str,
        build: Callable[[], Path | Sequence[Path]],
    ) -> StageRun:
        """Reuse the committed output of a stage or build and commit it.

        ``build`` runs only while the stage lock is held, after a second
        lookup has confirmed no other invocation committed the same
        fingerprint in the meantime.
        """
        decision = self.should_rebuild(stage_id, fingerprint)
        if isinstance(decision, Reuse):
            log.info(f"Stage {stage_id}: reusing cached output")
            return StageRun(decision.entry, rebuilt=False)

        with self.stage_lock(stage_id):
            decision = self.should_rebuild(stage_id, fingerprint)
            if isinstance(decision, Reuse):
                log.info(f"Stage {stage_id}: committed concurrently, reusing")
                return StageRun(decision.entry, rebuilt=False)
            log.info(f"Stage {stage_id}: rebuilding ({decision.reason})")
            outputs = build()
            entry = self.commit(stage_id, fingerprint, outputs)
        return StageRun(entry, rebuilt=True)
