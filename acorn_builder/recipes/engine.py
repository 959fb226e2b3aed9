"""Recipe resolution: cache lookup, mirror fetch, verification, transforms.

Cache layout::

    <cache_dir>/recipes/<name>/<algorithm>-<hex[:16]>/
        artifact/<filename>   verified download, never modified in place
        output/               transform result (only when transforms exist)
        recipe.json           digest, source, transform fingerprint, timestamp

New entries are assembled in a sibling ``.tmp-<uuid>`` directory and moved
into place with ``os.replace``. The lookup, the fetch and the install of one
recipe run under the RebuildCache stage lock ``recipe:<name>``, so concurrent
invocations sharing a cache directory fetch each artifact once.
"""

from __future__ import annotations

import asyncio
import json
import os
import shutil
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator, Iterable, Mapping

from acorn_builder.cache.fingerprint import file_digest
from acorn_builder.cache.store import RebuildCache
from acorn_builder.config.settings import get_int, get_path
from acorn_builder.domain import Recipe, RecipeStatus, ResolvedInput
from acorn_builder.exceptions import (
    AcquisitionError,
    DependencyFailedError,
    IntegrityError,
    MirrorsExhaustedError,
    ResolutionFailedError,
    SourceFetchError,
    StageLockTimeoutError,
)
from acorn_builder.logging import LoggerFactory
from acorn_builder.ordering import validate_order
from acorn_builder.recipes.fetch import MirrorFetcher
from acorn_builder.recipes.loader import merge_recipes
from acorn_builder.recipes.transforms import apply_transforms

META_FILE = "recipe.json"


@dataclass
class ResolutionReport:
    """Outcome of resolving a set of recipes."""

    resolved: dict[str, ResolvedInput] = field(default_factory=dict)
    failures: dict[str, AcquisitionError] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failures

    def raise_for_failures(self) -> None:
        if self.failures:
            raise ResolutionFailedError(self.failures)


class RecipeEngine:
    """Resolve recipes into verified, locally cached inputs."""

    def __init__(
        self,
        cache_dir: Path | None = None,
        fetcher=None,
        max_workers: int | None = None,
        cache: RebuildCache | None = None,
    ):
        """Initialize engine.

        Args:
            cache_dir: Root cache directory (defaults to the cache's directory,
                then to the cache_dir setting)
            fetcher: Object with ``async fetch(recipe_name, source, dest)``
            max_workers: Concurrent acquisitions (defaults to fetch_max_workers)
            cache: RebuildCache whose locks guard each acquisition; one is
                opened per resolution when omitted
        """
        if cache_dir is None and cache is not None:
            cache_dir = cache.cache_dir
        self.cache = cache
        self.cache_dir = Path(cache_dir) if cache_dir else get_path("cache_dir")
        self.recipes_dir = self.cache_dir / "recipes"
        self.fetcher = fetcher or MirrorFetcher()
        self.max_workers = max_workers or get_int("fetch_max_workers", 4)
        self.log = LoggerFactory.for_recipes(job_id="engine")

    def entry_dir(self, recipe: Recipe) -> Path:
        return self.recipes_dir / recipe.name / recipe.digest.short

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve_all(self, recipes: Iterable[Recipe]) -> ResolutionReport:
        """Synchronous wrapper around :meth:`resolve_all_async`."""
        return asyncio.run(self.resolve_all_async(recipes))

    async def resolve_all_async(self, recipes: Iterable[Recipe]) -> ResolutionReport:
        """Resolve every recipe, respecting declared dependencies.

        The dependency order is validated before anything is fetched. Each
        recipe waits for its dependencies, then takes one of ``max_workers``
        slots. A failed recipe fails its dependents without affecting
        independent recipes.

        Raises:
            ConfigurationError: Unknown dependency or dependency cycle
        """
        by_name = {recipe.name: recipe for recipe in merge_recipes(recipes)}
        order = validate_order(
            {name: recipe.dependencies for name, recipe in by_name.items()}, kind="recipe"
        )
        semaphore = asyncio.Semaphore(self.max_workers)
        tasks: dict[str, asyncio.Task] = {}
        cache = self.cache or RebuildCache(self.cache_dir)
        opened_here = not cache.is_open
        if opened_here:
            cache.open()

        async def run(recipe: Recipe) -> ResolvedInput:
            deps: dict[str, ResolvedInput] = {}
            for dep in recipe.dependencies:
                try:
                    deps[dep] = await tasks[dep]
                except AcquisitionError:
                    raise DependencyFailedError(recipe.name, dep) from None
            async with semaphore:
                async with self._recipe_lock(cache, recipe):
                    return await self._resolve_one(recipe, deps)

        try:
            for name in order:
                tasks[name] = asyncio.create_task(run(by_name[name]))
            results = await asyncio.gather(*tasks.values(), return_exceptions=True)
        finally:
            if opened_here:
                cache.close()

        report = ResolutionReport()
        for name, result in zip(tasks, results):
            if isinstance(result, AcquisitionError):
                report.failures[name] = result
                self.log.error(f"Recipe {name} failed: {result}")
            elif isinstance(result, BaseException):
                raise result
            else:
                report.resolved[name] = result
        self.log.info(
            f"Resolved {len(report.resolved)}/{len(tasks)} recipes "
            f"({sum(1 for r in report.resolved.values() if r.from_cache)} from cache)"
        )
        return report

    @asynccontextmanager
    async def _recipe_lock(self, cache: RebuildCache, recipe: Recipe) -> AsyncIterator[None]:
        """Hold the cache lock for one recipe entry without blocking the loop."""
        lock = cache.stage_lock(f"recipe:{recipe.name}")
        try:
            await asyncio.to_thread(lock.__enter__)
        except StageLockTimeoutError as error:
            raise AcquisitionError(recipe.name, str(error)) from error
        try:
            yield
        finally:
            await asyncio.to_thread(lock.__exit__, None, None, None)

    async def _resolve_one(
        self, recipe: Recipe, deps: Mapping[str, ResolvedInput]
    ) -> ResolvedInput:
        log = LoggerFactory.for_recipes(job_id=recipe.name)
        entry = self.entry_dir(recipe)
        try:
            cached = await asyncio.to_thread(self._load_cached, recipe, entry, deps)
            if cached is not None:
                return cached

            entry.parent.mkdir(parents=True, exist_ok=True)
            tmp = entry.parent / f".tmp-{uuid.uuid4().hex}"
            try:
                artifact = tmp / "artifact" / recipe.artifact_name
                source = await self._acquire(recipe, artifact)
                if recipe.transforms:
                    await asyncio.to_thread(
                        apply_transforms, recipe, artifact, tmp / "output", deps
                    )
                self._write_meta(tmp, recipe, source)
                await asyncio.to_thread(self._install, recipe, tmp, entry)
            finally:
                if tmp.exists():
                    shutil.rmtree(tmp, ignore_errors=True)
        except OSError as error:
            raise AcquisitionError(
                recipe.name, f"Cache I/O failed for {recipe.name}: {error}"
            ) from error

        log.success(f"Resolved {recipe.name} ({recipe.digest.short}) from {source}")
        return self._resolved(recipe, entry, source)

    async def _acquire(self, recipe: Recipe, dest: Path) -> str:
        """Fetch and verify the artifact, trying each candidate source in turn."""
        log = LoggerFactory.for_recipes(job_id=recipe.name)
        candidates = list(recipe.sources)
        if recipe.env_override and os.environ.get(recipe.env_override):
            override = str(Path(os.environ[recipe.env_override]).expanduser().resolve())
            log.info(f"Using {recipe.env_override}={override}")
            candidates.insert(0, override)

        reasons: dict[str, str] = {}
        mismatches: list[tuple[str, str]] = []
        for source in candidates:
            try:
                await self.fetcher.fetch(recipe.name, source, dest)
            except SourceFetchError as error:
                reasons[source] = error.reason
                log.warning(f"Source failed for {recipe.name}: {source} ({error.reason})")
                continue

            actual = await asyncio.to_thread(file_digest, dest, recipe.digest.algorithm)
            if actual != recipe.digest.value:
                expected = str(recipe.digest)
                got = f"{recipe.digest.algorithm}:{actual}"
                log.error(f"Digest mismatch for {recipe.name} from {source}: {got} != {expected}")
                reasons[source] = f"digest mismatch ({got})"
                mismatches.append((source, got))
                dest.unlink(missing_ok=True)
                continue
            return source

        if mismatches:
            source, got = mismatches[0]
            raise IntegrityError(recipe.name, source, str(recipe.digest), got)
        raise MirrorsExhaustedError(recipe.name, reasons)

    # ------------------------------------------------------------------
    # Cache entries
    # ------------------------------------------------------------------

    def _load_cached(
        self, recipe: Recipe, entry: Path, deps: Mapping[str, ResolvedInput]
    ) -> ResolvedInput | None:
        log = LoggerFactory.for_recipes(job_id=recipe.name)
        meta_path = entry / META_FILE
        artifact = entry / "artifact" / recipe.artifact_name
        log.trace(f"Cache lookup for {recipe.name} at {entry}")
        if not meta_path.exists() or not artifact.is_file():
            if entry.exists():
                log.warning(f"Discarding incomplete cache entry {entry}")
                self._discard(entry)
            return None

        actual = file_digest(artifact, recipe.digest.algorithm)
        if actual != recipe.digest.value:
            log.warning(
                f"Cached artifact for {recipe.name} is corrupted "
                f"({recipe.digest.algorithm}:{actual}); refetching"
            )
            self._discard(entry)
            return None

        meta = self._read_meta(meta_path)
        output = entry / "output"
        if recipe.transforms:
            stale = meta.get("transform_fingerprint") != recipe.transform_fingerprint()
            if stale or not output.is_dir():
                log.info(f"Transform list for {recipe.name} changed; re-running transforms")
                self._retransform(recipe, entry, artifact, deps)
                self._write_meta(entry, recipe, meta.get("source", "cache"))
        elif output.exists():
            shutil.rmtree(output)
            self._write_meta(entry, recipe, meta.get("source", "cache"))

        log.debug(f"Reusing cached {recipe.name} ({recipe.digest.short})")
        return self._resolved(recipe, entry, "cache")

    def _retransform(
        self,
        recipe: Recipe,
        entry: Path,
        artifact: Path,
        deps: Mapping[str, ResolvedInput],
    ) -> None:
        staging = entry / f".output-{uuid.uuid4().hex}"
        try:
            apply_transforms(recipe, artifact, staging, deps)
            output = entry / "output"
            if output.exists():
                retired = entry / f".retired-{uuid.uuid4().hex}"
                output.rename(retired)
                shutil.rmtree(retired)
            staging.rename(output)
        finally:
            if staging.exists():
                shutil.rmtree(staging, ignore_errors=True)

    def _install(self, recipe: Recipe, tmp: Path, entry: Path) -> bool:
        """Move ``tmp`` into place unless a valid entry is already there."""
        if entry.exists():
            if self._entry_valid(recipe, entry):
                LoggerFactory.for_recipes(job_id=recipe.name).debug(
                    f"Keeping existing cache entry {entry}"
                )
                return False
            self._discard(entry)
        os.replace(tmp, entry)
        return True

    def _entry_valid(self, recipe: Recipe, entry: Path) -> bool:
        artifact = entry / "artifact" / recipe.artifact_name
        if not (entry / META_FILE).exists() or not artifact.is_file():
            return False
        if file_digest(artifact, recipe.digest.algorithm) != recipe.digest.value:
            return False
        if not recipe.transforms:
            return True
        meta = self._read_meta(entry / META_FILE)
        return (
            meta.get("transform_fingerprint") == recipe.transform_fingerprint()
            and (entry / "output").is_dir()
        )

    def _discard(self, entry: Path) -> None:
        aside = entry.parent / f".corrupt-{uuid.uuid4().hex}"
        entry.rename(aside)
        shutil.rmtree(aside)

    @staticmethod
    def _read_meta(meta_path: Path) -> dict:
        try:
            data = json.loads(meta_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return {}
        return data if isinstance(data, dict) else {}

    @staticmethod
    def _write_meta(directory: Path, recipe: Recipe, source: str) -> None:
        meta = {
            "name": recipe.name,
            "version": recipe.version,
            "digest": str(recipe.digest),
            "source": source,
            "transform_fingerprint": recipe.transform_fingerprint(),
            "timestamp": time.time(),
        }
        tmp = directory / f".{META_FILE}.{uuid.uuid4().hex[:8]}"
        tmp.write_text(json.dumps(meta, indent=2, sort_keys=True), encoding="utf-8")
        os.replace(tmp, directory / META_FILE)

    def _resolved(self, recipe: Recipe, entry: Path, source: str) -> ResolvedInput:
        artifact = entry / "artifact" / recipe.artifact_name
        return ResolvedInput(
            name=recipe.name,
            path=entry / "output" if recipe.transforms else artifact,
            digest=recipe.digest,
            artifact=artifact,
            source=source,
            fingerprint=recipe.input_fingerprint(),
        )

    # ------------------------------------------------------------------
    # Status / maintenance
    # ------------------------------------------------------------------

    def status(self, recipes: Iterable[Recipe]) -> list[RecipeStatus]:
        """Report which recipes are present in the cache. Never fetches."""
        statuses = []
        for recipe in recipes:
            entry = self.entry_dir(recipe)
            artifact = entry / "artifact" / recipe.artifact_name
            cached = (entry / META_FILE).exists() and artifact.is_file()
            status = RecipeStatus(
                name=recipe.name,
                digest=recipe.digest,
                cached=cached,
                path=entry if cached else None,
            )
            if cached and recipe.transforms:
                meta = self._read_meta(entry / META_FILE)
                if meta.get("transform_fingerprint") != recipe.transform_fingerprint():
                    status.notes.append("transforms changed")
            if recipe.env_override and os.environ.get(recipe.env_override):
                status.notes.append(f"{recipe.env_override} set")
            statuses.append(status)
        return statuses

    def clear(self, recipe_name: str | None = None) -> None:
        """Remove cached entries for one recipe, or for all recipes."""
        target = self.recipes_dir / recipe_name if recipe_name else self.recipes_dir
        if target.exists():
            self.log.info(f"Clearing recipe cache {target}")
            shutil.rmtree(target)
