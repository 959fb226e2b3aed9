"""Source fetching for recipes.

One source location at a time: HTTP(S) mirrors are streamed with aiohttp,
``file://`` URLs and absolute paths are copied locally. Transient faults are
retried on the same source with a linear backoff; everything else moves the
caller on to the next mirror.
"""

from __future__ import annotations

import asyncio
import shutil
from pathlib import Path
from urllib.parse import unquote, urlparse

import aiohttp

from acorn_builder.config.settings import get_float, get_int
from acorn_builder.exceptions import SourceFetchError
from acorn_builder.logging import LoggerFactory, ThrottledLogger

CHUNK_SIZE = 1024 * 1024  # 1MB chunks

TRANSIENT_STATUS = {408, 429}


def is_transient_status(status: int) -> bool:
    return status >= 500 or status in TRANSIENT_STATUS


def local_path_for(source: str) -> Path | None:
    """Local filesystem path for ``file://`` URLs and absolute paths."""
    parsed = urlparse(source)
    if parsed.scheme == "file":
        return Path(unquote(parsed.path))
    if not parsed.scheme and source.startswith("/"):
        return Path(source)
    return None


class MirrorFetcher:
    """Fetch one source location into a destination file."""

    def __init__(
        self,
        timeout_seconds: float | None = None,
        retries: int | None = None,
        backoff_seconds: float | None = None,
    ):
        """Initialize fetcher.

        Args:
            timeout_seconds: Total HTTP request timeout
            retries: Extra attempts per source on transient faults
            backoff_seconds: Base delay; attempt N waits N times this long
        """
        if timeout_seconds is None:
            timeout_seconds = get_float("fetch_timeout_seconds", 600.0)
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.retries = get_int("fetch_retries", 2) if retries is None else retries
        self.backoff = (
            get_float("fetch_backoff_seconds", 0.5) if backoff_seconds is None else backoff_seconds
        )

    async def fetch(self, recipe_name: str, source: str, dest: Path) -> None:
        """Fetch ``source`` into ``dest``, retrying transient faults.

        Raises:
            SourceFetchError: The source could not be fetched
        """
        log = LoggerFactory.for_recipes(job_id=recipe_name)
        attempt = 0
        while True:
            try:
                await self._fetch_once(recipe_name, source, dest)
                return
            except SourceFetchError as error:
                dest.unlink(missing_ok=True)
                if not error.transient or attempt >= self.retries:
                    raise
                attempt += 1
                delay = self.backoff * attempt
                log.warning(
                    f"Transient failure fetching {source} ({error.reason}); "
                    f"retry {attempt}/{self.retries} in {delay:.1f}s"
                )
                await asyncio.sleep(delay)

    async def _fetch_once(self, recipe_name: str, source: str, dest: Path) -> None:
        dest.parent.mkdir(parents=True, exist_ok=True)
        local = local_path_for(source)
        if local is not None:
            await asyncio.to_thread(self._copy_local, recipe_name, source, local, dest)
            return
        scheme = urlparse(source).scheme
        if scheme not in ("http", "https"):
            raise SourceFetchError(recipe_name, source, f"unsupported source scheme {scheme!r}")
        await self._download(recipe_name, source, dest)

    def _copy_local(self, recipe_name: str, source: str, local: Path, dest: Path) -> None:
        if not local.is_file():
            raise SourceFetchError(recipe_name, source, "file not found")
        try:
            shutil.copyfile(local, dest)
        except OSError as error:
            raise SourceFetchError(recipe_name, source, str(error)) from error

    async def _download(self, recipe_name: str, source: str, dest: Path) -> None:
        log = LoggerFactory.for_recipes(job_id=recipe_name)
        progress = ThrottledLogger(log.bind(tags=["recipes", "progress"]), interval_seconds=5.0)
        log.info(f"Downloading {source}")

        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            try:
                async with session.get(source) as resp:
                    if resp.status != 200:
                        raise SourceFetchError(
                            recipe_name,
                            source,
                            f"HTTP {resp.status}",
                            transient=is_transient_status(resp.status),
                        )
                    total = resp.content_length or 0
                    received = 0
                    with open(dest, "wb") as handle:
                        async for chunk in resp.content.iter_chunked(CHUNK_SIZE):
                            handle.write(chunk)
                            received += len(chunk)
                            if total:
                                progress.debug(
                                    recipe_name,
                                    f"{recipe_name}: {received * 100 // total}% "
                                    f"({received}/{total} bytes)",
                                )
            except aiohttp.ClientError as e:
                raise SourceFetchError(recipe_name, source, f"network error: {e}", transient=True)
            except asyncio.TimeoutError:
                raise SourceFetchError(recipe_name, source, "timed out", transient=True)

        log.debug(f"Downloaded {received} bytes from {source}")


__all__ = [
    "MirrorFetcher",
    "is_transient_status",
    "local_path_for",
]
