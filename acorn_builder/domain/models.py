"""Domain model for recipe acquisition.

Recipes are immutable, data-only declarations of external inputs. The recipe
engine turns each one into a ResolvedInput that every later stage reads but
never modifies.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Mapping
from urllib.parse import urlparse

from acorn_builder.cache.fingerprint import canonical_json, compute_fingerprint


SUPPORTED_ALGORITHMS = {"sha256": 64, "sha512": 128}

_HEX_RE = re.compile(r"^[0-9a-f]+$")


# ==============================================================================
# Digests
# ==============================================================================


@dataclass(frozen=True)
class Digest:
    """An integrity digest such as ``sha256:9f86d0...``."""

    algorithm: str
    value: str

    def __post_init__(self) -> None:
        length = SUPPORTED_ALGORITHMS.get(self.algorithm)
        if length is None:
            raise ValueError(f"Unsupported digest algorithm: {self.algorithm}")
        if len(self.value) != length or not _HEX_RE.match(self.value):
            raise ValueError(f"Malformed {self.algorithm} digest: {self.value!r}")

    def __str__(self) -> str:
        return f"{self.algorithm}:{self.value}"

    @property
    def short(self) -> str:
        """Short form used in cache directory names."""
        return f"{self.algorithm}-{self.value[:16]}"

    @classmethod
    def parse(cls, text: str) -> Digest:
        """Parse ``algorithm:hex``; a bare 64-char hex string is taken as sha256."""
        text = text.strip()
        if ":" in text:
            algorithm, value = text.split(":", 1)
        else:
            algorithm, value = "sha256", text
        return cls(algorithm.strip().lower(), value.strip().lower())


# ==============================================================================
# Transforms
# ==============================================================================


class TransformKind(str, Enum):
    UNPACK = "unpack"
    FILTER = "filter"
    FLATTEN = "flatten"
    EXECUTABLE = "executable"


def _freeze(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(item) for item in value)
    return value


def _thaw(value: Any) -> Any:
    if isinstance(value, tuple):
        return [_thaw(item) for item in value]
    return value


@dataclass(frozen=True)
class TransformStep:
    """One post-fetch step. Options are stored frozen so steps stay hashable."""

    kind: TransformKind
    options: tuple[tuple[str, Any], ...] = ()

    def option(self, key: str, default: Any = None) -> Any:
        for name, value in self.options:
            if name == key:
                return _thaw(value)
        return default

    @property
    def tool(self) -> str | None:
        """Name of a recipe providing the external tool this step runs, if any."""
        return self.option("tool")

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"kind": self.kind.value}
        for name, value in self.options:
            data[name] = _thaw(value)
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> TransformStep:
        kind = TransformKind(data["kind"])
        options = tuple(
            sorted((key, _freeze(value)) for key, value in data.items() if key != "kind")
        )
        return cls(kind=kind, options=options)


# ==============================================================================
# Recipes
# ==============================================================================


@dataclass(frozen=True)
class Recipe:
    """A named declaration of one external dependency.

    Identity is the name; two recipes with the same name and digest are
    interchangeable.
    """

    name: str
    sources: tuple[str, ...]
    digest: Digest
    transforms: tuple[TransformStep, ...] = ()
    depends_on: tuple[str, ...] = ()
    version: str | None = None
    filename: str | None = None
    env_override: str | None = None  # e.g. "ALPINE_ISO_PATH"

    @property
    def artifact_name(self) -> str:
        """File name the fetched artifact is stored under."""
        if self.filename:
            return self.filename
        for source in self.sources:
            candidate = Path(urlparse(source).path).name
            if candidate:
                return candidate
        return self.name

    @property
    def dependencies(self) -> tuple[str, ...]:
        """Declared dependencies plus recipes used as transform tools."""
        names = list(self.depends_on)
        for step in self.transforms:
            if step.tool and step.tool not in names:
                names.append(step.tool)
        return tuple(names)

    def transform_fingerprint(self) -> str:
        return compute_fingerprint(
            "transforms",
            {"steps": canonical_json([step.to_dict() for step in self.transforms])},
        )

    def input_fingerprint(self) -> str:
        """Fingerprint downstream stages consume for this recipe's output."""
        return compute_fingerprint(
            f"recipe:{self.name}",
            {"digest": str(self.digest)},
            [self.transform_fingerprint()],
        )


@dataclass(frozen=True)
class ResolvedInput:
    """A verified, locally materialized recipe output. Read-only downstream."""

    name: str
    path: Path  # transformed output, or the artifact itself without transforms
    digest: Digest
    artifact: Path
    source: str  # location it was fetched from, or "cache"
    fingerprint: str

    @property
    def from_cache(self) -> bool:
        return self.source == "cache"


@dataclass
class RecipeStatus:
    """Cache presence of one recipe, for status reporting."""

    name: str
    digest: Digest
    cached: bool
    path: Path | None = None
    notes: list[str] = field(default_factory=list)
