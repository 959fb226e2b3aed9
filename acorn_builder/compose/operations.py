"""Operation variants a Component may contribute to the staging tree.

The set is closed: the composition engine dispatches over exactly these
classes and rejects anything else.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Mapping, Union

from acorn_builder.cache.fingerprint import bytes_digest, canonical_json, compute_fingerprint


@dataclass(frozen=True)
class WriteFile:
    path: str
    content: bytes
    mode: int = 0o644


@dataclass(frozen=True)
class CopyFile:
    """Place a file from disk by reference; content is hashed, not loaded."""

    path: str
    source: Path
    mode: int | None = None  # None keeps the source file's permission bits


@dataclass(frozen=True)
class EnsureDir:
    path: str
    mode: int | None = None  # None: 0o755 when created, no claim on the mode


@dataclass(frozen=True)
class Symlink:
    path: str
    target: str


@dataclass(frozen=True)
class AppendFile:
    path: str
    content: bytes
    mode: int = 0o644


@dataclass(frozen=True)
class EnableService:
    """Enable an OpenRC service in a runlevel. Resolved after all content."""

    service: str
    runlevel: str = "default"


Operation = Union[WriteFile, CopyFile, EnsureDir, Symlink, AppendFile, EnableService]


@dataclass(frozen=True)
class Component:
    """A named, ordered contributor to the staging tree.

    Lower priority applies first; equal priorities keep declaration order.
    ``overrides`` lists the paths this component may replace when an
    earlier component already owns them.
    """

    name: str
    priority: int = 0
    ops: tuple[Operation, ...] = ()
    overrides: frozenset[str] = field(default_factory=frozenset)

    def __post_init__(self) -> None:
        object.__setattr__(self, "ops", tuple(self.ops))
        object.__setattr__(
            self, "overrides", frozenset(path.lstrip("/") for path in self.overrides)
        )

    def fingerprint(self) -> str:
        """Fingerprint of the declaration itself.

        CopyFile sources count by path only; their content is covered by the
        fingerprint of whatever produced them.
        """
        ops = []
        for op in self.ops:
            fields = {"op": type(op).__name__}
            for key, value in vars(op).items():
                fields[key] = bytes_digest(value) if isinstance(value, bytes) else value
            ops.append(canonical_json(fields))
        params = {"priority": self.priority, "overrides": sorted(self.overrides)}
        return compute_fingerprint(f"component:{self.name}", params, ops)


# ==============================================================================
# Builders
# ==============================================================================


def write_file(path: str, text: str, mode: int = 0o644) -> WriteFile:
    return WriteFile(path, text.encode("utf-8"), mode)


def dirs(*paths: str, mode: int | None = None) -> list[EnsureDir]:
    return [EnsureDir(path, mode) for path in paths]


def group(name: str, gid: int) -> AppendFile:
    """Line for /etc/group."""
    return AppendFile("etc/group", f"{name}:x:{gid}:\n".encode("utf-8"))


def user(name: str, uid: int, gid: int, home: str, shell: str) -> AppendFile:
    """Line for /etc/passwd."""
    return AppendFile(
        "etc/passwd", f"{name}:x:{uid}:{gid}:{name}:{home}:{shell}\n".encode("utf-8")
    )


def tree_component(
    name: str,
    root: Path,
    priority: int = 0,
    overrides: Iterable[str] = (),
    remap: Mapping[str, str] | None = None,
    prefix: str = "",
) -> Component:
    """Turn a directory on disk (e.g. an unpacked rootfs) into a Component.

    Args:
        name: Component name
        root: Directory to walk
        priority: Component priority
        overrides: Paths the component may replace
        remap: Leading path components to relocate, e.g. ``{"bin": "usr/bin"}``
            for a merged-/usr layout. The relocated directory itself is dropped.
        prefix: Directory in the staging tree the walked root lands in
    """
    root = Path(root)
    remap = dict(remap or {})
    prefix = prefix.strip("/")
    ops: list[Operation] = []

    def relocate(relative: str) -> str | None:
        head, _, rest = relative.partition("/")
        if head in remap:
            return f"{remap[head]}/{rest}" if rest else None
        return relative

    for current, dirnames, filenames in os.walk(root):
        dirnames.sort()
        base = Path(current)
        entries = sorted(dirnames + filenames)
        for entry in entries:
            full = base / entry
            relative = relocate(full.relative_to(root).as_posix())
            if relative is None:
                continue
            if prefix:
                relative = f"{prefix}/{relative}"
            if full.is_symlink():
                ops.append(Symlink(relative, os.readlink(full)))
            elif full.is_dir():
                ops.append(EnsureDir(relative))
            elif full.is_file():
                ops.append(CopyFile(relative, full, full.stat().st_mode & 0o7777))
    return Component(name=name, priority=priority, ops=tuple(ops), overrides=frozenset(overrides))
