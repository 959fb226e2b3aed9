"""In-memory staging tree with per-path provenance.

Paths are relative POSIX strings without a leading slash (``etc/hostname``).
The tree is written to disk only by :meth:`StagingTree.materialize`.
"""

from __future__ import annotations

import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, Sequence

from acorn_builder.cache.fingerprint import compute_fingerprint
from acorn_builder.logging import LoggerFactory

log = LoggerFactory.for_compose()

FILE = "file"
DIR = "dir"
SYMLINK = "symlink"

DEFAULT_DIR_MODE = 0o755

ESSENTIAL_FILES = (
    "etc/os-release",
    "etc/hostname",
    "etc/passwd",
    "etc/group",
    "usr/bin/busybox",
)


@dataclass
class Node:
    """One path in the staging tree."""

    kind: str
    owner: str
    mode: int = DEFAULT_DIR_MODE
    content: bytes | None = None
    source: Path | None = None
    digest: str | None = None
    target: str | None = None
    explicit_mode: bool = False
    shadowed: list[str] = field(default_factory=list)
    contributors: list[str] = field(default_factory=list)

    def read_bytes(self) -> bytes:
        if self.content is not None:
            return self.content
        if self.source is not None:
            return self.source.read_bytes()
        return b""


@dataclass
class TreeSummary:
    files: int
    directories: int
    symlinks: int
    total_bytes: int
    missing_essentials: list[str]

    @property
    def complete(self) -> bool:
        return not self.missing_essentials


class StagingTree:
    """Accumulator that components write into before image generation."""

    def __init__(self) -> None:
        self._nodes: dict[str, Node] = {}

    def __contains__(self, path: str) -> bool:
        return path in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._nodes))

    def get(self, path: str) -> Node | None:
        return self._nodes.get(path)

    def set(self, path: str, node: Node) -> None:
        self._nodes[path] = node

    def provenance(self, path: str) -> str | None:
        """Name of the component that last owns ``path``."""
        node = self._nodes.get(path)
        return node.owner if node else None

    def read_bytes(self, path: str) -> bytes:
        node = self._nodes[path]
        return node.read_bytes()

    def fingerprint(self) -> str:
        """Aggregate fingerprint over every path's kind, mode and content."""
        items = []
        for path in sorted(self._nodes):
            node = self._nodes[path]
            payload = node.target if node.kind == SYMLINK else (node.digest or "")
            items.append(f"{path}\0{node.kind}\0{node.mode:o}\0{payload}")
        return compute_fingerprint("staging-tree", inputs=items)

    def summary(self, essentials: Sequence[str] = ESSENTIAL_FILES) -> TreeSummary:
        counts = {FILE: 0, DIR: 0, SYMLINK: 0}
        total = 0
        for node in self._nodes.values():
            counts[node.kind] += 1
            if node.kind == FILE:
                if node.content is not None:
                    total += len(node.content)
                elif node.source is not None and node.source.exists():
                    total += node.source.stat().st_size
        missing = [path for path in essentials if path not in self._nodes]
        return TreeSummary(
            files=counts[FILE],
            directories=counts[DIR],
            symlinks=counts[SYMLINK],
            total_bytes=total,
            missing_essentials=missing,
        )

    def materialize(self, root: Path, essentials: Sequence[str] = ESSENTIAL_FILES) -> Path:
        """Write the tree to ``root``, replacing anything already there."""
        root = Path(root)
        if root.exists() or root.is_symlink():
            shutil.rmtree(root)
        root.mkdir(parents=True)

        directories = []
        for path in sorted(self._nodes):
            node = self._nodes[path]
            target = root / path
            if node.kind == DIR:
                target.mkdir(parents=True, exist_ok=True)
                directories.append((target, node.mode))
            elif node.kind == SYMLINK:
                os.symlink(node.target, target)
            else:
                if node.content is not None:
                    target.write_bytes(node.content)
                else:
                    shutil.copyfile(node.source, target)
                os.chmod(target, node.mode)

        # deepest first so restrictive parents do not block their children
        for target, mode in reversed(directories):
            os.chmod(target, mode)

        summary = self.summary(essentials)
        log.info(
            f"Materialized staging tree at {root}: {summary.files} files, "
            f"{summary.directories} directories, {summary.symlinks} symlinks"
        )
        if summary.missing_essentials:
            log.warning(f"Missing essential files: {', '.join(summary.missing_essentials)}")
        return root
