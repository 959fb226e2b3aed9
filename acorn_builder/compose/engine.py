"""Deterministic merge of components into a staging tree.

Conflict policy per path:
    - identical content: no-op
    - path listed in the incoming component's overrides: replace, shadow the
      previous owner
    - anything else: ConflictError naming both components

A directory colliding with a file or symlink is always a TypeConflictError,
whatever the overrides say. Service enablement runs after every component's
content has been placed.
"""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Iterable

from acorn_builder.cache.fingerprint import bytes_digest, file_digest
from acorn_builder.compose.operations import (
    AppendFile,
    Component,
    CopyFile,
    EnableService,
    EnsureDir,
    Symlink,
    WriteFile,
)
from acorn_builder.compose.staging import DEFAULT_DIR_MODE, DIR, FILE, SYMLINK, Node, StagingTree
from acorn_builder.exceptions import (
    ConfigurationError,
    ConflictError,
    InvalidPathError,
    ServiceDefinitionMissingError,
    TypeConflictError,
)
from acorn_builder.logging import LoggerFactory

log = LoggerFactory.for_compose()


def normalize_path(component: str, path: str) -> str:
    """Strip leading slashes and ``.`` segments; reject ``..`` and the root itself."""
    parts = [part for part in PurePosixPath(str(path)).parts if part not in ("/", ".")]
    if not parts or ".." in parts:
        raise InvalidPathError(component, str(path))
    return "/".join(parts)


def compose(components: Iterable[Component], tree: StagingTree | None = None) -> StagingTree:
    """Apply ``components`` into ``tree`` (a new tree by default).

    Components are applied by ascending priority; ties keep declaration order.

    Raises:
        ConfigurationError: Two components share a name
        CompositionError: Invalid path, conflict, or missing service definition
    """
    tree = tree if tree is not None else StagingTree()
    components = list(components)
    seen: set[str] = set()
    for component in components:
        if component.name in seen:
            raise ConfigurationError(f"Duplicate component name: {component.name}")
        seen.add(component.name)

    indexed = sorted(enumerate(components), key=lambda pair: (pair[1].priority, pair[0]))
    ordered = [component for _, component in indexed]

    services: list[tuple[Component, EnableService]] = []
    for component in ordered:
        log.debug(f"Applying component {component.name} (priority {component.priority})")
        for op in component.ops:
            if isinstance(op, EnableService):
                services.append((component, op))
            else:
                _apply(tree, component, op)

    for component, op in services:
        _enable_service(tree, component, op)

    log.info(f"Composed {len(ordered)} components into {len(tree)} paths")
    return tree


def _apply(tree: StagingTree, component: Component, op) -> None:
    if isinstance(op, WriteFile):
        path = normalize_path(component.name, op.path)
        _place_file(tree, component, path, op.mode, content=op.content)
    elif isinstance(op, CopyFile):
        path = normalize_path(component.name, op.path)
        mode = op.mode if op.mode is not None else op.source.stat().st_mode & 0o7777
        _place_file(tree, component, path, mode, source=op.source)
    elif isinstance(op, EnsureDir):
        _ensure_dir(tree, component, normalize_path(component.name, op.path), op.mode)
    elif isinstance(op, Symlink):
        _place_symlink(tree, component, normalize_path(component.name, op.path), op.target)
    elif isinstance(op, AppendFile):
        _append(tree, component, normalize_path(component.name, op.path), op)
    else:
        raise ConfigurationError(
            f"Component {component.name} contains unsupported operation {type(op).__name__}"
        )


def _ensure_parents(tree: StagingTree, component: Component, path: str) -> None:
    parent = PurePosixPath(path).parent
    ancestors = [p.as_posix() for p in reversed(parent.parents) if p.as_posix() != "."]
    if parent.as_posix() != ".":
        ancestors.append(parent.as_posix())
    for ancestor in ancestors:
        node = tree.get(ancestor)
        if node is None:
            tree.set(ancestor, Node(kind=DIR, owner=component.name, mode=DEFAULT_DIR_MODE))
        elif node.kind != DIR:
            raise TypeConflictError(
                ancestor, node.owner, component.name, f"parent of /{path} is a {node.kind}"
            )


def _replace(tree: StagingTree, component: Component, path: str, existing: Node, node: Node) -> None:
    node.shadowed = existing.shadowed + [existing.owner]
    tree.set(path, node)
    log.debug(f"/{path}: {component.name} overrides {existing.owner}")


def _place_file(
    tree: StagingTree,
    component: Component,
    path: str,
    mode: int,
    *,
    content: bytes | None = None,
    source=None,
) -> None:
    _ensure_parents(tree, component, path)
    digest = bytes_digest(content) if content is not None else file_digest(source)
    node = Node(
        kind=FILE, owner=component.name, mode=mode, content=content, source=source, digest=digest
    )
    existing = tree.get(path)
    if existing is None:
        tree.set(path, node)
        return
    if existing.kind != FILE:
        raise TypeConflictError(path, existing.owner, component.name, f"existing {existing.kind}")
    if existing.digest == digest and existing.mode == mode:
        return
    if path in component.overrides:
        _replace(tree, component, path, existing, node)
        return
    reason = "different content" if existing.digest != digest else f"mode {mode:o} vs {existing.mode:o}"
    raise ConflictError(path, existing.owner, component.name, reason)


def _ensure_dir(tree: StagingTree, component: Component, path: str, mode: int | None) -> None:
    _ensure_parents(tree, component, path)
    existing = tree.get(path)
    if existing is None:
        tree.set(
            path,
            Node(
                kind=DIR,
                owner=component.name,
                mode=DEFAULT_DIR_MODE if mode is None else mode,
                explicit_mode=mode is not None,
            ),
        )
        return
    if existing.kind != DIR:
        raise TypeConflictError(path, existing.owner, component.name, f"existing {existing.kind}")
    if mode is None or mode == existing.mode:
        return
    if not existing.explicit_mode:
        existing.mode = mode
        existing.explicit_mode = True
        existing.owner = component.name
        return
    if path in component.overrides:
        replacement = Node(kind=DIR, owner=component.name, mode=mode, explicit_mode=True)
        _replace(tree, component, path, existing, replacement)
        return
    raise ConflictError(path, existing.owner, component.name, f"mode {mode:o} vs {existing.mode:o}")


def _place_symlink(tree: StagingTree, component: Component, path: str, target: str) -> None:
    _ensure_parents(tree, component, path)
    node = Node(kind=SYMLINK, owner=component.name, mode=0o777, target=target)
    existing = tree.get(path)
    if existing is None:
        tree.set(path, node)
        return
    if existing.kind != SYMLINK:
        raise TypeConflictError(path, existing.owner, component.name, f"existing {existing.kind}")
    if existing.target == target:
        return
    if path in component.overrides:
        _replace(tree, component, path, existing, node)
        return
    raise ConflictError(path, existing.owner, component.name, f"target {target} vs {existing.target}")


def _append(tree: StagingTree, component: Component, path: str, op: AppendFile) -> None:
    existing = tree.get(path)
    if existing is None:
        _place_file(tree, component, path, op.mode, content=op.content)
        return
    if existing.kind != FILE:
        raise TypeConflictError(path, existing.owner, component.name, f"cannot append to {existing.kind}")
    content = existing.read_bytes()
    if content and not content.endswith(b"\n"):
        content += b"\n"
    existing.content = content + op.content
    existing.source = None
    existing.digest = bytes_digest(existing.content)
    existing.contributors.append(component.name)


def _enable_service(tree: StagingTree, component: Component, op: EnableService) -> None:
    definition = f"etc/init.d/{op.service}"
    node = tree.get(definition)
    if node is None or node.kind == DIR:
        raise ServiceDefinitionMissingError(component.name, op.service, definition)
    link = normalize_path(component.name, f"etc/runlevels/{op.runlevel}/{op.service}")
    _place_symlink(tree, component, link, f"/etc/init.d/{op.service}")
