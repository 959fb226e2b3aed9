"""Validation of declared dependency orders.

Recipes and pipeline stages both declare their dependencies explicitly. The
declared graph is checked once, before any work starts: unknown names and
cycles are configuration errors. There is no solver; the walk order is the
declaration order, moved only as far as needed to put dependencies first.
"""

from __future__ import annotations

from typing import Mapping, Sequence

from acorn_builder.exceptions import ConfigurationError, DependencyCycleError


def validate_order(
    dependencies: Mapping[str, Sequence[str]], kind: str = "recipe"
) -> list[str]:
    """Check a declared dependency graph and return a dependency-first order.

    Args:
        dependencies: Mapping of node name to the names it depends on, in
            declaration order.
        kind: Noun used in error messages ("recipe", "stage").

    Returns:
        Node names ordered so each appears after everything it depends on.
        Independent nodes keep their declaration order.

    Raises:
        ConfigurationError: A node depends on an undeclared name.
        DependencyCycleError: The graph contains a cycle.
    """
    for name, deps in dependencies.items():
        for dep in deps:
            if dep not in dependencies:
                raise ConfigurationError(f"{kind} {name} depends on unknown {kind} {dep}")
            if dep == name:
                raise DependencyCycleError([name, name], kind=kind)

    order: list[str] = []
    state: dict[str, str] = {}  # name -> "visiting" | "done"

    def visit(name: str, path: list[str]) -> None:
        marker = state.get(name)
        if marker == "done":
            return
        if marker == "visiting":
            start = path.index(name)
            raise DependencyCycleError(path[start:] + [name], kind=kind)
        state[name] = "visiting"
        path.append(name)
        for dep in dependencies[name]:
            visit(dep, path)
        path.pop()
        state[name] = "done"
        order.append(name)

    for name in dependencies:
        visit(name, [])
    return order


def dependents_of(dependencies: Mapping[str, Sequence[str]], name: str) -> set[str]:
    """All nodes that transitively depend on ``name``."""
    reverse: dict[str, set[str]] = {node: set() for node in dependencies}
    for node, deps in dependencies.items():
        for dep in deps:
            reverse.setdefault(dep, set()).add(node)
    found: set[str] = set()
    pending = [name]
    while pending:
        current = pending.pop()
        for child in reverse.get(current, ()):
            if child not in found:
                found.add(child)
                pending.append(child)
    return found
