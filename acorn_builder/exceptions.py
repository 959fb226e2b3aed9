"""Custom exceptions for the build-and-verify pipeline.

This module defines a hierarchy of exceptions so each pipeline area can be
handled at its own boundary while still carrying structured details.

Exception Hierarchy:
    BuildError (base)
        ├── ConfigurationError
        │   ├── RecipeDefinitionError
        │   └── DependencyCycleError
        ├── AcquisitionError
        │   ├── IntegrityError
        │   ├── SourceFetchError
        │   ├── MirrorsExhaustedError
        │   ├── TransformError
        │   └── DependencyFailedError
        ├── ResolutionFailedError
        ├── CacheError
        │   ├── CacheNotOpenError
        │   └── StageLockTimeoutError
        ├── CompositionError
        │   ├── InvalidPathError
        │   ├── ConflictError
        │   │   └── TypeConflictError
        │   ├── ServiceDefinitionMissingError
        │   └── SigningKeyError
        ├── InputUnavailableError
        ├── GeneratorError
        └── HarnessError

Usage:
    from acorn_builder.exceptions import IntegrityError

    if actual != recipe.digest.value:
        raise IntegrityError(recipe.name, source, recipe.digest.value, actual)
"""

from __future__ import annotations

from typing import Mapping, Sequence


class BuildError(Exception):
    """Base exception for all pipeline errors."""


class ConfigurationError(BuildError):
    """Invalid recipe, component or stage configuration."""


class RecipeDefinitionError(ConfigurationError):
    """A recipe description is malformed."""

    def __init__(self, recipe_name: str, reason: str):
        self.recipe_name = recipe_name
        self.reason = reason
        super().__init__(f"Invalid recipe {recipe_name!r}: {reason}")


class DependencyCycleError(ConfigurationError):
    """The declared dependency order contains a cycle."""

    def __init__(self, cycle: Sequence[str], kind: str = "recipe"):
        self.cycle = list(cycle)
        self.kind = kind
        super().__init__(f"Dependency cycle between {kind}s: {' -> '.join(self.cycle)}")


class AcquisitionError(BuildError):
    """Base exception for recipe acquisition failures."""

    def __init__(self, recipe_name: str, message: str):
        self.recipe_name = recipe_name
        super().__init__(message)


class IntegrityError(AcquisitionError):
    """Fetched content does not match the recipe's declared digest."""

    def __init__(self, recipe_name: str, source: str, expected: str, actual: str):
        self.source = source
        self.expected = expected
        self.actual = actual
        super().__init__(
            recipe_name,
            f"Integrity violation for {recipe_name} from {source}: "
            f"expected {expected}, got {actual}",
        )


class SourceFetchError(AcquisitionError):
    """A single source location could not be fetched."""

    def __init__(self, recipe_name: str, source: str, reason: str, transient: bool = False):
        self.source = source
        self.reason = reason
        self.transient = transient
        super().__init__(recipe_name, f"Failed to fetch {source}: {reason}")


class MirrorsExhaustedError(AcquisitionError):
    """Every candidate source for a recipe failed."""

    def __init__(self, recipe_name: str, reasons: Mapping[str, str]):
        self.reasons = dict(reasons)
        details = "; ".join(f"{source}: {reason}" for source, reason in self.reasons.items())
        super().__init__(
            recipe_name,
            f"All sources failed for {recipe_name}" + (f" ({details})" if details else ""),
        )


class TransformError(AcquisitionError):
    """A post-fetch transform step failed."""

    def __init__(self, recipe_name: str, step: str, reason: str):
        self.step = step
        self.reason = reason
        super().__init__(recipe_name, f"Transform {step!r} failed for {recipe_name}: {reason}")


class DependencyFailedError(AcquisitionError):
    """A recipe was not attempted because something it depends on failed."""

    def __init__(self, recipe_name: str, dependency: str):
        self.dependency = dependency
        super().__init__(
            recipe_name, f"{recipe_name} not resolved: dependency {dependency} failed"
        )


class ResolutionFailedError(BuildError):
    """One or more recipes could not be resolved."""

    def __init__(self, failures: Mapping[str, BaseException]):
        self.failures = dict(failures)
        lines = [f"  {name}: {error}" for name, error in sorted(self.failures.items())]
        super().__init__(
            f"{len(self.failures)} recipe(s) failed to resolve:\n" + "\n".join(lines)
        )


class CacheError(BuildError):
    """Base exception for rebuild cache errors."""


class CacheNotOpenError(CacheError):
    """The cache handle was used outside its open/close lifecycle."""

    def __init__(self, cache_dir: str):
        self.cache_dir = cache_dir
        super().__init__(f"Rebuild cache at {cache_dir} is not open")


class StageLockTimeoutError(CacheError):
    """Another invocation held the stage lock for too long."""

    def __init__(self, stage_id: str, timeout: float):
        self.stage_id = stage_id
        self.timeout = timeout
        super().__init__(f"Timed out after {timeout}s waiting for lock on stage {stage_id}")


class CompositionError(BuildError):
    """Base exception for staging tree composition errors."""


class InvalidPathError(CompositionError):
    """A component referenced a path outside the staging tree."""

    def __init__(self, component: str, path: str):
        self.component = component
        self.path = path
        super().__init__(f"Component {component} uses invalid path {path!r}")


class ConflictError(CompositionError):
    """Two components claim the same path without a declared override."""

    def __init__(self, path: str, existing_owner: str, incoming_owner: str, reason: str = ""):
        self.path = path
        self.existing_owner = existing_owner
        self.incoming_owner = incoming_owner
        self.reason = reason
        msg = (
            f"Conflict on /{path}: component {incoming_owner} collides with "
            f"{existing_owner}"
        )
        if reason:
            msg += f" ({reason})"
        super().__init__(msg)


class TypeConflictError(ConflictError):
    """A directory and a non-directory collide on the same path."""


class ServiceDefinitionMissingError(CompositionError):
    """A component enabled a service whose definition is not in the tree."""

    def __init__(self, component: str, service: str, expected_path: str):
        self.component = component
        self.service = service
        self.expected_path = expected_path
        super().__init__(
            f"Component {component} enables service {service} but /{expected_path} "
            f"is not present in the staging tree"
        )


class SigningKeyError(CompositionError):
    """The composed rootfs lacks usable apk signing keys."""

    def __init__(self, reason: str, missing: Sequence[str] = ()):
        self.reason = reason
        self.missing = list(missing)
        super().__init__(f"apk signing keys: {reason}")


class InputUnavailableError(BuildError):
    """A stage needs a recipe that failed to resolve."""

    def __init__(self, recipe_name: str, cause: BaseException):
        self.recipe_name = recipe_name
        self.cause = cause
        super().__init__(f"recipe {recipe_name} failed: {cause}")


class GeneratorError(BuildError):
    """An external image generator failed."""

    def __init__(self, stage_id: str, command: Sequence[str], diagnostic: str):
        self.stage_id = stage_id
        self.command = list(command)
        self.diagnostic = diagnostic
        super().__init__(f"Command failed ({' '.join(self.command)}): {diagnostic}")


class HarnessError(BuildError):
    """The boot-test harness could not be started."""

