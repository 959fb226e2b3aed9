"""Domain models for recipe acquisition.

This package contains the immutable recipe declarations and the verified
inputs the recipe engine produces from them.
"""

from __future__ import annotations

from .models import (
    Digest,
    Recipe,
    RecipeStatus,
    ResolvedInput,
    TransformKind,
    TransformStep,
)


__all__ = [
    "Digest",
    "Recipe",
    "RecipeStatus",
    "ResolvedInput",
    "TransformKind",
    "TransformStep",
]
