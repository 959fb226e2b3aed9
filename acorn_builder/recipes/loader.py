"""Recipe description parsing.

Recipe files are data-only JSON documents::

    {
      "recipes": [
        {
          "name": "apk-tools",
          "version": "2.14.4",
          "sources": ["https://dl-cdn.alpinelinux.org/...", "https://mirror.example/..."],
          "digest": "sha256:...",
          "transforms": [{"kind": "unpack"}, {"kind": "executable", "paths": ["sbin/apk.static"]}]
        }
      ]
    }
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Iterable, Mapping

from acorn_builder.domain import Digest, Recipe, TransformStep
from acorn_builder.exceptions import RecipeDefinitionError

_KNOWN_KEYS = {
    "name",
    "version",
    "sources",
    "digest",
    "transforms",
    "depends_on",
    "filename",
    "env_override",
}


def _string_list(recipe_name: str, data: Mapping[str, Any], key: str) -> tuple[str, ...]:
    value = data.get(key, [])
    if isinstance(value, str) or not isinstance(value, (list, tuple)):
        raise RecipeDefinitionError(recipe_name, f"{key} must be a list of strings")
    if not all(isinstance(item, str) and item for item in value):
        raise RecipeDefinitionError(recipe_name, f"{key} must be a list of strings")
    return tuple(value)


def parse_recipe(data: Mapping[str, Any]) -> Recipe:
    """Build a Recipe from one decoded description."""
    name = data.get("name")
    if not isinstance(name, str) or not name.strip():
        raise RecipeDefinitionError(str(name), "name is required")
    unknown = set(data) - _KNOWN_KEYS
    if unknown:
        raise RecipeDefinitionError(name, f"unknown keys: {', '.join(sorted(unknown))}")

    sources = _string_list(name, data, "sources")
    if not sources:
        raise RecipeDefinitionError(name, "at least one source is required")

    raw_digest = data.get("digest")
    if isinstance(raw_digest, Mapping):
        raw_digest = f"{raw_digest.get('algorithm', 'sha256')}:{raw_digest.get('value', '')}"
    if not isinstance(raw_digest, str):
        raise RecipeDefinitionError(name, "digest is required")
    try:
        digest = Digest.parse(raw_digest)
    except ValueError as error:
        raise RecipeDefinitionError(name, str(error)) from error

    raw_transforms = data.get("transforms", [])
    if not isinstance(raw_transforms, list):
        raise RecipeDefinitionError(name, "transforms must be a list")
    transforms = []
    for step in raw_transforms:
        if not isinstance(step, Mapping) or "kind" not in step:
            raise RecipeDefinitionError(name, f"invalid transform step: {step!r}")
        try:
            transforms.append(TransformStep.from_dict(step))
        except ValueError as error:
            raise RecipeDefinitionError(name, f"unknown transform kind {step['kind']!r}") from error

    env_override = data.get("env_override")
    if env_override is not None and not isinstance(env_override, str):
        raise RecipeDefinitionError(name, "env_override must be an environment variable name")

    return Recipe(
        name=name,
        sources=sources,
        digest=digest,
        transforms=tuple(transforms),
        depends_on=_string_list(name, data, "depends_on"),
        version=data.get("version"),
        filename=data.get("filename"),
        env_override=env_override,
    )


def merge_recipes(recipes: Iterable[Recipe]) -> list[Recipe]:
    """Drop interchangeable duplicates; reject same-name recipes with different digests."""
    merged: dict[str, Recipe] = {}
    for recipe in recipes:
        existing = merged.get(recipe.name)
        if existing is None:
            merged[recipe.name] = recipe
        elif existing.digest != recipe.digest:
            raise RecipeDefinitionError(
                recipe.name,
                f"declared twice with different digests ({existing.digest} vs {recipe.digest})",
            )
    return list(merged.values())


def load_recipes(path: Path) -> list[Recipe]:
    """Load recipes from a JSON file (``{"recipes": [...]}`` or a bare list)."""
    try:
        document = json.loads(Path(path).read_text(encoding="utf-8"))
    except json.JSONDecodeError as error:
        raise RecipeDefinitionError(str(path), f"invalid JSON: {error}") from error
    if isinstance(document, Mapping):
        document = document.get("recipes", [])
    if not isinstance(document, list):
        raise RecipeDefinitionError(str(path), "expected a list of recipes")
    return merge_recipes(parse_recipe(entry) for entry in document)
