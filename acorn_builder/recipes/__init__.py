"""Recipe engine: declarative external inputs, fetched and verified.

Main API:
    - load_recipes(): Parse a JSON recipe description
    - RecipeEngine: Resolve recipes into cached ResolvedInputs
    - MirrorFetcher: Fetch one source location with retries
"""

from .engine import RecipeEngine, ResolutionReport
from .fetch import MirrorFetcher
from .loader import load_recipes, merge_recipes, parse_recipe
from .transforms import apply_transforms


__all__ = [
    "MirrorFetcher",
    "RecipeEngine",
    "ResolutionReport",
    "apply_transforms",
    "load_recipes",
    "merge_recipes",
    "parse_recipe",
]
