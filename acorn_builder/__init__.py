"""AcornOS image builder: recipe acquisition, rebuild cache, composition and boot tests."""

from .__version__ import __version__


__all__ = ["__version__"]
