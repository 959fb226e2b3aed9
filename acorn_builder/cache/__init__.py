"""Content-addressed rebuild cache.

Main API:
    - compute_fingerprint(): Compose a stage fingerprint from params and inputs
    - RebuildCache: Per-stage entries with reuse/rebuild decisions and locking
"""

from .fingerprint import bytes_digest, canonical_json, compute_fingerprint, file_digest
from .store import CacheEntry, Decision, RebuildCache, Rebuild, Reuse, StageRun


__all__ = [
    "CacheEntry",
    "Decision",
    "RebuildCache",
    "Rebuild",
    "Reuse",
    "StageRun",
    "bytes_digest",
    "canonical_json",
    "compute_fingerprint",
    "file_digest",
]
