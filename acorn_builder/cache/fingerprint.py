"""Digest and fingerprint helpers.

Fingerprints are composed Merkle-style: a stage fingerprint hashes the stage's
own parameters together with the fingerprints of its inputs, never the raw
bytes of upstream outputs.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any, Iterable, Mapping

CHUNK_SIZE = 1024 * 1024
FINGERPRINT_ALGORITHM = "sha256"


def file_digest(path: Path, algorithm: str = "sha256") -> str:
    """Hex digest of a file, read in 1 MiB chunks."""
    hasher = hashlib.new(algorithm)
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(CHUNK_SIZE), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


def bytes_digest(data: bytes, algorithm: str = "sha256") -> str:
    return hashlib.new(algorithm, data).hexdigest()


def canonical_json(value: Any) -> str:
    """Stable JSON encoding used as hash input."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def compute_fingerprint(
    stage_id: str,
    params: Mapping[str, Any] | None = None,
    inputs: Iterable[str] = (),
) -> str:
    """Fingerprint for a stage from its declared parameters and ordered inputs.

    Input order is significant: the same fingerprints in a different order
    describe a different build.
    """
    hasher = hashlib.new(FINGERPRINT_ALGORITHM)
    hasher.update(stage_id.encode("utf-8"))
    hasher.update(b"\0")
    hasher.update(canonical_json(dict(params or {})).encode("utf-8"))
    for item in inputs:
        hasher.update(b"\0")
        hasher.update(str(item).encode("utf-8"))
    return hasher.hexdigest()
