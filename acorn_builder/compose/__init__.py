"""Component composition: ordered contributors merged into a staging tree.

Main API:
    - compose(): Apply components into a StagingTree under the conflict policy
    - StagingTree: Paths with provenance, fingerprint() and materialize()
    - default_components(): AcornOS root filesystem components
"""

from .definitions import default_components, initramfs_components, iso_root_components
from .engine import compose, normalize_path
from .operations import (
    AppendFile,
    Component,
    CopyFile,
    EnableService,
    EnsureDir,
    Symlink,
    WriteFile,
    tree_component,
)
from .staging import Node, StagingTree, TreeSummary


__all__ = [
    "AppendFile",
    "Component",
    "CopyFile",
    "EnableService",
    "EnsureDir",
    "Node",
    "StagingTree",
    "Symlink",
    "TreeSummary",
    "WriteFile",
    "compose",
    "default_components",
    "initramfs_components",
    "iso_root_components",
    "normalize_path",
    "tree_component",
]
