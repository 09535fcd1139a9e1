"""
hob.schemas - Schema definitions for the build pipeline.

This module defines the core data structures for hob:

Recipe -> (resolved) Recipe -> StagingTree -> Package

Lifecycle:
1. Recipe: Declarative, version-controlled description with {{placeholder}} templates
2. Resolved Recipe: Same shape, every string scalar resolved against the recipe context
3. Package: Output of the partitioner, one per side package plus the main package
"""

from .ops import InstallOp
from .recipe import (
    Recipe,
    FetchSpec,
    HashSpec,
    InstallOperation,
    SidePackage,
    SUPPORTED_HASHES,
    STAGES,
)
from .package import Package

__all__ = [
    # Ops
    "InstallOp",
    # Recipe
    "Recipe",
    "FetchSpec",
    "HashSpec",
    "InstallOperation",
    "SidePackage",
    "SUPPORTED_HASHES",
    "STAGES",
    # Output
    "Package",
]
