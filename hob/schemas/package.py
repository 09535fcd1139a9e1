"""
Package schema - the output of a recipe build.

A Package is produced once, at the end of the pipeline, and is immutable.
It owns a concrete set of staging paths; the packager copies or hard-links
those paths into the package payload.
"""

from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass(frozen=True)
class Package:
    """
    An ownership-partitioned output package.

    Attributes:
        name: Package name
        version: Version shared with the producing recipe
        revision: Revision shared with the producing recipe
        description: Resolved description
        depends: Resolved dependency references
        origin: Name of the recipe that produced this package
        is_main: True for the recipe's main package
        licenses: SPDX license identifiers
        maintainers: Maintainer contacts
        home: Upstream homepage
        paths: Sorted staging-relative paths owned by this package
    """
    name: str
    version: str
    revision: int
    description: str = ""
    depends: tuple[str, ...] = field(default_factory=tuple)
    origin: str = ""
    is_main: bool = True
    licenses: tuple[str, ...] = field(default_factory=tuple)
    maintainers: tuple[str, ...] = field(default_factory=tuple)
    home: Optional[str] = None
    paths: tuple[str, ...] = field(default_factory=tuple)

    @property
    def identity(self) -> str:
        return f"{self.name}@{self.version}-{self.revision}"

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a manifest dictionary (stable key order)."""
        return {
            "name": self.name,
            "version": self.version,
            "revision": self.revision,
            "identity": self.identity,
            "origin": self.origin,
            "main": self.is_main,
            "description": self.description,
            "depends": list(self.depends),
            "license": list(self.licenses),
            "maintainer": list(self.maintainers),
            **({"home": self.home} if self.home else {}),
            "paths": list(self.paths),
        }
