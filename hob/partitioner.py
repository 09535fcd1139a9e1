"""
Package partitioner.

Splits a staging tree into the recipe's main package plus its side packages.
Side packages claim paths with glob patterns:

    usr/include        exact path; claims everything below it as well
    usr/lib/*.a        * ? [...] match within one path segment
    usr/share/**/man   ** matches any number of segments

Sides are evaluated in declaration order against the pool of unclaimed
entries. Whatever no side claims belongs to the main package. With "strict"
precedence a path claimed by two sides is an error; with "first" the
earliest declared side wins.
"""

import logging
from dataclasses import dataclass
from fnmatch import fnmatchcase
from functools import lru_cache

from hob.errors import BuildError, ClaimConflictError
from hob.schemas import Package, Recipe, SidePackage
from hob.staging import StagingTree

logger = logging.getLogger(__name__)

PRECEDENCE_STRICT = "strict"
PRECEDENCE_FIRST = "first"


@lru_cache(maxsize=4096)
def _match_segments(segments: tuple[str, ...], parts: tuple[str, ...]) -> bool:
    if not segments:
        return not parts
    head, rest = segments[0], segments[1:]
    if head == "**":
        return any(_match_segments(rest, parts[i:]) for i in range(len(parts) + 1))
    if not parts:
        return False
    return fnmatchcase(parts[0], head) and _match_segments(rest, parts[1:])


class ClaimPattern:
    """A compiled claim glob."""

    def __init__(self, pattern: str):
        self.pattern = pattern
        self.segments = tuple(s for s in pattern.strip("/").split("/") if s not in ("", "."))

    def __repr__(self) -> str:
        return f"ClaimPattern({self.pattern!r})"

    def matches(self, path: str) -> bool:
        """True if the pattern matches path or one of its ancestor directories."""
        if not self.segments:
            return False
        parts = tuple(path.split("/"))
        return any(_match_segments(self.segments, parts[:k]) for k in range(1, len(parts) + 1))


def side_matches(side: SidePackage, path: str) -> bool:
    return any(ClaimPattern(p).matches(path) for p in side.claims)


@dataclass(frozen=True)
class PartitionResult:
    """Packages produced from one staging tree; main package first."""
    packages: tuple[Package, ...]

    @property
    def main(self) -> Package:
        return self.packages[0]

    def owner_of(self, path: str) -> str:
        for package in self.packages:
            if path in package.paths:
                return package.name
        raise KeyError(path)

    def get(self, name: str) -> Package:
        for package in self.packages:
            if package.name == name:
                return package
        raise KeyError(name)


def _main_package(recipe: Recipe, paths: list[str]) -> Package:
    return Package(
        name=recipe.name,
        version=recipe.version,
        revision=recipe.revision,
        description=recipe.description,
        depends=tuple(recipe.depends),
        origin=recipe.name,
        is_main=True,
        licenses=tuple(recipe.licenses),
        maintainers=tuple(recipe.maintainers),
        home=recipe.home,
        paths=tuple(sorted(paths)),
    )


def _side_package(recipe: Recipe, side: SidePackage, paths: list[str]) -> Package:
    return Package(
        name=side.name,
        version=recipe.version,
        revision=recipe.revision,
        description=recipe.side_description(side),
        depends=recipe.side_depends(side),
        origin=recipe.name,
        is_main=False,
        licenses=tuple(recipe.licenses),
        maintainers=tuple(recipe.maintainers),
        home=recipe.home,
        paths=tuple(sorted(paths)),
    )


def partition(recipe: Recipe, staging: StagingTree, precedence: str = PRECEDENCE_STRICT) -> PartitionResult:
    """
    Partition the staging tree of a resolved recipe into packages.

    Args:
        recipe: Resolved recipe
        staging: Staging tree after install and post-install
        precedence: "strict" or "first"

    Returns:
        PartitionResult with the main package followed by the sides in
        declaration order

    Raises:
        ClaimConflictError: strict precedence and a path matched by two sides
    """
    if precedence not in (PRECEDENCE_STRICT, PRECEDENCE_FIRST):
        raise ValueError(f"Unknown claim precedence: {precedence}")

    entries = staging.entries()
    unclaimed = list(entries)
    claimed: dict[str, list[str]] = {}

    if precedence == PRECEDENCE_STRICT:
        for path in entries:
            owners = [side.name for side in recipe.sides if side_matches(side, path)]
            if len(owners) > 1:
                raise ClaimConflictError(path, owners)

    for side in recipe.sides:
        taken = [path for path in unclaimed if side_matches(side, path)]
        claimed[side.name] = taken
        taken_set = set(taken)
        unclaimed = [path for path in unclaimed if path not in taken_set]
        logger.debug(f"{recipe.name}: side {side.name} claims {len(taken)} path(s)")

    packages = [_main_package(recipe, unclaimed)]
    packages.extend(_side_package(recipe, side, claimed[side.name]) for side in recipe.sides)

    _check_complete(entries, packages)
    for package in packages:
        logger.info(f"{recipe.name}: package {package.identity} ({len(package.paths)} path(s))")
    return PartitionResult(packages=tuple(packages))


def _check_complete(entries: list[str], packages: list[Package]) -> None:
    seen: set[str] = set()
    for package in packages:
        overlap = seen.intersection(package.paths)
        if overlap:
            raise BuildError(f"Paths owned twice: {sorted(overlap)}", phase="partition")
        seen.update(package.paths)
    if seen != set(entries):
        raise BuildError(f"Unowned paths: {sorted(set(entries) - seen)}", phase="partition")
