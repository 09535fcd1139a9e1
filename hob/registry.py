"""
RecipeRegistry - Load and validate recipes from disk.

The registry provides:
- Loading recipes from recipe documents (.hob, .kdl) or YAML/JSON files
- Lookup by recipe name across a search directory tree
- Caching loaded recipes
- Listing every recipe with its content hash (`hob list`)
"""

import hashlib
import json
import logging
from pathlib import Path
from typing import Iterable

import yaml

from hob.errors import ParseError, PermanentError
from hob.parser import parse_file
from hob.schemas import Recipe

logger = logging.getLogger(__name__)

DOCUMENT_SUFFIXES = (".hob", ".kdl")
DATA_SUFFIXES = (".yaml", ".yml", ".json")
RECIPE_SUFFIXES = DOCUMENT_SUFFIXES + DATA_SUFFIXES


class RecipeNotFoundError(PermanentError):
    """Raised when a recipe is not found."""
    pass


def load_recipe_file(path: Path | str) -> list[Recipe]:
    """
    Load every recipe contained in one file.

    Recipe documents may hold several `recipe` nodes. YAML/JSON files hold
    either a single recipe mapping, a list of mappings, or a mapping with a
    `recipes` list.

    Raises:
        ParseError: If the file cannot be read or is invalid
    """
    path = Path(path)
    suffix = path.suffix.lower()

    if suffix in DOCUMENT_SUFFIXES:
        return parse_file(path)

    if suffix not in DATA_SUFFIXES:
        raise ParseError(f"Unsupported recipe file format: {suffix}", filename=str(path))

    try:
        with open(path) as f:
            if suffix == ".json":
                data = json.load(f)
            else:
                data = yaml.safe_load(f)
    except (OSError, json.JSONDecodeError, yaml.YAMLError) as e:
        raise ParseError(f"Failed to load: {e}", filename=str(path))

    if isinstance(data, dict) and "recipes" in data:
        data = data["recipes"]
    entries = data if isinstance(data, list) else [data]

    recipes = []
    for entry in entries:
        try:
            recipes.append(Recipe.from_dict(entry))
        except ParseError as e:
            raise ParseError(e.message, filename=str(path), recipe=e.recipe) from e
    return recipes


class RecipeRegistry:
    """
    Registry for loading and caching recipes.

    Recipes are looked up by name. A file named after the recipe is tried
    first; otherwise every recipe file under the search directories is
    scanned.

    Example directory structure:
        recipes/
            libc/
                musl.hob
            devel/
                toolchain.yaml
    """

    def __init__(self, search_dirs: Path | str | Iterable[Path | str]):
        """
        Initialize the registry.

        Args:
            search_dirs: Directory (or directories) containing recipe files
        """
        if isinstance(search_dirs, (str, Path)):
            search_dirs = [search_dirs]
        self._search_dirs = [Path(d) for d in search_dirs]
        self._cache: dict[str, Recipe] = {}
        self._loaded_files: set[Path] = set()

    @property
    def search_dirs(self) -> list[Path]:
        return list(self._search_dirs)

    def load(self, name: str) -> Recipe:
        """
        Load a recipe by name.

        Args:
            name: Recipe name

        Returns:
            The loaded Recipe

        Raises:
            RecipeNotFoundError: If no recipe file defines the name
            ParseError: If a scanned file is invalid
        """
        if name in self._cache:
            return self._cache[name]

        candidates = self._find_definitions(name)
        for path in candidates:
            self._load_into_cache(path)
            if name in self._cache:
                return self._cache[name]

        # Fall back to scanning everything
        for path in self._iter_files():
            self._load_into_cache(path)
            if name in self._cache:
                return self._cache[name]

        raise RecipeNotFoundError(f"Recipe not found: {name}")

    def _load_into_cache(self, path: Path) -> None:
        resolved = path.resolve()
        if resolved in self._loaded_files:
            return
        for recipe in load_recipe_file(path):
            if recipe.name in self._cache:
                logger.warning(f"Recipe {recipe.name} redefined in {path}; keeping the first definition")
                continue
            self._cache[recipe.name] = recipe
        self._loaded_files.add(resolved)

    def _iter_files(self) -> list[Path]:
        files = []
        for root in self._search_dirs:
            if root.is_file():
                files.append(root)
                continue
            if not root.exists():
                continue
            for suffix in RECIPE_SUFFIXES:
                files.extend(
                    f for f in root.glob(f"**/*{suffix}") if "_deprecated" not in f.parts
                )
        return sorted(files)

    def _find_definitions(self, name: str) -> list[Path]:
        """
        Find files named after a recipe.

        Recipe documents are preferred over YAML, YAML over JSON.
        """
        found = []
        for suffix in RECIPE_SUFFIXES:
            filename = f"{name}{suffix}"
            for root in self._search_dirs:
                if root.is_file():
                    if root.name == filename:
                        found.append(root)
                    continue
                root_path = root / filename
                if root_path.exists():
                    found.append(root_path)
                else:
                    found.extend(sorted(root.glob(f"**/{filename}")))
        return found

    def list_recipes(self) -> list[str]:
        """
        List all available recipe names.

        Returns:
            Sorted list of recipe names found under the search directories
        """
        self.preload_all()
        return sorted(self._cache)

    @staticmethod
    def compute_hash(recipe: Recipe) -> str:
        """
        Compute SHA256 hash of a recipe for content addressing.

        Uses canonical JSON serialization (sorted keys, no whitespace)
        to ensure consistent hashing.
        """
        canonical = json.dumps(recipe.to_dict(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode()).hexdigest()

    def preload_all(self) -> int:
        """
        Preload all recipes into cache.

        Returns:
            Number of recipes loaded

        Raises:
            ParseError: If any recipe file is invalid
        """
        for path in self._iter_files():
            self._load_into_cache(path)
        return len(self._cache)
