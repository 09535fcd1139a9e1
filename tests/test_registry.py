"""Tests for RecipeRegistry and recipe file loading."""

import json

import pytest
import yaml

from hob.errors import ParseError
from hob.registry import RecipeNotFoundError, RecipeRegistry, load_recipe_file

SHA256 = "ab" * 32


@pytest.fixture
def recipes_dir(tmp_path):
    root = tmp_path / "recipes"
    (root / "libc").mkdir(parents=True)
    (root / "libc" / "musl.hob").write_text(
        'recipe "musl" { version "1.2.3"; style "configure" }\n'
    )
    (root / "devel").mkdir()
    (root / "devel" / "toolchain.yaml").write_text(yaml.safe_dump({
        "recipes": [
            {"name": "binutils", "version": "2.41", "depends": ["musl"]},
            {"name": "gcc", "version": "13.2", "depends": ["binutils", "musl"]},
        ]
    }))
    (root / "zlib.json").write_text(json.dumps({
        "name": "zlib",
        "version": "1.3",
        "artifacts": [{"url": "https://zlib.net/zlib-1.3.tar.gz", "sha256": SHA256}],
    }))
    return root


class TestLoadRecipeFile:
    """Tests for load_recipe_file."""

    def test_document(self, recipes_dir):
        recipes = load_recipe_file(recipes_dir / "libc" / "musl.hob")
        assert [r.name for r in recipes] == ["musl"]

    def test_yaml_recipes_list(self, recipes_dir):
        recipes = load_recipe_file(recipes_dir / "devel" / "toolchain.yaml")
        assert [r.name for r in recipes] == ["binutils", "gcc"]

    def test_json_single(self, recipes_dir):
        (recipe,) = load_recipe_file(recipes_dir / "zlib.json")
        assert recipe.artifacts[0].hash.digest == SHA256

    def test_unsupported_suffix(self, tmp_path):
        path = tmp_path / "musl.toml"
        path.write_text("")
        with pytest.raises(ParseError, match="Unsupported recipe file format"):
            load_recipe_file(path)

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("name: [unclosed\n")
        with pytest.raises(ParseError, match="Failed to load"):
            load_recipe_file(path)

    def test_invalid_recipe_names_file(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text(yaml.safe_dump({"name": "a"}))
        with pytest.raises(ParseError) as exc_info:
            load_recipe_file(path)
        assert str(path) in str(exc_info.value)
        assert exc_info.value.recipe == "a"


class TestRecipeRegistry:
    """Tests for registry lookup and caching."""

    def test_load_by_file_name(self, recipes_dir):
        registry = RecipeRegistry(recipes_dir)
        assert registry.load("musl").style == "configure"

    def test_load_by_scanning(self, recipes_dir):
        registry = RecipeRegistry(recipes_dir)
        assert registry.load("gcc").depends == ("binutils", "musl")

    def test_not_found(self, recipes_dir):
        registry = RecipeRegistry(recipes_dir)
        with pytest.raises(RecipeNotFoundError, match="Recipe not found: glibc"):
            registry.load("glibc")

    def test_cached(self, recipes_dir):
        registry = RecipeRegistry(recipes_dir)
        first = registry.load("musl")
        (recipes_dir / "libc" / "musl.hob").unlink()
        assert registry.load("musl") is first

    def test_list_recipes(self, recipes_dir):
        registry = RecipeRegistry(recipes_dir)
        assert registry.list_recipes() == ["binutils", "gcc", "musl", "zlib"]

    def test_deprecated_directory_ignored(self, recipes_dir):
        (recipes_dir / "_deprecated").mkdir()
        (recipes_dir / "_deprecated" / "old.hob").write_text('recipe "old" { version "0" }')
        assert "old" not in RecipeRegistry(recipes_dir).list_recipes()

    def test_several_search_dirs(self, recipes_dir, tmp_path):
        extra = tmp_path / "extra"
        extra.mkdir()
        (extra / "xz.yaml").write_text(yaml.safe_dump({"name": "xz", "version": "5.4"}))
        registry = RecipeRegistry([recipes_dir, extra])
        assert registry.load("xz").version == "5.4"

    def test_first_definition_wins(self, recipes_dir):
        (recipes_dir / "zz-musl.yaml").write_text(yaml.safe_dump({"name": "musl", "version": "0.9"}))
        registry = RecipeRegistry(recipes_dir)
        registry.preload_all()
        assert registry.load("musl").version == "1.2.3"


class TestContentHash:
    """Tests for content addressing."""

    def test_hash_is_stable(self, recipes_dir):
        registry = RecipeRegistry(recipes_dir)
        recipe = registry.load("musl")
        assert RecipeRegistry.compute_hash(recipe) == RecipeRegistry.compute_hash(recipe)
        assert len(RecipeRegistry.compute_hash(recipe)) == 64

    def test_hash_changes_with_content(self, recipes_dir):
        registry = RecipeRegistry(recipes_dir)
        assert RecipeRegistry.compute_hash(registry.load("musl")) != RecipeRegistry.compute_hash(
            registry.load("zlib")
        )

    def test_hash_ignores_file_layout(self, recipes_dir, tmp_path):
        moved = tmp_path / "moved"
        moved.mkdir()
        (moved / "musl.yaml").write_text(yaml.safe_dump({"name": "musl", "version": "1.2.3", "style": "configure"}))
        assert RecipeRegistry.compute_hash(RecipeRegistry(recipes_dir).load("musl")) == RecipeRegistry.compute_hash(
            RecipeRegistry(moved).load("musl")
        )
