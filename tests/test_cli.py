"""Tests for the hob CLI."""

import hashlib
import json

import pytest
import yaml
from click.testing import CliRunner

from conftest import make_tarball, musl_recipe_text
from hob.cli import main


@pytest.fixture
def hob_home(tmp_path, monkeypatch):
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOB_HOME", str(home))
    monkeypatch.delenv("HOB_JOBS", raising=False)
    monkeypatch.delenv("HOB_CACHE_DIR", raising=False)
    return home


@pytest.fixture
def quiet_config(hob_home):
    path = hob_home / "config.yaml"
    path.write_text(yaml.safe_dump({"logging": {"console": False}}))
    return path


def write_local_recipe(tmp_path, digest=None):
    """Write a noop-style recipe whose artifact is a local tarball."""
    tarball = make_tarball({"hello-1.0/README": b"hello\n"})
    archive = tmp_path / "hello-1.0.tar.gz"
    archive.write_bytes(tarball)
    digest = digest or hashlib.sha256(tarball).hexdigest()
    path = tmp_path / "hello.hob"
    path.write_text(f'''
recipe "hello" {{
    version "1.0"
    artifacts {{
        fetch {{
            url "{archive.as_uri()}"
            sha256 "{digest}"
        }}
    }}
    install {{
        dir "usr/share/doc/hello"
        link "../../../bin/hello" "usr/share/doc/hello/binary"
    }}
    side "hello-doc" {{
        claim "usr/share/doc"
    }}
}}
''')
    return path


@pytest.fixture
def local_recipe(tmp_path):
    return write_local_recipe(tmp_path)


class TestInit:
    """Tests for `hob init`."""

    def test_creates_config(self, hob_home):
        result = CliRunner().invoke(main, ["init"])
        assert result.exit_code == 0
        assert "Initialized hob config" in result.output
        data = yaml.safe_load((hob_home / "config.yaml").read_text())
        assert data["jobs"] == 2
        assert data["claim_precedence"] == "strict"

    def test_refuses_to_overwrite(self, hob_home):
        (hob_home / "config.yaml").write_text("jobs: 7\n")
        result = CliRunner().invoke(main, ["init"])
        assert result.exit_code == 1
        assert "already exists" in result.output
        assert (hob_home / "config.yaml").read_text() == "jobs: 7\n"

    def test_force(self, hob_home):
        (hob_home / "config.yaml").write_text("jobs: 7\n")
        result = CliRunner().invoke(main, ["init", "--force"])
        assert result.exit_code == 0
        assert yaml.safe_load((hob_home / "config.yaml").read_text())["jobs"] == 2


class TestInspection:
    """Tests for styles/resolve/graph."""

    def test_version(self):
        result = CliRunner().invoke(main, ["--version"])
        assert result.exit_code == 0
        assert "hob" in result.output

    def test_styles_list(self):
        result = CliRunner().invoke(main, ["styles", "list"])
        assert result.exit_code == 0
        assert "configure: prepare -> configure -> build -> install -> strip" in result.output
        assert "noop: install" in result.output

    def test_resolve_yaml(self, tmp_path):
        path = tmp_path / "musl.hob"
        path.write_text(musl_recipe_text("ab" * 32))
        result = CliRunner().invoke(main, ["resolve", str(path)])
        assert result.exit_code == 0
        data = yaml.safe_load(result.output)
        assert data["sides"][0]["name"] == "musl-devel"
        assert data["sides"][0]["depends"] == ["musl@1.2.3-1"]
        assert data["source_dir"] == "musl-1.2.3"

    def test_resolve_json(self, tmp_path):
        path = tmp_path / "musl.hob"
        path.write_text(musl_recipe_text("ab" * 32))
        result = CliRunner().invoke(main, ["resolve", str(path), "--format", "json"])
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["artifacts"][0]["url"] == "https://musl.libc.org/releases/musl-1.2.3.tar.gz"

    def test_resolve_unresolved_placeholder(self, tmp_path):
        path = tmp_path / "bad.hob"
        path.write_text('recipe "bad" { version "1"; description "{{nope}}" }')
        result = CliRunner().invoke(main, ["resolve", str(path)])
        assert result.exit_code == 1
        assert "nope" in result.output

    def test_graph(self, tmp_path):
        path = tmp_path / "set.hob"
        path.write_text('''
recipe "gcc" { version "13"; depends "binutils" "musl" }
recipe "binutils" { version "2.41"; depends "musl" }
recipe "musl" { version "1.2.3" }
''')
        result = CliRunner().invoke(main, ["graph", str(path)])
        assert result.exit_code == 0
        assert result.output.splitlines() == [
            "1. musl",
            "2. binutils  (after musl)",
            "3. gcc  (after binutils, musl)",
        ]

    def test_graph_cycle(self, tmp_path):
        path = tmp_path / "cycle.hob"
        path.write_text('recipe "a" { version "1"; depends "b" }\nrecipe "b" { version "1"; depends "a" }')
        result = CliRunner().invoke(main, ["graph", str(path)])
        assert result.exit_code == 1
        assert "Dependency cycle" in result.output

    def test_graph_unresolvable_recipe(self, tmp_path):
        path = tmp_path / "set.hob"
        path.write_text('recipe "good" { version "1" }\nrecipe "bad" { version "1"; description "{{nope}}" }')
        result = CliRunner().invoke(main, ["graph", str(path)])
        assert result.exit_code == 1
        assert "nope" in result.output


class TestRecipeDirectories:
    """Recipes named on the command line are looked up in the recipe directories."""

    @pytest.fixture
    def recipes_dir(self, tmp_path):
        root = tmp_path / "recipes"
        (root / "libc").mkdir(parents=True)
        (root / "libc" / "musl.hob").write_text(musl_recipe_text("ab" * 32))
        (root / "gcc.hob").write_text('recipe "gcc" { version "13"; depends "musl-devel" }')
        return root

    def test_resolve_by_name(self, recipes_dir):
        result = CliRunner().invoke(main, ["resolve", "musl", "--recipes-dir", str(recipes_dir)])
        assert result.exit_code == 0, result.output
        assert yaml.safe_load(result.output)["sides"][0]["name"] == "musl-devel"

    def test_resolve_unknown_name(self, recipes_dir):
        result = CliRunner().invoke(main, ["resolve", "glibc", "--recipes-dir", str(recipes_dir)])
        assert result.exit_code == 1
        assert "Recipe not found: glibc" in result.output

    def test_graph_by_name(self, recipes_dir):
        result = CliRunner().invoke(main, ["graph", "gcc", "musl", "--recipes-dir", str(recipes_dir)])
        assert result.exit_code == 0, result.output
        assert result.output.splitlines() == ["1. musl", "2. gcc  (after musl)"]

    def test_recipe_dirs_from_config(self, hob_home):
        (hob_home / "recipes").mkdir()
        (hob_home / "recipes" / "zlib.hob").write_text('recipe "zlib" { version "1.3" }')
        result = CliRunner().invoke(main, ["resolve", "zlib"])
        assert result.exit_code == 0, result.output
        assert yaml.safe_load(result.output)["version"] == "1.3"

    def test_list(self, recipes_dir):
        result = CliRunner().invoke(main, ["list", "--recipes-dir", str(recipes_dir)])
        assert result.exit_code == 0, result.output
        lines = result.output.splitlines()
        assert [line.split()[0] for line in lines] == ["gcc", "musl"]
        assert lines[1].split()[1:3] == ["1.2.3-1", "configure"]
        assert len(lines[1].split()[3]) == 12

    def test_list_empty(self, tmp_path):
        empty = tmp_path / "empty"
        empty.mkdir()
        result = CliRunner().invoke(main, ["list", "--recipes-dir", str(empty)])
        assert result.exit_code == 0
        assert "No recipes found" in result.output


class TestBuild:
    """Tests for `hob build`."""

    def test_build_success(self, tmp_path, quiet_config, local_recipe):
        out = tmp_path / "out"
        result = CliRunner().invoke(main, ["build", str(local_recipe), "-o", str(out)])
        assert result.exit_code == 0, result.output
        assert "hello@1.0-0" in result.output
        manifest = json.loads((out / "hello-doc.json").read_text())
        assert manifest["paths"] == ["usr/share/doc/hello/binary"]
        assert json.loads((out / "hello.json").read_text())["paths"] == []

    def test_build_dry_run(self, tmp_path, quiet_config, local_recipe):
        out = tmp_path / "out"
        result = CliRunner().invoke(main, ["build", str(local_recipe), "-o", str(out), "--dry-run"])
        assert result.exit_code == 0, result.output
        assert "DRY RUN" in result.output
        assert not out.exists()

    def test_build_failure_exit_code(self, tmp_path, quiet_config):
        path = write_local_recipe(tmp_path, digest="00" * 32)
        result = CliRunner().invoke(main, ["build", str(path), "-o", str(tmp_path / "out")])
        assert result.exit_code == 1
        assert "hello" in result.output
        assert "[hello:fetch]" in result.output
        assert not (tmp_path / "out" / "hello.json").exists()

    def test_parse_error_exit_code(self, tmp_path, quiet_config):
        path = tmp_path / "broken.hob"
        path.write_text('recipe "x" {\n  version "1"\n')
        result = CliRunner().invoke(main, ["build", str(path)])
        assert result.exit_code == 1
        assert "broken.hob" in result.output

    def test_invalid_config(self, tmp_path, hob_home, local_recipe):
        (hob_home / "config.yaml").write_text("jobs: 0\n")
        result = CliRunner().invoke(main, ["build", str(local_recipe)])
        assert result.exit_code == 1
        assert "Invalid configuration" in result.output

    def test_keep_going_reports_each_recipe(self, tmp_path, quiet_config, local_recipe):
        dependent = tmp_path / "greeter.hob"
        dependent.write_text('recipe "greeter" { version "1"; depends "hello"; style "cmake" }')
        result = CliRunner().invoke(
            main, ["build", str(dependent), str(local_recipe), "-o", str(tmp_path / "out"), "--keep-going"]
        )
        assert result.exit_code == 1
        assert "hello@1.0-0" in result.output
        assert "greeter" in result.output
