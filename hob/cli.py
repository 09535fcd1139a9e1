"""
CLI interface for hob.

Provides commands to build recipes, inspect resolved recipes and the build
order, list known recipes and build styles and initialise the configuration.

Recipes are given either as files (recipe documents .hob/.kdl, or YAML/JSON;
one file may define several recipes) or by name, looked up in the recipe
directories (--recipes-dir, default from the config's recipe_dirs).
"""

import json
import logging
from pathlib import Path
from typing import Optional

import click
import yaml

from hob import __version__
from hob.errors import HobError

logger = logging.getLogger(__name__)


def _registry(recipe_dirs: tuple[Path, ...]):
    from hob.config import load_config
    from hob.registry import RecipeRegistry

    return RecipeRegistry(recipe_dirs or load_config().recipe_dirs)


def _load_recipes(references: tuple[str, ...], recipe_dirs: tuple[Path, ...]) -> list:
    """Load recipes from files, or by name through the recipe registry."""
    from hob.registry import load_recipe_file

    registry = None
    recipes = []
    for reference in references:
        path = Path(reference)
        if path.is_file():
            recipes.extend(load_recipe_file(path))
            continue
        if registry is None:
            registry = _registry(recipe_dirs)
        recipes.append(registry.load(reference))
    return recipes


def _fail(message: str) -> None:
    from hob.utils import print_error

    print_error(message)
    raise SystemExit(1)


recipes_dir_option = click.option(
    "--recipes-dir", "recipe_dirs", multiple=True,
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    help="Directory searched for recipes given by name (repeatable)",
)


@click.group()
@click.version_option(version=__version__, prog_name="hob")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx, verbose: bool):
    """
    hob - recipe-driven package builder.

    Fetch, build, install and split packages from declarative recipes.
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose


@main.command("build")
@click.argument("recipe_refs", nargs=-1, required=True)
@recipes_dir_option
@click.option("-o", "--output", "output_dir", type=click.Path(file_okay=False, path_type=Path),
              help="Output directory for packages (default from config)")
@click.option("--keep-going", is_flag=True, help="Continue unrelated recipes after a failure")
@click.option("--jobs", "-j", type=click.IntRange(min=1), help="Recipes built concurrently")
@click.option("--fetch-jobs", type=click.IntRange(min=1), help="Concurrent downloads per recipe")
@click.option("--timeout", type=click.FloatRange(min=0, min_open=True), help="Timeout per build tool invocation (seconds)")
@click.option("--claim-precedence", type=click.Choice(["strict", "first"]), help="How overlapping side claims are resolved")
@click.option("--keep-work", is_flag=True, help="Keep work directories after building")
@click.option("--dry-run", is_flag=True, help="Resolve and plan without fetching or running tools")
@click.option("--config", "config_path", type=click.Path(exists=True, dir_okay=False, path_type=Path),
              help="Configuration file (default: $HOB_HOME/config.yaml)")
@click.pass_context
def build(
    ctx,
    recipe_refs: tuple[str, ...],
    recipe_dirs: tuple[Path, ...],
    output_dir: Optional[Path],
    keep_going: bool,
    jobs: Optional[int],
    fetch_jobs: Optional[int],
    timeout: Optional[float],
    claim_precedence: Optional[str],
    keep_work: bool,
    dry_run: bool,
    config_path: Optional[Path],
):
    """
    Build packages from recipe files or recipe names.

    Examples:

        hob build recipes/musl.hob -o out/

        hob build musl gcc --recipes-dir recipes/ -o out/

        hob build recipes/*.hob -o out/ --keep-going -j 4

        hob build recipes/musl.hob --dry-run
    """
    from hob.config import load_config
    from hob.executor import RecipeExecutor
    from hob.orchestrator import Orchestrator
    from hob.utils import (
        format_duration,
        print_banner,
        print_error,
        print_success,
        print_warning,
        setup_logging,
    )

    try:
        config = load_config(config_path).with_overrides(
            output_dir=output_dir,
            keep_going=keep_going or None,
            jobs=jobs,
            fetch_jobs=fetch_jobs,
            phase_timeout_s=timeout,
            claim_precedence=claim_precedence,
            keep_work=keep_work or None,
        )
    except HobError as e:
        _fail(f"Invalid configuration: {e}")

    level = "DEBUG" if ctx.obj.get("verbose") else config.logging.level
    setup_logging(
        config.logging.get_log_file_path(),
        log_level=level,
        log_format=config.logging.format,
        console_output=config.logging.console,
    )

    try:
        recipes = _load_recipes(recipe_refs, recipe_dirs or config.recipe_dirs)
    except HobError as e:
        _fail(str(e))

    if dry_run:
        print_banner("DRY RUN (no fetches, no tools, no output)")

    executor = RecipeExecutor.from_config(config, dry_run=dry_run)
    orchestrator = Orchestrator(executor, max_workers=config.jobs, keep_going=config.keep_going)

    try:
        result = orchestrator.run(recipes)
    except HobError as e:
        _fail(str(e))

    for name in result.order:
        if name in result.built:
            built = result.built[name]
            packages = ", ".join(p.identity for p in built.packages)
            print_success(f"{name}: {packages} ({format_duration(built.duration_ms / 1000)})")
        elif name in result.failed:
            print_error(f"{name}: {result.failed[name]}")
        elif name in result.skipped:
            print_warning(f"{name}: skipped (dependency failed)")
        elif name in result.cancelled:
            print_warning(f"{name}: cancelled")

    if not result.success:
        raise SystemExit(1)


@main.command("resolve")
@click.argument("recipe_ref")
@recipes_dir_option
@click.option("--format", "output_format", type=click.Choice(["yaml", "json"]), default="yaml", show_default=True)
def resolve(recipe_ref: str, recipe_dirs: tuple[Path, ...], output_format: str):
    """Print a recipe (or every recipe of a file) with all placeholders resolved."""
    from hob.compiler import Compiler
    from hob.registry import RecipeRegistry, load_recipe_file

    try:
        if Path(recipe_ref).is_file():
            compiler = Compiler(RecipeRegistry(recipe_dirs))
            resolved = [compiler.compile_recipe(r).to_dict() for r in load_recipe_file(recipe_ref)]
        else:
            resolved = [Compiler(_registry(recipe_dirs)).compile(recipe_ref).to_dict()]
    except HobError as e:
        _fail(str(e))

    data = resolved[0] if len(resolved) == 1 else resolved
    if output_format == "json":
        click.echo(json.dumps(data, indent=2))
    else:
        click.echo(yaml.safe_dump(data, sort_keys=False), nl=False)


@main.command("graph")
@click.argument("recipe_refs", nargs=-1, required=True)
@recipes_dir_option
def graph(recipe_refs: tuple[str, ...], recipe_dirs: tuple[Path, ...]):
    """Print the build order of recipes."""
    from hob.orchestrator import DependencyGraph

    try:
        dep_graph = DependencyGraph.from_recipes(_load_recipes(recipe_refs, recipe_dirs))
        order = dep_graph.topological_order()
    except HobError as e:
        _fail(str(e))
    for error in dep_graph.errors.values():
        _fail(str(error))

    for index, name in enumerate(order, start=1):
        deps = sorted(dep_graph.dependencies(name))
        suffix = f"  (after {', '.join(deps)})" if deps else ""
        click.echo(f"{index}. {name}{suffix}")


@main.command("list")
@recipes_dir_option
def list_recipes(recipe_dirs: tuple[Path, ...]):
    """List the recipes found in the recipe directories."""
    from hob.registry import RecipeRegistry

    try:
        registry = _registry(recipe_dirs)
        names = registry.list_recipes()
    except HobError as e:
        _fail(str(e))

    if not names:
        click.echo(f"No recipes found in {', '.join(str(d) for d in registry.search_dirs)}")
        return
    for name in names:
        recipe = registry.load(name)
        digest = RecipeRegistry.compute_hash(recipe)[:12]
        click.echo(f"{name}  {recipe.version}-{recipe.revision}  {recipe.style}  {digest}")


@main.group("styles")
def styles_group():
    """Inspect build styles."""
    pass


@styles_group.command("list")
def list_styles():
    """List registered build styles and their phases."""
    from hob.styles import StyleRegistry

    registry = StyleRegistry.create_default()
    for name in registry.list_styles():
        style = registry.get(name)
        phases = " -> ".join(style.phases + style.post_install)
        click.echo(f"{name}: {phases}")


@main.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
def init(force: bool):
    """Initialize hob configuration."""
    from hob.config import HobConfig, get_hob_home

    home = get_hob_home()
    if not home.exists():
        home.mkdir(parents=True)

    cfg_path = home / "config.yaml"
    if cfg_path.exists() and not force:
        click.echo(f"Config already exists at {cfg_path}. Use --force to overwrite.", err=True)
        raise SystemExit(1)

    cfg_path.write_text(yaml.safe_dump(HobConfig().to_dict(), sort_keys=False))
    click.echo(f"Initialized hob config at {cfg_path}")


if __name__ == "__main__":
    main()
