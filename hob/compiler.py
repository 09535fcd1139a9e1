"""
Compiler - resolve {{placeholder}} templates in a Recipe.

The compiler resolves:
- {{ identifier }} tokens in every string scalar of a recipe
- placeholders nested inside context values (e.g. a description that
  mentions {{version}}), recursively and memoised

The resulting Recipe has the same shape with no templates left. Every other
component reads resolved recipes only.
"""

import re
from dataclasses import replace
from types import MappingProxyType
from typing import Any, Mapping, Optional

from hob.errors import TemplateCycle, UnresolvedPlaceholder
from hob.schemas import FetchSpec, InstallOperation, Recipe, SidePackage

from .registry import RecipeRegistry


# Placeholder pattern: {{ identifier }}, whitespace inside the braces ignored
PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_.-]*)\s*\}\}")


class ResolutionContext:
    """
    Immutable mapping of identifier -> raw (possibly templated) value.

    resolve() memoises resolved identifiers; the memo never changes what an
    identifier resolves to, so the context behaves as a pure value.
    """

    def __init__(self, values: Mapping[str, str]):
        self._values = MappingProxyType(dict(values))
        self._memo: dict[str, str] = {}

    @property
    def values(self) -> Mapping[str, str]:
        return self._values

    def __contains__(self, identifier: str) -> bool:
        return identifier in self._values

    def resolve(self, text: str) -> str:
        """
        Substitute every placeholder in text.

        Raises:
            UnresolvedPlaceholder: Unknown identifier
            TemplateCycle: An identifier's value depends on itself
        """
        if "{{" not in text:
            return text
        return self._substitute(text, [])

    def _substitute(self, text: str, visiting: list[str]) -> str:
        return PLACEHOLDER_PATTERN.sub(lambda m: self._lookup(m.group(1), text, visiting), text)

    def _lookup(self, identifier: str, text: str, visiting: list[str]) -> str:
        if identifier in self._memo:
            return self._memo[identifier]
        if identifier not in self._values:
            raise UnresolvedPlaceholder(identifier, text)
        if identifier in visiting:
            raise TemplateCycle(visiting[visiting.index(identifier):] + [identifier])

        visiting.append(identifier)
        try:
            value = self._substitute(self._values[identifier], visiting)
        finally:
            visiting.pop()
        self._memo[identifier] = value
        return value


def build_context(recipe: Recipe) -> ResolutionContext:
    """
    Build the resolution context of a recipe.

    Identifiers: name, version, revision, description, home, style,
    source-dir, maintainer, license, self-ref.
    """
    return ResolutionContext({
        "name": recipe.name,
        "version": recipe.version,
        "revision": str(recipe.revision),
        "description": recipe.description,
        "home": recipe.home or "",
        "style": recipe.style,
        "source-dir": recipe.source_dir or "{{name}}-{{version}}",
        "maintainer": " ".join(recipe.maintainers),
        "license": " ".join(recipe.licenses),
        "self-ref": "{{name}}@{{version}}-{{revision}}",
    })


def _resolve_value(value: Any, ctx: ResolutionContext) -> Any:
    """
    Recursively resolve placeholders in a value.

    Args:
        value: The value to resolve (may be str, dict, list, or primitive)
        ctx: Resolution context

    Returns:
        The resolved value
    """
    if isinstance(value, str):
        return ctx.resolve(value)
    elif isinstance(value, dict):
        return {k: _resolve_value(v, ctx) for k, v in value.items()}
    elif isinstance(value, list):
        return [_resolve_value(v, ctx) for v in value]
    elif isinstance(value, tuple):
        return tuple(_resolve_value(v, ctx) for v in value)
    else:
        # Primitives pass through unchanged
        return value


def _resolve_optional(value: Optional[str], ctx: ResolutionContext) -> Optional[str]:
    return None if value is None else ctx.resolve(value)


def _resolve_fetch(spec: FetchSpec, ctx: ResolutionContext) -> FetchSpec:
    return replace(spec, url=ctx.resolve(spec.url), file_name=_resolve_optional(spec.file_name, ctx))


def _resolve_operation(op: InstallOperation, ctx: ResolutionContext) -> InstallOperation:
    return replace(
        op,
        path=_resolve_optional(op.path, ctx),
        target=_resolve_optional(op.target, ctx),
        link_path=_resolve_optional(op.link_path, ctx),
        inputs=_resolve_value(op.inputs, ctx),
        output=_resolve_optional(op.output, ctx),
    )


def _resolve_side(side: SidePackage, ctx: ResolutionContext) -> SidePackage:
    return replace(
        side,
        name=ctx.resolve(side.name),
        description=_resolve_optional(side.description, ctx),
        depends=_resolve_value(side.depends, ctx),
        claims=_resolve_value(side.claims, ctx),
    )


def resolve_recipe(recipe: Recipe) -> Recipe:
    """
    Resolve every string scalar of a recipe against its own context.

    Args:
        recipe: Recipe possibly containing placeholders

    Returns:
        A new Recipe with all placeholders substituted

    Raises:
        UnresolvedPlaceholder, TemplateCycle: annotated with the recipe name
    """
    ctx = build_context(recipe)
    try:
        return replace(
            recipe,
            name=ctx.resolve(recipe.name),
            version=ctx.resolve(recipe.version),
            style=ctx.resolve(recipe.style),
            description=ctx.resolve(recipe.description),
            home=_resolve_optional(recipe.home, ctx),
            maintainers=_resolve_value(recipe.maintainers, ctx),
            licenses=_resolve_value(recipe.licenses, ctx),
            depends=_resolve_value(recipe.depends, ctx),
            provides=_resolve_value(recipe.provides, ctx),
            source_dir=ctx.resolve(ctx.values["source-dir"]),
            options=_resolve_value(recipe.options, ctx),
            artifacts=tuple(_resolve_fetch(a, ctx) for a in recipe.artifacts),
            install=tuple(_resolve_operation(op, ctx) for op in recipe.install),
            playbooks={
                stage: tuple(_resolve_operation(op, ctx) for op in ops)
                for stage, ops in recipe.playbooks.items()
            },
            sides=tuple(_resolve_side(s, ctx) for s in recipe.sides),
        )
    except (UnresolvedPlaceholder, TemplateCycle) as e:
        raise e.with_context(recipe=recipe.name)


class Compiler:
    """
    Compiler for turning recipe names into resolved recipes.

    Usage:
        registry = RecipeRegistry(recipes_dir)
        compiler = Compiler(registry)
        recipe = compiler.compile("musl")
    """

    def __init__(self, registry: RecipeRegistry):
        self._registry = registry

    def compile(self, name: str) -> Recipe:
        """
        Load a recipe from the registry and resolve it.

        Raises:
            RecipeNotFoundError: If the recipe doesn't exist
            UnresolvedPlaceholder, TemplateCycle: If resolution fails
        """
        return resolve_recipe(self._registry.load(name))

    def compile_recipe(self, recipe: Recipe) -> Recipe:
        """Resolve a Recipe directly (without registry lookup)."""
        return resolve_recipe(recipe)
