"""
Recipe document parser.

Recipe documents are KDL documents (parsed with kdl-py):

    recipe "musl" {
        version "1.2.3"
        revision 1
        style "configure" { configure-args "--enable-wrapper=no" }
        artifacts {
            fetch {
                url "https://musl.libc.org/releases/{{name}}-{{version}}.tar.gz"
                sha256 "..."
            }
        }
        build {
            .default
            cc "tools/musl-gcc.c" output="musl-gcc"
        }
        install {
            dir "usr/bin"
            make-install
            link "../lib/libc.so" "usr/bin/ldd"
            bin "musl-gcc"
        }
        side "{{name}}-devel" {
            depends "{{self-ref}}"
            claim "usr/include" "usr/lib/*.a"
        }
    }

parse_document() maps the node tree onto Recipe objects. Placeholders are
left untouched here; see hob.compiler.
"""

import logging
from pathlib import Path
from typing import Any, Optional

import kdl

from hob.errors import ParseError
from hob.schemas import Recipe

logger = logging.getLogger(__name__)

STAGE_BLOCKS = ("configure", "build", "install")


def _native(value: Any) -> Any:
    """Plain Python value of a KDL value (tagged values keep their payload)."""
    return getattr(value, "value", value)


def parse_nodes(text: str, filename: Optional[str] = None) -> list[kdl.Node]:
    """
    Parse document text into its top-level KDL nodes.

    Raises:
        ParseError: On KDL syntax errors, with the position when known
    """
    try:
        return list(kdl.parse(text).nodes)
    except kdl.ParseError as e:
        raise ParseError(
            str(getattr(e, "msg", None) or e),
            filename=filename,
            line=getattr(e, "line", None),
            column=getattr(e, "col", None),
        ) from e


class _RecipeBuilder:
    """Maps the node tree of one `recipe` node onto the Recipe.from_dict shape."""

    def __init__(self, filename: Optional[str]):
        self._filename = filename

    def _error(self, message: str, recipe: Optional[str] = None) -> ParseError:
        return ParseError(message, filename=self._filename, recipe=recipe)

    def _args(self, node: kdl.Node) -> list[Any]:
        return [_native(v) for v in node.args]

    def _props(self, node: kdl.Node) -> dict[str, Any]:
        return {k: _native(v) for k, v in node.props.items()}

    def _single(self, node: kdl.Node, kinds: tuple = (str,), label: Optional[str] = None,
                recipe: Optional[str] = None) -> Any:
        label = label or node.name
        args = self._args(node)
        if node.props:
            raise self._error(f"{label} expected a value, property found instead", recipe)
        if not args:
            raise self._error(f"{label} missing", recipe)
        if len(args) > 1:
            raise self._error(f"only 1 value expected for {label}", recipe)
        value = args[0]
        if isinstance(value, float) and int in kinds and value.is_integer():
            value = int(value)
        if isinstance(value, bool) and bool not in kinds:
            raise self._error(f"{label} should be a {kinds[0].__name__}", recipe)
        if not isinstance(value, kinds):
            raise self._error(f"{label} should be a {kinds[0].__name__}", recipe)
        return value

    def _strings(self, node: kdl.Node, recipe: Optional[str] = None, allowed_props: tuple = ()) -> list[str]:
        for key in node.props:
            if key not in allowed_props:
                raise self._error(f"{node.name} expected values, property found instead", recipe)
        values = []
        for value in self._args(node):
            if not isinstance(value, str):
                raise self._error(f"{node.name} expects only string values", recipe)
            values.append(value)
        return values

    def _option_value(self, node: kdl.Node, recipe: str) -> Any:
        args = self._args(node)
        if node.nodes:
            if args or node.props:
                raise self._error(f"option {node.name} takes either values or a block", recipe)
            return {child.name: self._single(child, kinds=(str, int, float), recipe=recipe)
                    for child in node.nodes}
        if node.props:
            if args:
                raise self._error(f"option {node.name} mixes values and properties", recipe)
            return self._props(node)
        if not args:
            return True
        if len(args) == 1:
            return args[0]
        return args

    def build(self, node: kdl.Node) -> Recipe:
        name = self._single(node, label="name of recipe")
        data: dict[str, Any] = {
            "name": name,
            "maintainer": [],
            "license": [],
            "depends": [],
            "provides": [],
            "options": {},
            "artifacts": [],
            "install": [],
            "stages": {},
            "sides": [],
        }
        style_options: dict[str, Any] = {}
        seen_style = False
        seen_stages: set[str] = set()

        for child in node.nodes:
            key = child.name
            if key == "version":
                version = self._single(child, kinds=(str, int, float), recipe=name)
                data["version"] = str(version)
            elif key == "revision":
                data["revision"] = self._single(child, kinds=(int,), recipe=name)
            elif key in ("description", "home"):
                data[key] = self._single(child, recipe=name)
            elif key == "source-dir":
                data["source_dir"] = self._single(child, recipe=name)
            elif key in ("maintainer", "license", "depends", "provides"):
                data[key].extend(self._strings(child, name))
            elif key == "style":
                if seen_style:
                    raise self._error("redefinition of style, can only have one build style", name)
                seen_style = True
                data["style"] = self._single(child, label="name of build style", recipe=name)
                for var in child.nodes:
                    style_options[var.name] = self._option_value(var, name)
            elif key == "options":
                for opt in child.nodes:
                    data["options"][opt.name] = self._option_value(opt, name)
            elif key == "artifacts":
                for art in child.nodes:
                    data["artifacts"].append(self._artifact(art, name))
            elif key in STAGE_BLOCKS:
                if key in seen_stages:
                    raise self._error(f"{key} block defined twice", name)
                seen_stages.add(key)
                actions = [self._install_op(op, name) for op in child.nodes]
                if key == "install":
                    data["install"] = actions
                else:
                    data["stages"][key] = actions
            elif key == "side":
                data["sides"].append(self._side(child, name))
            else:
                logger.warning(
                    f"{self._filename or '<memory>'}: ignoring unknown node '{key}' in recipe {name}"
                )

        if "version" not in data:
            raise self._error("recipe missing version", name)

        # explicit options win over style block variables
        data["options"] = {**style_options, **data["options"]}

        try:
            return Recipe.from_dict(data)
        except ParseError as e:
            if e.filename is None:
                raise ParseError(e.message, filename=self._filename, recipe=name) from e
            raise

    def _artifact(self, node: kdl.Node, recipe: str) -> dict[str, Any]:
        if node.name != "fetch":
            raise self._error(f"Unknown type of artifact: {node.name}", recipe)
        art: dict[str, Any] = {}
        for child in node.nodes:
            if child.name == "url":
                art["url"] = self._single(child, label="url of artifact", recipe=recipe)
            elif child.name == "name":
                art["name"] = self._single(child, label="name of artifact", recipe=recipe)
            else:
                art[child.name] = self._single(child, label=child.name, recipe=recipe)
        if "url" not in art:
            raise self._error("fetch artifact requires an url to be given", recipe)
        return art

    def _install_op(self, node: kdl.Node, recipe: str) -> Any:
        if node.name in (".default", "make", "make-install"):
            if node.args or node.props or node.nodes:
                raise self._error(f"{node.name} takes no arguments", recipe)
            return node.name
        if node.name == "link":
            args = self._strings(node, recipe)
            if len(args) != 2:
                raise self._error("link needs 2 arguments, target and link path", recipe)
            return {"link": args}
        if node.name == "cc":
            inputs = self._strings(node, recipe, allowed_props=("output",))
            output = self._props(node).get("output")
            if not isinstance(output, str):
                raise self._error("cc requires a string output= property", recipe)
            if not inputs:
                raise self._error("cc needs at least one input", recipe)
            return {"cc": {"inputs": inputs, "output": output}}
        if node.name in ("dir", "rm", "bin", "man"):
            args = self._strings(node, recipe)
            if not args:
                raise self._error(f"{node.name} needs at least one path", recipe)
            return {node.name: args}
        raise self._error(f"unknown install operation: {node.name}", recipe)

    def _side(self, node: kdl.Node, recipe: str) -> dict[str, Any]:
        side: dict[str, Any] = {
            "name": self._single(node, label="name of side", recipe=recipe),
            "claim": [],
        }
        depends: list[str] = []
        for child in node.nodes:
            if child.name == "description":
                side["description"] = self._single(child, label="side description", recipe=recipe)
            elif child.name == "depends":
                props = self._props(child)
                if "extends" in props:
                    extends = props["extends"]
                    if isinstance(extends, str) and extends in ("true", "false"):
                        extends = extends == "true"
                    if not isinstance(extends, bool):
                        raise self._error("extends expects a bool", recipe)
                    side["extends_depends"] = extends
                depends.extend(self._strings(child, recipe, allowed_props=("extends",)))
            elif child.name == "claim":
                side["claim"].extend(self._strings(child, recipe))
            else:
                logger.warning(
                    f"{self._filename or '<memory>'}: "
                    f"ignoring unknown node '{child.name}' in side {side['name']}"
                )
        side["depends"] = depends
        return side


def parse_document(text: str, filename: Optional[str] = None) -> list[Recipe]:
    """
    Parse a recipe document into Recipe objects.

    Args:
        text: Document source
        filename: Name used in error messages

    Returns:
        Recipes in document order

    Raises:
        ParseError: On syntax errors or invalid recipe structure
    """
    builder = _RecipeBuilder(filename)
    recipes = []
    for node in parse_nodes(text, filename):
        if node.name != "recipe":
            raise ParseError(f"Unexpected top-level node '{node.name}'", filename=filename)
        recipes.append(builder.build(node))
    return recipes


def parse_file(path: Path | str) -> list[Recipe]:
    """
    Parse a recipe document from disk.

    Raises:
        ParseError: If the file cannot be read or decoded, or does not parse
    """
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise ParseError(f"cannot read recipe file: {e}", filename=str(path)) from e
    return parse_document(text, filename=str(path))
