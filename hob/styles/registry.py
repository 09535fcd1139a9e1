"""
Style Registry and driver.

The registry maps style names to BuildStyle instances. The driver runs
phases of a named style and turns tool failures into PhaseExecutionError,
so the executor never deals with return codes.

Adding a style means registering it; nothing else changes.
"""

import logging
import time
from typing import Optional

from hob.errors import BuildCancelled, PhaseExecutionError, PhaseTimeoutError, UnknownStyleError

from .base import BuildStyle, PhaseContext
from .builtin import ConfigureStyle, GnuConfigureStyle, MakeStyle, NoOpStyle
from .runner import ToolResult

logger = logging.getLogger(__name__)

OUTPUT_TAIL_LINES = 20


class StyleRegistry:
    """
    Registry of build styles by name.

    Usage:
        registry = StyleRegistry()
        registry.register(MyStyle())

        # Or use factory with the built-in styles
        registry = StyleRegistry.create_default()
    """

    def __init__(self) -> None:
        """Initialize an empty style registry."""
        self._styles: dict[str, BuildStyle] = {}

    def register(self, style: BuildStyle) -> None:
        """
        Register a style under its name, replacing any previous one.

        Args:
            style: BuildStyle instance
        """
        if not style.name:
            raise ValueError(f"{type(style).__name__} has no name")
        self._styles[style.name] = style

    def get(self, name: str) -> BuildStyle:
        """
        Get a style by name.

        Raises:
            UnknownStyleError: If no style is registered under the name
        """
        if name not in self._styles:
            raise UnknownStyleError(name, self.list_styles())
        return self._styles[name]

    def has(self, name: str) -> bool:
        return name in self._styles

    def list_styles(self) -> list[str]:
        """
        List all registered style names.

        Returns:
            Sorted list of style names
        """
        return sorted(self._styles)

    @classmethod
    def create_default(cls) -> "StyleRegistry":
        """Create a registry with the built-in styles."""
        registry = cls()
        for style in (NoOpStyle(), ConfigureStyle(), GnuConfigureStyle(), MakeStyle()):
            registry.register(style)
        return registry


def _tail(output: str, lines: int = OUTPUT_TAIL_LINES) -> str:
    return "\n".join(output.rstrip().splitlines()[-lines:])


class StyleDriver:
    """Runs build-style phases and classifies their failures."""

    def __init__(self, registry: Optional[StyleRegistry] = None):
        self._registry = registry or StyleRegistry.create_default()

    @property
    def registry(self) -> StyleRegistry:
        return self._registry

    def get_style(self, name: str) -> BuildStyle:
        return self._registry.get(name)

    def run_phase(self, style_name: str, phase: str, ctx: PhaseContext) -> Optional[ToolResult]:
        """
        Run one phase of a style exactly once.

        Raises:
            UnknownStyleError: If the style is not registered
            PhaseExecutionError: On non-zero exit, timeout or missing phase
            BuildCancelled: If the run was cancelled
        """
        style = self._registry.get(style_name)
        start = time.time()
        logger.info(f"{ctx.recipe.name}: {phase} ({style.name})")

        result = self._guard(phase, lambda: style.run_phase(phase, ctx))

        duration_ms = int((time.time() - start) * 1000)
        logger.debug(f"{ctx.recipe.name}: {phase} ok ({duration_ms}ms)")
        return result

    def run_tool(self, phase: str, argv: list[str], ctx: PhaseContext,
                 env: Optional[dict[str, str]] = None) -> ToolResult:
        """
        Run one tool on behalf of a playbook action.

        Raises:
            PhaseExecutionError: On non-zero exit or timeout
            BuildCancelled: If the run was cancelled
        """
        logger.info(f"{ctx.recipe.name}: {phase}: {' '.join(argv)}")
        return self._guard(phase, lambda: ctx.run(argv, env=env))

    @staticmethod
    def _guard(phase: str, call) -> Optional[ToolResult]:
        try:
            result = call()
        except (PhaseExecutionError, BuildCancelled):
            raise
        except PhaseTimeoutError as e:
            raise PhaseExecutionError(phase, str(e), cause=e)
        except OSError as e:
            raise PhaseExecutionError(phase, str(e), cause=e)

        if result is not None and not result.ok:
            message = f"{' '.join(result.argv)} exited with status {result.returncode}"
            tail = _tail(result.output)
            if tail:
                message = f"{message}\n{tail}"
            raise PhaseExecutionError(phase, message)
        return result
