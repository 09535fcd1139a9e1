"""
Build styles for hob.

A build style drives an upstream build system through ordered phases. Styles
are looked up by name in a StyleRegistry; the StyleDriver runs their phases
through a ToolRunner and reports failures as PhaseExecutionError.

Usage:
    from hob.styles import StyleDriver, StyleRegistry

    driver = StyleDriver(StyleRegistry.create_default())
    driver.run_phase("configure", "build", ctx)
"""

from hob.styles.base import BuildStyle, PhaseContext, classify_binary
from hob.styles.builtin import (
    ConfigureStyle,
    GnuConfigureStyle,
    MakeStyle,
    NoOpStyle,
    cc_argv,
    make_build_argv,
    make_env,
    make_install_argv,
)
from hob.styles.registry import StyleDriver, StyleRegistry
from hob.styles.runner import NoOpToolRunner, SubprocessToolRunner, ToolResult, ToolRunner

__all__ = [
    "BuildStyle",
    "PhaseContext",
    "classify_binary",
    "NoOpStyle",
    "cc_argv",
    "make_build_argv",
    "make_env",
    "make_install_argv",
    "ConfigureStyle",
    "GnuConfigureStyle",
    "MakeStyle",
    "StyleRegistry",
    "StyleDriver",
    "ToolRunner",
    "ToolResult",
    "SubprocessToolRunner",
    "NoOpToolRunner",
]
