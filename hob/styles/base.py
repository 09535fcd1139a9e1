"""
Base build style and the phase context handed to it.

A build style is a named strategy that knows how to drive an upstream build
system through ordered phases (conventionally prepare, configure, build,
install) plus post-install steps such as strip. run_phase() dispatches to a
`phase_<name>` method; a style supports exactly the phases it defines.
"""

import logging
import shlex
import threading
from abc import ABC
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from hob.errors import BuildCancelled, ParseError, PhaseExecutionError
from hob.schemas import Recipe
from hob.staging import StagingTree

from .runner import ToolResult, ToolRunner

logger = logging.getLogger(__name__)

ELF_MAGIC = b"\x7fELF"
AR_MAGIC = b"!<arch>\n"
ET_EXEC = 2
ET_DYN = 3

FALSE_STRINGS = ("false", "no", "off", "0")


def option_list(value: Any) -> list[str]:
    """Normalise an option to an argument list (strings are shell-split)."""
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value]
    if isinstance(value, str):
        return shlex.split(value)
    return [str(value)]


def option_flag(value: Any, default: bool = True) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() not in FALSE_STRINGS
    return bool(value)


def option_env(value: Any) -> dict[str, str]:
    """Normalise an environment option: a mapping or KEY=VALUE strings."""
    if value is None:
        return {}
    if isinstance(value, dict):
        return {str(k): str(v) for k, v in value.items()}
    env = {}
    for item in option_list(value):
        key, sep, val = item.partition("=")
        if not sep or not key:
            raise ParseError(f"environment entry {item!r} is not KEY=VALUE")
        env[key] = val
    return env


@dataclass
class PhaseContext:
    """
    Everything a style phase may touch.

    Attributes:
        recipe: Resolved recipe being built
        staging: Staging tree of this build
        source_dir: Directory the upstream build runs in
        runner: ToolRunner used for every external command
        jobs: Parallel jobs for the build tool
        timeout: Per-command timeout in seconds (None: unlimited)
        cancel_event: Run-wide cancellation signal
        env: Extra environment variables for tools
        dry_run: Tools are not really run; file actions write placeholders
    """
    recipe: Recipe
    staging: StagingTree
    source_dir: Path
    runner: ToolRunner
    jobs: int = 1
    timeout: Optional[float] = None
    cancel_event: Optional[threading.Event] = None
    env: dict[str, str] = field(default_factory=dict)
    dry_run: bool = False

    @property
    def options(self) -> dict[str, Any]:
        return self.recipe.options

    def option(self, name: str, default: Any = None) -> Any:
        return self.recipe.options.get(name, default)

    @property
    def destdir(self) -> str:
        """Install root passed to upstream install targets."""
        root = self.staging.real_path("")
        return str(root) if root is not None else "/staging"

    def run(self, argv: list[str], cwd: Optional[Path] = None,
            env: Optional[dict[str, str]] = None) -> ToolResult:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise BuildCancelled(f"Cancelled before: {' '.join(argv)}")
        return self.runner.run(
            argv,
            cwd=cwd or self.source_dir,
            env={**self.env, **(env or {})},
            timeout=self.timeout,
            cancel_event=self.cancel_event,
        )

    def run_all(self, commands: list[list[str]], cwd: Optional[Path] = None) -> Optional[ToolResult]:
        """Run commands in order; stop at and return the first failure."""
        result = None
        for argv in commands:
            result = self.run(argv, cwd)
            if not result.ok:
                return result
        return result


def classify_binary(header: bytes, name: str) -> Optional[str]:
    """
    Classify a file for stripping by its leading bytes.

    Returns "executable", "shared" or "archive", or None if not strippable.
    """
    if header.startswith(AR_MAGIC):
        return "archive"
    if not header.startswith(ELF_MAGIC) or len(header) < 18:
        return None
    byteorder = "big" if header[5] == 2 else "little"
    e_type = int.from_bytes(header[16:18], byteorder)
    if e_type == ET_EXEC:
        return "executable"
    if e_type == ET_DYN:
        # position independent executables are ET_DYN as well
        return "shared" if ".so" in name else "executable"
    return None


STRIP_FLAGS = {
    "executable": [],
    "shared": ["--strip-unneeded"],
    "archive": ["--strip-debug"],
}


class BuildStyle(ABC):
    """
    Abstract base class for build styles.

    Subclasses set `name`, `phases` and `post_install`, and implement a
    `phase_<name>` method per phase. Each phase method returns the last
    ToolResult it produced (the failing one, if any) or None when it ran
    no tools.
    """

    name: str = ""
    phases: tuple[str, ...] = ("prepare", "configure", "build", "install")
    post_install: tuple[str, ...] = ()

    @property
    def pre_install_phases(self) -> tuple[str, ...]:
        """Phases that run before the install-operation log."""
        if "install" not in self.phases:
            return self.phases
        return self.phases[:self.phases.index("install")]

    def supports(self, phase: str) -> bool:
        return phase in self.phases or phase in self.post_install

    def run_phase(self, phase: str, ctx: PhaseContext) -> Optional[ToolResult]:
        """
        Run one phase.

        Raises:
            PhaseExecutionError: If the style does not define the phase
        """
        method = getattr(self, f"phase_{phase.replace('-', '_')}", None)
        if not self.supports(phase) or method is None:
            raise PhaseExecutionError(phase, f"style '{self.name}' has no phase '{phase}'")
        return method(ctx)

    def phase_strip(self, ctx: PhaseContext) -> Optional[ToolResult]:
        """Strip ELF executables, shared objects and static archives in the staging tree."""
        if not option_flag(ctx.option("strip"), default=True):
            logger.debug(f"{ctx.recipe.name}: strip disabled")
            return None

        strip = str(ctx.option("strip-command", "strip"))
        commands = []
        for entry in ctx.staging.entries():
            if ctx.staging.is_symlink(entry) or ctx.staging.is_dir(entry):
                continue
            real = ctx.staging.real_path(entry)
            if real is None:
                header = ctx.staging.read_bytes(entry)[:64]
            else:
                with open(real, "rb") as f:
                    header = f.read(64)
            kind = classify_binary(header, entry.rsplit("/", 1)[-1])
            if kind is None:
                continue
            target = str(real) if real is not None else entry
            commands.append([strip, *STRIP_FLAGS[kind], target])

        if not commands:
            return None
        logger.info(f"{ctx.recipe.name}: stripping {len(commands)} file(s)")
        return ctx.run_all(commands, cwd=ctx.source_dir)
