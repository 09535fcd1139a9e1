"""
Playbook interpreter.

Replays the actions of one stage playbook (configure, build or install)
top to bottom, exactly once per action. Actions are never reordered or
merged:

    .default                      the build style's own phase for the stage
    dir "usr/lib"                 ensure directory (idempotent)
    link "../lib/libc.so" "x"     symlink with a literal target
    rm "lib"                      delete file/link/tree (missing is fine)
    make                          make -jN in the source directory
    make-install                  make DESTDIR=<staging> install
    cc "a.c" "b.c" output="prog"  compile in the source directory
    bin "prog"                    copy into usr/bin (mode 755)
    man "prog.1"                  copy into usr/share/man/man1

Any failure aborts the recipe; the tree is never packaged after a failed
action.
"""

import logging
from pathlib import PurePosixPath
from typing import Iterable

from hob.errors import BuildCancelled, HobError, InstallOperationError, PathConflict
from hob.schemas import InstallOp, InstallOperation
from hob.staging import StagingTree, normalize_path
from hob.styles import PhaseContext, StyleDriver, cc_argv, make_build_argv, make_env, make_install_argv

logger = logging.getLogger(__name__)

BIN_DIR = "usr/bin"
MAN_DIR = "usr/share/man"


class InstallInterpreter:
    """
    Executes playbook actions against a staging tree.

    Usage:
        interpreter = InstallInterpreter(driver)
        interpreter.run(recipe.install_sequence, staging, ctx)
        interpreter.run(recipe.playbook("build"), staging, ctx, stage="build")
    """

    def __init__(self, driver: StyleDriver):
        self._driver = driver

    def run(
        self,
        operations: Iterable[InstallOperation],
        staging: StagingTree,
        ctx: PhaseContext,
        stage: str = "install",
    ) -> int:
        """
        Execute operations in order.

        Returns:
            Number of operations executed

        Raises:
            PathConflict: An operation would clobber or escape the tree
            InstallOperationError: A filesystem error (wraps OSError)
            PhaseExecutionError: A style phase or tool failed
        """
        count = 0
        for index, operation in enumerate(operations):
            if ctx.cancel_event is not None and ctx.cancel_event.is_set():
                raise BuildCancelled(f"Cancelled before {stage} action #{index}", phase=stage)

            logger.debug(f"{ctx.recipe.name}: {stage} #{index}: {operation}")
            try:
                self._apply(operation, staging, ctx, stage)
            except HobError:
                raise
            except OSError as e:
                raise InstallOperationError(index, operation, e)
            count += 1
        return count

    def _apply(self, operation: InstallOperation, staging: StagingTree, ctx: PhaseContext, stage: str) -> None:
        op = operation.op
        if op == InstallOp.DEFAULT:
            style = self._driver.get_style(ctx.recipe.style)
            if style.supports(stage):
                self._driver.run_phase(ctx.recipe.style, stage, ctx)
            else:
                logger.debug(f"{ctx.recipe.name}: style {style.name} has no {stage} phase")
        elif op == InstallOp.MAKE_DIR:
            self.make_dir(staging, operation.path)
        elif op == InstallOp.LINK:
            self.link(staging, operation.target, operation.link_path)
        elif op == InstallOp.REMOVE:
            self.remove(staging, operation.path)
        elif op == InstallOp.MAKE:
            self._driver.run_tool(stage, make_build_argv(ctx), ctx, env=make_env(ctx))
        elif op == InstallOp.MAKE_INSTALL:
            self._driver.run_tool(stage, make_install_argv(ctx), ctx, env=make_env(ctx))
        elif op == InstallOp.CC:
            self._driver.run_tool(stage, cc_argv(ctx, operation.inputs, operation.output), ctx)
        elif op == InstallOp.BIN:
            name = PurePosixPath(operation.path).name
            self.copy_in(staging, ctx, operation.path, f"{BIN_DIR}/{name}", 0o755)
        elif op == InstallOp.MAN:
            section = operation.man_section
            if section is None:
                raise PathConflict(operation.path, "invalid man file, should end with .<digit>")
            name = PurePosixPath(operation.path).name
            self.copy_in(staging, ctx, operation.path, f"{MAN_DIR}/man{section}/{name}", 0o644)
        else:
            raise ValueError(f"Unsupported install operation: {op}")

    @staticmethod
    def make_dir(staging: StagingTree, path: str) -> None:
        rel = normalize_path(path)
        if staging.lexists(rel) and not staging.is_dir(rel):
            raise PathConflict(rel, "exists and is not a directory")
        staging.make_dir(rel)

    @staticmethod
    def link(staging: StagingTree, target: str, link_path: str) -> None:
        rel = normalize_path(link_path)
        if not rel:
            raise PathConflict(link_path, "cannot replace the staging root with a link")
        if staging.lexists(rel):
            if staging.is_symlink(rel) and staging.readlink(rel) == target:
                return
            raise PathConflict(rel, f"already exists, refusing to link to {target}")
        staging.symlink(target, rel)

    @staticmethod
    def remove(staging: StagingTree, path: str) -> None:
        rel = normalize_path(path)
        if not rel:
            raise PathConflict(path, "refusing to remove the staging root")
        if not staging.remove(rel):
            logger.debug(f"rm {rel}: not present")

    @staticmethod
    def copy_in(staging: StagingTree, ctx: PhaseContext, source: str, dest: str, mode: int) -> None:
        """Copy a file from the source directory into the staging tree."""
        parts = PurePosixPath(source).parts
        if not parts or PurePosixPath(source).is_absolute() or ".." in parts:
            raise PathConflict(source, "escapes the source directory")
        rel = normalize_path(dest)
        if staging.lexists(rel):
            raise PathConflict(rel, f"already exists, refusing to copy {source}")

        if ctx.dry_run:
            logger.info(f"[dry-run] would copy {source} to {rel}")
            staging.write_file(rel, b"", mode)
            return
        staging.write_file(rel, (ctx.source_dir / source).read_bytes(), mode)
