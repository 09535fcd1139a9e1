"""
Tool runners for external build tools.

Build styles never spawn processes themselves; they go through a ToolRunner
so that the real tools (configure, make, strip) can be swapped for a
recording or no-op implementation:

- SubprocessToolRunner: runs the command, enforcing timeout and cancellation
- NoOpToolRunner: logs the command and reports success (dry runs)
"""

import logging
import os
import subprocess
import tempfile
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol, runtime_checkable

from hob.errors import BuildCancelled, PhaseTimeoutError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolResult:
    """Outcome of one tool invocation."""
    argv: tuple[str, ...]
    returncode: int
    output: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


@runtime_checkable
class ToolRunner(Protocol):
    """
    Protocol for running external tools.

    Implementations must raise PhaseTimeoutError when the timeout elapses and
    BuildCancelled when cancel_event is set, after stopping the process.
    """

    def run(
        self,
        argv: list[str],
        cwd: Path,
        env: Optional[dict[str, str]] = None,
        timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> ToolResult:
        ...


class SubprocessToolRunner:
    """Runs tools as child processes; output is captured combined."""

    def __init__(self, poll_interval: float = 0.1, kill_grace_s: float = 5.0):
        self._poll_interval = poll_interval
        self._kill_grace_s = kill_grace_s

    def run(
        self,
        argv: list[str],
        cwd: Path,
        env: Optional[dict[str, str]] = None,
        timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> ToolResult:
        logger.debug(f"$ {' '.join(argv)}  (cwd={cwd})")
        full_env = {**os.environ, **(env or {})}
        deadline = time.monotonic() + timeout if timeout else None

        with tempfile.TemporaryFile() as out:
            try:
                proc = subprocess.Popen(
                    argv, cwd=cwd, env=full_env,
                    stdin=subprocess.DEVNULL, stdout=out, stderr=subprocess.STDOUT,
                )
            except FileNotFoundError:
                return ToolResult(tuple(argv), 127, f"{argv[0]}: command not found")

            while True:
                try:
                    proc.wait(timeout=self._poll_interval)
                    break
                except subprocess.TimeoutExpired:
                    pass
                if cancel_event is not None and cancel_event.is_set():
                    self._stop(proc)
                    raise BuildCancelled(f"Cancelled: {' '.join(argv)}")
                if deadline is not None and time.monotonic() >= deadline:
                    self._stop(proc)
                    raise PhaseTimeoutError(argv, timeout)

            out.seek(0)
            output = out.read().decode("utf-8", errors="replace")

        return ToolResult(tuple(argv), proc.returncode, output)

    def _stop(self, proc: subprocess.Popen) -> None:
        proc.terminate()
        try:
            proc.wait(timeout=self._kill_grace_s)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait()


class NoOpToolRunner:
    """
    No-op runner for dry runs.

    Logs each command and returns success without executing anything.
    """

    def run(
        self,
        argv: list[str],
        cwd: Path,
        env: Optional[dict[str, str]] = None,
        timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> ToolResult:
        logger.info(f"[dry-run] $ {' '.join(argv)}")
        return ToolResult(tuple(argv), 0, "")
