"""
Error classes for hob builds.

These error types enable retry classification at execution boundaries:
- TransientError: Safe to retry (network resets, temporary mirror failures)
- PermanentError: Do not retry (bad recipes, digest mismatches, tool failures)

Every HobError can carry the recipe name and the phase/operation that was in
progress. The executor fills these in at the recipe boundary so that any
failure surfaced to the user names where it happened.

Error handling contract:
- Errors are exceptions, not values
- Structural errors (ParseError, DependencyCycleError) abort a run before
  any build starts
- Recipe-local errors abort that recipe; the orchestrator decides whether the
  rest of the run continues
"""

from typing import Any, Optional


class HobError(Exception):
    """Base exception for hob."""

    def __init__(
        self,
        message: str,
        recipe: Optional[str] = None,
        phase: Optional[str] = None,
    ):
        self.message = message
        self.recipe = recipe
        self.phase = phase
        super().__init__(message)

    def with_context(self, recipe: Optional[str] = None, phase: Optional[str] = None) -> "HobError":
        """Attach recipe/phase context unless already present. Returns self."""
        if self.recipe is None:
            self.recipe = recipe
        if self.phase is None:
            self.phase = phase
        return self

    def __str__(self) -> str:
        prefix = ""
        if self.recipe and self.phase:
            prefix = f"[{self.recipe}:{self.phase}] "
        elif self.recipe:
            prefix = f"[{self.recipe}] "
        elif self.phase:
            prefix = f"[{self.phase}] "
        return f"{prefix}{self.message}"


class TransientError(HobError):
    """
    Transient error - safe to retry.

    Examples:
    - Connection reset while downloading an artifact
    - HTTP 5xx from a mirror
    - Read timeout

    The fetcher retries operations that raise TransientError according to
    the configured retry policy.
    """
    pass


class PermanentError(HobError):
    """
    Permanent error - do not retry.

    Examples:
    - Malformed recipe
    - Digest mismatch on a fetched artifact
    - Non-zero exit status from a build tool
    """
    pass


class ConfigError(PermanentError):
    """Configuration validation error."""
    pass


class ParseError(PermanentError):
    """Raised when a recipe document cannot be parsed or validated."""

    def __init__(
        self,
        message: str,
        filename: Optional[str] = None,
        line: Optional[int] = None,
        column: Optional[int] = None,
        recipe: Optional[str] = None,
    ):
        self.filename = filename
        self.line = line
        self.column = column
        location = ""
        if filename:
            location = filename
        if line is not None:
            location = f"{location}:{line}:{column or 0}" if location else f"line {line}, column {column or 0}"
        if location:
            message = f"{location}: {message}"
        super().__init__(message, recipe=recipe, phase="parse")


class UnresolvedPlaceholder(PermanentError):
    """A {{placeholder}} references an identifier that does not exist."""

    def __init__(self, identifier: str, text: str):
        self.identifier = identifier
        self.text = text
        super().__init__(f"Unresolved placeholder '{{{{{identifier}}}}}' in {text!r}", phase="resolve")


class TemplateCycle(PermanentError):
    """Resolving a placeholder requires resolving itself."""

    def __init__(self, cycle: list[str]):
        self.cycle = list(cycle)
        super().__init__(f"Template cycle: {' -> '.join(self.cycle)}", phase="resolve")


class FetchError(TransientError):
    """An artifact could not be retrieved from its source."""

    def __init__(self, url: str, message: str):
        self.url = url
        super().__init__(f"Failed to fetch {url}: {message}", phase="fetch")


class IntegrityError(PermanentError):
    """Fetched bytes do not match the declared digest."""

    def __init__(self, url: str, algorithm: str, expected: str, actual: str, cached: Optional[str] = None):
        self.url = url
        self.algorithm = algorithm
        self.expected = expected
        self.actual = actual
        self.cached = cached
        where = f" (cached file {cached})" if cached else ""
        super().__init__(
            f"Integrity check failed for {url}{where}: "
            f"{algorithm} expected {expected} but found {actual}",
            phase="fetch",
        )


class ExtractionError(PermanentError):
    """A fetched artifact could not be unpacked."""
    pass


class UnknownStyleError(PermanentError):
    """A recipe names a build style that is not registered."""

    def __init__(self, style: str, registered: list[str]):
        self.style = style
        self.registered = list(registered)
        super().__init__(
            f"Unknown build style: {style}. Registered: {self.registered}",
            phase="style",
        )


class PhaseTimeoutError(PermanentError, TimeoutError):
    """An external build tool exceeded its time budget and was terminated."""

    def __init__(self, argv: list[str], timeout_s: float):
        self.argv = list(argv)
        self.timeout_s = timeout_s
        super().__init__(f"Command timed out after {timeout_s}s: {' '.join(self.argv)}")


class PhaseExecutionError(PermanentError):
    """A build-style phase failed."""

    def __init__(self, phase: str, message: str, cause: Optional[BaseException] = None):
        self.cause = cause
        super().__init__(f"Phase '{phase}' failed: {message}", phase=phase)


class PathConflict(PermanentError):
    """An install operation would overwrite or escape the staging tree."""

    def __init__(self, path: str, message: str):
        self.path = path
        super().__init__(f"{path}: {message}", phase="install")


class InstallOperationError(PermanentError):
    """An install operation failed with a filesystem error."""

    def __init__(self, index: int, operation: Any, cause: BaseException):
        self.index = index
        self.operation = operation
        self.cause = cause
        super().__init__(f"Install operation #{index} ({operation}) failed: {cause}", phase="install")


class ClaimConflictError(PermanentError):
    """A staged path is matched by the claims of more than one side package."""

    def __init__(self, path: str, sides: list[str]):
        self.path = path
        self.sides = list(sides)
        super().__init__(
            f"Path '{path}' is claimed by multiple side packages: {', '.join(self.sides)}",
            phase="partition",
        )


class DependencyCycleError(PermanentError):
    """The recipe dependency graph contains a cycle."""

    def __init__(self, cycle: list[str]):
        self.cycle = list(cycle)
        super().__init__(f"Dependency cycle: {' -> '.join(self.cycle)}", phase="schedule")


class BuildCancelled(PermanentError):
    """The build was cancelled because of a failure elsewhere in the run."""
    pass


class BuildError(PermanentError):
    """Unexpected failure inside a recipe pipeline."""

    def __init__(self, message: str, recipe: Optional[str] = None, phase: Optional[str] = None,
                 cause: Optional[BaseException] = None):
        self.cause = cause
        super().__init__(message, recipe=recipe, phase=phase)


class OrchestrationError(HobError):
    """
    Aggregate error for a run in which one or more recipes failed.

    failures maps recipe name to the error that aborted it.
    """

    def __init__(self, failures: dict[str, BaseException]):
        self.failures = dict(failures)
        lines = [f"{len(self.failures)} recipe(s) failed:"]
        for name, err in self.failures.items():
            lines.append(f"  {name}: {err}")
        super().__init__("\n".join(lines), phase="orchestrate")
