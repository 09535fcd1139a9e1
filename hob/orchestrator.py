"""
Build orchestrator - schedules many recipes across their dependency graph.

A recipe depends on another when one of its dependency references (main or
side package depends) names a package the other recipe produces: its main
package, one of its side packages or one of its `provides`. References
to packages no recipe in the run produces are external and ignored.

Scheduling:
- The graph is checked for cycles before anything builds
- Ready recipes (all dependencies built) run on a bounded thread pool
- Fail-fast (default): the first failure sets the shared cancel event;
  queued recipes are marked cancelled and running ones stop at their next
  checkpoint
- Keep-going: the failed recipe's transitive dependents are skipped and
  unrelated recipes continue
"""

import logging
import re
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from hob.compiler import resolve_recipe
from hob.errors import BuildCancelled, DependencyCycleError, HobError, OrchestrationError, ParseError
from hob.executor import BuildResult, RecipeExecutor
from hob.schemas import Recipe

logger = logging.getLogger(__name__)

# package name: everything up to "@", whitespace or a version operator
DEPENDENCY_NAME_PATTERN = re.compile(r"^\s*([^\s@<>=!~]+)")


def dependency_name(reference: str) -> str:
    """
    Reduce a dependency reference to a package name.

    "musl", "musl@1.2.3-1", "musl>=1.2" and "musl = 1.2" all give "musl".
    """
    match = DEPENDENCY_NAME_PATTERN.match(reference)
    return match.group(1) if match else reference.strip()


class DependencyGraph:
    """Recipes and the build-order edges between them."""

    def __init__(self, recipes: dict[str, Recipe], edges: dict[str, set[str]],
                 errors: Optional[dict[str, HobError]] = None):
        self._recipes = recipes
        self._edges = edges
        self._errors = dict(errors or {})
        self._dependents: dict[str, set[str]] = {name: set() for name in recipes}
        for name, deps in edges.items():
            for dep in deps:
                self._dependents[dep].add(name)

    @classmethod
    def from_recipes(cls, recipes: Iterable[Recipe]) -> "DependencyGraph":
        """
        Build the graph from recipes (resolved here).

        A recipe that fails to resolve stays in the graph under its raw name
        with its error recorded in `errors`; packages it visibly produces
        (names without placeholders) still link its dependents to it.

        Raises:
            ParseError: Two recipes share a name or produce the same package
        """
        resolved: dict[str, Recipe] = {}
        errors: dict[str, HobError] = {}
        for recipe in recipes:
            try:
                r = resolve_recipe(recipe)
            except HobError as e:
                logger.error(f"cannot resolve {recipe.name}: {e}")
                r = recipe
                errors[recipe.name] = e.with_context(recipe=recipe.name, phase="resolve")
            if r.name in resolved:
                raise ParseError(f"Recipe {r.name} is defined more than once", recipe=r.name)
            resolved[r.name] = r

        producers: dict[str, str] = {}
        for r in resolved.values():
            for package in (r.name, *(s.name for s in r.sides), *r.provides):
                if r.name in errors and "{{" in package:
                    continue
                owner = producers.get(package)
                if owner is not None and owner != r.name:
                    raise ParseError(
                        f"Package {package} is produced by both {owner} and {r.name}",
                        recipe=r.name,
                    )
                producers[package] = r.name

        edges: dict[str, set[str]] = {}
        for r in resolved.values():
            if r.name in errors:
                edges[r.name] = set()
                continue
            references = list(r.depends)
            for side in r.sides:
                references.extend(side.depends)
            deps = set()
            for reference in references:
                producer = producers.get(dependency_name(reference))
                if producer is not None and producer != r.name:
                    deps.add(producer)
            edges[r.name] = deps

        return cls(resolved, edges, errors)

    @property
    def errors(self) -> dict[str, HobError]:
        """Recipes that could not be resolved, by raw name."""
        return dict(self._errors)

    @property
    def names(self) -> list[str]:
        return sorted(self._recipes)

    def recipe(self, name: str) -> Recipe:
        return self._recipes[name]

    def dependencies(self, name: str) -> set[str]:
        return set(self._edges[name])

    def dependents(self, name: str) -> set[str]:
        return set(self._dependents[name])

    def transitive_dependents(self, name: str) -> set[str]:
        found: set[str] = set()
        stack = [name]
        while stack:
            for dependent in self._dependents[stack.pop()]:
                if dependent not in found:
                    found.add(dependent)
                    stack.append(dependent)
        return found

    def topological_order(self) -> list[str]:
        """
        Deterministic build order (dependencies first, ties by name).

        Raises:
            DependencyCycleError: If the graph has a cycle
        """
        remaining = {name: len(deps) for name, deps in self._edges.items()}
        ready = sorted(name for name, count in remaining.items() if count == 0)
        order: list[str] = []

        while ready:
            name = ready.pop(0)
            order.append(name)
            del remaining[name]
            for dependent in sorted(self._dependents[name]):
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    ready.append(dependent)
            ready.sort()

        if remaining:
            raise DependencyCycleError(self._find_cycle(set(remaining)))
        return order

    def _find_cycle(self, nodes: set[str]) -> list[str]:
        visited: set[str] = set()
        for start in sorted(nodes):
            path: list[str] = []
            on_path: set[str] = set()
            node = start
            # every remaining node has a remaining dependency, so walking
            # dependencies must revisit a node
            while node not in on_path:
                if node in visited:
                    break
                visited.add(node)
                path.append(node)
                on_path.add(node)
                node = sorted(self._edges[node] & nodes)[0]
            if node in on_path:
                cycle = path[path.index(node):]
                return cycle + [node]
        return sorted(nodes)


@dataclass
class OrchestrationResult:
    """Result of a multi-recipe run."""
    order: list[str] = field(default_factory=list)
    built: dict[str, BuildResult] = field(default_factory=dict)
    failed: dict[str, BaseException] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)
    cancelled: list[str] = field(default_factory=list)
    duration_ms: int = 0

    @property
    def success(self) -> bool:
        return not self.failed and not self.skipped and not self.cancelled

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "order": list(self.order),
            "built": {name: r.to_dict() for name, r in self.built.items()},
            "failed": {name: str(e) for name, e in self.failed.items()},
            "skipped": sorted(self.skipped),
            "cancelled": sorted(self.cancelled),
            "duration_ms": self.duration_ms,
        }

    def raise_for_failures(self) -> None:
        """Raise OrchestrationError if any recipe failed."""
        if self.failed:
            raise OrchestrationError(self.failed)


class Orchestrator:
    """
    Runs a RecipeExecutor over a set of recipes in dependency order.

    Usage:
        orchestrator = Orchestrator(executor, max_workers=4, keep_going=True)
        result = orchestrator.run(recipes)
        result.raise_for_failures()
    """

    def __init__(self, executor: RecipeExecutor, max_workers: int = 2, keep_going: bool = False):
        self._executor = executor
        self._max_workers = max(1, max_workers)
        self._keep_going = keep_going

    def run(self, recipes: Iterable[Recipe]) -> OrchestrationResult:
        """
        Build all recipes.

        Recipes that fail to resolve are recorded as failed; with keep-going
        their dependents are skipped and everything else still builds.

        Raises:
            ParseError, DependencyCycleError: before any build starts
        """
        start = time.time()
        graph = DependencyGraph.from_recipes(recipes)
        order = graph.topological_order()
        result = OrchestrationResult(order=order)
        logger.info(f"build order: {', '.join(order) or '(empty)'}")

        cancel_event = threading.Event()
        pending = list(order)
        running: dict[Future, str] = {}

        for name, error in sorted(graph.errors.items()):
            pending.remove(name)
            self._record_failure(name, error, graph, pending, result, cancel_event)

        with ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="hob-build") as pool:

            def submit_ready() -> None:
                for name in list(pending):
                    if cancel_event.is_set():
                        return
                    if graph.dependencies(name) <= result.built.keys():
                        pending.remove(name)
                        logger.info(f"starting {name}")
                        future = pool.submit(self._executor.build, graph.recipe(name), cancel_event)
                        running[future] = name

            submit_ready()
            while running:
                finished, _ = wait(running, return_when=FIRST_COMPLETED)
                for future in finished:
                    name = running.pop(future)
                    try:
                        result.built[name] = future.result()
                    except Exception as e:
                        self._record_failure(name, e, graph, pending, result, cancel_event)
                submit_ready()

        for name in pending:
            if cancel_event.is_set():
                result.cancelled.append(name)
            else:
                result.skipped.append(name)

        result.duration_ms = int((time.time() - start) * 1000)
        return result

    def _record_failure(
        self,
        name: str,
        error: Exception,
        graph: DependencyGraph,
        pending: list[str],
        result: OrchestrationResult,
        cancel_event: threading.Event,
    ) -> None:
        if isinstance(error, BuildCancelled) and cancel_event.is_set():
            logger.warning(f"cancelled {name}")
            result.cancelled.append(name)
            return

        logger.error(f"FAIL {name}: {error}")
        result.failed[name] = error

        if self._keep_going:
            for dependent in sorted(graph.transitive_dependents(name)):
                if dependent in pending:
                    pending.remove(dependent)
                    result.skipped.append(dependent)
                    logger.warning(f"skipping {dependent}: depends on failed {name}")
        else:
            cancel_event.set()
