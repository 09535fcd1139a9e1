"""
RecipeExecutor - the per-recipe build pipeline.

Execution flow for one recipe:
1. Resolve placeholders (hob.compiler)
2. Create the exclusive work directory <work_root>/<name>-<version>-r<rev>/
   with src/ (sources) and dest/ (staging tree)
3. Fetch and verify every artifact; nothing below runs unless all verified
4. Extract artifacts into src/
5. Run the stages that precede install (prepare, configure, build); a stage
   with a playbook in the recipe runs that playbook instead of the style phase
6. Replay the install playbook against the staging tree
7. Run the style's post-install steps (strip)
8. Partition the staging tree into packages
9. Emit payloads and manifests
10. Remove the work directory (unless keep_work)

Every error leaving build() names the recipe and the phase it happened in.
Non-hob exceptions are wrapped in BuildError.
"""

import logging
import shutil
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from hob.compiler import resolve_recipe
from hob.config import HobConfig
from hob.errors import BuildCancelled, BuildError, HobError
from hob.extractor import Extractor
from hob.fetcher import ArtifactCache, ArtifactFetcher, SchemeTransport, Transport
from hob.interpreter import InstallInterpreter
from hob.packager import Packager
from hob.partitioner import PRECEDENCE_STRICT, partition
from hob.schemas import Package, Recipe
from hob.staging import FsStagingTree, MemoryStagingTree, StagingTree
from hob.styles import BuildStyle, NoOpToolRunner, PhaseContext, StyleDriver, SubprocessToolRunner, ToolRunner

logger = logging.getLogger(__name__)

PRE_INSTALL_ORDER = ("prepare", "configure", "build")


@dataclass
class BuildResult:
    """Result of building one recipe."""
    recipe: str
    identity: str
    packages: tuple[Package, ...] = field(default_factory=tuple)
    manifests: list[Path] = field(default_factory=list)
    work_dir: Optional[Path] = None
    duration_ms: int = 0
    dry_run: bool = False

    def to_dict(self) -> dict[str, Any]:
        result = {
            "recipe": self.recipe,
            "identity": self.identity,
            "packages": [p.identity for p in self.packages],
            "manifests": [str(m) for m in self.manifests],
            "duration_ms": self.duration_ms,
        }
        if self.work_dir is not None:
            result["work_dir"] = str(self.work_dir)
        if self.dry_run:
            result["dry_run"] = True
        return result


class RecipeExecutor:
    """
    Builds one recipe at a time; safe to call from several threads for
    different recipes.

    Usage:
        executor = RecipeExecutor.from_config(config, output_dir=Path("out"))
        result = executor.build(recipe)
    """

    def __init__(
        self,
        work_root: Path | str,
        output_dir: Path | str,
        fetcher: Optional[ArtifactFetcher] = None,
        driver: Optional[StyleDriver] = None,
        runner: Optional[ToolRunner] = None,
        extractor: Optional[Extractor] = None,
        make_jobs: int = 1,
        phase_timeout: Optional[float] = None,
        claim_precedence: str = PRECEDENCE_STRICT,
        keep_work: bool = False,
        dry_run: bool = False,
    ):
        self._work_root = Path(work_root)
        self._output_dir = Path(output_dir)
        self._fetcher = fetcher or ArtifactFetcher(cache=ArtifactCache(self._work_root / "cache"))
        self._driver = driver or StyleDriver()
        self._runner = runner or (NoOpToolRunner() if dry_run else SubprocessToolRunner())
        self._extractor = extractor or Extractor()
        self._interpreter = InstallInterpreter(self._driver)
        self._make_jobs = make_jobs
        self._phase_timeout = phase_timeout
        self._claim_precedence = claim_precedence
        self._keep_work = keep_work
        self._dry_run = dry_run

    @classmethod
    def from_config(
        cls,
        config: HobConfig,
        output_dir: Optional[Path] = None,
        transport: Optional[Transport] = None,
        runner: Optional[ToolRunner] = None,
        driver: Optional[StyleDriver] = None,
        dry_run: bool = False,
    ) -> "RecipeExecutor":
        """Create an executor wired from configuration."""
        fetcher = ArtifactFetcher(
            transport=transport or SchemeTransport(http_timeout=config.http_timeout_s),
            cache=ArtifactCache(config.cache_dir),
            max_workers=config.fetch_jobs,
            retry=config.fetch_retry,
        )
        return cls(
            work_root=config.work_root,
            output_dir=output_dir or config.output_dir,
            fetcher=fetcher,
            driver=driver,
            runner=runner,
            make_jobs=config.make_jobs,
            phase_timeout=config.phase_timeout_s,
            claim_precedence=config.claim_precedence,
            keep_work=config.keep_work,
            dry_run=dry_run,
        )

    @property
    def output_dir(self) -> Path:
        return self._output_dir

    def work_dir_for(self, recipe: Recipe) -> Path:
        return self._work_root / f"{recipe.name}-{recipe.version}-r{recipe.revision}"

    @staticmethod
    def _check_cancel(cancel_event: Optional[threading.Event], phase: str) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise BuildCancelled("Build cancelled", phase=phase)

    def build(self, recipe: Recipe, cancel_event: Optional[threading.Event] = None) -> BuildResult:
        """
        Run the full pipeline for one recipe.

        Args:
            recipe: Recipe (placeholders may still be present)
            cancel_event: Run-wide cancellation signal

        Returns:
            BuildResult with the emitted packages

        Raises:
            HobError: annotated with recipe and phase
        """
        start = time.time()
        name = recipe.name
        phase = "resolve"
        work_dir: Optional[Path] = None

        try:
            resolved = resolve_recipe(recipe)
            name = resolved.name

            phase = "style"
            style = self._driver.get_style(resolved.style)

            phase = "setup"
            self._check_cancel(cancel_event, phase)
            staging: StagingTree
            if self._dry_run:
                src_root = self.work_dir_for(resolved) / "src"
                staging = MemoryStagingTree()
            else:
                work_dir = self._create_work_dir(resolved)
                src_root = work_dir / "src"
                staging = FsStagingTree(work_dir / "dest")

            phase = "fetch"
            self._check_cancel(cancel_event, phase)
            if self._dry_run:
                for spec in resolved.artifacts:
                    logger.info(f"[dry-run] would fetch {spec.url} ({spec.hash.key})")
            else:
                artifacts = self._fetcher.fetch_all(resolved, cancel_event)

                phase = "extract"
                self._check_cancel(cancel_event, phase)
                self._extractor.extract(artifacts, src_root)

            source_dir = src_root / resolved.source_dir_name
            if not source_dir.is_dir():
                source_dir = src_root

            ctx = PhaseContext(
                recipe=resolved,
                staging=staging,
                source_dir=source_dir,
                runner=self._runner,
                jobs=self._make_jobs,
                timeout=self._phase_timeout,
                cancel_event=cancel_event,
                dry_run=self._dry_run,
            )

            for phase in self._pre_install_stages(style, resolved):
                self._check_cancel(cancel_event, phase)
                playbook = resolved.playbook(phase)
                if playbook is None:
                    self._driver.run_phase(resolved.style, phase, ctx)
                else:
                    self._interpreter.run(playbook, staging, ctx, stage=phase)

            phase = "install"
            self._check_cancel(cancel_event, phase)
            self._interpreter.run(resolved.install_sequence, staging, ctx, stage=phase)

            for phase in style.post_install:
                self._check_cancel(cancel_event, phase)
                self._driver.run_phase(resolved.style, phase, ctx)

            phase = "partition"
            self._check_cancel(cancel_event, phase)
            result = partition(resolved, staging, self._claim_precedence)

            manifests: list[Path] = []
            if not self._dry_run:
                phase = "package"
                self._check_cancel(cancel_event, phase)
                manifests = Packager(self._output_dir).emit(result.packages, staging)

            duration_ms = int((time.time() - start) * 1000)
            logger.info(f"ok {resolved.identity} ({duration_ms}ms)")
            return BuildResult(
                recipe=resolved.name,
                identity=resolved.identity,
                packages=result.packages,
                manifests=manifests,
                work_dir=work_dir if self._keep_work else None,
                duration_ms=duration_ms,
                dry_run=self._dry_run,
            )

        except HobError as e:
            logger.error(f"FAIL {name} [{e.phase or phase}]: {e.message}")
            raise e.with_context(recipe=name, phase=phase)
        except Exception as e:
            logger.error(f"FAIL {name} [{phase}]: {e}")
            raise BuildError(str(e), recipe=name, phase=phase, cause=e) from e
        finally:
            if work_dir is not None and not self._keep_work:
                shutil.rmtree(work_dir, ignore_errors=True)

    @staticmethod
    def _pre_install_stages(style: BuildStyle, recipe: Recipe) -> list[str]:
        """Style phases before install plus the stages the recipe overrides, in stage order."""
        stages = list(style.pre_install_phases)
        for stage in recipe.playbooks:
            if stage not in stages:
                stages.append(stage)
        order = {name: i for i, name in enumerate(PRE_INSTALL_ORDER)}
        return sorted(stages, key=lambda s: order.get(s, len(order)))

    def _create_work_dir(self, recipe: Recipe) -> Path:
        work_dir = self.work_dir_for(recipe)
        if work_dir.exists():
            logger.debug(f"removing stale work directory {work_dir}")
            shutil.rmtree(work_dir)
        (work_dir / "src").mkdir(parents=True)
        (work_dir / "dest").mkdir(parents=True)
        return work_dir
