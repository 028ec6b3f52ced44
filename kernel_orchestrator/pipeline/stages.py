"""Stage model and sequencer.

A pipeline is a fixed, ordered list of Stage objects. For each stage the
sequencer evaluates its predicate against the current BuildContext and, if
true, runs its body. Bodies may:

- return a dict of option updates, which the sequencer applies by deriving a
  new BuildConfig (the running config is never mutated in place),
- raise EarlyExit to end the run successfully,
- raise OrchestratorError (or OSError) to fail.

Failures in fatal stages abort the run; failures in best-effort stages are
logged and reflected in the final exit status.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from kernel_orchestrator.buildconfig.schema import BuildConfig
from kernel_orchestrator.config import Settings
from kernel_orchestrator.errors import EarlyExit, OrchestratorError
from kernel_orchestrator.pipeline.artifacts import ArtifactManifest
from kernel_orchestrator.pipeline.runner import ToolResult, ToolRunner, compose_make_command
from kernel_orchestrator.symbols.lists import SymbolList
from kernel_orchestrator.types import StagePolicy, StageRecord, StageStatus

logger = logging.getLogger(__name__)

ConfigDelta = Mapping[str, Any]
StageBody = Callable[["BuildContext"], "ConfigDelta | None"]
StagePredicate = Callable[["BuildContext"], bool]


def always(ctx: BuildContext) -> bool:
    return True


@dataclass(frozen=True)
class Stage:
    """A named unit of pipeline work.

    Attributes:
        name: Stable identifier used in logs and records.
        body: Side-effecting work; may return a config delta.
        predicate: Decides whether the stage runs.
        policy: Whether a failure aborts the pipeline.
        description: Banner shown when the stage runs.
    """

    name: str
    body: StageBody
    predicate: StagePredicate = always
    policy: StagePolicy = StagePolicy.FATAL
    description: str = ""


@dataclass
class BuildState:
    """Per-invocation scratch state shared by stages.

    Attributes:
        make_args: Arguments appended to every make invocation.
        mixed_tree: Directory with the GKI kernel's build metadata.
        mixed_tree_inputs: Metadata files taken from the mixed tree.
        manifest: Distribution artifacts and abi.prop metadata.
        warnings: Advisory findings.
        symbol_list: Merged KMI symbol list, once computed.
        kernel_release: Release string reported by the kernel tree.
        records: Stages considered so far.
    """

    make_args: list[str] = field(default_factory=list)
    mixed_tree: Path | None = None
    mixed_tree_inputs: list[Path] = field(default_factory=list)
    manifest: ArtifactManifest = field(default_factory=ArtifactManifest)
    warnings: list[str] = field(default_factory=list)
    symbol_list: SymbolList | None = None
    kernel_release: str | None = None
    records: list[StageRecord] = field(default_factory=list)


@dataclass
class BuildContext:
    """Everything a stage can see.

    ``config`` always holds the current BuildConfig; it is replaced (never
    mutated) when a stage returns a delta.
    """

    config: BuildConfig
    settings: Settings
    runner: ToolRunner
    state: BuildState = field(default_factory=BuildState)

    def resolve(self, path: str) -> Path:
        """Resolve a config path against the repository root."""
        candidate = Path(path)
        if candidate.is_absolute():
            return candidate
        return self.settings.root_dir / candidate

    @property
    def root_dir(self) -> Path:
        return self.settings.root_dir

    @property
    def kernel_src(self) -> Path:
        return self.resolve(self.config.kernel_source_dir)

    @property
    def common_out_dir(self) -> Path:
        return self.resolve(self.config.out_dir)

    @property
    def out_dir(self) -> Path:
        """Kernel object directory."""
        return (self.common_out_dir / self.config.kernel_source_dir).resolve()

    @property
    def dist_dir(self) -> Path:
        return self.resolve(self.config.effective_dist_dir)

    def tool_env(self) -> dict[str, str]:
        """Environment for make, packaging tools and hooks."""
        env = self.config.to_environ()
        env.update(
            {
                "ROOT_DIR": str(self.root_dir),
                "KERNEL_DIR": self.config.kernel_source_dir,
                "COMMON_OUT_DIR": str(self.common_out_dir),
                "OUT_DIR": str(self.out_dir),
                "DIST_DIR": str(self.dist_dir),
                "ARCH": self.config.arch,
                "MAKEFLAGS": f"-j{self.settings.jobs}",
            }
        )
        return env

    def make(
        self,
        *goals: str,
        label: str,
        extra: Sequence[str] = (),
    ) -> ToolResult:
        """Run make in the kernel tree with the current make arguments."""
        cmd = compose_make_command(
            *goals,
            out_dir=self.out_dir,
            tool_args=self.config.tool_args,
            make_args=self.state.make_args,
            extra=extra,
        )
        return self.runner.run(cmd, cwd=self.kernel_src, label=label, env=self.tool_env())


@dataclass
class PipelineResult:
    """Outcome of a pipeline run."""

    records: list[StageRecord]
    early_exit: str | None = None
    best_effort_failures: list[str] = field(default_factory=list)

    @property
    def executed(self) -> list[str]:
        """Names of the stages whose body ran."""
        return [r.name for r in self.records if r.status is not StageStatus.SKIPPED]

    @property
    def exit_code(self) -> int:
        return 1 if self.best_effort_failures else 0


class StageSequencer:
    """Runs stages strictly in declaration order."""

    def __init__(self, stages: Sequence[Stage]) -> None:
        names = [stage.name for stage in stages]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"Duplicate stage names: {', '.join(duplicates)}")
        self.stages = tuple(stages)

    def run(self, ctx: BuildContext) -> PipelineResult:
        """Execute the pipeline.

        Raises:
            OrchestratorError: From the first failing fatal stage.
        """
        records = ctx.state.records
        result = PipelineResult(records=records)

        for stage in self.stages:
            if not stage.predicate(ctx):
                logger.debug("Skipping stage %s", stage.name)
                records.append(StageRecord(stage.name, StageStatus.SKIPPED))
                continue

            logger.info("=" * 56)
            logger.info(" %s", stage.description or stage.name)
            try:
                delta = stage.body(ctx)
            except EarlyExit as e:
                logger.info(" %s", e.reason)
                records.append(StageRecord(stage.name, StageStatus.EXITED, e.reason))
                result.early_exit = e.reason
                return result
            except (OrchestratorError, OSError) as e:
                records.append(StageRecord(stage.name, StageStatus.FAILED, str(e)))
                if stage.policy is StagePolicy.BEST_EFFORT:
                    logger.warning("Best-effort stage %s failed: %s", stage.name, e)
                    result.best_effort_failures.append(stage.name)
                    continue
                logger.error("Stage %s failed: %s", stage.name, e)
                raise

            if delta:
                ctx.config = ctx.config.derive(**delta)
            records.append(StageRecord(stage.name, StageStatus.SUCCEEDED))

        return result


__all__ = [
    "BuildContext",
    "BuildState",
    "ConfigDelta",
    "PipelineResult",
    "Stage",
    "StagePredicate",
    "StageSequencer",
    "always",
]
