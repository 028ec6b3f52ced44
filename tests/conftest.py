"""Shared fixtures for kernel_orchestrator tests.

Pipeline tests never run real tools: FakeRunner records every invocation
and lets a test simulate a tool's side effects (files it would write) or
its failure.
"""

from __future__ import annotations

import shlex
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

import pytest

from kernel_orchestrator.buildconfig.io import load_build_config
from kernel_orchestrator.buildconfig.schema import BuildConfig
from kernel_orchestrator.config import Settings
from kernel_orchestrator.errors import ToolInvocationError
from kernel_orchestrator.pipeline.runner import ToolResult
from kernel_orchestrator.pipeline.stages import BuildContext, BuildState


@dataclass
class FakeCall:
    """One recorded tool invocation."""

    cmd: list[str]
    label: str
    cwd: Path
    env: dict[str, str] = field(default_factory=dict)
    inherit_env: bool = True
    stdout_path: Path | None = None


class FakeRunner:
    """Stand-in for ToolRunner that records calls instead of running them.

    Attributes:
        effects: label -> callable run with the FakeCall (simulated outputs).
        failures: label -> exit code to fail with.
        outputs: program name -> stdout returned by capture().
        capture_failures: program name -> exit code for capture().
    """

    def __init__(self) -> None:
        self.calls: list[FakeCall] = []
        self.effects: dict[str, Callable[[FakeCall], None]] = {}
        self.failures: dict[str, int] = {}
        self.outputs: dict[str, str] = {}
        self.capture_failures: dict[str, int] = {}

    @property
    def labels(self) -> list[str]:
        return [call.label for call in self.calls]

    def run(
        self,
        cmd,
        *,
        cwd: Path,
        label: str,
        env=None,
        inherit_env: bool = True,
        stdout_path: Path | None = None,
    ) -> ToolResult:
        call = FakeCall(list(cmd), label, cwd, dict(env or {}), inherit_env, stdout_path)
        self.calls.append(call)
        if label in self.failures:
            raise ToolInvocationError(f"{label} failed", exit_code=self.failures[label])
        if label in self.effects:
            self.effects[label](call)
        if stdout_path is not None and not stdout_path.exists():
            stdout_path.parent.mkdir(parents=True, exist_ok=True)
            stdout_path.write_bytes(b"")
        now = datetime.now(timezone.utc)
        return ToolResult(0, cwd / f"{label}.log", now, now, shlex.join(cmd))

    def capture(self, cmd, *, cwd: Path, env=None) -> str:
        program = cmd[0]
        self.calls.append(FakeCall(list(cmd), f"capture:{program}", cwd, dict(env or {})))
        if program in self.capture_failures:
            raise ToolInvocationError(
                f"{program} failed", exit_code=self.capture_failures[program]
            )
        return self.outputs.get(program, "")


@pytest.fixture
def fake_runner() -> FakeRunner:
    """Create a recording tool runner."""
    return FakeRunner()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Orchestrator settings rooted at a temporary repository."""
    return Settings(root_dir=tmp_path, jobs=4, tool_path="/usr/bin:/bin")


@pytest.fixture
def kernel_tree(tmp_path: Path) -> Path:
    """Create a minimal kernel source tree with a build config."""
    kernel = tmp_path / "common"
    (kernel / "android").mkdir(parents=True)
    (kernel / "build.config").write_text("ARCH=arm64\n", encoding="utf-8")
    return kernel


def make_config(**values: str) -> BuildConfig:
    """Load a BuildConfig rooted at ``common/build.config``."""
    raw = {"BUILD_CONFIG": "common/build.config", "SKIP_CP_KERNEL_HDR": "1"}
    raw.update(values)
    return load_build_config(raw)


@pytest.fixture
def make_ctx(settings: Settings, fake_runner: FakeRunner, kernel_tree: Path):
    """Factory for BuildContexts over the temporary kernel tree."""

    def _make(**values: str) -> BuildContext:
        return BuildContext(
            config=make_config(**values),
            settings=settings,
            runner=fake_runner,  # type: ignore[arg-type]
            state=BuildState(),
        )

    return _make
