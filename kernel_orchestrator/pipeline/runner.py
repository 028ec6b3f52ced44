"""Runner for external build tools.

This module handles:
- Composing ``make`` command lines for the kernel tree
- Executing tools with subprocess
- Capturing stdout/stderr to per-stage log files
- Mapping non-zero exits to ToolInvocationError

Every external collaborator (make, depmod, mkbootfs, avbtool, hooks and the
mixed-build child) goes through ToolRunner so the pipeline has one process
boundary with one exit-code contract.
"""

from __future__ import annotations

import logging
import os
import re
import shlex
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from kernel_orchestrator.errors import ToolInvocationError

logger = logging.getLogger(__name__)

_LABEL_UNSAFE = re.compile(r"[^A-Za-z0-9_.-]+")


@dataclass
class ToolResult:
    """Result of an external tool execution.

    Attributes:
        exit_code: Process exit code.
        log_path: Path to the captured log file.
        started_at: Start time.
        finished_at: Finish time.
        command: The command that was executed.
    """

    exit_code: int
    log_path: Path
    started_at: datetime
    finished_at: datetime
    command: str

    @property
    def success(self) -> bool:
        return self.exit_code == 0


def compose_make_command(
    *goals: str,
    out_dir: Path,
    tool_args: Sequence[str] = (),
    make_args: Sequence[str] = (),
    extra: Sequence[str] = (),
) -> list[str]:
    """Compose a kernel ``make`` invocation.

    Args:
        *goals: Make targets.
        out_dir: Kernel object directory (``O=``).
        tool_args: Toolchain arguments from TOOL_ARGS.
        make_args: Arguments passed to the orchestrator plus derived ones.
        extra: Additional variable assignments.

    Returns:
        Command as list of strings suitable for subprocess.
    """
    cmd = ["make", f"O={out_dir}"]
    cmd.extend(tool_args)
    cmd.extend(extra)
    cmd.extend(make_args)
    cmd.extend(goals)
    return cmd


class ToolRunner:
    """Executes external tools with logs captured under ``log_dir``."""

    def __init__(
        self,
        log_dir: Path,
        base_env: Mapping[str, str] | None = None,
    ) -> None:
        """Create a runner.

        Args:
            log_dir: Directory for per-invocation log files.
            base_env: Variables added to every invocation's environment.
        """
        self.log_dir = log_dir
        self.base_env = dict(base_env or {})
        self._counter = 0

    def _log_path(self, label: str) -> Path:
        self._counter += 1
        safe = _LABEL_UNSAFE.sub("_", label).strip("_") or "tool"
        return self.log_dir / f"{self._counter:03d}-{safe}.log"

    def _environ(
        self, env: Mapping[str, str] | None, inherit_env: bool
    ) -> dict[str, str]:
        merged: dict[str, str] = dict(os.environ) if inherit_env else {}
        if inherit_env:
            merged.update(self.base_env)
        if env:
            merged.update(env)
        return merged

    def run(
        self,
        cmd: Sequence[str],
        *,
        cwd: Path,
        label: str,
        env: Mapping[str, str] | None = None,
        inherit_env: bool = True,
        stdout_path: Path | None = None,
    ) -> ToolResult:
        """Execute a tool, failing the pipeline on non-zero exit.

        Args:
            cmd: Command and arguments.
            cwd: Working directory.
            label: Short name used for the log file.
            env: Extra environment variables.
            inherit_env: Start from the current process environment. When
                False the tool sees exactly ``env`` and nothing else.
            stdout_path: Write stdout to this file instead of the log.

        Returns:
            ToolResult with execution details.

        Raises:
            ToolInvocationError: If the tool cannot start or exits non-zero.
        """
        self.log_dir.mkdir(parents=True, exist_ok=True)
        log_path = self._log_path(label)
        cmd_str = shlex.join(cmd)
        logger.info("Executing %s: %s", label, cmd_str)
        logger.debug("Working directory: %s", cwd)

        started_at = datetime.now(timezone.utc)
        try:
            with log_path.open("w") as log_file:
                log_file.write(f"# Command: {cmd_str}\n")
                log_file.write(f"# Started: {started_at.isoformat()}\n")
                log_file.write(f"# CWD: {cwd}\n")
                log_file.write("# " + "=" * 70 + "\n\n")
                log_file.flush()

                if stdout_path is not None:
                    stdout_path.parent.mkdir(parents=True, exist_ok=True)
                    with stdout_path.open("wb") as out_file:
                        result = subprocess.run(
                            list(cmd),
                            cwd=cwd,
                            stdout=out_file,
                            stderr=log_file,
                            env=self._environ(env, inherit_env),
                            check=False,
                        )
                else:
                    result = subprocess.run(
                        list(cmd),
                        cwd=cwd,
                        stdout=log_file,
                        stderr=subprocess.STDOUT,
                        env=self._environ(env, inherit_env),
                        check=False,
                    )
        except OSError as e:
            message = f"Failed to execute {label}: {e}"
            logger.error(message)
            raise ToolInvocationError(message, exit_code=127, log_path=log_path) from e

        finished_at = datetime.now(timezone.utc)
        exit_code = result.returncode
        with log_path.open("a") as log_file:
            log_file.write(f"\n# Finished: {finished_at.isoformat()}\n")
            log_file.write(f"# Exit code: {exit_code}\n")
            duration = (finished_at - started_at).total_seconds()
            log_file.write(f"# Duration: {duration:.1f}s\n")

        if exit_code != 0:
            message = f"{label} failed with exit code {exit_code}"
            logger.error("%s. See log: %s", message, log_path)
            raise ToolInvocationError(message, exit_code=exit_code, log_path=log_path)

        return ToolResult(
            exit_code=exit_code,
            log_path=log_path,
            started_at=started_at,
            finished_at=finished_at,
            command=cmd_str,
        )

    def capture(
        self,
        cmd: Sequence[str],
        *,
        cwd: Path,
        env: Mapping[str, str] | None = None,
    ) -> str:
        """Execute a tool and return its stdout.

        Raises:
            ToolInvocationError: If the tool cannot start or exits non-zero.
        """
        logger.debug("Capturing output of: %s", shlex.join(cmd))
        try:
            result = subprocess.run(
                list(cmd),
                cwd=cwd,
                capture_output=True,
                text=True,
                env=self._environ(env, True),
                check=True,
            )
        except subprocess.CalledProcessError as e:
            raise ToolInvocationError(
                f"{cmd[0]} failed: {e.stderr}",
                exit_code=e.returncode,
            ) from e
        except OSError as e:
            raise ToolInvocationError(
                f"Failed to run {cmd[0]}: {e}",
                exit_code=127,
            ) from e
        return result.stdout


__all__ = [
    "ToolResult",
    "ToolRunner",
    "compose_make_command",
]
