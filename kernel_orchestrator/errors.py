"""Error definitions for the orchestrator.

Every failure the pipeline can report derives from OrchestratorError and
carries a stable ``code`` for programmatic handling and an ``exit_code``
propagated to the caller by the CLI.
"""

from __future__ import annotations

from pathlib import Path

# Error code constants
CONFIG_CONFLICT = "config_conflict"
INVALID_VALUE = "invalid_value"
UNKNOWN_KEYS = "unknown_keys"
STRICT_MODE_PRECONDITION = "strict_mode_precondition"
MISSING_PATH = "missing_path"
TOOL_FAILED = "tool_failed"
CHILD_BUILD_FAILED = "child_build_failed"
MIXED_BUILD_UNSUPPORTED = "mixed_build_unsupported"
MODULES_ORDER_DRIFT = "modules_order_drift"
SYMBOL_LIST_MISMATCH = "symbol_list_mismatch"
TRIM_UNSUPPORTED = "trim_unsupported"
CONFIG_NOT_APPLIED = "config_not_applied"
STOP_SHIP = "stop_ship"


class OrchestratorError(Exception):
    """Base error for all orchestrator failures."""

    def __init__(
        self,
        message: str,
        code: str = "orchestrator_error",
        exit_code: int = 1,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.exit_code = exit_code


class ConfigurationError(OrchestratorError):
    """Raised when the build configuration is invalid."""

    def __init__(
        self,
        message: str,
        keys: list[str] | None = None,
        code: str = CONFIG_CONFLICT,
    ) -> None:
        super().__init__(message, code=code)
        self.keys = keys or []


class PreconditionError(OrchestratorError):
    """Raised when a required file or directory is absent."""

    def __init__(
        self,
        message: str,
        path: Path | str | None = None,
        code: str = MISSING_PATH,
    ) -> None:
        super().__init__(message, code=code)
        self.path = Path(path) if path is not None else None


class ToolInvocationError(OrchestratorError):
    """Raised when a delegated external tool exits non-zero."""

    def __init__(
        self,
        message: str,
        exit_code: int = 1,
        log_path: Path | None = None,
        code: str = TOOL_FAILED,
    ) -> None:
        # A signal-terminated process reports a negative return code
        super().__init__(message, code=code, exit_code=exit_code if exit_code > 0 else 1)
        self.log_path = log_path


class ChildBuildError(ToolInvocationError):
    """Raised when the mixed-build child orchestrator fails."""

    def __init__(self, exit_code: int, log_path: Path | None = None) -> None:
        super().__init__(
            f"GKI kernel build failed with exit code {exit_code}",
            exit_code=exit_code,
            log_path=log_path,
            code=CHILD_BUILD_FAILED,
        )


class MixedBuildError(ConfigurationError):
    """Raised when a mixed build is requested with unsupported targets."""

    def __init__(self, message: str, keys: list[str] | None = None) -> None:
        super().__init__(message, keys=keys, code=MIXED_BUILD_UNSUPPORTED)


class ConsistencyError(OrchestratorError):
    """Raised when a post-build consistency check fails."""

    def __init__(
        self,
        message: str,
        code: str = "consistency_error",
        remediation: str | None = None,
    ) -> None:
        super().__init__(message, code=code)
        self.remediation = remediation


class SymbolListMismatchError(ConsistencyError):
    """Raised when exported symbols differ from the KMI symbol list."""

    def __init__(self, missing: list[str], unexpected: list[str]) -> None:
        lines = ["KMI symbol list does not match the exported symbols"]
        if missing:
            lines.append("Symbols listed but not exported: " + " ".join(missing))
        if unexpected:
            lines.append("Symbols exported but not listed: " + " ".join(unexpected))
        super().__init__(
            "\n".join(lines),
            code=SYMBOL_LIST_MISMATCH,
            remediation="Update the KMI symbol list to match the build",
        )
        self.missing = missing
        self.unexpected = unexpected


class TrimUnsupportedError(ConsistencyError):
    """Raised when the kernel drops the unused-symbol allow-list option."""

    def __init__(self, option: str) -> None:
        super().__init__(
            f"Failed to apply TRIM_NONLISTED_KMI kernel configuration: "
            f"{option} is missing after olddefconfig",
            code=TRIM_UNSUPPORTED,
            remediation=f"Does your kernel support {option}?",
        )
        self.option = option


class EarlyExit(Exception):
    """Raised by a stage to end the pipeline successfully."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


__all__ = [
    "CHILD_BUILD_FAILED",
    "CONFIG_CONFLICT",
    "CONFIG_NOT_APPLIED",
    "INVALID_VALUE",
    "MISSING_PATH",
    "MIXED_BUILD_UNSUPPORTED",
    "MODULES_ORDER_DRIFT",
    "STOP_SHIP",
    "STRICT_MODE_PRECONDITION",
    "SYMBOL_LIST_MISMATCH",
    "TOOL_FAILED",
    "TRIM_UNSUPPORTED",
    "UNKNOWN_KEYS",
    "ChildBuildError",
    "ConfigurationError",
    "ConsistencyError",
    "EarlyExit",
    "MixedBuildError",
    "OrchestratorError",
    "PreconditionError",
    "SymbolListMismatchError",
    "ToolInvocationError",
    "TrimUnsupportedError",
]
