"""Shared type definitions for kernel_orchestrator.

This module contains enums and dataclasses shared across subpackages to
avoid circular imports.
"""

from dataclasses import dataclass, field
from enum import Enum


class LtoMode(str, Enum):
    """Link-time optimization mode."""

    NONE = "none"
    THIN = "thin"
    FULL = "full"


class MixedBuildMode(str, Enum):
    """How the GKI kernel of a mixed build is obtained."""

    NONE = "none"
    FROM_SOURCE = "build-gki-from-source"
    PREBUILT = "use-gki-prebuilt"


class SymbolListMode(str, Enum):
    """State of the KMI symbol list processor."""

    DISABLED = "disabled"
    LIST_ONLY = "list-only"
    TRIM_ONLY = "trim-only"
    TRIM_AND_STRICT = "trim-and-strict"


class StagePolicy(str, Enum):
    """What a stage failure does to the pipeline."""

    FATAL = "fatal"
    BEST_EFFORT = "best-effort"


class StageStatus(str, Enum):
    """Outcome of a single stage."""

    SKIPPED = "skipped"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    EXITED = "exited"


@dataclass
class StageRecord:
    """Record of a stage considered by the sequencer."""

    name: str
    status: StageStatus
    message: str | None = None


@dataclass
class ArtifactInfo:
    """Information about a distributed artifact."""

    filename: str
    relative_path: str
    size_bytes: int
    sha256: str
    kind: str | None = None
    labels: list[str] = field(default_factory=list)


__all__ = [
    "ArtifactInfo",
    "LtoMode",
    "MixedBuildMode",
    "StagePolicy",
    "StageRecord",
    "StageStatus",
    "SymbolListMode",
]
