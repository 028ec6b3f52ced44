"""Build configuration module.

This module handles:
- The typed BuildConfig model and its validation rules
- Assembling config from build.config, fragments and caller overrides
- Deriving isolated child configurations for mixed builds
"""

from kernel_orchestrator.buildconfig.io import assemble_environment, load_build_config
from kernel_orchestrator.buildconfig.namespace import (
    ChildInvocationSpec,
    derive_child_config,
)
from kernel_orchestrator.buildconfig.schema import BuildConfig

__all__ = [
    "BuildConfig",
    "ChildInvocationSpec",
    "assemble_environment",
    "derive_child_config",
    "load_build_config",
]
