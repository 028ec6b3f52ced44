"""Configuration settings for kernel_orchestrator.

Uses pydantic-settings for the orchestrator's own settings (where the
repository lives, logging, parallelism). These are distinct from the build
configuration (build.config and fragments) which is modelled by
kernel_orchestrator.buildconfig.

Configuration precedence: CLI flags > env vars > defaults.
"""

import os
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_jobs() -> int:
    """Return the default make job count (host CPU count)."""
    return os.cpu_count() or 1


def _default_tool_path() -> str:
    """Return the PATH used for external tools and child builds."""
    return os.environ.get("PATH", os.defpath)


class Settings(BaseSettings):
    """Orchestrator settings.

    Settings are loaded from environment variables with the KBUILD_ prefix.
    They are forwarded explicitly to mixed-build children, unlike the build
    configuration which is derived per child.
    """

    model_config = SettingsConfigDict(
        env_prefix="KBUILD_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    root_dir: Path = Field(
        default_factory=Path.cwd,
        description="Repository root; build config paths are relative to it",
    )
    tool_path: str = Field(
        default_factory=_default_tool_path,
        description="PATH used to locate external build tools",
    )

    # Operational modes
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    strict_keys: bool = Field(
        default=False,
        description="Reject unrecognized keys in build config files",
    )

    # Concurrency
    jobs: int = Field(
        default_factory=_default_jobs,
        ge=1,
        description="Parallel jobs passed to make via MAKEFLAGS",
    )

    def child_environ(self) -> dict[str, str]:
        """Render the settings a child orchestrator process needs.

        Returns:
            Mapping of KBUILD_* variables plus PATH.
        """
        return {
            "PATH": self.tool_path,
            "KBUILD_ROOT_DIR": str(self.root_dir),
            "KBUILD_TOOL_PATH": self.tool_path,
            "KBUILD_LOG_LEVEL": self.log_level,
            "KBUILD_STRICT_KEYS": "1" if self.strict_keys else "0",
            "KBUILD_JOBS": str(self.jobs),
        }


def get_settings() -> Settings:
    """Get the orchestrator settings.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = ["Settings", "get_settings", "print_settings_json"]
