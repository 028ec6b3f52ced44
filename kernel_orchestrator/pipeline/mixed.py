"""Mixed-build coordination.

A mixed build combines a GKI kernel with device modules. The GKI kernel is
either built by a child orchestrator (GKI_BUILD_CONFIG) or taken from a
prebuilt directory (GKI_PREBUILTS_DIR). Either way, its build metadata is
passed to the device kernel's make via ``KBUILD_MIXED_TREE``.
"""

from __future__ import annotations

import logging
import re
import shutil
import sys
from pathlib import Path
from typing import Any

from kernel_orchestrator.buildconfig.namespace import ChildInvocationSpec, derive_child_config
from kernel_orchestrator.errors import (
    ChildBuildError,
    ConfigurationError,
    MixedBuildError,
    PreconditionError,
    ToolInvocationError,
)
from kernel_orchestrator.pipeline.artifacts import files_identical
from kernel_orchestrator.pipeline.stages import BuildContext
from kernel_orchestrator.types import MixedBuildMode

logger = logging.getLogger(__name__)

KERNEL_IMAGE_GOAL = re.compile(r"image|Image|vmlinux")

PREBUILT_REQUIRED_FILES = (
    "vmlinux",
    "System.map",
    "vmlinux.symvers",
    "modules.builtin",
    "modules.builtin.modinfo",
    "Image.lz4",
)

MIXED_TREE_INPUTS = (
    "vmlinux.symvers",
    "modules.builtin",
    "modules.builtin.modinfo",
)


class MixedBuildCoordinator:
    """Runs or imports the GKI half of a mixed build."""

    def __init__(self, ctx: BuildContext) -> None:
        self.ctx = ctx

    def detect_mode(self) -> MixedBuildMode:
        """Return the mixed-build mode, re-checking that it is unambiguous.

        Raises:
            ConfigurationError: If both GKI sources are configured.
        """
        config = self.ctx.config
        if config.gki_build_config and config.gki_prebuilts_dir:
            raise ConfigurationError(
                "GKI_BUILD_CONFIG is incompatible with GKI_PREBUILTS_DIR.",
                keys=["GKI_BUILD_CONFIG", "GKI_PREBUILTS_DIR"],
            )
        return config.mixed_build_mode

    def check_make_goals(self) -> None:
        """Reject device builds that would also compile the kernel image.

        Raises:
            MixedBuildError: If a make goal names the kernel image.
        """
        goals = " ".join(self.ctx.config.make_goals)
        if KERNEL_IMAGE_GOAL.search(goals):
            raise MixedBuildError(
                "Compiling Image and vmlinux in device kernel is not supported "
                "in mixed build mode",
                keys=["MAKE_GOALS", "GKI_BUILD_CONFIG"],
            )

    def child_command(self) -> list[str]:
        return [sys.executable, "-m", "kernel_orchestrator", "build", *self.ctx.state.make_args]

    def child_environ(self, spec: ChildInvocationSpec) -> dict[str, str]:
        """Environment of the child process: the child spec plus settings."""
        env = spec.environ()
        env.update(self.ctx.settings.child_environ())
        return env

    def use_mixed_tree(self, tree: Path) -> None:
        self.ctx.state.mixed_tree = tree
        self.ctx.state.make_args.append(f"KBUILD_MIXED_TREE={tree}")

    def run_from_source(self) -> dict[str, Any]:
        """Build the GKI kernel in a child orchestrator.

        Returns:
            Config delta resolving GKI_OUT_DIR and GKI_DIST_DIR.

        Raises:
            MixedBuildError: If MAKE_GOALS names the kernel image.
            ChildBuildError: If the child exits non-zero.
            PreconditionError: If the child did not produce its metadata.
        """
        if self.detect_mode() is not MixedBuildMode.FROM_SOURCE:
            raise ConfigurationError("GKI_BUILD_CONFIG is not set", keys=["GKI_BUILD_CONFIG"])
        self.check_make_goals()

        spec = derive_child_config(self.ctx.config)
        logger.info("Building GKI kernel into %s", spec.out_dir)
        logger.debug("Child environment:\n%s", spec.render().decode("utf-8"))
        try:
            self.ctx.runner.run(
                self.child_command(),
                cwd=self.ctx.root_dir,
                label="gki_kernel",
                env=self.child_environ(spec),
                inherit_env=False,
            )
        except ToolInvocationError as e:
            raise ChildBuildError(e.exit_code, log_path=e.log_path) from e

        gki_dist = self.ctx.resolve(spec.dist_dir).resolve()
        for name in MIXED_TREE_INPUTS:
            path = gki_dist / name
            if not path.is_file():
                raise PreconditionError(
                    f"GKI kernel build did not produce {name} in {gki_dist}", path=path
                )
            self.ctx.state.mixed_tree_inputs.append(path)
        self.use_mixed_tree(gki_dist)

        return {"gki_out_dir": spec.out_dir, "gki_dist_dir": spec.dist_dir}

    def copy_prebuilts(self) -> list[Path]:
        """Copy GKI prebuilts into DIST_DIR.

        Returns:
            Files actually copied (identical files are skipped).

        Raises:
            PreconditionError: If the directory or a required file is missing.
        """
        if self.detect_mode() is not MixedBuildMode.PREBUILT:
            raise ConfigurationError("GKI_PREBUILTS_DIR is not set", keys=["GKI_PREBUILTS_DIR"])

        prebuilts = self.ctx.resolve(str(self.ctx.config.gki_prebuilts_dir)).resolve()
        if not prebuilts.is_dir():
            raise PreconditionError(f"{prebuilts} does not exist.", path=prebuilts)
        missing = [n for n in PREBUILT_REQUIRED_FILES if not (prebuilts / n).is_file()]
        if missing:
            raise PreconditionError(
                f"GKI prebuilts in {prebuilts} are missing: {', '.join(missing)}",
                path=prebuilts / missing[0],
            )

        dist_dir = self.ctx.dist_dir
        dist_dir.mkdir(parents=True, exist_ok=True)
        copied = []
        for source in sorted(prebuilts.iterdir()):
            if not source.is_file():
                logger.debug("Skipping non-file prebuilt %s", source.name)
                continue
            dest = dist_dir / source.name
            if not files_identical(source, dest):
                logger.info("Copying %s", source.name)
                shutil.copy2(source, dest)
                copied.append(dest)
            self.ctx.state.manifest.record(dest)

        self.ctx.state.mixed_tree_inputs.extend(prebuilts / n for n in MIXED_TREE_INPUTS)
        self.use_mixed_tree(prebuilts)
        return copied


def build_gki_from_source(ctx: BuildContext) -> dict[str, Any]:
    return MixedBuildCoordinator(ctx).run_from_source()


def copy_gki_prebuilts(ctx: BuildContext) -> None:
    MixedBuildCoordinator(ctx).copy_prebuilts()


def copy_gki_dist(ctx: BuildContext) -> None:
    """Copy the GKI kernel's distribution into DIST_DIR."""
    gki_dist = ctx.resolve(str(ctx.config.gki_dist_dir))
    if not gki_dist.is_dir():
        raise PreconditionError(f"GKI distribution not found: {gki_dist}", path=gki_dist)
    for source in sorted(gki_dist.rglob("*")):
        if not source.is_file():
            continue
        dest = ctx.dist_dir / source.relative_to(gki_dist)
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source, dest)
        ctx.state.manifest.record(dest)
    logger.info("Copied GKI kernel files from %s", gki_dist)


__all__ = [
    "KERNEL_IMAGE_GOAL",
    "MIXED_TREE_INPUTS",
    "PREBUILT_REQUIRED_FILES",
    "MixedBuildCoordinator",
    "build_gki_from_source",
    "copy_gki_dist",
    "copy_gki_prebuilts",
]
