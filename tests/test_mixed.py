"""Tests for pipeline/mixed.py module.

Tests the mixed-build coordinator: child dispatch, prebuilt import and the
hand-off of the GKI kernel's metadata to the device build.
"""

import sys
from pathlib import Path

import pytest

from kernel_orchestrator.errors import (
    ChildBuildError,
    MixedBuildError,
    PreconditionError,
)
from kernel_orchestrator.pipeline import mixed
from kernel_orchestrator.pipeline.mixed import (
    MIXED_TREE_INPUTS,
    PREBUILT_REQUIRED_FILES,
    MixedBuildCoordinator,
)
from kernel_orchestrator.types import MixedBuildMode

GKI_CONFIG = "common/build.config.gki.aarch64"


def write_child_outputs(dist_dir: Path):
    """Simulate a child build writing its distribution files."""

    def effect(call):
        dist_dir.mkdir(parents=True, exist_ok=True)
        for name in MIXED_TREE_INPUTS:
            (dist_dir / name).write_text(name, encoding="utf-8")

    return effect


class TestRunFromSource:
    """Tests for MixedBuildCoordinator.run_from_source."""

    def test_image_goal_rejected_before_child(self, make_ctx, fake_runner):
        """Kernel image goals fail before any child is launched."""
        ctx = make_ctx(GKI_BUILD_CONFIG=GKI_CONFIG, MAKE_GOALS="Image modules")
        with pytest.raises(MixedBuildError) as exc_info:
            MixedBuildCoordinator(ctx).run_from_source()

        assert "not supported in mixed build mode" in exc_info.value.message
        assert fake_runner.calls == []

    @pytest.mark.parametrize("goal", ["vmlinux", "Image.lz4", "zImage"])
    def test_other_image_goals_rejected(self, make_ctx, goal):
        """Any goal naming the kernel image is rejected."""
        ctx = make_ctx(GKI_BUILD_CONFIG=GKI_CONFIG, MAKE_GOALS=f"modules {goal}")
        with pytest.raises(MixedBuildError):
            MixedBuildCoordinator(ctx).check_make_goals()

    def test_child_invocation(self, make_ctx, fake_runner, settings, tmp_path):
        """The child runs in isolation with the derived spec and settings."""
        ctx = make_ctx(
            GKI_BUILD_CONFIG=GKI_CONFIG,
            MAKE_GOALS="modules",
            LTO="thin",
            EXT_MODULES="vendor/mod",
        )
        ctx.state.make_args.append("-j8")
        fake_runner.effects["gki_kernel"] = write_child_outputs(
            tmp_path / "out" / "gki_kernel" / "dist"
        )

        delta = MixedBuildCoordinator(ctx).run_from_source()

        call = fake_runner.calls[0]
        assert call.cmd == [sys.executable, "-m", "kernel_orchestrator", "build", "-j8"]
        assert call.inherit_env is False
        assert call.cwd == tmp_path
        assert call.env["BUILD_CONFIG"] == GKI_CONFIG
        assert call.env["LTO"] == "thin"
        assert call.env["EXT_MODULES"] == ""
        assert call.env["GKI_BUILD_CONFIG"] == ""
        assert call.env["OUT_DIR"] == "out/gki_kernel"
        assert call.env["KBUILD_ROOT_DIR"] == str(tmp_path)
        assert call.env["PATH"] == settings.tool_path
        assert "MAKE_GOALS" not in call.env

        assert delta == {"gki_out_dir": "out/gki_kernel", "gki_dist_dir": "out/gki_kernel/dist"}

    def test_mixed_tree_handoff(self, make_ctx, fake_runner, tmp_path):
        """The child's metadata becomes KBUILD_MIXED_TREE for later makes."""
        ctx = make_ctx(GKI_BUILD_CONFIG=GKI_CONFIG)
        gki_dist = tmp_path / "out" / "gki_kernel" / "dist"
        fake_runner.effects["gki_kernel"] = write_child_outputs(gki_dist)

        MixedBuildCoordinator(ctx).run_from_source()

        assert ctx.state.mixed_tree == gki_dist.resolve()
        assert ctx.state.make_args == [f"KBUILD_MIXED_TREE={gki_dist.resolve()}"]
        assert [p.name for p in ctx.state.mixed_tree_inputs] == list(MIXED_TREE_INPUTS)

    def test_child_failure(self, make_ctx, fake_runner):
        """A failing child fails the parent with the child's exit code."""
        ctx = make_ctx(GKI_BUILD_CONFIG=GKI_CONFIG)
        fake_runner.failures["gki_kernel"] = 3

        with pytest.raises(ChildBuildError) as exc_info:
            MixedBuildCoordinator(ctx).run_from_source()

        assert exc_info.value.exit_code == 3
        assert ctx.state.make_args == []

    def test_child_missing_outputs(self, make_ctx):
        """A child that exits 0 without its metadata is a precondition failure."""
        ctx = make_ctx(GKI_BUILD_CONFIG=GKI_CONFIG)
        with pytest.raises(PreconditionError, match="vmlinux.symvers"):
            MixedBuildCoordinator(ctx).run_from_source()


class TestCopyPrebuilts:
    """Tests for MixedBuildCoordinator.copy_prebuilts."""

    @pytest.fixture
    def prebuilts(self, tmp_path: Path) -> Path:
        """Create a complete GKI prebuilts directory."""
        directory = tmp_path / "prebuilts" / "gki"
        directory.mkdir(parents=True)
        for name in PREBUILT_REQUIRED_FILES:
            (directory / name).write_text(f"gki {name}", encoding="utf-8")
        (directory / "abi_symbollist").write_text("[abi_symbol_list]\n", encoding="utf-8")
        (directory / "subdir").mkdir()
        return directory

    def test_copies_top_level_files(self, make_ctx, prebuilts):
        """Every top-level file is copied into DIST_DIR."""
        ctx = make_ctx(GKI_PREBUILTS_DIR="prebuilts/gki")
        copied = MixedBuildCoordinator(ctx).copy_prebuilts()

        names = sorted(p.name for p in copied)
        assert names == sorted([*PREBUILT_REQUIRED_FILES, "abi_symbollist"])
        assert not (ctx.dist_dir / "subdir").exists()
        assert ctx.state.make_args == [f"KBUILD_MIXED_TREE={prebuilts}"]

    def test_identical_files_skipped(self, make_ctx, prebuilts):
        """Files already present with the same content are not copied."""
        ctx = make_ctx(GKI_PREBUILTS_DIR="prebuilts/gki")
        ctx.dist_dir.mkdir(parents=True)
        (ctx.dist_dir / "vmlinux").write_text("gki vmlinux", encoding="utf-8")
        (ctx.dist_dir / "System.map").write_text("stale", encoding="utf-8")

        copied = MixedBuildCoordinator(ctx).copy_prebuilts()

        names = {p.name for p in copied}
        assert "vmlinux" not in names
        assert "System.map" in names
        assert (ctx.dist_dir / "System.map").read_text(encoding="utf-8") == "gki System.map"
        assert ctx.dist_dir / "vmlinux" in ctx.state.manifest.distributed

    def test_missing_directory(self, make_ctx):
        """A missing prebuilts directory is a precondition failure."""
        ctx = make_ctx(GKI_PREBUILTS_DIR="prebuilts/none")
        with pytest.raises(PreconditionError, match="does not exist"):
            MixedBuildCoordinator(ctx).copy_prebuilts()

    def test_missing_required_files(self, make_ctx, prebuilts):
        """All missing required files are reported together."""
        (prebuilts / "vmlinux").unlink()
        (prebuilts / "Image.lz4").unlink()
        ctx = make_ctx(GKI_PREBUILTS_DIR="prebuilts/gki")

        with pytest.raises(PreconditionError) as exc_info:
            MixedBuildCoordinator(ctx).copy_prebuilts()

        assert "vmlinux" in exc_info.value.message
        assert "Image.lz4" in exc_info.value.message
        assert not ctx.dist_dir.exists()


class TestCopyGkiDist:
    """Tests for copy_gki_dist stage."""

    def test_copies_tree(self, make_ctx, tmp_path):
        """The child's distribution is merged into DIST_DIR."""
        gki_dist = tmp_path / "out" / "gki_kernel" / "dist"
        (gki_dist / "unstripped").mkdir(parents=True)
        (gki_dist / "Image").write_bytes(b"image")
        (gki_dist / "unstripped" / "zram.ko").write_bytes(b"ko")
        ctx = make_ctx(GKI_DIST_DIR="out/gki_kernel/dist")

        mixed.copy_gki_dist(ctx)

        assert (ctx.dist_dir / "Image").read_bytes() == b"image"
        assert (ctx.dist_dir / "unstripped" / "zram.ko").is_file()

    def test_missing_dist(self, make_ctx):
        """A missing GKI distribution is a precondition failure."""
        with pytest.raises(PreconditionError):
            mixed.copy_gki_dist(make_ctx(GKI_DIST_DIR="out/none"))


class TestDetectMode:
    """Tests for MixedBuildCoordinator.detect_mode."""

    def test_modes(self, make_ctx):
        """The detected mode follows the configuration."""
        assert MixedBuildCoordinator(make_ctx()).detect_mode() is MixedBuildMode.NONE
        prebuilt = make_ctx(GKI_PREBUILTS_DIR="prebuilts/gki")
        assert MixedBuildCoordinator(prebuilt).detect_mode() is MixedBuildMode.PREBUILT
