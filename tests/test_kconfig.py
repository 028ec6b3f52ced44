"""Tests for pipeline/kconfig.py module."""

from pathlib import Path

from kernel_orchestrator.pipeline.kconfig import KernelConfigFile, apply_lto_mode
from kernel_orchestrator.types import LtoMode


class TestKernelConfigFile:
    """Tests for KernelConfigFile."""

    def test_edit_existing_and_new_options(self, tmp_path: Path):
        """Existing options are edited in place; new ones are appended."""
        path = tmp_path / ".config"
        path.write_text(
            "CONFIG_A=y\n# CONFIG_B is not set\nCONFIG_C=m\n", encoding="utf-8"
        )
        config = KernelConfigFile(path)
        config.disable("A")
        config.enable("B")
        config.set_str("D", 'quoted "value"')
        config.save()

        assert path.read_text(encoding="utf-8") == (
            "# CONFIG_A is not set\n"
            "CONFIG_B=y\n"
            "CONFIG_C=m\n"
            'CONFIG_D="quoted \\"value\\""\n'
        )

    def test_get_and_has(self, tmp_path: Path):
        """Unset and absent options read as None."""
        path = tmp_path / ".config"
        path.write_text("CONFIG_A=y\n# CONFIG_B is not set\n", encoding="utf-8")
        config = KernelConfigFile(path)

        assert config.get("A") == "y"
        assert config.has("A")
        assert config.get("B") is None
        assert not config.has("B")
        assert not config.has("MISSING")

    def test_missing_file_starts_empty(self, tmp_path: Path):
        """A missing .config is created on save."""
        path = tmp_path / "out" / ".config"
        config = KernelConfigFile(path)
        config.enable("X")
        config.save()
        assert path.read_text(encoding="utf-8") == "CONFIG_X=y\n"


class TestApplyLtoMode:
    """Tests for apply_lto_mode function."""

    def test_full(self, tmp_path: Path):
        """Full LTO enables LTO_CLANG_FULL and disables the others."""
        path = tmp_path / ".config"
        path.write_text("CONFIG_LTO_CLANG_THIN=y\n", encoding="utf-8")
        apply_lto_mode(path, LtoMode.FULL)

        config = KernelConfigFile(path)
        assert config.has("LTO_CLANG")
        assert config.has("LTO_CLANG_FULL")
        assert not config.has("LTO_CLANG_THIN")
        assert not config.has("THINLTO")

    def test_none(self, tmp_path: Path):
        """LTO none disables clang LTO entirely."""
        path = tmp_path / ".config"
        apply_lto_mode(path, LtoMode.NONE)

        config = KernelConfigFile(path)
        assert config.has("LTO_NONE")
        assert not config.has("LTO_CLANG")
