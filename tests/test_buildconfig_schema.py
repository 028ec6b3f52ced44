"""Tests for buildconfig/schema.py module.

Tests option parsing, defaults, exclusivity rules and derivation.
"""

import pytest
from pydantic import ValidationError

from kernel_orchestrator.buildconfig.io import load_build_config
from kernel_orchestrator.buildconfig.schema import (
    BuildConfig,
    parse_flag,
    render_value,
    split_shell_words,
)
from kernel_orchestrator.errors import (
    CONFIG_CONFLICT,
    INVALID_VALUE,
    STRICT_MODE_PRECONDITION,
    ConfigurationError,
)
from kernel_orchestrator.types import LtoMode, MixedBuildMode, SymbolListMode


class TestParseFlag:
    """Tests for parse_flag function."""

    @pytest.mark.parametrize("value", ["1", "true", "yes", "y", "anything"])
    def test_truthy(self, value):
        """Non-empty values other than the false spellings are true."""
        assert parse_flag(value) is True

    @pytest.mark.parametrize("value", ["", "0", "false", "NO", "off", " ", None])
    def test_falsy(self, value):
        """Empty and explicit false spellings are false."""
        assert parse_flag(value) is False


class TestSplitting:
    """Tests for list value helpers."""

    def test_shell_words_keep_quoted_arguments(self):
        """TOOL_ARGS should honor shell quoting."""
        assert split_shell_words("CC=clang 'LD=ld.lld -v'") == ["CC=clang", "LD=ld.lld -v"]

    def test_render_value(self):
        """Typed values render back to their KEY=value form."""
        assert render_value(True) == "1"
        assert render_value(False) == ""
        assert render_value(None) == ""
        assert render_value(["a", "b"]) == "a b"
        assert render_value(LtoMode.THIN) == "thin"


class TestBuildConfigDefaults:
    """Tests for defaults and derived properties."""

    def test_defaults(self):
        """A config with only BUILD_CONFIG gets documented defaults."""
        config = load_build_config({"BUILD_CONFIG": "common/build.config.gki"})

        assert config.out_dir == "out"
        assert config.arch == "arm64"
        assert config.make_goals == []
        assert config.lto is None
        assert config.skip_mrproper is False
        assert config.boot_image_header_version == 3

    def test_kernel_dir_defaults_to_build_config_dir(self):
        """KERNEL_DIR defaults to the directory of BUILD_CONFIG."""
        config = load_build_config({"BUILD_CONFIG": "common/build.config.gki"})
        assert config.kernel_source_dir == "common"

    def test_kernel_dir_override(self):
        """An explicit KERNEL_DIR wins."""
        config = load_build_config(
            {"BUILD_CONFIG": "device/build.config", "KERNEL_DIR": "common"}
        )
        assert config.kernel_source_dir == "common"

    def test_dist_dir_defaults(self):
        """DIST_DIR and the GKI directories derive from OUT_DIR."""
        config = load_build_config({"OUT_DIR": "out/device"})
        assert config.effective_dist_dir == "out/device/dist"
        assert config.effective_gki_out_dir == "out/device/gki_kernel"
        assert config.effective_gki_dist_dir == "out/device/gki_kernel/dist"

    def test_list_and_flag_parsing(self):
        """Word lists split on whitespace; flags accept shell spellings."""
        config = load_build_config(
            {
                "MAKE_GOALS": "modules  dtbs",
                "SKIP_MRPROPER": "1",
                "SKIP_DEFCONFIG": "0",
            }
        )
        assert config.make_goals == ["modules", "dtbs"]
        assert config.skip_mrproper is True
        assert config.skip_defconfig is False

    def test_empty_value_is_unset(self):
        """Empty strings leave optional values unset."""
        config = load_build_config({"KMI_SYMBOL_LIST": "", "LTO": ""})
        assert config.kmi_symbol_list is None
        assert config.lto is None

    def test_strict_mode_objects_default(self):
        """Strict mode compares vmlinux unless objects are configured."""
        assert load_build_config({}).strict_mode_objects == ["vmlinux"]
        config = load_build_config({"KMI_STRICT_MODE_OBJECTS": "vmlinux drivers/foo"})
        assert config.strict_mode_objects == ["vmlinux", "drivers/foo"]

    def test_option_names_are_upper_case(self):
        """Option names mirror field names in upper case."""
        names = BuildConfig.option_names()
        assert "SKIP_MRPROPER" in names
        assert "GKI_BUILD_CONFIG" in names
        assert "VALUES" not in names


class TestValidation:
    """Tests for invalid values and exclusive options."""

    def test_invalid_lto(self):
        """Unknown LTO modes are rejected with the key named."""
        with pytest.raises(ConfigurationError) as exc_info:
            load_build_config({"LTO": "fat"})
        assert exc_info.value.code == INVALID_VALUE
        assert exc_info.value.keys == ["LTO"]
        assert "none" in exc_info.value.message

    def test_invalid_integer(self):
        """Non-numeric header versions are rejected."""
        with pytest.raises(ConfigurationError) as exc_info:
            load_build_config({"BOOT_IMAGE_HEADER_VERSION": "four"})
        assert exc_info.value.keys == ["BOOT_IMAGE_HEADER_VERSION"]

    def test_skip_vendor_boot_conflict(self):
        """SKIP_VENDOR_BOOT cannot be combined with BUILD_VENDOR_BOOT_IMG."""
        with pytest.raises(ConfigurationError) as exc_info:
            load_build_config({"SKIP_VENDOR_BOOT": "1", "BUILD_VENDOR_BOOT_IMG": "1"})
        assert exc_info.value.code == CONFIG_CONFLICT
        assert "incompatible" in exc_info.value.message

    def test_mixed_build_sources_conflict(self):
        """GKI_BUILD_CONFIG and GKI_PREBUILTS_DIR are mutually exclusive."""
        with pytest.raises(ConfigurationError) as exc_info:
            load_build_config(
                {
                    "GKI_BUILD_CONFIG": "common/build.config.gki.aarch64",
                    "GKI_PREBUILTS_DIR": "prebuilts/gki",
                }
            )
        assert exc_info.value.keys == ["GKI_BUILD_CONFIG", "GKI_PREBUILTS_DIR"]

    def test_strict_mode_requires_symbol_list(self):
        """Strict mode without a symbol list is a precondition failure."""
        with pytest.raises(ConfigurationError) as exc_info:
            load_build_config(
                {"KMI_SYMBOL_LIST_STRICT_MODE": "1", "TRIM_NONLISTED_KMI": "1"}
            )
        assert exc_info.value.code == STRICT_MODE_PRECONDITION

    def test_strict_mode_requires_trim(self):
        """Strict mode without trimming is a precondition failure."""
        with pytest.raises(ConfigurationError) as exc_info:
            load_build_config(
                {
                    "KMI_SYMBOL_LIST": "android/abi_gki_aarch64",
                    "KMI_SYMBOL_LIST_STRICT_MODE": "1",
                }
            )
        assert exc_info.value.code == STRICT_MODE_PRECONDITION
        assert "TRIM_NONLISTED_KMI" in exc_info.value.keys

    def test_trim_requires_symbol_list(self):
        """Trimming without a symbol list is a precondition failure."""
        with pytest.raises(ConfigurationError) as exc_info:
            load_build_config({"TRIM_NONLISTED_KMI": "1"})
        assert exc_info.value.code == STRICT_MODE_PRECONDITION


class TestModes:
    """Tests for mixed build and symbol list modes."""

    def test_mixed_build_mode(self):
        """The mixed build mode follows the configured GKI source."""
        assert load_build_config({}).mixed_build_mode is MixedBuildMode.NONE
        from_source = load_build_config({"GKI_BUILD_CONFIG": "common/build.config.gki"})
        assert from_source.mixed_build_mode is MixedBuildMode.FROM_SOURCE
        prebuilt = load_build_config({"GKI_PREBUILTS_DIR": "prebuilts/gki"})
        assert prebuilt.mixed_build_mode is MixedBuildMode.PREBUILT

    @pytest.mark.parametrize(
        ("values", "mode"),
        [
            ({}, SymbolListMode.DISABLED),
            ({"KMI_SYMBOL_LIST": "android/abi_gki_aarch64"}, SymbolListMode.LIST_ONLY),
            (
                {"KMI_SYMBOL_LIST": "android/abi_gki_aarch64", "TRIM_NONLISTED_KMI": "1"},
                SymbolListMode.TRIM_ONLY,
            ),
            (
                {
                    "KMI_SYMBOL_LIST": "android/abi_gki_aarch64",
                    "TRIM_NONLISTED_KMI": "1",
                    "KMI_SYMBOL_LIST_STRICT_MODE": "1",
                },
                SymbolListMode.TRIM_AND_STRICT,
            ),
        ],
    )
    def test_symbol_list_mode(self, values, mode):
        """The symbol list mode follows the KMI options."""
        assert load_build_config(values).symbol_list_mode is mode


class TestDerive:
    """Tests for BuildConfig.derive."""

    def test_derive_returns_new_instance(self):
        """derive leaves the original untouched."""
        config = load_build_config({"KCONFIG_EXT_PREFIX": "../vendor"})
        derived = config.derive(kconfig_ext_prefix="../vendor/")

        assert derived is not config
        assert config.kconfig_ext_prefix == "../vendor"
        assert derived.kconfig_ext_prefix == "../vendor/"
        assert derived.values["KCONFIG_EXT_PREFIX"] == "../vendor/"

    def test_derive_revalidates(self):
        """Derived configs are validated like loaded ones."""
        config = load_build_config({"BUILD_VENDOR_BOOT_IMG": "1"})
        with pytest.raises(ConfigurationError):
            config.derive(skip_vendor_boot=True)

    def test_derive_keeps_child_values(self):
        """GKI_ values survive derivation."""
        config = load_build_config({"GKI_LTO": "full"})
        assert config.derive(out_dir="out2").child_values == {"GKI_LTO": "full"}

    def test_config_is_frozen(self):
        """BuildConfig cannot be mutated in place."""
        config = load_build_config({})
        with pytest.raises(ValidationError):
            config.out_dir = "elsewhere"

    def test_to_environ_skips_empty(self):
        """to_environ renders only non-empty recognized options."""
        config = load_build_config({"ARCH": "x86_64", "LTO": "", "NOT_AN_OPTION": "x"})
        assert config.to_environ() == {"ARCH": "x86_64"}

    def test_hook_command(self):
        """hook_command returns the configured command or None."""
        config = load_build_config({"PRE_DEFCONFIG_CMDS": "echo hi"})
        assert config.hook_command("PRE_DEFCONFIG_CMDS") == "echo hi"
        assert config.hook_command("DIST_CMDS") is None
