"""Pydantic model for the kernel build configuration.

BuildConfig is the typed, validated view of the flat ``KEY=value``
namespace assembled from build.config, its fragments and caller overrides.
Option names are the upper-case form of the field names
(``skip_mrproper`` <-> ``SKIP_MRPROPER``).

The model is frozen. Stages that need a different configuration obtain a
new instance through BuildConfig.derive().
"""

from __future__ import annotations

import posixpath
import shlex
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, model_validator

from kernel_orchestrator.errors import (
    STRICT_MODE_PRECONDITION,
    ConfigurationError,
)
from kernel_orchestrator.types import LtoMode, MixedBuildMode, SymbolListMode

FALSE_VALUES = frozenset({"", "0", "false", "no", "off", "n"})

# Fields that carry raw input rather than a build option
NON_OPTION_FIELDS = frozenset({"values", "child_values"})


def parse_flag(value: Any) -> bool:
    """Parse a shell-style flag value.

    Empty, ``0``, ``false``, ``no``, ``off`` and ``n`` are false; any other
    non-empty value is true.
    """
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() not in FALSE_VALUES


def split_words(value: Any) -> list[str]:
    """Split a whitespace-separated list value."""
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value]
    return str(value).split()


def split_shell_words(value: Any) -> list[str]:
    """Split a value using shell quoting rules."""
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value]
    return shlex.split(str(value))


def empty_to_none(value: Any) -> Any:
    """Treat empty strings as unset."""
    if value is None:
        return None
    if isinstance(value, str) and not value.strip():
        return None
    return value


def parse_lto(value: Any) -> LtoMode | None:
    """Validate the LTO mode."""
    if value is None or isinstance(value, LtoMode):
        return value
    text = str(value).strip()
    if not text:
        return None
    try:
        return LtoMode(text)
    except ValueError:
        raise ValueError("LTO= must be one of 'none', 'thin' or 'full'.") from None


def render_value(value: Any) -> str:
    """Render a typed option value back into its ``KEY=value`` form."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "1" if value else ""
    if isinstance(value, LtoMode):
        return value.value
    if isinstance(value, (list, tuple)):
        return " ".join(str(v) for v in value)
    return str(value)


Flag = Annotated[bool, BeforeValidator(parse_flag)]
WordList = Annotated[list[str], BeforeValidator(split_words)]
ShellWords = Annotated[list[str], BeforeValidator(split_shell_words)]
OptStr = Annotated[str | None, BeforeValidator(empty_to_none)]
Lto = Annotated[LtoMode | None, BeforeValidator(parse_lto)]


class BuildConfig(BaseModel):
    """Validated, immutable build configuration.

    Attributes:
        values: Raw strings of the recognized options as supplied.
        child_values: Raw strings of ``GKI_<OPTION>`` keys, the input of the
            child namespace transformation.
    """

    model_config = ConfigDict(
        frozen=True,
        alias_generator=str.upper,
        populate_by_name=True,
        extra="ignore",
    )

    # Sources
    build_config: str = Field(
        default="build.config",
        description="Build config file, relative to the repository root",
    )
    build_config_fragments: WordList = Field(
        default_factory=list,
        description="Additional build config fragments applied after BUILD_CONFIG",
    )
    kernel_dir: OptStr = Field(
        default=None,
        description="Kernel source directory (defaults to BUILD_CONFIG's directory)",
    )

    # Output locations
    out_dir: str = Field(default="out", description="Base output directory")
    dist_dir: OptStr = Field(
        default=None, description="Distribution directory (defaults to OUT_DIR/dist)"
    )

    # Compilation
    arch: str = Field(default="arm64", description="Target architecture")
    defconfig: str = Field(default="defconfig", description="Defconfig make target")
    make_goals: WordList = Field(
        default_factory=list, description="Targets passed to make"
    )
    tool_args: ShellWords = Field(
        default_factory=list, description="Toolchain arguments passed to make"
    )
    files: WordList = Field(
        default_factory=list, description="Files copied from OUT_DIR to DIST_DIR"
    )
    lto: Lto = Field(default=None, description="LTO mode: none, thin or full")
    tags_config: OptStr = Field(
        default=None, description="Generate tags with this config and exit"
    )
    kconfig_ext_prefix: OptStr = Field(
        default=None, description="Prefix of an external Kconfig.ext"
    )
    dts_ext_dir: OptStr = Field(
        default=None, description="Out-of-tree device tree directory"
    )

    # Stage skips
    skip_mrproper: Flag = Field(default=False, description="Skip make mrproper")
    skip_defconfig: Flag = Field(default=False, description="Skip make defconfig")
    skip_if_version_matches: Flag = Field(
        default=False,
        description="Exit early when DIST_DIR/vmlinux already has this version",
    )
    skip_ext_modules: Flag = Field(
        default=False, description="Skip building external modules"
    )
    skip_cp_kernel_hdr: Flag = Field(
        default=False, description="Skip installing kernel headers"
    )
    skip_kmi_comparing: Flag = Field(
        default=False, description="Skip the strict KMI comparison"
    )

    # Hooks
    pre_defconfig_cmds: OptStr = Field(
        default=None, description="Command run before make defconfig"
    )
    post_defconfig_cmds: OptStr = Field(
        default=None, description="Command run after make defconfig"
    )
    post_kernel_build_cmds: OptStr = Field(
        default=None, description="Command run after the kernel build"
    )
    extra_cmds: OptStr = Field(
        default=None, description="Command run after modules are installed"
    )
    dist_cmds: OptStr = Field(
        default=None, description="Command run after files are copied to DIST_DIR"
    )

    # Modules
    in_kernel_modules: Flag = Field(
        default=False, description="Install in-kernel modules"
    )
    ext_modules: WordList = Field(
        default_factory=list, description="External module directories"
    )
    ext_modules_makefile: OptStr = Field(
        default=None, description="Makefile building all external modules"
    )
    do_not_strip_modules: Flag = Field(
        default=False, description="Keep debug info in distributed modules"
    )
    compress_modules: Flag = Field(
        default=False, description="Archive distributed modules"
    )
    modules_archive: str = Field(
        default="modules.tar.gz", description="Name of the modules archive"
    )
    unstripped_modules: WordList = Field(
        default_factory=list, description="Modules copied unstripped to DIST_DIR"
    )
    compress_unstripped_modules: Flag = Field(
        default=False, description="Archive the unstripped modules"
    )
    unstripped_modules_archive: str = Field(
        default="unstripped_modules.tar.gz",
        description="Name of the unstripped modules archive",
    )
    modules_order: OptStr = Field(
        default=None, description="Expected modules.order, kernel relative"
    )
    gki_modules_list: OptStr = Field(
        default=None, description="List of GKI modules copied to DIST_DIR"
    )
    modules_list: OptStr = Field(
        default=None, description="Allow-list of modules for the ramdisk"
    )
    modules_blocklist: OptStr = Field(
        default=None, description="Block-list of modules for the ramdisk"
    )
    modules_options: OptStr = Field(
        default=None, description="Contents of modules.options"
    )

    # Images
    build_initramfs: Flag = Field(default=False, description="Build initramfs.img")
    lz4_ramdisk: Flag = Field(default=False, description="Compress ramdisks with lz4")
    build_system_dlkm: Flag = Field(
        default=False, description="Build system_dlkm.img"
    )
    system_dlkm_modules_list: OptStr = Field(
        default=None, description="Allow-list of modules for system_dlkm"
    )
    vendor_dlkm_modules_list: OptStr = Field(
        default=None, description="Allow-list of modules for vendor_dlkm"
    )
    vendor_dlkm_modules_blocklist: OptStr = Field(
        default=None, description="Block-list of modules for vendor_dlkm"
    )
    vendor_dlkm_props: OptStr = Field(
        default=None, description="Image properties for vendor_dlkm"
    )
    build_boot_img: Flag = Field(default=False, description="Build boot.img")
    build_vendor_boot_img: Flag = Field(
        default=False, description="Build vendor_boot.img"
    )
    skip_vendor_boot: Flag = Field(
        default=False, description="Do not build vendor_boot.img"
    )
    build_vendor_kernel_boot: Flag = Field(
        default=False, description="Build vendor_kernel_boot.img"
    )
    kernel_binary: str = Field(
        default="Image", description="Kernel binary used in boot images"
    )
    boot_image_header_version: int = Field(
        default=3, description="Boot image header version"
    )
    boot_image_filename: str = Field(
        default="boot.img", description="Boot image file name"
    )
    kernel_cmdline: OptStr = Field(default=None, description="Kernel command line")
    mkbootimg_path: str = Field(
        default="tools/mkbootimg/mkbootimg.py",
        description="mkbootimg script, relative to the repository root",
    )
    gki_ramdisk_prebuilt_binary: OptStr = Field(
        default=None, description="Generic ramdisk for boot.img"
    )
    vendor_ramdisk_binary: WordList = Field(
        default_factory=list, description="Vendor ramdisk binaries"
    )
    generate_vmlinux_btf: Flag = Field(
        default=False, description="Generate DIST_DIR/vmlinux.btf"
    )
    stop_ship_traceprintk: Flag = Field(
        default=False, description="Fail when vmlinux uses trace_printk"
    )

    # KMI
    abi_definition: OptStr = Field(
        default=None, description="ABI definition, kernel relative"
    )
    kmi_enforced: Flag = Field(default=False, description="KMI is enforced")
    kmi_symbol_list: OptStr = Field(
        default=None, description="Main KMI symbol list, kernel relative"
    )
    additional_kmi_symbol_lists: WordList = Field(
        default_factory=list, description="Secondary KMI symbol lists"
    )
    trim_nonlisted_kmi: Flag = Field(
        default=False, description="Un-export symbols not in the symbol list"
    )
    kmi_symbol_list_strict_mode: Flag = Field(
        default=False, description="Require exported symbols to match the list"
    )
    kmi_strict_mode_objects: WordList = Field(
        default_factory=list,
        description="Objects considered by strict mode (defaults to vmlinux)",
    )

    # Mixed build
    gki_build_config: OptStr = Field(
        default=None, description="Build the GKI kernel from this config"
    )
    gki_prebuilts_dir: OptStr = Field(
        default=None, description="Use GKI kernel binaries from this directory"
    )
    gki_out_dir: OptStr = Field(
        default=None, description="Output directory of the GKI child build"
    )
    gki_dist_dir: OptStr = Field(
        default=None, description="Distribution directory of the GKI child build"
    )

    values: dict[str, str] = Field(
        default_factory=dict, alias="__values__", exclude=True, repr=False
    )
    child_values: dict[str, str] = Field(
        default_factory=dict, alias="__child_values__", exclude=True, repr=False
    )

    @model_validator(mode="after")
    def check_exclusive_options(self) -> BuildConfig:
        """Reject mutually exclusive or incomplete option combinations."""
        if self.skip_vendor_boot and self.build_vendor_boot_img:
            raise ConfigurationError(
                "SKIP_VENDOR_BOOT is incompatible with BUILD_VENDOR_BOOT_IMG.",
                keys=["SKIP_VENDOR_BOOT", "BUILD_VENDOR_BOOT_IMG"],
            )
        if self.gki_build_config and self.gki_prebuilts_dir:
            raise ConfigurationError(
                "GKI_BUILD_CONFIG is incompatible with GKI_PREBUILTS_DIR.",
                keys=["GKI_BUILD_CONFIG", "GKI_PREBUILTS_DIR"],
            )
        if self.kmi_symbol_list_strict_mode and not self.kmi_symbol_list:
            raise ConfigurationError(
                "KMI_SYMBOL_LIST_STRICT_MODE requires a KMI_SYMBOL_LIST",
                keys=["KMI_SYMBOL_LIST_STRICT_MODE", "KMI_SYMBOL_LIST"],
                code=STRICT_MODE_PRECONDITION,
            )
        if self.kmi_symbol_list_strict_mode and not self.trim_nonlisted_kmi:
            raise ConfigurationError(
                "KMI_SYMBOL_LIST_STRICT_MODE requires TRIM_NONLISTED_KMI=1",
                keys=["KMI_SYMBOL_LIST_STRICT_MODE", "TRIM_NONLISTED_KMI"],
                code=STRICT_MODE_PRECONDITION,
            )
        if self.trim_nonlisted_kmi and not self.kmi_symbol_list:
            raise ConfigurationError(
                "TRIM_NONLISTED_KMI requires a KMI_SYMBOL_LIST",
                keys=["TRIM_NONLISTED_KMI", "KMI_SYMBOL_LIST"],
                code=STRICT_MODE_PRECONDITION,
            )
        return self

    @classmethod
    def option_names(cls) -> list[str]:
        """Return the recognized option names (upper case)."""
        return [
            name.upper() for name in cls.model_fields if name not in NON_OPTION_FIELDS
        ]

    @property
    def kernel_source_dir(self) -> str:
        """Kernel source directory, relative to the repository root."""
        if self.kernel_dir:
            return self.kernel_dir
        return posixpath.dirname(self.build_config) or "."

    @property
    def effective_dist_dir(self) -> str:
        """Distribution directory with its default applied."""
        return self.dist_dir or posixpath.join(self.out_dir, "dist")

    @property
    def effective_gki_out_dir(self) -> str:
        """Output directory of the GKI child build with its default applied."""
        return self.gki_out_dir or posixpath.join(self.out_dir, "gki_kernel")

    @property
    def effective_gki_dist_dir(self) -> str:
        """Distribution directory of the GKI child build."""
        return self.gki_dist_dir or posixpath.join(self.effective_gki_out_dir, "dist")

    @property
    def strict_mode_objects(self) -> list[str]:
        """Objects whose exports are compared in strict mode."""
        return self.kmi_strict_mode_objects or ["vmlinux"]

    @property
    def mixed_build_mode(self) -> MixedBuildMode:
        """Which mixed-build branch this configuration selects."""
        if self.gki_build_config:
            return MixedBuildMode.FROM_SOURCE
        if self.gki_prebuilts_dir:
            return MixedBuildMode.PREBUILT
        return MixedBuildMode.NONE

    @property
    def symbol_list_mode(self) -> SymbolListMode:
        """State of the symbol list processor."""
        if not self.kmi_symbol_list:
            return SymbolListMode.DISABLED
        if not self.trim_nonlisted_kmi:
            return SymbolListMode.LIST_ONLY
        if self.kmi_symbol_list_strict_mode:
            return SymbolListMode.TRIM_AND_STRICT
        return SymbolListMode.TRIM_ONLY

    def hook_command(self, point: str) -> str | None:
        """Return the injected command for a hook point, if any.

        Args:
            point: Hook option name, e.g. ``PRE_DEFCONFIG_CMDS``.
        """
        value = getattr(self, point.lower())
        return value if value else None

    def to_environ(self) -> dict[str, str]:
        """Render the recognized options as environment variables."""
        return {key: value for key, value in self.values.items() if value}

    def derive(self, **updates: Any) -> BuildConfig:
        """Return a new, re-validated configuration with updated options.

        Args:
            **updates: Option values keyed by field name.

        Returns:
            New BuildConfig instance; this one is left untouched.
        """
        data = self.model_dump()
        data.update(updates)
        values = dict(self.values)
        for name, value in updates.items():
            values[name.upper()] = render_value(value)
        data["values"] = values
        data["child_values"] = dict(self.child_values)
        return type(self).model_validate(data)


__all__ = [
    "BuildConfig",
    "parse_flag",
    "render_value",
    "split_shell_words",
    "split_words",
]
