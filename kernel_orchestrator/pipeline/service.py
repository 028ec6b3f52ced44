"""Build pipeline service.

This module provides the high-level build API:
- build_stages(): the ordered stage table of a kernel build
- run_pipeline(): main entry point - run the stages for one configuration

Stage order is fixed. Each stage's predicate reads only the current
BuildConfig and BuildState, so skipping is fully determined by the
configuration plus the outcome of earlier stages.
"""

from __future__ import annotations

import difflib
import logging
import posixpath
import re
import shutil
import tarfile
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from kernel_orchestrator.buildconfig.schema import BuildConfig
from kernel_orchestrator.config import Settings
from kernel_orchestrator.errors import (
    MODULES_ORDER_DRIFT,
    STOP_SHIP,
    ConsistencyError,
    EarlyExit,
    PreconditionError,
)
from kernel_orchestrator.pipeline import mixed, staging
from kernel_orchestrator.pipeline.artifacts import (
    MANIFEST_NAME,
    ArtifactManifest,
    describe_artifacts,
    generate_manifest,
    write_manifest,
)
from kernel_orchestrator.pipeline.kconfig import apply_lto_mode
from kernel_orchestrator.pipeline.runner import ToolRunner
from kernel_orchestrator.pipeline.stages import (
    BuildContext,
    BuildState,
    PipelineResult,
    Stage,
    StagePredicate,
    StageSequencer,
)
from kernel_orchestrator.symbols.processor import SymbolListProcessor
from kernel_orchestrator.types import LtoMode, MixedBuildMode, StagePolicy, SymbolListMode

logger = logging.getLogger(__name__)

DTS_GOAL = re.compile(r"dtbs|\.dtb|\.dtbo")
DEVICE_TREE_FILE = re.compile(r"\.dtb|\.dtbo")
LINUX_VERSION = re.compile(rb"Linux version (\S+) ")
TRACE_PRINTK_WARNING = "Found trace_printk usage in vmlinux."


# --- Source preparation ---------------------------------------------------


def resolve_kconfig_ext_prefix(ctx: BuildContext) -> dict[str, Any]:
    """Locate Kconfig.ext and pass its prefix (kernel relative) to make."""
    prefix = str(ctx.config.kconfig_ext_prefix)
    if not prefix.endswith("/"):
        prefix += "/"
    if (ctx.root_dir / prefix / "Kconfig.ext").is_file():
        prefix = posixpath.relpath(str(ctx.root_dir / prefix), str(ctx.kernel_src)) + "/"
    elif not (ctx.kernel_src / prefix / "Kconfig.ext").is_file():
        raise PreconditionError(
            f"Couldn't find the Kconfig.ext in {prefix}", path=ctx.kernel_src / prefix
        )
    ctx.state.make_args.append(f"KCONFIG_EXT_PREFIX={prefix}")
    return {"kconfig_ext_prefix": prefix}


def wants_dts_ext_dir(ctx: BuildContext) -> bool:
    config = ctx.config
    return bool(config.dts_ext_dir) and bool(DTS_GOAL.search(" ".join(config.make_goals)))


def resolve_dts_ext_dir(ctx: BuildContext) -> dict[str, Any]:
    """Locate the external device tree and pass it to make as ``dtstree``."""
    dts_dir = str(ctx.config.dts_ext_dir)
    if (ctx.root_dir / dts_dir).is_dir():
        dts_dir = posixpath.relpath(str(ctx.root_dir / dts_dir), str(ctx.kernel_src))
    elif not (ctx.kernel_src / dts_dir).is_dir():
        raise PreconditionError(
            f"Couldn't find the dtstree -- {dts_dir}", path=ctx.kernel_src / dts_dir
        )
    ctx.state.make_args.append(f"dtstree={dts_dir}")
    return {"dts_ext_dir": dts_dir}


def check_kernel_version(ctx: BuildContext) -> None:
    """Exit early when DIST_DIR/vmlinux was built from this exact release."""
    vmlinux = ctx.dist_dir / "vmlinux"
    if not vmlinux.is_file():
        logger.debug("No %s, building", vmlinux)
        return
    release = ctx.runner.capture(
        ["make", "-s", *ctx.config.tool_args, f"O={ctx.out_dir}", "kernelrelease"],
        cwd=ctx.kernel_src,
        env=ctx.tool_env(),
    ).strip()
    ctx.state.kernel_release = release
    if not release or "dirty" in release:
        return
    match = LINUX_VERSION.search(vmlinux.read_bytes())
    if match and match.group(1).decode("utf-8", "replace") == release:
        raise EarlyExit(f"Skipping build because kernel version matches {release}")


def prepare_output_dirs(ctx: BuildContext) -> None:
    ctx.out_dir.mkdir(parents=True, exist_ok=True)
    ctx.dist_dir.mkdir(parents=True, exist_ok=True)


# --- Kernel configuration -------------------------------------------------


def run_mrproper(ctx: BuildContext) -> None:
    ctx.make("mrproper", label="mrproper")


def run_defconfig(ctx: BuildContext) -> None:
    ctx.make(ctx.config.defconfig, label="defconfig")


def apply_lto(ctx: BuildContext) -> None:
    """Rewrite the LTO options and recompute the configuration."""
    apply_lto_mode(ctx.out_dir / ".config", LtoMode(ctx.config.lto))
    ctx.make("olddefconfig", label="olddefconfig-lto")


def generate_tags(ctx: BuildContext) -> None:
    """Generate source tags, then end the build."""
    env = ctx.tool_env()
    env["SRCARCH"] = ctx.config.arch
    ctx.runner.run(
        ["./scripts/tags.sh", str(ctx.config.tags_config)],
        cwd=ctx.kernel_src,
        label="tags",
        env=env,
    )
    raise EarlyExit(f"Generated tags for {ctx.config.tags_config}")


# --- KMI ------------------------------------------------------------------


def write_abi_metadata(ctx: BuildContext) -> None:
    """Write abi.prop and copy the ABI definition to abi.xml."""
    manifest = ctx.state.manifest
    manifest.entries = ArtifactManifest.from_config(ctx.config).entries
    manifest.record(manifest.write_abi_prop(ctx.dist_dir))

    if ctx.config.abi_definition:
        source = ctx.kernel_src / ctx.config.abi_definition
        if not source.is_file():
            raise PreconditionError(f"ABI definition not found: {source}", path=source)
        dest = ctx.dist_dir / "abi.xml"
        logger.info("Copying abi definition to %s", dest)
        shutil.copy2(source, dest)
        manifest.record(dest)


def _symbol_processor(ctx: BuildContext) -> SymbolListProcessor:
    return SymbolListProcessor(ctx.config, ctx.kernel_src, ctx.out_dir, ctx.dist_dir)


def prepare_symbol_list(ctx: BuildContext) -> None:
    """Merge the KMI symbol lists and, when trimming, apply them to .config."""
    processor = _symbol_processor(ctx)
    ctx.state.symbol_list = processor.merge()
    ctx.state.manifest.record(processor.symbol_list_path)
    ctx.state.manifest.record(processor.report_path)
    if processor.mode in (SymbolListMode.TRIM_ONLY, SymbolListMode.TRIM_AND_STRICT):
        processor.apply_trim(lambda: ctx.make("olddefconfig", label="olddefconfig-trim"))


def verify_symbol_list(ctx: BuildContext) -> None:
    _symbol_processor(ctx).verify()


# --- Build ----------------------------------------------------------------


def build_kernel(ctx: BuildContext) -> None:
    ctx.make(*ctx.config.make_goals, label="build")


def check_modules_order(ctx: BuildContext) -> None:
    """Compare modules.order with the list checked into the kernel tree."""
    expected = ctx.kernel_src / str(ctx.config.modules_order)
    actual = ctx.out_dir / "modules.order"
    for path in (expected, actual):
        if not path.is_file():
            raise PreconditionError(f"Modules list not found: {path}", path=path)
    diff = list(
        difflib.unified_diff(
            expected.read_text(encoding="utf-8").splitlines(keepends=True),
            actual.read_text(encoding="utf-8").splitlines(keepends=True),
            fromfile=str(expected),
            tofile=str(actual),
        )
    )
    if diff:
        logger.error("modules list out of date:\n%s", "".join(diff))
        raise ConsistencyError(
            "modules list out of date",
            code=MODULES_ORDER_DRIFT,
            remediation=f"cp {actual} {expected}",
        )


# --- Distribution ---------------------------------------------------------


def copy_files(ctx: BuildContext) -> None:
    """Copy FILES from OUT_DIR to DIST_DIR."""
    config = ctx.config
    for name in config.files:
        source = ctx.out_dir / name
        if not source.is_file() and config.dts_ext_dir and DEVICE_TREE_FILE.search(name):
            source = ctx.out_dir / config.dts_ext_dir / name
        if source.is_file():
            logger.info("  %s", name)
            staging.copy_to_dist(ctx, source)
        else:
            logger.info("  %s is not a file, skipping", name)

    gdb_script = ctx.out_dir / "vmlinux-gdb.py"
    if gdb_script.is_file():
        archive = ctx.dist_dir / "kernel-gdb-scripts.tar.gz"
        logger.info("Copying kernel gdb scripts to %s", archive)
        with tarfile.open(archive, "w:gz", dereference=True) as tar:
            tar.add(gdb_script, arcname=gdb_script.name)
            for script in sorted((ctx.out_dir / "scripts" / "gdb" / "linux").glob("*.py")):
                tar.add(script, arcname=script.relative_to(ctx.out_dir).as_posix())
        ctx.state.manifest.record(archive)


def generate_vmlinux_btf(ctx: BuildContext) -> None:
    """Derive vmlinux.btf from DIST_DIR/vmlinux."""
    vmlinux = ctx.dist_dir / "vmlinux"
    if not vmlinux.is_file():
        raise PreconditionError(f"{vmlinux} not found", path=vmlinux)
    btf = ctx.dist_dir / "vmlinux.btf"
    shutil.copy2(vmlinux, btf)
    ctx.runner.run(["pahole", "-J", btf.name], cwd=ctx.dist_dir, label="pahole")
    ctx.runner.run(
        ["llvm-strip", "--strip-debug", btf.name], cwd=ctx.dist_dir, label="llvm-strip"
    )
    ctx.state.manifest.record(btf)


def copy_gki_modules_list(ctx: BuildContext) -> None:
    source = ctx.kernel_src / str(ctx.config.gki_modules_list)
    if not source.is_file():
        raise PreconditionError(f"GKI_MODULES_LIST not found: {source}", path=source)
    staging.copy_to_dist(ctx, source)


def _concatenate(sources: Sequence[Path], dest: Path) -> Path:
    with dest.open("wb") as out:
        for source in sources:
            with source.open("rb") as f:
                shutil.copyfileobj(f, out)
    return dest


def build_boot_images(ctx: BuildContext) -> None:
    """Assemble boot.img and/or vendor_boot.img with mkbootimg."""
    config = ctx.config
    mkbootimg = ctx.resolve(config.mkbootimg_path)
    if not mkbootimg.is_file():
        raise PreconditionError(f"mkbootimg not found: {mkbootimg}", path=mkbootimg)
    work_dir = staging.StagingManager(ctx.common_out_dir).mkbootimg_dir
    if work_dir.exists():
        shutil.rmtree(work_dir)
    work_dir.mkdir(parents=True)

    cmd = [str(mkbootimg), "--header_version", str(config.boot_image_header_version)]
    outputs: list[Path] = []

    if config.build_boot_img:
        kernel = ctx.dist_dir / config.kernel_binary
        if not kernel.is_file():
            raise PreconditionError(f"Kernel binary not found: {kernel}", path=kernel)
        cmd += ["--kernel", str(kernel)]
        if config.gki_ramdisk_prebuilt_binary:
            cmd += ["--ramdisk", str(ctx.resolve(config.gki_ramdisk_prebuilt_binary))]
        boot_img = ctx.dist_dir / config.boot_image_filename
        cmd += ["--output", str(boot_img)]
        outputs.append(boot_img)

    vendor_boot = config.build_vendor_boot_img and not config.skip_vendor_boot
    if vendor_boot:
        ramdisks = [ctx.resolve(p) for p in config.vendor_ramdisk_binary]
        initramfs = ctx.dist_dir / "initramfs.img"
        if initramfs.is_file():
            ramdisks.append(initramfs)
        for ramdisk in ramdisks:
            if not ramdisk.is_file():
                raise PreconditionError(f"Vendor ramdisk not found: {ramdisk}", path=ramdisk)
        vendor_ramdisk = _concatenate(ramdisks, work_dir / "vendor_ramdisk")
        cmd += ["--vendor_ramdisk", str(vendor_ramdisk)]
        dtbs = sorted(ctx.dist_dir.glob("*.dtb"))
        if dtbs:
            cmd += ["--dtb", str(_concatenate(dtbs, work_dir / "dtb.img"))]
        vendor_boot_img = ctx.dist_dir / "vendor_boot.img"
        cmd += ["--vendor_boot", str(vendor_boot_img)]
        outputs.append(vendor_boot_img)

    if config.kernel_cmdline:
        if vendor_boot and config.boot_image_header_version >= 3:
            cmd += ["--vendor_cmdline", config.kernel_cmdline]
        else:
            cmd += ["--cmdline", config.kernel_cmdline]

    ctx.runner.run(cmd, cwd=ctx.root_dir, label="mkbootimg", env=ctx.tool_env())
    for image in outputs:
        if not image.is_file():
            raise PreconditionError(f"mkbootimg did not produce {image.name}", path=image)
        ctx.state.manifest.record(image)


def scan_trace_printk(ctx: BuildContext) -> None:
    """Warn when vmlinux carries trace_printk format strings."""
    output = ctx.runner.capture(
        ["readelf", "-a", str(ctx.dist_dir / "vmlinux")], cwd=ctx.dist_dir
    )
    if "trace_printk_fmt" in output:
        logger.warning(
            "%s trace_printk will cause trace_printk_init_buffers executed in "
            "kernel start, which will increase memory and lead warning shown "
            "during boot. We should not carry trace_printk in production kernel.",
            TRACE_PRINTK_WARNING,
        )
        ctx.state.warnings.append(TRACE_PRINTK_WARNING)


def stop_ship_on_trace_printk(ctx: BuildContext) -> None:
    raise ConsistencyError(
        "stop ship on trace_printk usage.",
        code=STOP_SHIP,
        remediation="Remove trace_printk calls from the kernel",
    )


def write_dist_manifest(ctx: BuildContext) -> None:
    state = ctx.state
    artifacts = describe_artifacts(state.manifest.distributed, ctx.dist_dir)
    manifest = generate_manifest(
        artifacts,
        kernel_release=state.kernel_release,
        properties={e.key: e.value for e in state.manifest.entries},
        warnings=state.warnings,
        mixed_tree_inputs=[str(p) for p in state.mixed_tree_inputs],
    )
    write_manifest(manifest, ctx.dist_dir / MANIFEST_NAME)
    logger.info("Files copied to %s", ctx.dist_dir)


# --- Stage table ----------------------------------------------------------


def hook_stage(
    point: str, description: str, when: StagePredicate | None = None
) -> Stage:
    """Stage running an injected shell command, if one is configured."""

    def predicate(ctx: BuildContext) -> bool:
        if when is not None and not when(ctx):
            return False
        return ctx.config.hook_command(point) is not None

    def body(ctx: BuildContext) -> None:
        if point == "DIST_CMDS":
            uapi = staging.StagingManager(ctx.common_out_dir).uapi_headers_dir / "usr"
            if not uapi.is_dir():
                logger.warning("Running without UAPI headers")
                ctx.state.warnings.append("DIST_CMDS ran without UAPI headers")
        ctx.runner.run(
            ["bash", "-c", str(ctx.config.hook_command(point))],
            cwd=ctx.root_dir,
            label=point.lower(),
            env=ctx.tool_env(),
        )

    return Stage(point.lower(), body, predicate, description=description)


def _mixed_mode(mode: MixedBuildMode) -> StagePredicate:
    return lambda ctx: ctx.config.mixed_build_mode is mode


def _builds_ext_modules(ctx: BuildContext) -> bool:
    return not ctx.config.skip_ext_modules


def build_stages() -> list[Stage]:
    """Return the stages of a kernel build in execution order."""
    return [
        Stage(
            "gki_from_source",
            mixed.build_gki_from_source,
            _mixed_mode(MixedBuildMode.FROM_SOURCE),
            description="Building GKI kernel",
        ),
        Stage(
            "kconfig_ext",
            resolve_kconfig_ext_prefix,
            lambda ctx: bool(ctx.config.kconfig_ext_prefix),
            description="Locating Kconfig.ext",
        ),
        Stage(
            "dts_ext_dir",
            resolve_dts_ext_dir,
            wants_dts_ext_dir,
            description="Locating external device tree",
        ),
        Stage(
            "version_check",
            check_kernel_version,
            lambda ctx: ctx.config.skip_if_version_matches,
            description="Checking kernel version",
        ),
        Stage("prepare_dirs", prepare_output_dirs, description="Setting up for build"),
        Stage(
            "gki_prebuilts",
            mixed.copy_gki_prebuilts,
            _mixed_mode(MixedBuildMode.PREBUILT),
            description="Copying GKI prebuilts",
        ),
        Stage(
            "mrproper",
            run_mrproper,
            lambda ctx: not ctx.config.skip_mrproper,
            description="Cleaning kernel tree",
        ),
        hook_stage("PRE_DEFCONFIG_CMDS", "Running pre-defconfig command(s)"),
        Stage(
            "defconfig",
            run_defconfig,
            lambda ctx: not ctx.config.skip_defconfig,
            description="Generating kernel config",
        ),
        hook_stage(
            "POST_DEFCONFIG_CMDS",
            "Running pre-make command(s)",
            when=lambda ctx: not ctx.config.skip_defconfig,
        ),
        Stage(
            "lto",
            apply_lto,
            lambda ctx: ctx.config.lto is not None,
            description="Modifying LTO mode",
        ),
        Stage(
            "tags",
            generate_tags,
            lambda ctx: bool(ctx.config.tags_config),
            description="Running tags command",
        ),
        Stage("abi_metadata", write_abi_metadata, description="Writing abi.prop"),
        Stage(
            "symbol_list",
            prepare_symbol_list,
            lambda ctx: ctx.config.symbol_list_mode is not SymbolListMode.DISABLED,
            description="Processing KMI symbol lists",
        ),
        Stage("build", build_kernel, description="Building kernel"),
        hook_stage("POST_KERNEL_BUILD_CMDS", "Running post-kernel-build command(s)"),
        Stage(
            "modules_order",
            check_modules_order,
            lambda ctx: bool(ctx.config.modules_order),
            description="Checking the list of modules",
        ),
        Stage(
            "kmi_compare",
            verify_symbol_list,
            lambda ctx: (
                ctx.config.symbol_list_mode is SymbolListMode.TRIM_AND_STRICT
                and not ctx.config.skip_kmi_comparing
            ),
            description="Comparing the KMI and the symbol lists",
        ),
        Stage(
            "reset_staging",
            staging.reset_module_staging,
            description="Resetting module staging",
        ),
        Stage(
            "modules_install",
            staging.install_modules,
            lambda ctx: ctx.config.build_initramfs or ctx.config.in_kernel_modules,
            description="Installing kernel modules into staging directory",
        ),
        Stage(
            "ext_modules_makefile",
            staging.build_ext_modules_makefile,
            lambda ctx: _builds_ext_modules(ctx) and bool(ctx.config.ext_modules_makefile),
            description="Building and installing external modules using a Makefile",
        ),
        Stage(
            "ext_modules",
            staging.build_ext_modules,
            lambda ctx: _builds_ext_modules(ctx) and bool(ctx.config.ext_modules),
            description="Building external modules",
        ),
        hook_stage("EXTRA_CMDS", "Running extra build command(s)"),
        Stage("copy_files", copy_files, description="Copying files"),
        Stage(
            "uapi_headers",
            staging.install_uapi_headers,
            lambda ctx: not ctx.config.skip_cp_kernel_hdr,
            description="Installing UAPI kernel headers",
        ),
        Stage(
            "kernel_headers",
            staging.archive_kernel_headers,
            lambda ctx: not ctx.config.skip_cp_kernel_hdr,
            description="Copying kernel headers",
        ),
        Stage(
            "vmlinux_btf",
            generate_vmlinux_btf,
            lambda ctx: ctx.config.generate_vmlinux_btf,
            description="Generating vmlinux.btf",
        ),
        Stage(
            "gki_dist",
            mixed.copy_gki_dist,
            lambda ctx: bool(ctx.config.gki_dist_dir),
            description="Copying files from GKI kernel",
        ),
        hook_stage("DIST_CMDS", "Running extra dist command(s)"),
        Stage(
            "modules_dist",
            staging.distribute_modules,
            lambda ctx: bool(
                ctx.config.in_kernel_modules
                or ctx.config.ext_modules
                or ctx.config.ext_modules_makefile
            ),
            description="Copying modules files",
        ),
        Stage(
            "initramfs",
            staging.build_initramfs,
            lambda ctx: ctx.config.build_initramfs,
            description="Creating initramfs",
        ),
        Stage(
            "system_dlkm",
            staging.build_system_dlkm,
            lambda ctx: ctx.config.build_system_dlkm,
            description="Creating system_dlkm image",
        ),
        Stage(
            "vendor_dlkm",
            staging.build_vendor_dlkm,
            lambda ctx: bool(ctx.config.vendor_dlkm_modules_list),
            description="Creating vendor_dlkm image",
        ),
        Stage(
            "unstripped_modules",
            staging.distribute_unstripped,
            lambda ctx: bool(ctx.config.unstripped_modules),
            description="Copying unstripped module files",
        ),
        Stage(
            "gki_modules_list",
            copy_gki_modules_list,
            lambda ctx: bool(ctx.config.gki_modules_list),
            description="Copying GKI modules list",
        ),
        Stage(
            "boot_images",
            build_boot_images,
            lambda ctx: ctx.config.build_boot_img or ctx.config.build_vendor_boot_img,
            description="Building boot images",
        ),
        Stage(
            "trace_printk",
            scan_trace_printk,
            lambda ctx: (ctx.dist_dir / "vmlinux").is_file(),
            policy=StagePolicy.BEST_EFFORT,
            description="Checking for trace_printk",
        ),
        Stage(
            "stop_ship",
            stop_ship_on_trace_printk,
            lambda ctx: (
                ctx.config.stop_ship_traceprintk
                and TRACE_PRINTK_WARNING in ctx.state.warnings
            ),
            description="Stop ship on trace_printk usage",
        ),
        Stage("dist_manifest", write_dist_manifest, description="Writing manifest"),
    ]


def run_pipeline(
    config: BuildConfig,
    settings: Settings,
    make_args: Sequence[str] = (),
    runner: ToolRunner | None = None,
    stages: Sequence[Stage] | None = None,
) -> PipelineResult:
    """Run a kernel build.

    Args:
        config: Loaded build configuration.
        settings: Orchestrator settings.
        make_args: Extra arguments passed to every make invocation.
        runner: Tool runner; defaults to one logging under OUT_DIR/logs.
        stages: Stage table; defaults to build_stages().

    Returns:
        PipelineResult of the run.

    Raises:
        OrchestratorError: From the first failing fatal stage.
    """
    if runner is None:
        out = Path(config.out_dir)
        if not out.is_absolute():
            out = settings.root_dir / out
        runner = ToolRunner(out / "logs", base_env={"PATH": settings.tool_path})

    ctx = BuildContext(
        config=config,
        settings=settings,
        runner=runner,
        state=BuildState(make_args=list(make_args)),
    )
    if stages is None:
        stages = build_stages()
    result = StageSequencer(stages).run(ctx)

    if result.early_exit:
        logger.info("Build ended early: %s", result.early_exit)
    elif result.best_effort_failures:
        logger.warning(
            "Build finished with failed best-effort stages: %s",
            ", ".join(result.best_effort_failures),
        )
    else:
        logger.info("Build finished: %d stages run", len(result.executed))
    return result


__all__ = [
    "TRACE_PRINTK_WARNING",
    "build_stages",
    "hook_stage",
    "run_pipeline",
]
