"""Module staging and image assembly.

This module handles:
- The well-known staging roots under OUT_DIR
- Installing kernel and external modules into the staging tree
- Filtered module trees for initramfs, system_dlkm and vendor_dlkm
- Copying modules, unstripped modules and headers into DIST_DIR

Packaging tools (depmod, mkbootfs, lz4/gzip, sign-file, mkfs.erofs, avbtool,
build_image) are invoked through the ToolRunner; their outputs are checked
and recorded in the artifact manifest.
"""

from __future__ import annotations

import logging
import posixpath
import shutil
import tarfile
from collections.abc import Sequence
from pathlib import Path

from kernel_orchestrator.errors import PreconditionError
from kernel_orchestrator.pipeline.runner import ToolRunner
from kernel_orchestrator.pipeline.stages import BuildContext

logger = logging.getLogger(__name__)

DEFAULT_VENDOR_DLKM_PROPS = """\
filesystem_type=ext4
use_dynamic_partition_size=true
ext_mkuserimg=mkuserimg_mke2fs
ext4_share_dup_blocks=true
"""


class StagingManager:
    """Staging directories of one build, rooted at the common OUT_DIR."""

    def __init__(self, common_out_dir: Path) -> None:
        self.staging_dir = common_out_dir / "staging"
        self.private_dir = common_out_dir / "private"
        self.uapi_headers_dir = common_out_dir / "kernel_uapi_headers"
        self.initramfs_dir = self.staging_dir / "initramfs_staging"
        self.system_dlkm_dir = self.staging_dir / "system_dlkm_staging"
        self.vendor_dlkm_dir = self.staging_dir / "vendor_dlkm_staging"
        self.mkbootimg_dir = self.staging_dir / "mkbootimg_staging"

    @property
    def roots(self) -> list[Path]:
        """Roots wiped before modules and headers are installed into them."""
        return [self.staging_dir, self.uapi_headers_dir]

    def reset(self, root: Path) -> Path:
        """Wipe and recreate a staging root."""
        if root.exists():
            shutil.rmtree(root)
        root.mkdir(parents=True)
        return root

    def modules(self) -> list[Path]:
        """Installed module files, excluding the filtered image trees."""
        tree = self.staging_dir / "lib" / "modules"
        if not tree.is_dir():
            return []
        return sorted(tree.rglob("*.ko"))


def module_root(tree: Path) -> Path:
    """Return ``<tree>/lib/modules/<version>``.

    Raises:
        PreconditionError: If the tree holds no installed modules.
    """
    modules_dir = tree / "lib" / "modules"
    versions = sorted(p for p in modules_dir.iterdir() if p.is_dir()) if modules_dir.is_dir() else []
    if not versions:
        raise PreconditionError(f"No installed modules under {modules_dir}", path=modules_dir)
    return versions[0]


def module_name(path: str) -> str:
    """Kernel module name of a ``.ko`` path (``foo-bar.ko`` -> ``foo_bar``)."""
    return posixpath.basename(path).removesuffix(".ko").replace("-", "_")


def read_module_list(path: Path) -> list[str]:
    """Read a module allow-list: one module file name per line."""
    names = []
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.split("#", 1)[0].strip()
        if line:
            names.append(posixpath.basename(line))
    return names


def read_blocklist(path: Path) -> set[str]:
    """Read a ``blocklist <module>`` file into a set of module names."""
    blocked = set()
    for line in path.read_text(encoding="utf-8").splitlines():
        parts = line.split("#", 1)[0].split()
        if len(parts) == 2 and parts[0] == "blocklist":
            blocked.add(module_name(parts[1]))
    return blocked


def create_filtered_staging(
    runner: ToolRunner,
    source_tree: Path,
    dest_tree: Path,
    allow_list: Path | None = None,
    block_list: Path | None = None,
    depmod_args: Sequence[str] = ("-e",),
) -> Path:
    """Copy a filtered module tree and generate its depmod metadata.

    Args:
        runner: Runner used for depmod.
        source_tree: Tree containing ``lib/modules/<version>``.
        dest_tree: Destination tree, replaced if it exists.
        allow_list: Modules to keep; its order defines ``modules.load``.
        block_list: ``blocklist <module>`` lines; blocked modules are left out
            of ``modules.load`` and the file is copied as ``modules.blocklist``.
        depmod_args: Extra depmod flags.

    Returns:
        The destination module root.
    """
    src_root = module_root(source_tree)
    version = src_root.name
    if dest_tree.exists():
        shutil.rmtree(dest_tree)
    dest_root = dest_tree / "lib" / "modules" / version
    shutil.copytree(src_root, dest_root, symlinks=True)

    installed = {
        p.relative_to(dest_root).as_posix(): p for p in sorted(dest_root.rglob("*.ko"))
    }
    order_file = dest_root / "modules.order"
    order: list[str] = []
    if order_file.is_file():
        order = [line.strip() for line in order_file.read_text(encoding="utf-8").splitlines()]

    if allow_list is not None:
        by_name = {posixpath.basename(rel): rel for rel in installed}
        load = []
        for name in read_module_list(allow_list):
            if name in by_name:
                load.append(by_name[name])
            else:
                logger.warning("Module %s from %s was not built", name, allow_list.name)
        for rel, path in installed.items():
            if rel not in load:
                path.unlink()
    else:
        load = [rel for rel in order if rel in installed]
        load.extend(rel for rel in installed if rel not in load)

    if block_list is not None:
        blocked = read_blocklist(block_list)
        load = [rel for rel in load if module_name(rel) not in blocked]
        shutil.copy2(block_list, dest_root / "modules.blocklist")

    (dest_root / "modules.load").write_text(
        "".join(f"{rel}\n" for rel in load), encoding="utf-8"
    )
    runner.run(
        ["depmod", *depmod_args, "-b", str(dest_tree), version],
        cwd=dest_tree,
        label=f"depmod-{dest_tree.name}",
    )
    return dest_root


def copy_to_dist(ctx: BuildContext, source: Path, name: str | None = None) -> Path:
    """Copy a file into DIST_DIR and record it."""
    dest = ctx.dist_dir / (name or source.name)
    dest.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy2(source, dest)
    ctx.state.manifest.record(dest)
    return dest


def _staging(ctx: BuildContext) -> StagingManager:
    return StagingManager(ctx.common_out_dir)


def _strip_flag(ctx: BuildContext) -> list[str]:
    return [] if ctx.config.do_not_strip_modules else ["INSTALL_MOD_STRIP=1"]


def _optional_path(ctx: BuildContext, value: str | None) -> Path | None:
    if not value:
        return None
    path = ctx.kernel_src / value
    if not path.is_file():
        raise PreconditionError(f"Module list not found: {path}", path=path)
    return path


# --- Stage bodies ---------------------------------------------------------


def reset_module_staging(ctx: BuildContext) -> None:
    staging = _staging(ctx)
    for root in staging.roots:
        staging.reset(root)


def install_modules(ctx: BuildContext) -> None:
    """Install in-tree modules into the staging tree."""
    staging = _staging(ctx)
    ctx.make(
        "modules_install",
        label="modules_install",
        extra=[*_strip_flag(ctx), f"INSTALL_MOD_PATH={staging.staging_dir}"],
    )
    if ctx.config.unstripped_modules:
        staging.reset(staging.private_dir)
        ctx.make(
            "modules_install",
            label="modules_install-unstripped",
            extra=[f"INSTALL_MOD_PATH={staging.private_dir}"],
        )


def build_ext_modules_makefile(ctx: BuildContext) -> None:
    """Build and install all external modules through one Makefile."""
    staging = _staging(ctx)
    cmd = [
        "make",
        "-f",
        str(ctx.config.ext_modules_makefile),
        f"KERNEL_SRC={ctx.kernel_src}",
        f"O={ctx.out_dir}",
        *ctx.config.tool_args,
        *_strip_flag(ctx),
        f"INSTALL_HDR_PATH={staging.uapi_headers_dir / 'usr'}",
        f"INSTALL_MOD_PATH={staging.staging_dir}",
        *ctx.state.make_args,
    ]
    ctx.runner.run(cmd, cwd=ctx.root_dir, label="ext_modules_makefile", env=ctx.tool_env())


def build_ext_modules(ctx: BuildContext) -> None:
    """Build each external module directory, then install it under extra/."""
    staging = _staging(ctx)
    for ext_mod in ctx.config.ext_modules:
        ext_rel = posixpath.relpath(
            posixpath.join(str(ctx.root_dir), ext_mod), str(ctx.kernel_src)
        )
        (ctx.out_dir / ext_rel).mkdir(parents=True, exist_ok=True)
        common = [
            "make",
            "-C",
            ext_mod,
            f"M={ext_rel}",
            f"KERNEL_SRC={ctx.kernel_src}",
            f"O={ctx.out_dir}",
            *ctx.config.tool_args,
        ]
        ctx.runner.run(
            [*common, *ctx.state.make_args],
            cwd=ctx.root_dir,
            label=f"ext_module-{ext_mod}",
            env=ctx.tool_env(),
        )
        ctx.runner.run(
            [
                *common,
                *_strip_flag(ctx),
                f"INSTALL_MOD_PATH={staging.staging_dir}",
                f"INSTALL_MOD_DIR=extra/{ext_mod}",
                f"INSTALL_HDR_PATH={staging.uapi_headers_dir / 'usr'}",
                *ctx.state.make_args,
                "modules_install",
            ],
            cwd=ctx.root_dir,
            label=f"ext_module_install-{ext_mod}",
            env=ctx.tool_env(),
        )


def distribute_modules(ctx: BuildContext) -> None:
    """Copy staged modules flat into DIST_DIR, optionally archived."""
    modules = _staging(ctx).modules()
    if not modules:
        logger.info("No modules to copy")
        return
    for module in modules:
        copy_to_dist(ctx, module)
    if ctx.config.compress_modules:
        archive = ctx.dist_dir / ctx.config.modules_archive
        logger.info("Archiving modules to %s", archive.name)
        with tarfile.open(archive, "w:gz") as tar:
            for module in modules:
                tar.add(module, arcname=module.name)
        ctx.state.manifest.record(archive)


def build_initramfs(ctx: BuildContext) -> None:
    """Create ``initramfs.img`` from the filtered module tree."""
    config = ctx.config
    staging = _staging(ctx)
    if not staging.modules():
        logger.warning("No modules installed, not creating initramfs")
        return

    root = create_filtered_staging(
        ctx.runner,
        staging.staging_dir,
        staging.initramfs_dir,
        allow_list=_optional_path(ctx, config.modules_list),
        block_list=_optional_path(ctx, config.modules_blocklist),
    )
    modules_load = root / "modules.load"
    copy_to_dist(ctx, modules_load)
    if config.build_vendor_boot_img:
        copy_to_dist(ctx, modules_load, "vendor_boot.modules.load")
    elif config.build_vendor_kernel_boot:
        copy_to_dist(ctx, modules_load, "vendor_kernel_boot.modules.load")
    (root / "modules.options").write_text(
        f"{config.modules_options or ''}\n", encoding="utf-8"
    )

    cpio = staging.staging_dir / "initramfs.cpio"
    ctx.runner.run(
        ["mkbootfs", str(staging.initramfs_dir)],
        cwd=ctx.root_dir,
        label="mkbootfs",
        stdout_path=cpio,
    )
    if config.lz4_ramdisk:
        compress = ["lz4", "-c", "-l", "-12", "--favor-decSpeed", str(cpio)]
    else:
        compress = ["gzip", "-c", "-f", str(cpio)]
    image = ctx.dist_dir / "initramfs.img"
    ctx.runner.run(compress, cwd=ctx.root_dir, label="compress-initramfs", stdout_path=image)
    ctx.state.manifest.record(image)


def build_system_dlkm(ctx: BuildContext) -> None:
    """Create a signed, hashtree-protected ``system_dlkm.img``."""
    config = ctx.config
    staging = _staging(ctx)
    allow = config.system_dlkm_modules_list or config.modules_list
    root = create_filtered_staging(
        ctx.runner,
        staging.staging_dir,
        staging.system_dlkm_dir,
        allow_list=_optional_path(ctx, allow),
        block_list=_optional_path(ctx, config.modules_blocklist),
    )
    copy_to_dist(ctx, root / "modules.load", "system_dlkm.modules.load")

    sign_file = ctx.out_dir / "scripts" / "sign-file"
    key = ctx.out_dir / "certs" / "signing_key.pem"
    cert = ctx.out_dir / "certs" / "signing_key.x509"
    for module in sorted(staging.system_dlkm_dir.rglob("*.ko")):
        ctx.runner.run(
            [str(sign_file), "sha1", str(key), str(cert), str(module)],
            cwd=ctx.out_dir,
            label=f"sign-{module.name}",
        )

    image = ctx.dist_dir / "system_dlkm.img"
    ctx.runner.run(
        ["mkfs.erofs", "-zlz4hc", str(image), str(staging.system_dlkm_dir)],
        cwd=ctx.root_dir,
        label="mkfs.erofs-system_dlkm",
    )
    archive = ctx.dist_dir / "system_dlkm_staging_archive.tar.gz"
    with tarfile.open(archive, "w:gz") as tar:
        tar.add(staging.system_dlkm_dir, arcname=".")
    ctx.runner.run(
        ["avbtool", "add_hashtree_footer", "--partition_name", "system_dlkm", "--image", str(image)],
        cwd=ctx.root_dir,
        label="avbtool-system_dlkm",
    )
    ctx.state.manifest.record(image)
    ctx.state.manifest.record(archive)


def build_vendor_dlkm(ctx: BuildContext) -> None:
    """Create ``vendor_dlkm.img`` with build_image."""
    config = ctx.config
    staging = _staging(ctx)
    root = create_filtered_staging(
        ctx.runner,
        staging.staging_dir,
        staging.vendor_dlkm_dir,
        allow_list=_optional_path(ctx, config.vendor_dlkm_modules_list),
        block_list=_optional_path(ctx, config.vendor_dlkm_modules_blocklist),
    )

    # Modules already loaded from the ramdisk are not loaded again
    modules_load = root / "modules.load"
    if config.modules_list:
        ramdisk = set(read_module_list(_optional_path(ctx, config.modules_list)))
        kept = [
            line
            for line in modules_load.read_text(encoding="utf-8").splitlines()
            if posixpath.basename(line) not in ramdisk
        ]
        modules_load.write_text("".join(f"{line}\n" for line in kept), encoding="utf-8")
    copy_to_dist(ctx, modules_load, "vendor_dlkm.modules.load")
    if (root / "modules.blocklist").is_file():
        copy_to_dist(ctx, root / "modules.blocklist", "vendor_dlkm.modules.blocklist")

    if config.vendor_dlkm_props:
        props = ctx.resolve(config.vendor_dlkm_props)
        if not props.is_file():
            raise PreconditionError(f"VENDOR_DLKM_PROPS not found: {props}", path=props)
    else:
        props = staging.staging_dir / "vendor_dlkm_image_info.txt"
        props.write_text(DEFAULT_VENDOR_DLKM_PROPS, encoding="utf-8")

    image = ctx.dist_dir / "vendor_dlkm.img"
    ctx.runner.run(
        ["build_image", str(staging.vendor_dlkm_dir), str(props), str(image), "/dev/null"],
        cwd=ctx.root_dir,
        label="build_image-vendor_dlkm",
    )
    ctx.state.manifest.record(image)


def distribute_unstripped(ctx: BuildContext) -> None:
    """Copy the requested unstripped modules, optionally archived."""
    config = ctx.config
    private_dir = _staging(ctx).private_dir
    unstripped_dir = ctx.dist_dir / "unstripped"
    unstripped_dir.mkdir(parents=True, exist_ok=True)
    copied = []
    for name in config.unstripped_modules:
        for module in sorted(private_dir.rglob(name)):
            dest = unstripped_dir / module.name
            shutil.copy2(module, dest)
            copied.append(dest)
    if not copied:
        logger.warning("No unstripped modules found in %s", private_dir)

    if config.compress_unstripped_modules:
        archive = ctx.dist_dir / config.unstripped_modules_archive
        with tarfile.open(archive, "w:gz") as tar:
            tar.add(unstripped_dir, arcname=unstripped_dir.name)
        shutil.rmtree(unstripped_dir)
        ctx.state.manifest.record(archive)
    else:
        for dest in copied:
            ctx.state.manifest.record(dest)


def install_uapi_headers(ctx: BuildContext) -> None:
    """Install UAPI headers and archive them as kernel-uapi-headers.tar.gz."""
    staging = _staging(ctx)
    usr = staging.uapi_headers_dir / "usr"
    usr.mkdir(parents=True, exist_ok=True)
    ctx.make("headers_install", label="headers_install", extra=[f"INSTALL_HDR_PATH={usr}"])
    for marker in [*usr.rglob("..install.cmd"), *usr.rglob(".install")]:
        marker.unlink()

    archive = ctx.dist_dir / "kernel-uapi-headers.tar.gz"
    logger.info("Copying kernel UAPI headers to %s", archive)
    with tarfile.open(archive, "w:gz") as tar:
        tar.add(usr, arcname="usr")
    ctx.state.manifest.record(archive)


def archive_kernel_headers(ctx: BuildContext) -> None:
    """Archive source and generated headers as kernel-headers.tar.gz."""
    archive = ctx.dist_dir / "kernel-headers.tar.gz"
    logger.info("Copying kernel headers to %s", archive)
    trees = [
        (ctx.kernel_src / "arch", ctx.kernel_src),
        (ctx.kernel_src / "include", ctx.kernel_src),
        (ctx.out_dir, ctx.out_dir),
    ]
    with tarfile.open(archive, "w:gz", dereference=True) as tar:
        for tree, base in trees:
            if not tree.is_dir():
                continue
            for header in sorted(tree.rglob("*.h")):
                rel = header.relative_to(base).as_posix()
                tar.add(header, arcname=f"kernel-headers/{rel}")
    ctx.state.manifest.record(archive)


__all__ = [
    "DEFAULT_VENDOR_DLKM_PROPS",
    "StagingManager",
    "archive_kernel_headers",
    "build_ext_modules",
    "build_ext_modules_makefile",
    "build_initramfs",
    "build_system_dlkm",
    "build_vendor_dlkm",
    "copy_to_dist",
    "create_filtered_staging",
    "distribute_modules",
    "distribute_unstripped",
    "install_modules",
    "install_uapi_headers",
    "module_name",
    "module_root",
    "read_blocklist",
    "read_module_list",
    "reset_module_staging",
]
