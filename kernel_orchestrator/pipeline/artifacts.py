"""Distribution artifacts and manifests.

This module handles:
- Recording the files a build distributes into DIST_DIR
- Rendering ``abi.prop`` (KMI metadata for downstream tools)
- Classifying artifacts and computing checksums
- Writing ``manifest.json`` at the end of a build
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

from kernel_orchestrator.types import ArtifactInfo

if TYPE_CHECKING:
    from kernel_orchestrator.buildconfig.schema import BuildConfig

logger = logging.getLogger(__name__)

ABI_PROP_NAME = "abi.prop"
MANIFEST_NAME = "manifest.json"

# Ordered (pattern, kind) pairs; first match wins
KIND_PATTERNS: list[tuple[str, str]] = [
    ("abi_symbollist", "symbol_list"),
    ("abi.xml", "abi_definition"),
    (".ko", "module"),
    ("modules.", "module_metadata"),
    ("vmlinux", "kernel"),
    ("system.map", "kernel"),
    ("image", "kernel"),
    ("headers", "headers"),
    (".tar.gz", "archive"),
    (".img", "image"),
    (".dtb", "devicetree"),
]

# Default chunk size for hashing
HASH_CHUNK_SIZE = 64 * 1024  # 64KB


def classify_artifact(filename: str) -> str:
    """Classify a distributed file by its name.

    Returns:
        Artifact kind (symbol_list, abi_definition, module, module_metadata,
        kernel, headers, archive, image, devicetree, other).
    """
    filename_lower = filename.lower()
    for pattern, kind in KIND_PATTERNS:
        if pattern in filename_lower:
            return kind
    return "other"


def compute_file_hash(
    file_path: Path,
    chunk_size: int = HASH_CHUNK_SIZE,
) -> str:
    """Compute SHA-256 hash of a file.

    Args:
        file_path: Path to the file.
        chunk_size: Size of chunks for streaming hash.

    Returns:
        SHA-256 hex digest.
    """
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def files_identical(a: Path, b: Path) -> bool:
    """Return True when both files exist and have the same content."""
    if not (a.is_file() and b.is_file()):
        return False
    if a.stat().st_size != b.stat().st_size:
        return False
    return compute_file_hash(a) == compute_file_hash(b)


@dataclass
class ManifestEntry:
    """One ``abi.prop`` property."""

    key: str
    value: str


@dataclass
class ArtifactManifest:
    """KMI metadata plus the list of distributed files.

    Attributes:
        entries: ``abi.prop`` properties in output order.
        distributed: Files copied into DIST_DIR, in copy order.
    """

    entries: list[ManifestEntry] = field(default_factory=list)
    distributed: list[Path] = field(default_factory=list)

    @classmethod
    def from_config(cls, config: BuildConfig) -> ArtifactManifest:
        """Build the ``abi.prop`` properties for a configuration."""
        manifest = cls()
        if config.abi_definition:
            manifest.set("KMI_DEFINITION", "abi.xml")
            manifest.set("KMI_MONITORED", "1")
            if config.kmi_enforced:
                manifest.set("KMI_ENFORCED", "1")
        if config.kmi_symbol_list:
            manifest.set("KMI_SYMBOL_LIST", "abi_symbollist")
        manifest.set("KERNEL_BINARY", "vmlinux")
        if config.compress_unstripped_modules:
            manifest.set("MODULES_ARCHIVE", config.unstripped_modules_archive)
        return manifest

    def set(self, key: str, value: str) -> None:
        """Set a property, keeping the position of an existing key."""
        for entry in self.entries:
            if entry.key == key:
                entry.value = value
                return
        self.entries.append(ManifestEntry(key, value))

    def get(self, key: str) -> str | None:
        for entry in self.entries:
            if entry.key == key:
                return entry.value
        return None

    def record(self, path: Path) -> None:
        """Remember a file copied into DIST_DIR."""
        if path not in self.distributed:
            self.distributed.append(path)

    def render_abi_prop(self) -> str:
        return "".join(f"{e.key}={e.value}\n" for e in self.entries)

    def write_abi_prop(self, dist_dir: Path) -> Path:
        """Write ``abi.prop`` into DIST_DIR, replacing any previous file."""
        dist_dir.mkdir(parents=True, exist_ok=True)
        path = dist_dir / ABI_PROP_NAME
        path.write_text(self.render_abi_prop(), encoding="utf-8")
        logger.info("Wrote %s", path)
        return path


def describe_artifacts(paths: list[Path], dist_dir: Path) -> list[ArtifactInfo]:
    """Describe distributed files for the manifest.

    Files that have since disappeared are skipped with a warning.
    """
    artifacts: list[ArtifactInfo] = []
    for path in paths:
        if not path.is_file():
            logger.warning("Recorded artifact is missing: %s", path)
            continue
        try:
            relative_path = path.relative_to(dist_dir).as_posix()
        except ValueError:
            relative_path = path.name
        artifacts.append(
            ArtifactInfo(
                filename=path.name,
                relative_path=relative_path,
                size_bytes=path.stat().st_size,
                sha256=compute_file_hash(path),
                kind=classify_artifact(path.name),
            )
        )
    return artifacts


def generate_manifest(
    artifacts: list[ArtifactInfo],
    kernel_release: str | None = None,
    properties: dict[str, str] | None = None,
    warnings: list[str] | None = None,
    mixed_tree_inputs: list[str] | None = None,
) -> dict[str, Any]:
    """Generate a build manifest.

    Args:
        artifacts: Distributed artifacts.
        kernel_release: Release string reported by the kernel build.
        properties: ``abi.prop`` properties.
        warnings: Advisory findings of the build.
        mixed_tree_inputs: GKI metadata files a mixed build compiled against.

    Returns:
        Manifest dictionary suitable for JSON serialization.
    """
    now = datetime.now(timezone.utc)

    manifest: dict[str, Any] = {
        "version": "1.0",
        "generated_at": now.isoformat(),
        "artifacts": [asdict(a) for a in artifacts],
    }

    if kernel_release:
        manifest["kernel_release"] = kernel_release
    if properties:
        manifest["abi_properties"] = properties
    if warnings:
        manifest["warnings"] = warnings
    if mixed_tree_inputs:
        manifest["mixed_tree_inputs"] = mixed_tree_inputs

    manifest["summary"] = {
        "total_artifacts": len(artifacts),
        "total_size_bytes": sum(a.size_bytes for a in artifacts),
        "kinds": sorted({a.kind for a in artifacts if a.kind}),
    }

    return manifest


def write_manifest(
    manifest: dict[str, Any],
    output_path: Path,
) -> Path:
    """Write manifest to a JSON file.

    Args:
        manifest: Manifest dictionary.
        output_path: Output file path.

    Returns:
        Path to written manifest file.
    """
    output_path.parent.mkdir(parents=True, exist_ok=True)

    with output_path.open("w", encoding="utf-8") as f:
        json.dump(manifest, f, indent=2, sort_keys=True)

    logger.info("Wrote manifest to %s", output_path)
    return output_path


__all__ = [
    "ABI_PROP_NAME",
    "HASH_CHUNK_SIZE",
    "KIND_PATTERNS",
    "MANIFEST_NAME",
    "ArtifactManifest",
    "ManifestEntry",
    "classify_artifact",
    "compute_file_hash",
    "describe_artifacts",
    "files_identical",
    "generate_manifest",
    "write_manifest",
]
