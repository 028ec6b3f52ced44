"""Tests for pipeline/artifacts.py module.

Tests abi.prop rendering, artifact classification and manifest generation.
"""

import json
from pathlib import Path

import pytest

from kernel_orchestrator.buildconfig.io import load_build_config
from kernel_orchestrator.pipeline.artifacts import (
    ABI_PROP_NAME,
    ArtifactManifest,
    classify_artifact,
    compute_file_hash,
    describe_artifacts,
    files_identical,
    generate_manifest,
    write_manifest,
)


class TestAbiProp:
    """Tests for ArtifactManifest and abi.prop."""

    def test_minimal(self):
        """Without KMI options only the kernel binary is recorded."""
        manifest = ArtifactManifest.from_config(load_build_config({}))
        assert manifest.render_abi_prop() == "KERNEL_BINARY=vmlinux\n"

    def test_full(self):
        """All KMI properties appear in their fixed order."""
        config = load_build_config(
            {
                "ABI_DEFINITION": "android/abi_gki_aarch64.xml",
                "KMI_ENFORCED": "1",
                "KMI_SYMBOL_LIST": "android/abi_gki_aarch64",
                "COMPRESS_UNSTRIPPED_MODULES": "1",
            }
        )
        manifest = ArtifactManifest.from_config(config)
        assert manifest.render_abi_prop() == (
            "KMI_DEFINITION=abi.xml\n"
            "KMI_MONITORED=1\n"
            "KMI_ENFORCED=1\n"
            "KMI_SYMBOL_LIST=abi_symbollist\n"
            "KERNEL_BINARY=vmlinux\n"
            "MODULES_ARCHIVE=unstripped_modules.tar.gz\n"
        )

    def test_enforced_requires_definition(self):
        """KMI_ENFORCED is only written alongside an ABI definition."""
        manifest = ArtifactManifest.from_config(load_build_config({"KMI_ENFORCED": "1"}))
        assert manifest.get("KMI_ENFORCED") is None

    def test_set_keeps_position(self):
        """Setting an existing key keeps its position."""
        manifest = ArtifactManifest()
        manifest.set("A", "1")
        manifest.set("B", "2")
        manifest.set("A", "3")
        assert manifest.render_abi_prop() == "A=3\nB=2\n"

    def test_write_replaces(self, tmp_path: Path):
        """write_abi_prop replaces a stale file."""
        (tmp_path / ABI_PROP_NAME).write_text("STALE=1\n", encoding="utf-8")
        manifest = ArtifactManifest()
        manifest.set("KERNEL_BINARY", "vmlinux")
        path = manifest.write_abi_prop(tmp_path)
        assert path.read_text(encoding="utf-8") == "KERNEL_BINARY=vmlinux\n"

    def test_record_deduplicates(self, tmp_path: Path):
        """A file copied twice is recorded once."""
        manifest = ArtifactManifest()
        manifest.record(tmp_path / "vmlinux")
        manifest.record(tmp_path / "vmlinux")
        assert manifest.distributed == [tmp_path / "vmlinux"]


class TestClassifyArtifact:
    """Tests for classify_artifact function."""

    @pytest.mark.parametrize(
        ("filename", "kind"),
        [
            ("abi_symbollist", "symbol_list"),
            ("abi.xml", "abi_definition"),
            ("foo.ko", "module"),
            ("modules.load", "module_metadata"),
            ("vmlinux", "kernel"),
            ("System.map", "kernel"),
            ("Image.lz4", "kernel"),
            ("kernel-headers.tar.gz", "headers"),
            ("modules.tar.gz", "module_metadata"),
            ("kernel-gdb-scripts.tar.gz", "archive"),
            ("vendor_dlkm.img", "image"),
            ("board.dtb", "devicetree"),
            ("abi.prop", "other"),
        ],
    )
    def test_kinds(self, filename, kind):
        """Files are classified by name, first pattern wins."""
        assert classify_artifact(filename) == kind


class TestHashing:
    """Tests for hashing helpers."""

    def test_compute_file_hash(self, tmp_path: Path):
        """SHA-256 of a known payload."""
        path = tmp_path / "f"
        path.write_bytes(b"abc")
        assert compute_file_hash(path) == (
            "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
        )

    def test_files_identical(self, tmp_path: Path):
        """Identical content compares equal; missing files never do."""
        a = tmp_path / "a"
        b = tmp_path / "b"
        c = tmp_path / "c"
        a.write_bytes(b"same")
        b.write_bytes(b"same")
        c.write_bytes(b"diff")
        assert files_identical(a, b)
        assert not files_identical(a, c)
        assert not files_identical(a, tmp_path / "missing")


class TestManifest:
    """Tests for manifest generation."""

    def test_describe_skips_missing(self, tmp_path: Path):
        """Recorded files that disappeared are left out."""
        (tmp_path / "vmlinux").write_bytes(b"elf")
        artifacts = describe_artifacts(
            [tmp_path / "vmlinux", tmp_path / "gone.ko"], tmp_path
        )
        assert [a.filename for a in artifacts] == ["vmlinux"]
        assert artifacts[0].size_bytes == 3
        assert artifacts[0].kind == "kernel"

    def test_relative_paths(self, tmp_path: Path):
        """Paths are recorded relative to DIST_DIR."""
        nested = tmp_path / "unstripped" / "foo.ko"
        nested.parent.mkdir()
        nested.write_bytes(b"ko")
        artifacts = describe_artifacts([nested], tmp_path)
        assert artifacts[0].relative_path == "unstripped/foo.ko"

    def test_generate_and_write(self, tmp_path: Path):
        """The manifest carries artifacts, properties, warnings and a summary."""
        (tmp_path / "vmlinux").write_bytes(b"elf")
        (tmp_path / "foo.ko").write_bytes(b"module")
        artifacts = describe_artifacts([tmp_path / "vmlinux", tmp_path / "foo.ko"], tmp_path)
        manifest = generate_manifest(
            artifacts,
            kernel_release="5.10.43-android12",
            properties={"KERNEL_BINARY": "vmlinux"},
            warnings=["Found trace_printk usage in vmlinux."],
        )
        path = write_manifest(manifest, tmp_path / "manifest.json")

        data = json.loads(path.read_text(encoding="utf-8"))
        assert data["kernel_release"] == "5.10.43-android12"
        assert data["abi_properties"] == {"KERNEL_BINARY": "vmlinux"}
        assert data["warnings"] == ["Found trace_printk usage in vmlinux."]
        assert data["summary"]["total_artifacts"] == 2
        assert data["summary"]["total_size_bytes"] == 9
        assert data["summary"]["kinds"] == ["kernel", "module"]

    def test_mixed_tree_inputs(self):
        """Metadata taken from the GKI kernel is listed for mixed builds."""
        inputs = ["/gki/dist/vmlinux.symvers", "/gki/dist/modules.builtin"]
        manifest = generate_manifest([], mixed_tree_inputs=inputs)
        assert manifest["mixed_tree_inputs"] == inputs

    def test_optional_fields_omitted(self):
        """Empty optional fields are not written."""
        manifest = generate_manifest([])
        assert "kernel_release" not in manifest
        assert "warnings" not in manifest
        assert "mixed_tree_inputs" not in manifest
        assert manifest["summary"]["total_artifacts"] == 0
