"""Child configuration derivation for mixed builds.

A mixed build runs a second orchestrator for the GKI kernel. That child
sees exactly the environment built here:

1. a fixed subset of options inherited verbatim from the parent,
2. options that must never reach a child, forced empty,
3. every ``GKI_<OPTION>`` value of the parent, renamed to ``<OPTION>``,
4. output directory overrides pointing at the child's own locations.

The ``GKI_`` renaming goes through CHILD_KEY_MAP, a static table built from
the recognized option names, rather than by scanning the process
environment.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from kernel_orchestrator.buildconfig.io import CHILD_PREFIX
from kernel_orchestrator.buildconfig.schema import BuildConfig

INHERITED_KEYS: tuple[str, ...] = (
    "SKIP_MRPROPER",
    "LTO",
    "SKIP_DEFCONFIG",
    "SKIP_IF_VERSION_MATCHES",
)

FORCE_CLEARED_KEYS: tuple[str, ...] = (
    "EXT_MODULES",
    "GKI_BUILD_CONFIG",
    "KCONFIG_EXT_PREFIX",
)

CHILD_KEY_MAP: dict[str, str] = {
    f"{CHILD_PREFIX}{option}": option for option in sorted(BuildConfig.option_names())
}


class EntryOrigin(str, Enum):
    """Which derivation rule produced a child entry."""

    INHERITED = "inherited"
    CLEARED = "cleared"
    PREFIXED = "prefixed"
    OUTPUT = "output"


@dataclass(frozen=True)
class ChildEntry:
    """One ``KEY=value`` assignment of a child invocation."""

    key: str
    value: str
    origin: EntryOrigin


@dataclass(frozen=True)
class ChildInvocationSpec:
    """Complete environment of a mixed-build child orchestrator.

    Attributes:
        entries: Assignments in derivation order; later entries win except
            that force-cleared keys always stay empty.
        out_dir: Child output directory.
        dist_dir: Child distribution directory.
    """

    entries: tuple[ChildEntry, ...]
    out_dir: str
    dist_dir: str

    def environ(self) -> dict[str, str]:
        """Resolve the entries into an environment mapping."""
        env: dict[str, str] = {}
        for entry in self.entries:
            env[entry.key] = entry.value
        for key in FORCE_CLEARED_KEYS:
            env[key] = ""
        return env

    def render(self) -> bytes:
        """Render the resolved environment as sorted ``KEY=value`` lines."""
        env = self.environ()
        text = "".join(f"{key}={env[key]}\n" for key in sorted(env))
        return text.encode("utf-8")


def derive_child_config(parent: BuildConfig) -> ChildInvocationSpec:
    """Derive the isolated configuration of a GKI child build.

    Args:
        parent: The parent build configuration.

    Returns:
        ChildInvocationSpec built only from ``parent``.
    """
    entries: list[ChildEntry] = []

    for key in INHERITED_KEYS:
        entries.append(ChildEntry(key, parent.values.get(key, ""), EntryOrigin.INHERITED))

    for key in FORCE_CLEARED_KEYS:
        entries.append(ChildEntry(key, "", EntryOrigin.CLEARED))

    for parent_key, child_key in CHILD_KEY_MAP.items():
        if parent_key not in parent.child_values:
            continue
        if child_key in FORCE_CLEARED_KEYS:
            continue
        entries.append(
            ChildEntry(child_key, parent.child_values[parent_key], EntryOrigin.PREFIXED)
        )

    out_dir = parent.effective_gki_out_dir
    dist_dir = parent.effective_gki_dist_dir
    entries.append(ChildEntry("OUT_DIR", out_dir, EntryOrigin.OUTPUT))
    entries.append(ChildEntry("DIST_DIR", dist_dir, EntryOrigin.OUTPUT))

    return ChildInvocationSpec(entries=tuple(entries), out_dir=out_dir, dist_dir=dist_dir)


__all__ = [
    "CHILD_KEY_MAP",
    "FORCE_CLEARED_KEYS",
    "INHERITED_KEYS",
    "ChildEntry",
    "ChildInvocationSpec",
    "EntryOrigin",
    "derive_child_config",
]
