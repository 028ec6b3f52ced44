"""Kernel .config editing.

Equivalent of the kernel's ``scripts/config`` for the handful of edits the
pipeline makes (LTO mode, symbol trimming). Edits only change the file;
``make olddefconfig`` must run afterwards to recompute dependent options.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path

from kernel_orchestrator.types import LtoMode

logger = logging.getLogger(__name__)

_SET = re.compile(r"^CONFIG_([A-Za-z0-9_]+)=(.*)$")
_UNSET = re.compile(r"^# CONFIG_([A-Za-z0-9_]+) is not set$")

LTO_OPTIONS: dict[LtoMode, tuple[tuple[str, bool], ...]] = {
    LtoMode.NONE: (
        ("LTO_CLANG", False),
        ("LTO_NONE", True),
        ("LTO_CLANG_THIN", False),
        ("LTO_CLANG_FULL", False),
        ("THINLTO", False),
    ),
    LtoMode.THIN: (
        ("LTO_CLANG", True),
        ("LTO_NONE", False),
        ("LTO_CLANG_THIN", True),
        ("LTO_CLANG_FULL", False),
        ("THINLTO", True),
    ),
    LtoMode.FULL: (
        ("LTO_CLANG", True),
        ("LTO_NONE", False),
        ("LTO_CLANG_THIN", False),
        ("LTO_CLANG_FULL", True),
        ("THINLTO", False),
    ),
}


class KernelConfigFile:
    """A kernel .config file loaded for editing."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self.lines = path.read_text(encoding="utf-8").splitlines() if path.exists() else []

    def _index(self, option: str) -> int | None:
        for i, line in enumerate(self.lines):
            match = _SET.match(line) or _UNSET.match(line)
            if match and match.group(1) == option:
                return i
        return None

    def _put(self, option: str, line: str) -> None:
        index = self._index(option)
        if index is None:
            self.lines.append(line)
        else:
            self.lines[index] = line

    def enable(self, option: str) -> None:
        self._put(option, f"CONFIG_{option}=y")

    def disable(self, option: str) -> None:
        self._put(option, f"# CONFIG_{option} is not set")

    def set_str(self, option: str, value: str) -> None:
        escaped = value.replace("\\", "\\\\").replace('"', '\\"')
        self._put(option, f'CONFIG_{option}="{escaped}"')

    def get(self, option: str) -> str | None:
        """Return the raw value of an option, or None when unset or absent."""
        index = self._index(option)
        if index is None:
            return None
        match = _SET.match(self.lines[index])
        return match.group(2) if match else None

    def has(self, option: str) -> bool:
        """Return True when the option is present and set."""
        return self.get(option) is not None

    def save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text("\n".join(self.lines) + "\n", encoding="utf-8")


def apply_lto_mode(path: Path, mode: LtoMode) -> None:
    """Rewrite the LTO options of a .config for ``mode``."""
    config = KernelConfigFile(path)
    for option, enabled in LTO_OPTIONS[mode]:
        if enabled:
            config.enable(option)
        else:
            config.disable(option)
    config.save()
    logger.info("Modified LTO mode to '%s' in %s", mode.value, path)


def apply_symbol_trim(path: Path, raw_list: Path) -> None:
    """Enable unused symbol trimming against ``raw_list``."""
    config = KernelConfigFile(path)
    config.disable("UNUSED_SYMBOLS")
    config.enable("TRIM_UNUSED_KSYMS")
    config.set_str("UNUSED_KSYMS_WHITELIST", str(raw_list))
    config.save()


__all__ = [
    "LTO_OPTIONS",
    "KernelConfigFile",
    "apply_lto_mode",
    "apply_symbol_trim",
]
