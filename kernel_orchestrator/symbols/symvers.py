"""Module.symvers parsing and the strict KMI comparison."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

from kernel_orchestrator.errors import SymbolListMismatchError


@dataclass(frozen=True)
class ExportedSymbol:
    """One line of Module.symvers."""

    crc: str
    name: str
    module: str
    export_type: str
    namespace: str = ""


def parse_symvers(text: str) -> list[ExportedSymbol]:
    """Parse Module.symvers content (tab separated)."""
    exported: list[ExportedSymbol] = []
    for line in text.splitlines():
        if not line.strip():
            continue
        fields = line.split("\t")
        if len(fields) < 4:
            continue
        namespace = fields[4] if len(fields) > 4 else ""
        exported.append(ExportedSymbol(*fields[:4], namespace=namespace))
    return exported


def exported_symbols(symvers: Path, objects: Iterable[str]) -> set[str]:
    """Return the symbols exported by the given objects.

    Args:
        symvers: Path to Module.symvers.
        objects: Object names as they appear in the module column
            (``vmlinux`` or a module path without ``.ko``).
    """
    wanted = set(objects)
    return {
        sym.name
        for sym in parse_symvers(symvers.read_text(encoding="utf-8"))
        if sym.module in wanted
    }


def compare_to_symbol_list(expected: Iterable[str], actual: Iterable[str]) -> None:
    """Require the exported set to equal the symbol list.

    Raises:
        SymbolListMismatchError: With the missing and unexpected symbols.
    """
    expected_set = set(expected)
    actual_set = set(actual)
    missing = sorted(expected_set - actual_set)
    unexpected = sorted(actual_set - expected_set)
    if missing or unexpected:
        raise SymbolListMismatchError(missing=missing, unexpected=unexpected)


__all__ = [
    "ExportedSymbol",
    "compare_to_symbol_list",
    "exported_symbols",
    "parse_symvers",
]
