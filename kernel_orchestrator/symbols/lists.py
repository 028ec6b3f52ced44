"""KMI symbol list parsing, merging and flattening.

Symbol list files look like::

    [abi_symbol_list]
      kfree
      kmalloc   # comments are allowed

Section headers group symbols by owner and carry no meaning for the merge;
every non-comment line outside a header is one symbol name.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

NORMALIZED_SECTION = "abi_symbol_list"


def parse_symbol_list(text: str) -> list[str]:
    """Parse symbol list text into symbol names, in file order.

    Args:
        text: Contents of a symbol list file.

    Returns:
        Symbol names with comments, blank lines and section headers removed.
    """
    symbols: list[str] = []
    for line in text.splitlines():
        line = line.split("#", 1)[0].strip()
        if not line or (line.startswith("[") and line.endswith("]")):
            continue
        symbols.append(line.split()[0])
    return symbols


@dataclass
class SymbolList:
    """Ordered, de-duplicated set of symbol names.

    Attributes:
        origins: Symbol name -> the list it was first seen in.
        sources: Per source, the symbols it declared (including duplicates).
    """

    origins: dict[str, str] = field(default_factory=dict)
    sources: dict[str, list[str]] = field(default_factory=dict)

    def add(self, source: str, symbols: Iterable[str]) -> None:
        """Merge symbols declared by ``source``."""
        declared = self.sources.setdefault(source, [])
        for symbol in symbols:
            declared.append(symbol)
            self.origins.setdefault(symbol, source)

    @property
    def symbols(self) -> list[str]:
        """Symbol names in first-seen order."""
        return list(self.origins)

    def __len__(self) -> int:
        return len(self.origins)

    def __contains__(self, symbol: object) -> bool:
        return symbol in self.origins

    def normalized(self) -> str:
        """Render the merged list as a single sorted section."""
        lines = [f"[{NORMALIZED_SECTION}]"]
        lines.extend(f"  {symbol}" for symbol in sorted(self.origins))
        return "\n".join(lines) + "\n"

    def report(self) -> str:
        """Render a human readable summary of what came from where."""
        lines = [f"Merged {len(self)} symbols from {len(self.sources)} list(s)", ""]
        for source, declared in self.sources.items():
            new = [s for s in declared if self.origins.get(s) == source]
            lines.append(f"{source}: {len(declared)} declared, {len(set(new))} new")
            lines.extend(f"  {symbol}" for symbol in sorted(set(new)))
        return "\n".join(lines) + "\n"


def flatten_symbol_list(text: str) -> list[str]:
    """Flatten a (normalized) symbol list to unique bare names, sorted."""
    return sorted(set(parse_symbol_list(text)))


def merge_symbol_lists(
    paths: Iterable[Path],
    base_dir: Path,
    optional: Iterable[Path] = (),
) -> SymbolList:
    """Merge symbol list files into one SymbolList.

    Args:
        paths: Declared lists; each must exist.
        base_dir: Directory used for relative source names in the report.
        optional: Internal lists that are skipped when absent.

    Returns:
        Merged SymbolList.

    Raises:
        FileNotFoundError: If a declared list does not exist.
    """
    merged = SymbolList()
    for path, required in [(p, True) for p in paths] + [(p, False) for p in optional]:
        if not path.is_file():
            if required:
                raise FileNotFoundError(path)
            logger.debug("Skipping absent symbol list %s", path)
            continue
        try:
            name = path.relative_to(base_dir).as_posix()
        except ValueError:
            name = path.as_posix()
        merged.add(name, parse_symbol_list(path.read_text(encoding="utf-8")))
    return merged


__all__ = [
    "NORMALIZED_SECTION",
    "SymbolList",
    "flatten_symbol_list",
    "merge_symbol_lists",
    "parse_symbol_list",
]
