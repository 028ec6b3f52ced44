"""KMI symbol list processor.

Runs as two pipeline stages:

- before compilation: merge the declared lists into ``abi_symbollist`` and,
  when trimming, inject the flattened list into the kernel config;
- after compilation: in strict mode, compare the list against the symbols
  the build actually exported.

Trimming must land in .config before ``make`` runs; the comparison needs
Module.symvers, which only exists afterwards.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path

from kernel_orchestrator.buildconfig.schema import BuildConfig
from kernel_orchestrator.errors import PreconditionError, TrimUnsupportedError
from kernel_orchestrator.pipeline.kconfig import KernelConfigFile, apply_symbol_trim
from kernel_orchestrator.symbols.lists import (
    SymbolList,
    flatten_symbol_list,
    merge_symbol_lists,
)
from kernel_orchestrator.symbols.symvers import compare_to_symbol_list, exported_symbols
from kernel_orchestrator.types import SymbolListMode

logger = logging.getLogger(__name__)

INTERNAL_SYMBOL_LISTS = (
    "android/abi_gki_aarch_galaxy_presubmit",
    "android/abi_greylist",
)
GKI_SYSTEM_DLKM_MODULES = "android/gki_system_dlkm_modules"
TRIM_OPTION = "UNUSED_KSYMS_WHITELIST"

SYMBOL_LIST_NAME = "abi_symbollist"
REPORT_NAME = "abi_symbollist.report"
RAW_LIST_NAME = "abi_symbollist.raw"


class SymbolListProcessor:
    """Merges, applies and verifies the KMI symbol list of one build."""

    def __init__(
        self,
        config: BuildConfig,
        kernel_src: Path,
        out_dir: Path,
        dist_dir: Path,
    ) -> None:
        self.config = config
        self.kernel_src = kernel_src
        self.out_dir = out_dir
        self.dist_dir = dist_dir

    @property
    def mode(self) -> SymbolListMode:
        return self.config.symbol_list_mode

    @property
    def symbol_list_path(self) -> Path:
        return self.dist_dir / SYMBOL_LIST_NAME

    @property
    def report_path(self) -> Path:
        return self.dist_dir / REPORT_NAME

    @property
    def raw_list_path(self) -> Path:
        return self.out_dir / RAW_LIST_NAME

    def merge(self) -> SymbolList:
        """Merge declared and internal lists and write the normalized list.

        Returns:
            The merged SymbolList.

        Raises:
            PreconditionError: If a declared list does not exist.
        """
        declared = [self.config.kmi_symbol_list or ""]
        declared.extend(self.config.additional_kmi_symbol_lists)
        try:
            merged = merge_symbol_lists(
                [self.kernel_src / p for p in declared],
                base_dir=self.kernel_src,
                optional=[self.kernel_src / p for p in INTERNAL_SYMBOL_LISTS],
            )
        except FileNotFoundError as e:
            raise PreconditionError(f"KMI symbol list not found: {e}", path=str(e)) from e

        self.dist_dir.mkdir(parents=True, exist_ok=True)
        self.symbol_list_path.write_text(merged.normalized(), encoding="utf-8")
        self.report_path.write_text(merged.report(), encoding="utf-8")
        logger.info(
            "Merged %d KMI symbols into %s", len(merged), self.symbol_list_path
        )
        return merged

    def write_raw_list(self) -> list[str]:
        """Flatten the normalized list to bare names in ``abi_symbollist.raw``."""
        names = flatten_symbol_list(self.symbol_list_path.read_text(encoding="utf-8"))
        self.raw_list_path.parent.mkdir(parents=True, exist_ok=True)
        self.raw_list_path.write_text("".join(f"{n}\n" for n in names), encoding="utf-8")
        return names

    def apply_trim(self, regenerate: Callable[[], None]) -> list[str]:
        """Inject the raw list into .config and recompute derived options.

        Args:
            regenerate: Runs ``make olddefconfig`` for the kernel tree.

        Returns:
            The flattened symbol names.

        Raises:
            TrimUnsupportedError: If the option does not survive olddefconfig.
        """
        names = self.write_raw_list()
        config_path = self.out_dir / ".config"
        apply_symbol_trim(config_path, self.raw_list_path)
        regenerate()
        if not KernelConfigFile(config_path).has(TRIM_OPTION):
            raise TrimUnsupportedError(f"CONFIG_{TRIM_OPTION}")
        logger.info("Trimming exports to %d listed symbols", len(names))
        return names

    def strict_objects(self) -> list[str]:
        """Objects compared in strict mode."""
        objects = list(self.config.strict_mode_objects)
        gki_modules = self.kernel_src / GKI_SYSTEM_DLKM_MODULES
        if gki_modules.is_file():
            for line in gki_modules.read_text(encoding="utf-8").splitlines():
                line = line.strip()
                if line:
                    objects.append(line.removesuffix(".ko"))
        return objects

    def verify(self) -> None:
        """Compare the raw list with the exports recorded in Module.symvers.

        Raises:
            PreconditionError: If Module.symvers or the raw list is missing.
            SymbolListMismatchError: If the sets differ.
        """
        symvers = self.out_dir / "Module.symvers"
        if not symvers.is_file():
            raise PreconditionError(f"Module.symvers not found: {symvers}", path=symvers)
        if not self.raw_list_path.is_file():
            raise PreconditionError(
                f"Raw symbol list not found: {self.raw_list_path}",
                path=self.raw_list_path,
            )
        expected = self.raw_list_path.read_text(encoding="utf-8").split()
        actual = exported_symbols(symvers, self.strict_objects())
        compare_to_symbol_list(expected, actual)
        logger.info("KMI symbol list matches %d exported symbols", len(actual))


__all__ = [
    "GKI_SYSTEM_DLKM_MODULES",
    "INTERNAL_SYMBOL_LISTS",
    "RAW_LIST_NAME",
    "REPORT_NAME",
    "SYMBOL_LIST_NAME",
    "SymbolListProcessor",
]
