"""KMI symbol list module.

This module handles:
- Parsing and merging symbol list files
- Flattening the merged list for the kernel config
- Comparing the list with the exports recorded in Module.symvers
"""

from kernel_orchestrator.symbols.lists import SymbolList, merge_symbol_lists

__all__ = ["SymbolList", "merge_symbol_lists"]
