"""Build pipeline module.

This module handles:
- Sequencing build stages
- Running external build tools
- Mixed-build coordination
- Module staging and image assembly
- abi.prop and distribution manifests
"""

# Submodules are imported directly (kernel_orchestrator.pipeline.service,
# etc.); kernel_orchestrator.symbols depends on pipeline.kconfig.
