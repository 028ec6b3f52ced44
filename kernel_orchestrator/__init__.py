"""Kernel Build Orchestrator - staged kernel, module and image builds.

This package turns a declarative build configuration into an ordered
sequence of build stages, coordinates mixed (GKI + device) builds and
validates exported kernel symbols against a KMI symbol list.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
