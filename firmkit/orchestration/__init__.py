"""
Installation orchestration for firmkit.

The orchestrator is the library's entry point: manifest in, environment
descriptor out.
"""

from firmkit.orchestration.orchestrator import InstallationOrchestrator

__all__ = ["InstallationOrchestrator"]
