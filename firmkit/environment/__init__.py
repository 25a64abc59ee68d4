"""
Environment descriptor for downstream build steps.

This package provides the deterministic composition of PATH entries and
environment variables from an installed plan, and its on-disk form.
"""

from firmkit.environment.composer import (
    EnvironmentComposer,
    EnvironmentDescriptor,
    load_descriptor,
)

__all__ = [
    "EnvironmentComposer",
    "EnvironmentDescriptor",
    "load_descriptor",
]
