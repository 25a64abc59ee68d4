"""
Manifest handling for firmkit.

This package provides:
- Manifest parsing and validation (YAML or JSON)
- Version constraints
- Resolution of a manifest into an installation plan for one platform
"""

from firmkit.manifest.models import (
    InstallationPlan,
    Manifest,
    ManifestEntry,
    SdkSpec,
    ToolRequirement,
    ToolSpec,
)
from firmkit.manifest.parser import load_manifest, parse_manifest, parse_sdk
from firmkit.manifest.refs import GitRef, RefKind
from firmkit.manifest.resolver import ManifestResolver
from firmkit.manifest.versions import VersionConstraint, version_key

__all__ = [
    "InstallationPlan",
    "Manifest",
    "ManifestEntry",
    "SdkSpec",
    "ToolRequirement",
    "ToolSpec",
    "load_manifest",
    "parse_manifest",
    "parse_sdk",
    "GitRef",
    "RefKind",
    "ManifestResolver",
    "VersionConstraint",
    "version_key",
]
