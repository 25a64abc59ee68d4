"""
Tool installation for firmkit.

This module provides functionality for:
- Idempotent download, verification and extraction of one tool
- Install markers and their re-verification
"""

from firmkit.toolchain.extraction import LocalArchiveExtractor
from firmkit.toolchain.installer import InstalledTool, ToolInstaller

__all__ = [
    "LocalArchiveExtractor",
    "InstalledTool",
    "ToolInstaller",
]
