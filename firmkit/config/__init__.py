"""
Configuration for the firmkit installation engine.
"""

from firmkit.config.settings import (
    DownloadConfig,
    GitConfig,
    InstallerConfig,
    load_config,
    parse_config,
)

__all__ = [
    "DownloadConfig",
    "GitConfig",
    "InstallerConfig",
    "load_config",
    "parse_config",
]
