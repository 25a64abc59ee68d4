"""
SDK working copy management for firmkit.

This package provides:
- A git command-line backend
- SDK clone/sync/reset with an exclusive lock and persisted state
"""

from firmkit.sdk.git import GitCli
from firmkit.sdk.repository import SdkRepository, SdkState, SdkStatus

__all__ = [
    "GitCli",
    "SdkRepository",
    "SdkState",
    "SdkStatus",
]
