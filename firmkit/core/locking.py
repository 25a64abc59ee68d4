"""
Concurrent access control for firmkit.

This module provides file-based locking to ensure safe concurrent access to
shared cache resources across multiple firmkit processes:

- one lock per tool install id, so two processes never extract the same tool
  into the same place at once;
- one lock per SDK working tree, held for the duration of every mutating git
  operation.

Uses the `filelock` library for cross-platform, cross-process locks that are
released automatically when the holding process dies.

Usage:
    from firmkit.core.locking import LockManager

    lock_manager = LockManager(cache_root / "lock")
    with lock_manager.tool_lock("cmake-3.24.0-linux-x64", timeout=300):
        install()
"""

import logging
from contextlib import contextmanager
from pathlib import Path

from filelock import FileLock, Timeout as LockTimeout

logger = logging.getLogger(__name__)


class LockManager:
    """
    Manages locks for firmkit cache resources.

    Attributes:
        lock_dir: Directory where per-tool lock files are stored
    """

    def __init__(self, lock_dir: Path):
        """
        Initialize lock manager.

        Args:
            lock_dir: Directory for lock files (usually ``<cache>/lock``)
        """
        self.lock_dir = Path(lock_dir)
        self.lock_dir.mkdir(parents=True, exist_ok=True)

    @contextmanager
    def tool_lock(self, tool_id: str, timeout: float = 300):
        """
        Acquire lock for a specific tool install.

        Args:
            tool_id: Unique tool install identifier (e.g., 'cmake-3.24.0-linux-x64')
            timeout: Maximum wait time in seconds (default: 300 for long downloads)

        Raises:
            LockTimeout: If lock can't be acquired within timeout
        """
        safe_id = tool_id.replace("/", "-").replace("\\", "-").replace(":", "-")
        lock_path = self.lock_dir / f"tool-{safe_id}.lock"
        with _acquire(
            lock_path,
            timeout,
            f"Could not acquire install lock for {tool_id} after {timeout}s. "
            "Another process may be installing this tool.",
        ):
            yield

    @contextmanager
    def path_lock(self, lock_path: Path, timeout: float = 300):
        """
        Acquire an exclusive lock file at an explicit location.

        Used for the SDK working tree, whose lock file sits beside the tree.

        Raises:
            LockTimeout: If lock can't be acquired within timeout
        """
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        with _acquire(
            lock_path,
            timeout,
            f"Could not acquire lock {lock_path} after {timeout}s. "
            "Another firmkit process may be using it.",
        ):
            yield


@contextmanager
def _acquire(lock_path: Path, timeout: float, message: str):
    lock = FileLock(lock_path, timeout=timeout)
    try:
        with lock:
            logger.debug(f"Acquired lock: {lock_path}")
            yield
            logger.debug(f"Released lock: {lock_path}")
    except LockTimeout as e:
        logger.error(message)
        raise LockTimeout(message) from e


__all__ = ["LockManager", "LockTimeout"]
