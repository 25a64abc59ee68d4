"""
Cache directory layout for firmkit.

Every operation takes the cache root explicitly; this module only maps that
root to the paths the installer, SDK repository and composer use.

Directory Structure (~/.firmkit/ or %USERPROFILE%\\.firmkit\\):
    - tools/<name>-<version>-<platform>/               : extracted tool
    - tools/<name>-<version>-<platform>.installed.json : install marker
    - sdk/<repo>-<hash>/                                : SDK working tree
    - sdk/<repo>-<hash>.lock                            : SDK lock file
    - sdk/<repo>-<hash>.state.json                      : SDK sync state
    - tmp/                                              : download/extract staging
    - lock/                                             : per-tool install locks
    - environment.json                                  : environment descriptor
"""

import logging
import os
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from firmkit.core.filesystem import FilesystemError, safe_rmtree

logger = logging.getLogger(__name__)

CACHE_DIR_ENV = "FIRMKIT_CACHE_DIR"
MARKER_SUFFIX = ".installed.json"


class DirectoryError(Exception):
    """Base exception for directory-related errors."""

    pass


def get_global_cache_dir() -> Path:
    """
    Get the platform-specific global cache directory path.

    ``FIRMKIT_CACHE_DIR`` overrides the default.

    Returns:
        Path: The global cache directory path.
            - Windows: %USERPROFILE%\\.firmkit
            - Linux/macOS: ~/.firmkit/

    Raises:
        DirectoryError: If no home directory can be determined
    """
    override = os.environ.get(CACHE_DIR_ENV)
    if override:
        return Path(override).expanduser()

    if os.name == "nt":  # Windows
        user_profile = os.environ.get("USERPROFILE")
        if not user_profile:
            raise DirectoryError(
                "USERPROFILE environment variable is not set. "
                "Cannot determine global cache directory."
            )
        return Path(user_profile) / ".firmkit"
    else:  # Linux/macOS
        return Path.home() / ".firmkit"


def sanitize_component(value: str) -> str:
    """
    Turn an arbitrary name (tool, version, git ref) into one path component.

    Directory separators become dashes; everything except ASCII
    alphanumerics and path-safe punctuation is dropped.
    """
    value = value.replace("/", "-").replace("\\", "-")
    allowed = set("!#$%&'()+,-.;=@[]^_`{}~")
    cleaned = "".join(
        c for c in value if (c.isascii() and c.isalnum()) or c in allowed
    )
    return cleaned.strip(".") or "_"


@dataclass(frozen=True)
class CacheLayout:
    """
    Paths inside one cache root.

    Attributes:
        root: Cache root directory
    """

    root: Path

    @property
    def tools_dir(self) -> Path:
        return self.root / "tools"

    @property
    def sdk_dir(self) -> Path:
        return self.root / "sdk"

    @property
    def tmp_dir(self) -> Path:
        return self.root / "tmp"

    @property
    def lock_dir(self) -> Path:
        return self.root / "lock"

    @property
    def environment_file(self) -> Path:
        return self.root / "environment.json"

    def tool_id(self, name: str, version: str, platform: str) -> str:
        """Unique, filesystem-safe identifier of one tool install."""
        return "-".join(sanitize_component(part) for part in (name, version, platform))

    def tool_install_dir(self, tool_id: str) -> Path:
        return self.tools_dir / tool_id

    def tool_marker(self, tool_id: str) -> Path:
        return self.tools_dir / f"{tool_id}{MARKER_SUFFIX}"

    def ensure(self) -> "CacheLayout":
        """
        Create the cache directory structure if it doesn't exist.

        Raises:
            PermissionError: If the cache root is not writable
        """
        for directory in (self.tools_dir, self.sdk_dir, self.tmp_dir, self.lock_dir):
            directory.mkdir(parents=True, exist_ok=True)
        return self

    def new_staging_dir(self, prefix: str) -> Path:
        """
        Create a private staging directory under ``tmp/``.

        Staging directories live on the same filesystem as ``tools/`` so the
        final move is a rename.
        """
        self.tmp_dir.mkdir(parents=True, exist_ok=True)
        staging = tempfile.mkdtemp(
            prefix=f"{sanitize_component(prefix)}.", dir=self.tmp_dir
        )
        return Path(staging)

    def clean_orphans(
        self, max_age_hours: float = 24, now: Optional[float] = None
    ) -> int:
        """
        Remove staging entries older than ``max_age_hours``.

        Entries are left behind by interrupted runs. Younger entries may belong
        to a concurrent run and are ignored.

        Returns:
            Number of entries removed
        """
        if not self.tmp_dir.exists():
            return 0

        current_time = time.time() if now is None else now
        removed_count = 0

        for entry in self.tmp_dir.iterdir():
            try:
                age_hours = (current_time - entry.lstat().st_mtime) / 3600
                if age_hours <= max_age_hours:
                    continue
                safe_rmtree(entry, require_prefix=self.tmp_dir)
                logger.info(f"Removed orphaned staging entry: {entry}")
                removed_count += 1
            except (OSError, FilesystemError) as e:
                # Entry may be in use or already deleted
                logger.debug(f"Could not remove orphan {entry}: {e}")

        return removed_count


__all__ = [
    "CACHE_DIR_ENV",
    "MARKER_SUFFIX",
    "DirectoryError",
    "CacheLayout",
    "get_global_cache_dir",
    "sanitize_component",
]
