"""
Idempotent installation of a single tool into the cache.

This module orchestrates the install workflow for one ToolSpec:
1. Fast path: a marker that names the same version and archive checksum,
   over an install tree whose content hash still matches, is reused as-is
2. Download the archive into a private staging directory (with retry)
3. Verify the archive checksum (a mismatch is never retried; the mirror, if
   any, is tried once)
4. Extract into a second staging directory and move it into place with a
   single rename
5. Write the marker last

A per-tool file lock serializes concurrent installs of the same tool id
across processes. Installing one tool never touches another tool's files.
"""

import errno
import json
import logging
import time
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

from firmkit.config.settings import InstallerConfig
from firmkit.core.cancellation import CancellationToken, ensure_token
from firmkit.core.directory import CacheLayout
from firmkit.core.download import (
    ChecksumError,
    DownloadError,
    DownloadProgress,
    download_file,
)
from firmkit.core.exceptions import (
    ChecksumMismatch,
    ExtractionFailure,
    NetworkFailure,
    PermissionDenied,
    ToolInstallError,
)
from firmkit.core.filesystem import (
    ArchiveExtractionError,
    FilesystemError,
    atomic_move_dir,
    atomic_write,
    collapse_single_root,
    compute_tree_hash,
    safe_rmtree,
)
from firmkit.core.interfaces import ArchiveExtractor
from firmkit.core.locking import LockManager, LockTimeout
from firmkit.manifest.models import ToolSpec
from firmkit.toolchain.extraction import LocalArchiveExtractor

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, DownloadProgress], None]


@dataclass(frozen=True)
class InstalledTool:
    """
    A verified tool installation.

    Attributes:
        name: Tool name
        version: Installed version
        platform: Platform string the tool was installed for
        install_path: Root of the extracted tool
        archive_sha256: Checksum of the archive it was extracted from
        tree_sha256: Content hash of the install tree
        installed_at: ISO 8601 UTC install timestamp
    """

    name: str
    version: str
    platform: str
    install_path: Path
    archive_sha256: str
    tree_sha256: str
    installed_at: str

    def to_dict(self) -> dict:
        data = asdict(self)
        data["install_path"] = str(self.install_path)
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, sort_keys=True) + "\n"

    @classmethod
    def from_dict(cls, data: dict) -> "InstalledTool":
        """
        Raises:
            KeyError: If a field is missing
            TypeError: If the data is not a mapping
        """
        return cls(
            name=data["name"],
            version=data["version"],
            platform=data["platform"],
            install_path=Path(data["install_path"]),
            archive_sha256=data["archive_sha256"],
            tree_sha256=data["tree_sha256"],
            installed_at=data["installed_at"],
        )


class ToolInstaller:
    """
    Installs tools into a cache root.

    Example:
        >>> installer = ToolInstaller(CacheLayout(Path("~/.firmkit").expanduser()))
        >>> tool = installer.ensure_installed(plan.tool("cmake"))
        >>> print(tool.install_path)
    """

    def __init__(
        self,
        layout: CacheLayout,
        config: Optional[InstallerConfig] = None,
        extractor: Optional[ArchiveExtractor] = None,
        lock_manager: Optional[LockManager] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ):
        """
        Initialize tool installer.

        Args:
            layout: Cache layout to install into
            config: Engine configuration (download retry, timeouts)
            extractor: Archive extractor (default: LocalArchiveExtractor)
            lock_manager: Lock manager (default: one over ``layout.lock_dir``)
            progress_callback: Optional callback(tool_name, progress)
        """
        self.layout = layout
        self.config = config or InstallerConfig(cache_dir=layout.root)
        self.extractor = extractor or LocalArchiveExtractor()
        self._lock_manager = lock_manager
        self.progress_callback = progress_callback

    @property
    def lock_manager(self) -> LockManager:
        # Created lazily so that constructing an installer never touches disk
        if self._lock_manager is None:
            self._lock_manager = LockManager(self.layout.lock_dir)
        return self._lock_manager

    def tool_id(self, spec: ToolSpec) -> str:
        return self.layout.tool_id(spec.name, spec.version, spec.platform_string)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def ensure_installed(
        self, spec: ToolSpec, cancel: Optional[CancellationToken] = None
    ) -> InstalledTool:
        """
        Return a verified installation of ``spec``, installing it if needed.

        Args:
            spec: Resolved tool
            cancel: Optional cancellation token

        Returns:
            InstalledTool describing the verified install

        Raises:
            NetworkFailure: If the archive cannot be downloaded
            ChecksumMismatch: If the archive does not match ``spec.sha256``
            ExtractionFailure: If the archive cannot be extracted
            PermissionDenied: If the cache is not writable
            ToolInstallError: For other per-tool failures (lock timeout, I/O)
            OperationCancelled: If the token is cancelled
        """
        cancel = ensure_token(cancel)
        tool_id = self.tool_id(spec)

        existing = self._verified(spec, tool_id)
        if existing is not None:
            logger.debug(f"{tool_id} already installed at {existing.install_path}")
            return existing

        try:
            self.layout.ensure()
            with self.lock_manager.tool_lock(
                tool_id, timeout=self.config.lock_timeout
            ):
                # Another process may have finished while we waited
                existing = self._verified(spec, tool_id)
                if existing is not None:
                    logger.info(f"{tool_id} was installed by another process")
                    return existing

                self._discard(tool_id)
                return self._install(spec, tool_id, cancel)
        except LockTimeout as e:
            raise ToolInstallError(spec.name, str(e)) from e
        except OSError as e:
            raise _os_error(spec.name, e) from e
        except FilesystemError as e:
            if isinstance(e.__cause__, OSError):
                raise _os_error(spec.name, e.__cause__) from e
            raise ToolInstallError(spec.name, str(e)) from e

    def installed(self, spec: ToolSpec) -> Optional[InstalledTool]:
        """Return the verified installation of ``spec`` without installing."""
        return self._verified(spec, self.tool_id(spec))

    def uninstall(self, spec: ToolSpec) -> bool:
        """
        Remove the installation of ``spec``.

        Returns:
            True if anything was removed
        """
        tool_id = self.tool_id(spec)
        marker = self.layout.tool_marker(tool_id)
        install_dir = self.layout.tool_install_dir(tool_id)
        if not marker.exists() and not install_dir.exists():
            return False
        try:
            with self.lock_manager.tool_lock(
                tool_id, timeout=self.config.lock_timeout
            ):
                self._discard(tool_id)
        except LockTimeout as e:
            raise ToolInstallError(spec.name, str(e)) from e
        logger.info(f"Uninstalled {tool_id}")
        return True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _verified(self, spec: ToolSpec, tool_id: str) -> Optional[InstalledTool]:
        """Load the marker and re-verify the install tree against it."""
        marker = self.layout.tool_marker(tool_id)
        if not marker.exists():
            return None

        try:
            installed = InstalledTool.from_dict(
                json.loads(marker.read_text(encoding="utf-8"))
            )
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Ignoring unreadable install marker {marker}: {e}")
            return None

        if (
            installed.name != spec.name
            or installed.version != spec.version
            or installed.archive_sha256 != spec.sha256
        ):
            logger.warning(
                f"Install marker {marker.name} does not match the requested "
                f"{spec.name} {spec.version}; reinstalling"
            )
            return None

        install_dir = self.layout.tool_install_dir(tool_id)
        if not install_dir.is_dir():
            logger.warning(f"Install directory missing for {tool_id}; reinstalling")
            return None

        try:
            tree_hash = compute_tree_hash(install_dir)
        except (OSError, FilesystemError) as e:
            logger.warning(f"Cannot verify {install_dir}: {e}; reinstalling")
            return None
        if tree_hash != installed.tree_sha256:
            logger.warning(
                f"Content of {install_dir} changed since install "
                f"(expected {installed.tree_sha256[:12]}, got {tree_hash[:12]}); "
                "reinstalling"
            )
            return None

        return replace(installed, install_path=install_dir)

    def _discard(self, tool_id: str) -> None:
        """Remove the marker, then the install tree. Caller holds the lock."""
        marker = self.layout.tool_marker(tool_id)
        install_dir = self.layout.tool_install_dir(tool_id)
        marker.unlink(missing_ok=True)
        if install_dir.exists() or install_dir.is_symlink():
            logger.info(f"Removing stale install {install_dir}")
            safe_rmtree(install_dir, require_prefix=self.layout.tools_dir)

    def _install(
        self, spec: ToolSpec, tool_id: str, cancel: CancellationToken
    ) -> InstalledTool:
        logger.info(f"Installing {spec.name} {spec.version} ({spec.platform_string})")
        start = time.time()
        download_dir = self.layout.new_staging_dir(f"{tool_id}.download")
        extract_dir: Optional[Path] = None

        try:
            archive = self._fetch(
                spec, download_dir / f"archive.{spec.archive_format}", cancel
            )

            extract_dir = self.layout.new_staging_dir(f"{tool_id}.extract")
            try:
                self.extractor.extract(
                    archive, extract_dir, spec.archive_format, cancel
                )
            except ArchiveExtractionError as e:
                raise ExtractionFailure(spec.name, str(e)) from e
            cancel.raise_if_cancelled()

            install_dir = self.layout.tool_install_dir(tool_id)
            atomic_move_dir(collapse_single_root(extract_dir), install_dir)

            installed = InstalledTool(
                name=spec.name,
                version=spec.version,
                platform=spec.platform_string,
                install_path=install_dir,
                archive_sha256=spec.sha256,
                tree_sha256=compute_tree_hash(install_dir),
                installed_at=datetime.now(timezone.utc).isoformat(timespec="seconds"),
            )
            atomic_write(self.layout.tool_marker(tool_id), installed.to_json())
        finally:
            self._cleanup(download_dir, extract_dir)

        logger.info(
            f"Installed {spec.name} {spec.version} in {time.time() - start:.2f}s: "
            f"{install_dir}"
        )
        return installed

    def _fetch(
        self, spec: ToolSpec, destination: Path, cancel: CancellationToken
    ) -> Path:
        """Download the archive, trying the mirror once if the primary fails."""
        urls = [spec.url]
        if spec.mirror_url:
            urls.append(spec.mirror_url)

        for position, url in enumerate(urls):
            try:
                return download_file(
                    url,
                    destination,
                    expected_sha256=spec.sha256,
                    progress_callback=self._progress_for(spec.name),
                    timeout=self.config.download.timeout,
                    retry=self.config.download.retry_policy(),
                    cancel=cancel,
                )
            except ChecksumError as e:
                cause: Exception = e
                error: ToolInstallError = ChecksumMismatch(
                    spec.name, url, e.expected, e.actual
                )
            except DownloadError as e:
                cause = e
                error = NetworkFailure(
                    spec.name,
                    url,
                    str(e),
                    status_code=e.status_code,
                    attempts=e.attempts,
                )

            if position + 1 < len(urls):
                logger.warning(f"{error}; trying mirror {urls[position + 1]}")
                continue
            raise error from cause

        raise AssertionError("unreachable")

    def _progress_for(self, tool_name: str):
        if self.progress_callback is None:
            return None
        callback = self.progress_callback
        return lambda progress: callback(tool_name, progress)

    def _cleanup(self, *staging_dirs: Optional[Path]) -> None:
        for staging in staging_dirs:
            if staging is None:
                continue
            try:
                safe_rmtree(staging, require_prefix=self.layout.tmp_dir)
                logger.debug(f"Removed staging directory: {staging}")
            except (OSError, FilesystemError) as e:
                # Orphan cleanup on a later run removes it
                logger.warning(f"Failed to remove staging directory {staging}: {e}")


def _os_error(tool_name: str, error: OSError) -> ToolInstallError:
    if isinstance(error, PermissionError) or error.errno in (errno.EACCES, errno.EPERM):
        return PermissionDenied(tool_name, f"permission denied: {error}")
    return ToolInstallError(tool_name, f"filesystem error: {error}")


__all__ = ["InstalledTool", "ToolInstaller"]
