"""
Core functionality for firmkit.

This package contains the foundational modules that other components depend on.
"""

from .cancellation import CancellationToken, ensure_token

from .directory import (
    CacheLayout,
    DirectoryError,
    get_global_cache_dir,
    sanitize_component,
)

from .download import (
    ChecksumError,
    DownloadError,
    DownloadProgress,
    RetryPolicy,
    download_file,
)

from .filesystem import (
    ArchiveExtractionError,
    FilesystemError,
    atomic_write,
    compute_tree_hash,
    extract_archive,
    safe_rmtree,
)

from .interfaces import ArchiveExtractor, VcsBackend

from .locking import LockManager, LockTimeout

from .platform import (
    Architecture,
    HostPlatform,
    OperatingSystem,
    PlatformMatcher,
    clear_platform_cache,
    detect_platform,
)

from .process import run_command

from .exceptions import (
    FirmkitError,
    ConfigError,
    OperationCancelled,
    CommandError,
    ManifestError,
    ManifestInvalid,
    UnsupportedPlatform,
    ToolInstallError,
    NetworkFailure,
    ChecksumMismatch,
    ExtractionFailure,
    PermissionDenied,
    SdkError,
    DirtyCheckout,
    SdkSyncFailure,
    ToolFailure,
    AggregateError,
)

__all__ = [
    "CancellationToken",
    "ensure_token",
    "CacheLayout",
    "DirectoryError",
    "get_global_cache_dir",
    "sanitize_component",
    "ChecksumError",
    "DownloadError",
    "DownloadProgress",
    "RetryPolicy",
    "download_file",
    "ArchiveExtractionError",
    "FilesystemError",
    "atomic_write",
    "compute_tree_hash",
    "extract_archive",
    "safe_rmtree",
    "ArchiveExtractor",
    "VcsBackend",
    "LockManager",
    "LockTimeout",
    "Architecture",
    "HostPlatform",
    "OperatingSystem",
    "PlatformMatcher",
    "clear_platform_cache",
    "detect_platform",
    "run_command",
    "FirmkitError",
    "ConfigError",
    "OperationCancelled",
    "CommandError",
    "ManifestError",
    "ManifestInvalid",
    "UnsupportedPlatform",
    "ToolInstallError",
    "NetworkFailure",
    "ChecksumMismatch",
    "ExtractionFailure",
    "PermissionDenied",
    "SdkError",
    "DirtyCheckout",
    "SdkSyncFailure",
    "ToolFailure",
    "AggregateError",
]
