"""
Centralized exception hierarchy for firmkit.

This module defines all custom exceptions used across the installation engine.
Resolver and SDK errors are fatal for a run; tool installation errors are
recorded per tool and reported together through AggregateError.
"""

from dataclasses import dataclass
from typing import List, Optional, Sequence


# ============================================================================
# Base Exceptions
# ============================================================================


class FirmkitError(Exception):
    """Base exception for all firmkit errors."""

    @property
    def kind(self) -> str:
        """Short error kind used in reports (the exception class name)."""
        return type(self).__name__


class ConfigError(FirmkitError):
    """Configuration parsing or validation error."""

    pass


class OperationCancelled(FirmkitError):
    """Raised when a caller-supplied cancellation token fires."""

    pass


class CommandError(FirmkitError):
    """An external command could not be run or exited unsuccessfully."""

    def __init__(
        self,
        command: Sequence[str],
        returncode: Optional[int] = None,
        stderr: str = "",
        message: str = "",
    ):
        self.command = list(command)
        self.returncode = returncode
        self.stderr = stderr
        if not message:
            message = f"Command {' '.join(self.command)!r} failed"
            if returncode is not None:
                message += f" with exit status {returncode}"
            if stderr:
                message += f": {stderr.strip()}"
        super().__init__(message)


# ============================================================================
# Manifest Exceptions
# ============================================================================


class ManifestError(FirmkitError):
    """Base exception for manifest resolution errors."""

    pass


class ManifestInvalid(ManifestError):
    """The manifest is structurally malformed or has no admissible version."""

    pass


class UnsupportedPlatform(ManifestError):
    """A required tool has no entry for the host platform."""

    def __init__(self, tool_name: str, platform: str):
        self.tool_name = tool_name
        self.platform = platform
        super().__init__(f"Tool '{tool_name}' has no entry for platform {platform}")


# ============================================================================
# Tool Installation Exceptions
# ============================================================================


class ToolInstallError(FirmkitError):
    """Base exception for errors installing a single tool."""

    def __init__(self, tool_name: str, message: str):
        self.tool_name = tool_name
        super().__init__(f"{tool_name}: {message}")


class NetworkFailure(ToolInstallError):
    """Download failed after exhausting retries (or with a non-retryable status)."""

    def __init__(
        self,
        tool_name: str,
        url: str,
        reason: str,
        status_code: Optional[int] = None,
        attempts: int = 1,
    ):
        self.url = url
        self.reason = reason
        self.status_code = status_code
        self.attempts = attempts
        detail = f"download of {url} failed after {attempts} attempt(s)"
        if status_code is not None:
            detail += f" (HTTP {status_code})"
        super().__init__(tool_name, f"{detail}: {reason}")


class ChecksumMismatch(ToolInstallError):
    """Downloaded archive does not match the declared checksum."""

    def __init__(self, tool_name: str, url: str, expected: str, actual: str):
        self.url = url
        self.expected = expected
        self.actual = actual
        super().__init__(
            tool_name,
            f"checksum mismatch for {url}: expected sha256 {expected}, got {actual}",
        )


class ExtractionFailure(ToolInstallError):
    """Archive could not be extracted."""

    pass


class PermissionDenied(ToolInstallError):
    """Cache directory or install path is not writable."""

    pass


# ============================================================================
# SDK Exceptions
# ============================================================================


class SdkError(FirmkitError):
    """Base exception for SDK repository errors."""

    pass


class DirtyCheckout(SdkError):
    """The SDK working tree has local modifications and would be overwritten."""

    def __init__(self, path, current_ref: str, target_ref: str):
        self.path = path
        self.current_ref = current_ref
        self.target_ref = target_ref
        super().__init__(
            f"SDK checkout at {path} has local modifications; refusing to move "
            f"from {current_ref} to {target_ref}. Commit or discard the changes, "
            "or request a reset."
        )


class SdkSyncFailure(SdkError):
    """Cloning, fetching or checking out the SDK failed."""

    pass


# ============================================================================
# Aggregate reporting
# ============================================================================


@dataclass(frozen=True)
class ToolFailure:
    """One failed tool installation."""

    tool_name: str
    kind: str
    error: ToolInstallError

    def __str__(self) -> str:
        return f"{self.tool_name} [{self.kind}]: {self.error}"


class AggregateError(FirmkitError):
    """One or more tool installations failed."""

    def __init__(self, failures: List[ToolFailure]):
        self.failures = list(failures)
        lines = [f"{len(self.failures)} tool(s) failed to install:"]
        lines.extend(f"  - {failure}" for failure in self.failures)
        super().__init__("\n".join(lines))

    @property
    def tool_names(self) -> List[str]:
        """Names of the failed tools, in report order."""
        return [failure.tool_name for failure in self.failures]


__all__ = [
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
