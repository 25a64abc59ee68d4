"""
Archive downloads for the tool installer.

One call to ``download_file`` streams a URL to disk and hashes the bytes as
they arrive. Transient failures are retried with capped exponential backoff:
connection errors, timeouts, truncated streams, throttling and 5xx
responses. Anything else fails on the first attempt, and so does a checksum
mismatch, since the same URL would serve the same bytes again.

The token passed as ``cancel`` is checked between chunks and interrupts the
backoff sleep.
"""

import hashlib
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

import requests
from requests.exceptions import (
    ChunkedEncodingError,
    ConnectionError,
    HTTPError,
    RequestException,
    Timeout,
)

from firmkit.core.cancellation import CancellationToken, ensure_token

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024

# Seconds between two progress reports for the same download
PROGRESS_INTERVAL = 0.5

RETRYABLE_STATUS = frozenset({408, 425, 429, 500, 502, 503, 504})

# Errors a second attempt can cure; invalid URLs and redirect loops cannot
TRANSIENT_ERRORS = (ConnectionError, Timeout, ChunkedEncodingError)


@dataclass(frozen=True)
class DownloadProgress:
    """
    Snapshot of a running download.

    Attributes:
        bytes_downloaded: Bytes written so far
        total_bytes: Size announced by the server (None if unknown)
        elapsed: Seconds since the attempt started
    """

    bytes_downloaded: int
    total_bytes: Optional[int]
    elapsed: float

    @property
    def percentage(self) -> Optional[float]:
        if not self.total_bytes:
            return None
        return self.bytes_downloaded * 100 / self.total_bytes

    @property
    def speed_bps(self) -> float:
        return self.bytes_downloaded / self.elapsed if self.elapsed > 0 else 0.0

    @property
    def done(self) -> bool:
        if self.total_bytes is None:
            return False
        return self.bytes_downloaded >= self.total_bytes

    def __str__(self) -> str:
        mib = self.bytes_downloaded / (1024 * 1024)
        speed = self.speed_bps / (1024 * 1024)
        if self.percentage is None:
            return f"{mib:.1f} MiB at {speed:.1f} MiB/s"
        return f"{mib:.1f} MiB ({self.percentage:.0f}%) at {speed:.1f} MiB/s"


ProgressCallback = Callable[[DownloadProgress], None]


@dataclass(frozen=True)
class RetryPolicy:
    """
    Exponential backoff policy.

    Attempt ``n`` (0-based) that fails waits ``min(base_delay * 2**n, max_delay)``
    seconds before the next attempt. At most ``max_attempts`` requests are made.
    """

    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 30.0

    def delay(self, attempt: int) -> float:
        return min(self.base_delay * (2**attempt), self.max_delay)


class DownloadError(Exception):
    """A download failed for good (non-retryable error or retries exhausted)."""

    def __init__(
        self, message: str, status_code: Optional[int] = None, attempts: int = 1
    ):
        self.status_code = status_code
        self.attempts = attempts
        super().__init__(message)


class ChecksumError(Exception):
    """Downloaded bytes do not hash to the expected SHA256."""

    def __init__(self, expected: str, actual: str, path: Path):
        self.expected = expected
        self.actual = actual
        self.path = path
        super().__init__(
            f"Checksum mismatch for {path.name}: expected {expected}, got {actual}"
        )


def download_file(
    url: str,
    destination: Path,
    expected_sha256: Optional[str] = None,
    progress_callback: Optional[ProgressCallback] = None,
    timeout: float = 30,
    retry: Optional[RetryPolicy] = None,
    cancel: Optional[CancellationToken] = None,
) -> Path:
    """
    Download ``url`` to ``destination``, retrying transient failures.

    Args:
        url: URL to download from
        destination: File to write (overwritten; removed on failure)
        expected_sha256: SHA256 the content must hash to (any case)
        progress_callback: Called with DownloadProgress at most every
            PROGRESS_INTERVAL seconds, and once the announced size is reached
        timeout: Connect/read timeout in seconds for each attempt
        retry: Backoff policy (default: 5 attempts, 1s base, 30s cap)
        cancel: Optional cancellation token

    Returns:
        ``destination``

    Raises:
        DownloadError: On a non-retryable HTTP error or when retries run out
        ChecksumError: If the content does not match ``expected_sha256``
        OperationCancelled: If the token is cancelled
        ValueError: If ``url`` is empty

    Example:
        >>> download_file(
        ...     "https://example.com/ninja-1.11.1-linux.zip",
        ...     Path("tmp/ninja.zip"),
        ...     expected_sha256="abc123...",
        ... )
    """
    if not url:
        raise ValueError("URL cannot be empty")

    retry = retry or RetryPolicy()
    cancel = ensure_token(cancel)
    destination = Path(destination)
    destination.parent.mkdir(parents=True, exist_ok=True)

    status: Optional[int] = None
    error: Optional[Exception] = None
    for attempt in range(1, retry.max_attempts + 1):
        cancel.raise_if_cancelled()
        try:
            digest = _fetch_once(url, destination, progress_callback, timeout, cancel)
        except HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            if status is not None and status not in RETRYABLE_STATUS:
                raise DownloadError(
                    f"Download failed: {e}", status_code=status, attempts=attempt
                ) from e
            error = e
        except TRANSIENT_ERRORS as e:
            status = None
            error = e
        except RequestException as e:
            raise DownloadError(f"Download failed: {e}", attempts=attempt) from e
        else:
            _check_digest(destination, digest, expected_sha256)
            logger.info(f"Downloaded {url} ({destination.stat().st_size} bytes)")
            return destination

        if attempt < retry.max_attempts:
            wait = retry.delay(attempt - 1)
            logger.warning(
                f"Download of {url} failed (attempt {attempt}/{retry.max_attempts}): "
                f"{error}; retrying in {wait:g}s"
            )
            cancel.sleep(wait)

    raise DownloadError(
        f"Download failed after {retry.max_attempts} attempts: {error}",
        status_code=status,
        attempts=retry.max_attempts,
    ) from error


def _fetch_once(
    url: str,
    destination: Path,
    progress_callback: Optional[ProgressCallback],
    timeout: float,
    cancel: CancellationToken,
) -> str:
    """Run one attempt and return the SHA256 of what was written."""
    logger.debug(f"GET {url}")
    hasher = hashlib.sha256()

    try:
        with requests.get(url, stream=True, timeout=timeout) as response:
            response.raise_for_status()
            length = response.headers.get("content-length")
            total = int(length) if length and length.isdigit() else None

            started = time.monotonic()
            reported_at = started
            written = 0
            with open(destination, "wb") as f:
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    cancel.raise_if_cancelled()
                    if not chunk:
                        continue
                    f.write(chunk)
                    hasher.update(chunk)
                    written += len(chunk)

                    if progress_callback is None:
                        continue
                    now = time.monotonic()
                    progress = DownloadProgress(written, total, now - started)
                    if progress.done or now - reported_at >= PROGRESS_INTERVAL:
                        progress_callback(progress)
                        reported_at = now
    except BaseException:
        destination.unlink(missing_ok=True)
        raise

    return hasher.hexdigest()


def _check_digest(path: Path, actual: str, expected: Optional[str]) -> None:
    if expected is None:
        return
    expected = expected.strip().lower()
    if actual != expected:
        path.unlink(missing_ok=True)
        raise ChecksumError(expected=expected, actual=actual, path=path)
    logger.debug(f"Checksum verified for {path.name}")


__all__ = [
    "CHUNK_SIZE",
    "RETRYABLE_STATUS",
    "TRANSIENT_ERRORS",
    "DownloadProgress",
    "ProgressCallback",
    "RetryPolicy",
    "DownloadError",
    "ChecksumError",
    "download_file",
]
