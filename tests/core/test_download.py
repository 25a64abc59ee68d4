"""
Unit tests for download module.

Tests download functionality with mocked network requests.
"""

import hashlib

import pytest
import requests
import responses

from firmkit.core.cancellation import CancellationToken
from firmkit.core.download import (
    RETRYABLE_STATUS,
    ChecksumError,
    DownloadError,
    DownloadProgress,
    RetryPolicy,
    download_file,
)
from firmkit.core.exceptions import OperationCancelled

URL = "https://downloads.example.com/cmake-3.24.0-linux.tar.gz"
FAST = RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0)


class TestRetryPolicy:
    """Test backoff computation."""

    def test_exponential_and_capped(self):
        """Test that delays double and stop at the cap."""
        policy = RetryPolicy(max_attempts=6, base_delay=1.0, max_delay=5.0)
        assert [policy.delay(n) for n in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_retryable_statuses(self):
        """Test which HTTP statuses are treated as transient."""
        assert {429, 503}.issubset(RETRYABLE_STATUS)
        assert 404 not in RETRYABLE_STATUS
        assert 403 not in RETRYABLE_STATUS


class TestDownloadFile:
    """Test download_file function."""

    @responses.activate
    def test_download_with_checksum_verification(self, tmp_path):
        """Test download with checksum verification."""
        content = b"archive bytes"
        responses.add(
            responses.GET,
            URL,
            body=content,
            status=200,
            headers={"content-length": str(len(content))},
        )

        destination = tmp_path / "nested" / "archive.tar.gz"
        result = download_file(
            URL, destination, expected_sha256=hashlib.sha256(content).hexdigest()
        )

        assert result == destination
        assert destination.read_bytes() == content

    @responses.activate
    def test_wrong_checksum_is_not_retried(self, tmp_path):
        """Test that a checksum mismatch fails at once and removes the file."""
        responses.add(responses.GET, URL, body=b"tampered", status=200)
        destination = tmp_path / "archive.tar.gz"

        with pytest.raises(ChecksumError, match="Checksum mismatch") as exc_info:
            download_file(URL, destination, expected_sha256="a" * 64, retry=FAST)

        assert exc_info.value.expected == "a" * 64
        assert exc_info.value.actual == hashlib.sha256(b"tampered").hexdigest()
        assert not destination.exists()
        assert len(responses.calls) == 1

    @responses.activate
    def test_retries_transient_status(self, tmp_path):
        """Test that 503 responses are retried until success."""
        responses.add(responses.GET, URL, status=503)
        responses.add(responses.GET, URL, status=429)
        responses.add(responses.GET, URL, body=b"ok", status=200)

        download_file(URL, tmp_path / "file", retry=FAST)

        assert len(responses.calls) == 3
        assert (tmp_path / "file").read_bytes() == b"ok"

    @responses.activate
    def test_retries_connection_errors(self, tmp_path):
        """Test that connection errors are retried."""
        responses.add(
            responses.GET, URL, body=requests.exceptions.ConnectionError("refused")
        )
        responses.add(responses.GET, URL, body=b"ok", status=200)

        download_file(URL, tmp_path / "file", retry=FAST)

        assert len(responses.calls) == 2

    @responses.activate
    def test_gives_up_after_max_attempts(self, tmp_path):
        """Test the error after exhausting every attempt."""
        responses.add(responses.GET, URL, status=502)

        with pytest.raises(DownloadError, match="after 3 attempts") as exc_info:
            download_file(URL, tmp_path / "file", retry=FAST)

        assert exc_info.value.status_code == 502
        assert exc_info.value.attempts == 3
        assert len(responses.calls) == 3
        assert not (tmp_path / "file").exists()

    @responses.activate
    def test_client_error_is_not_retried(self, tmp_path):
        """Test that 404 fails immediately."""
        responses.add(responses.GET, URL, status=404)

        with pytest.raises(DownloadError) as exc_info:
            download_file(URL, tmp_path / "file", retry=FAST)

        assert exc_info.value.status_code == 404
        assert exc_info.value.attempts == 1
        assert len(responses.calls) == 1

    def test_invalid_url_is_not_retried(self, tmp_path):
        """Test that a URL requests cannot use fails on the first attempt."""
        with pytest.raises(DownloadError) as exc_info:
            download_file("ftp//not-a-url/cmake.tar.gz", tmp_path / "file", retry=FAST)

        assert exc_info.value.attempts == 1
        assert exc_info.value.status_code is None
        assert not (tmp_path / "file").exists()

    @responses.activate
    def test_redirect_loop_is_not_retried(self, tmp_path):
        responses.add(
            responses.GET, URL, body=requests.exceptions.TooManyRedirects("loop")
        )

        with pytest.raises(DownloadError, match="loop") as exc_info:
            download_file(URL, tmp_path / "file", retry=FAST)

        assert exc_info.value.attempts == 1
        assert len(responses.calls) == 1

    @responses.activate
    def test_retries_timeouts(self, tmp_path):
        responses.add(responses.GET, URL, body=requests.exceptions.ReadTimeout("slow"))
        responses.add(responses.GET, URL, body=b"ok", status=200)

        download_file(URL, tmp_path / "file", retry=FAST)

        assert len(responses.calls) == 2

    @responses.activate
    def test_status_of_last_attempt_reported(self, tmp_path):
        """Test that a 503 followed by a connection reset reports no status."""
        responses.add(responses.GET, URL, status=503)
        responses.add(
            responses.GET, URL, body=requests.exceptions.ConnectionError("reset")
        )

        with pytest.raises(DownloadError, match="reset") as exc_info:
            download_file(
                URL,
                tmp_path / "file",
                retry=RetryPolicy(max_attempts=2, base_delay=0.0, max_delay=0.0),
            )

        assert exc_info.value.status_code is None
        assert exc_info.value.attempts == 2

    @responses.activate
    def test_cancelled_before_request(self, tmp_path):
        """Test that a cancelled token stops the download before any request."""
        responses.add(responses.GET, URL, body=b"ok", status=200)
        token = CancellationToken()
        token.cancel("stop")

        with pytest.raises(OperationCancelled):
            download_file(URL, tmp_path / "file", cancel=token)

        assert len(responses.calls) == 0

    @responses.activate
    def test_download_with_progress_callback(self, tmp_path):
        """Test download reports progress."""
        content = b"x" * 100000
        responses.add(
            responses.GET,
            URL,
            body=content,
            status=200,
            headers={"content-length": str(len(content))},
        )
        updates = []

        download_file(URL, tmp_path / "file", progress_callback=updates.append)

        assert updates
        assert updates[-1].bytes_downloaded == len(content)
        assert updates[-1].percentage == 100

    def test_empty_url(self, tmp_path):
        with pytest.raises(ValueError, match="URL cannot be empty"):
            download_file("", tmp_path / "file")


class TestDownloadProgress:
    """Tests for progress snapshots."""

    def test_known_size(self):
        progress = DownloadProgress(52428800, 104857600, elapsed=50.0)
        assert progress.percentage == 50.0
        assert progress.speed_bps == 1048576
        assert not progress.done
        assert str(progress) == "50.0 MiB (50%) at 1.0 MiB/s"

    def test_unknown_size(self):
        progress = DownloadProgress(1048576, None, elapsed=0.0)
        assert progress.percentage is None
        assert progress.speed_bps == 0.0
        assert not progress.done
        assert str(progress) == "1.0 MiB at 0.0 MiB/s"

    def test_done(self):
        assert DownloadProgress(10, 10, elapsed=1.0).done
