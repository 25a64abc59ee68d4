"""
Unit tests for firmkit.core.directory module.

Tests cover:
- Global cache path resolution
- Cache layout paths and tool ids
- Staging directories
- Orphan cleanup
"""

import os
import time
from pathlib import Path

import pytest

from firmkit.core.directory import (
    CACHE_DIR_ENV,
    CacheLayout,
    get_global_cache_dir,
    sanitize_component,
)


class TestGetGlobalCacheDir:
    """Tests for get_global_cache_dir function."""

    def test_env_override(self, tmp_path, monkeypatch):
        """Test that FIRMKIT_CACHE_DIR wins."""
        monkeypatch.setenv(CACHE_DIR_ENV, str(tmp_path / "custom"))
        assert get_global_cache_dir() == tmp_path / "custom"

    def test_home_default(self, isolated_home):
        """Test the default location under the home directory."""
        if os.name == "nt":
            pytest.skip("POSIX home layout")
        assert get_global_cache_dir() == isolated_home / ".firmkit"


class TestSanitizeComponent:
    """Tests for sanitize_component."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("cmake", "cmake"),
            ("release/v5.1", "release-v5.1"),
            ("a\\b", "a-b"),
            ("gcc arm", "gccarm"),
            ("..", "_"),
            ("", "_"),
        ],
    )
    def test_sanitize(self, value, expected):
        assert sanitize_component(value) == expected


class TestCacheLayout:
    """Tests for CacheLayout paths."""

    def test_paths(self, tmp_path):
        layout = CacheLayout(tmp_path)
        assert layout.tools_dir == tmp_path / "tools"
        assert layout.sdk_dir == tmp_path / "sdk"
        assert layout.tmp_dir == tmp_path / "tmp"
        assert layout.lock_dir == tmp_path / "lock"
        assert layout.environment_file == tmp_path / "environment.json"

    def test_tool_id_is_a_single_component(self, tmp_path):
        """Test that tool ids never contain separators."""
        layout = CacheLayout(tmp_path)
        tool_id = layout.tool_id("arm/gcc", "12.2.rel1", "linux-x64")
        assert tool_id == "arm-gcc-12.2.rel1-linux-x64"
        assert layout.tool_install_dir(tool_id).parent == layout.tools_dir
        assert layout.tool_marker(tool_id).name == f"{tool_id}.installed.json"

    def test_ensure_creates_structure(self, tmp_path):
        """Test that ensure() creates every directory and is idempotent."""
        layout = CacheLayout(tmp_path / "cache")
        layout.ensure()
        layout.ensure()
        for directory in ("tools", "sdk", "tmp", "lock"):
            assert (tmp_path / "cache" / directory).is_dir()

    def test_new_staging_dir_is_unique(self, tmp_path):
        """Test that each staging directory is private."""
        layout = CacheLayout(tmp_path)
        first = layout.new_staging_dir("cmake-3.24.0.download")
        second = layout.new_staging_dir("cmake-3.24.0.download")
        assert first != second
        assert first.parent == layout.tmp_dir
        assert first.name.startswith("cmake-3.24.0.download.")


class TestCleanOrphans:
    """Tests for orphan cleanup."""

    def _age(self, path: Path, hours: float) -> None:
        stamp = time.time() - hours * 3600
        os.utime(path, (stamp, stamp))

    def test_removes_only_old_entries(self, tmp_path):
        """Test that entries younger than the threshold survive."""
        layout = CacheLayout(tmp_path)
        old_dir = layout.new_staging_dir("old")
        (old_dir / "archive.tar.gz").write_bytes(b"partial")
        self._age(old_dir, 48)
        old_file = layout.tmp_dir / "stray.tmp"
        old_file.write_text("x")
        self._age(old_file, 30)
        fresh = layout.new_staging_dir("fresh")

        removed = layout.clean_orphans(max_age_hours=24)

        assert removed == 2
        assert not old_dir.exists()
        assert not old_file.exists()
        assert fresh.exists()

    def test_missing_tmp_dir(self, tmp_path):
        """Test cleanup of a cache that has never been used."""
        assert CacheLayout(tmp_path / "none").clean_orphans() == 0

    def test_explicit_now(self, tmp_path):
        """Test cleanup relative to a given clock."""
        layout = CacheLayout(tmp_path)
        staging = layout.new_staging_dir("x")
        later = time.time() + 25 * 3600
        assert layout.clean_orphans(max_age_hours=24, now=later) == 1
        assert not staging.exists()
