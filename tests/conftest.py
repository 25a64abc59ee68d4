"""
Pytest configuration and shared fixtures for firmkit tests.
"""

import pytest
from pathlib import Path

from firmkit.config.settings import DownloadConfig, InstallerConfig
from firmkit.core.directory import CacheLayout
from firmkit.core.platform import Architecture, HostPlatform, OperatingSystem

# Import test fixtures to make them available to all tests
# ruff: noqa: F401
from tests.fixtures.fakes import fake_vcs


def pytest_addoption(parser):
    """Add custom command line options."""
    parser.addoption(
        "--integration",
        action="store_true",
        default=False,
        help="run integration tests that need a real git executable",
    )


def pytest_collection_modifyitems(config, items):
    """Skip integration tests unless --integration flag is provided."""
    if not config.getoption("--integration"):
        skip_integration = pytest.mark.skip(reason="need --integration option to run")
        for item in items:
            if "integration" in item.keywords:
                item.add_marker(skip_integration)


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "integration: marks tests as integration tests (requires --integration)",
    )
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )


# ============================================================================
# Shared Test Fixtures
# ============================================================================


@pytest.fixture
def cache_root(tmp_path) -> Path:
    """Empty cache root directory."""
    root = tmp_path / "cache"
    root.mkdir()
    return root


@pytest.fixture
def layout(cache_root) -> CacheLayout:
    """Cache layout over the temporary cache root."""
    return CacheLayout(cache_root)


@pytest.fixture
def config(cache_root) -> InstallerConfig:
    """Configuration with fast retries and a short lock timeout."""
    return InstallerConfig(
        cache_dir=cache_root,
        jobs=4,
        download=DownloadConfig(
            attempts=3, backoff_base=0.0, backoff_cap=0.0, timeout=5.0
        ),
        lock_timeout=10.0,
    )


@pytest.fixture
def linux_x64() -> HostPlatform:
    return HostPlatform(OperatingSystem.LINUX, Architecture.X64)


@pytest.fixture
def isolated_home(tmp_path, monkeypatch) -> Path:
    """Create isolated home directory for tests."""
    fake_home = tmp_path / "home"
    fake_home.mkdir()

    monkeypatch.setenv("HOME", str(fake_home))
    monkeypatch.setenv("USERPROFILE", str(fake_home))
    monkeypatch.delenv("FIRMKIT_CACHE_DIR", raising=False)

    return fake_home


@pytest.fixture(autouse=True)
def reset_caches():
    """Reset module-level caches between tests."""
    from firmkit.core import platform

    platform.detect_platform.cache_clear()
    yield
