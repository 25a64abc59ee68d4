"""
Tests for engine configuration loading.
"""

from pathlib import Path

import pytest

from firmkit.config.settings import (
    DownloadConfig,
    GitConfig,
    InstallerConfig,
    load_config,
    parse_config,
)
from firmkit.core.exceptions import ConfigError


class TestDefaults:
    """Tests for default configuration values."""

    def test_defaults(self, isolated_home):
        config = InstallerConfig()
        assert config.jobs >= 1
        assert config.download == DownloadConfig()
        assert config.git == GitConfig()
        assert config.lock_timeout == 300.0
        assert config.orphan_max_age_hours == 24.0

    def test_retry_policy(self):
        download = DownloadConfig(attempts=4, backoff_base=0.5, backoff_cap=2)
        policy = download.retry_policy()
        assert policy.max_attempts == 4
        assert policy.delay(0) == 0.5
        assert policy.delay(5) == 2

    def test_with_overrides(self, tmp_path):
        config = InstallerConfig(cache_dir=tmp_path).with_overrides(jobs=2)
        assert config.jobs == 2
        assert config.cache_dir == tmp_path


class TestParseConfig:
    """Tests for parse_config."""

    def test_full_document(self, tmp_path):
        config = parse_config(
            {
                "cache_dir": str(tmp_path / "cache"),
                "jobs": 8,
                "download": {"attempts": 3, "backoff_base": 0.5, "timeout": 10},
                "git": {"executable": "/usr/bin/git", "update_branches": True},
                "lock_timeout": 60,
                "orphan_max_age_hours": 0,
            }
        )

        assert config.cache_dir == tmp_path / "cache"
        assert config.jobs == 8
        assert config.download.attempts == 3
        assert config.download.backoff_base == 0.5
        assert config.download.backoff_cap == 30.0
        assert config.download.timeout == 10.0
        assert config.git.executable == "/usr/bin/git"
        assert config.git.update_branches is True
        assert config.lock_timeout == 60.0
        assert config.orphan_max_age_hours == 0.0

    def test_cache_dir_expands_user(self, isolated_home):
        config = parse_config({"cache_dir": "~/fk"})
        assert config.cache_dir == isolated_home / "fk"

    @pytest.mark.parametrize(
        "data,message",
        [
            ({"workers": 4}, "Unknown key"),
            ({"jobs": 0}, "at least 1"),
            ({"jobs": "many"}, "must be an integer"),
            ({"lock_timeout": -1}, "must be positive"),
            ({"download": []}, "must be a mapping"),
            ({"download": {"retries": 3}}, "Unknown key"),
            ({"git": {"update_branches": "yes"}}, "true or false"),
            ({"git": {"executable": ""}}, "non-empty string"),
        ],
    )
    def test_invalid(self, data, message):
        with pytest.raises(ConfigError, match=message):
            parse_config(data)


class TestLoadConfig:
    """Tests for load_config."""

    def test_load_yaml(self, tmp_path):
        config_file = tmp_path / "firmkit.yaml"
        config_file.write_text(
            f"cache_dir: {tmp_path / 'cache'}\n"
            "jobs: 3\n"
            "download:\n"
            "  attempts: 2\n"
        )

        config = load_config(config_file, environ={})

        assert config.cache_dir == tmp_path / "cache"
        assert config.jobs == 3
        assert config.download.attempts == 2

    def test_environment_overrides_file(self, tmp_path):
        config_file = tmp_path / "firmkit.yaml"
        config_file.write_text("jobs: 3\n")

        config = load_config(
            config_file,
            environ={"FIRMKIT_CACHE_DIR": str(tmp_path / "env"), "FIRMKIT_JOBS": "6"},
        )

        assert config.cache_dir == tmp_path / "env"
        assert config.jobs == 6

    def test_no_file(self, tmp_path):
        config = load_config(None, environ={"FIRMKIT_CACHE_DIR": str(tmp_path)})
        assert config.cache_dir == tmp_path

    def test_empty_file(self, tmp_path, isolated_home):
        config_file = tmp_path / "firmkit.yaml"
        config_file.write_text("")
        assert load_config(config_file, environ={}).jobs >= 1

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(tmp_path / "missing.yaml", environ={})

    def test_invalid_yaml(self, tmp_path):
        config_file = tmp_path / "firmkit.yaml"
        config_file.write_text("jobs: [unclosed\n")
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_config(config_file, environ={})

    def test_not_a_mapping(self, tmp_path):
        config_file = tmp_path / "firmkit.yaml"
        config_file.write_text("- jobs\n")
        with pytest.raises(ConfigError, match="must be a mapping"):
            load_config(Path(config_file), environ={})
