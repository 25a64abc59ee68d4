"""YAML configuration for the firmkit installation engine.

The configuration controls how installs run (where the cache lives, how many
workers, retry and timeout behaviour), never what is installed; that comes
from the manifest.

Example ``firmkit.yaml``::

    cache_dir: ~/.firmkit
    jobs: 8
    download:
      attempts: 5
      backoff_base: 1.0
      backoff_cap: 30
      timeout: 30
    git:
      executable: git
      timeout: 600
      update_branches: false
    lock_timeout: 300
    orphan_max_age_hours: 24

Environment overrides: ``FIRMKIT_CACHE_DIR``, ``FIRMKIT_JOBS``.
"""

import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from firmkit.core.directory import CACHE_DIR_ENV, get_global_cache_dir
from firmkit.core.download import RetryPolicy
from firmkit.core.exceptions import ConfigError

JOBS_ENV = "FIRMKIT_JOBS"

_TOP_LEVEL_KEYS = {
    "cache_dir",
    "jobs",
    "download",
    "git",
    "lock_timeout",
    "orphan_max_age_hours",
}


def default_jobs() -> int:
    """Worker count tied to available parallelism."""
    try:
        return max(1, len(os.sched_getaffinity(0)))
    except AttributeError:  # not available on macOS/Windows
        return max(1, os.cpu_count() or 1)


@dataclass(frozen=True)
class DownloadConfig:
    """HTTP download behaviour."""

    attempts: int = 5
    backoff_base: float = 1.0
    backoff_cap: float = 30.0
    timeout: float = 30.0

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.attempts,
            base_delay=self.backoff_base,
            max_delay=self.backoff_cap,
        )


@dataclass(frozen=True)
class GitConfig:
    """git executable and SDK update behaviour."""

    executable: str = "git"
    timeout: float = 600.0
    update_branches: bool = False  # fast-forward branch checkouts on sync


@dataclass(frozen=True)
class InstallerConfig:
    """Complete engine configuration."""

    cache_dir: Path = field(default_factory=get_global_cache_dir)
    jobs: int = field(default_factory=default_jobs)
    download: DownloadConfig = field(default_factory=DownloadConfig)
    git: GitConfig = field(default_factory=GitConfig)
    lock_timeout: float = 300.0
    orphan_max_age_hours: float = 24.0

    def with_overrides(self, **changes: Any) -> "InstallerConfig":
        """Return a copy with some top-level fields replaced."""
        return replace(self, **changes)


def load_config(
    config_path: Optional[Path] = None, environ: Optional[Mapping[str, str]] = None
) -> InstallerConfig:
    """
    Load configuration from an optional YAML file plus environment overrides.

    Args:
        config_path: Path to firmkit.yaml (None: defaults only)
        environ: Environment to read overrides from (default: os.environ)

    Returns:
        Parsed and validated configuration

    Raises:
        ConfigError: If configuration is invalid
    """
    environ = os.environ if environ is None else environ
    data: Dict[str, Any] = {}

    if config_path is not None:
        if not config_path.exists():
            raise ConfigError(f"Configuration file not found: {config_path}")
        try:
            with open(config_path, "r", encoding="utf-8") as f:
                loaded = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML syntax: {e}") from e
        if loaded is not None:
            if not isinstance(loaded, dict):
                raise ConfigError("Configuration must be a mapping")
            data = dict(loaded)

    if environ.get(CACHE_DIR_ENV):
        data["cache_dir"] = environ[CACHE_DIR_ENV]
    if environ.get(JOBS_ENV):
        data["jobs"] = environ[JOBS_ENV]

    return parse_config(data)


def parse_config(data: Mapping[str, Any]) -> InstallerConfig:
    """
    Build an InstallerConfig from a plain mapping.

    Raises:
        ConfigError: On unknown keys or invalid values
    """
    _reject_unknown(data, _TOP_LEVEL_KEYS, "configuration")
    config = InstallerConfig()
    changes: Dict[str, Any] = {}

    if data.get("cache_dir") is not None:
        changes["cache_dir"] = Path(str(data["cache_dir"])).expanduser()
    if data.get("jobs") is not None:
        changes["jobs"] = _positive_int(data["jobs"], "jobs")
    if data.get("lock_timeout") is not None:
        changes["lock_timeout"] = _positive_float(data["lock_timeout"], "lock_timeout")
    if data.get("orphan_max_age_hours") is not None:
        changes["orphan_max_age_hours"] = _positive_float(
            data["orphan_max_age_hours"], "orphan_max_age_hours", allow_zero=True
        )
    if data.get("download") is not None:
        changes["download"] = _parse_section(
            DownloadConfig, data["download"], "download"
        )
    if data.get("git") is not None:
        changes["git"] = _parse_section(GitConfig, data["git"], "git")

    return replace(config, **changes)


def _parse_section(cls, value: Any, name: str):
    if not isinstance(value, dict):
        raise ConfigError(f"'{name}' must be a mapping")
    known = {f.name: f for f in fields(cls)}
    _reject_unknown(value, set(known), name)

    values: Dict[str, Any] = {}
    for key, raw in value.items():
        default = getattr(cls(), key)
        label = f"{name}.{key}"
        if isinstance(default, bool):
            if not isinstance(raw, bool):
                raise ConfigError(f"'{label}' must be true or false")
            values[key] = raw
        elif isinstance(default, int):
            values[key] = _positive_int(raw, label)
        elif isinstance(default, float):
            values[key] = _positive_float(raw, label)
        else:
            if not isinstance(raw, str) or not raw:
                raise ConfigError(f"'{label}' must be a non-empty string")
            values[key] = raw
    return cls(**values)


def _reject_unknown(data: Mapping[str, Any], known: set, name: str) -> None:
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigError(f"Unknown key(s) in {name}: {', '.join(unknown)}")


def _positive_int(value: Any, name: str) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"'{name}' must be an integer, got {value!r}") from None
    if number < 1:
        raise ConfigError(f"'{name}' must be at least 1, got {number}")
    return number


def _positive_float(value: Any, name: str, allow_zero: bool = False) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"'{name}' must be a number, got {value!r}") from None
    if number < 0 or (number == 0 and not allow_zero):
        raise ConfigError(f"'{name}' must be positive, got {number}")
    return number
