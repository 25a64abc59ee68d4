"""Manifest parser for firmkit.

This module reads manifest documents (YAML, or JSON which is parsed the same
way) and validates them into the immutable ``Manifest`` model. Structural
problems raise ``ManifestInvalid`` naming the offending field.
"""

import json
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

from firmkit.core.exceptions import ManifestInvalid
from firmkit.core.filesystem import (
    UnsupportedArchiveFormat,
    detect_archive_format,
    normalize_archive_format,
)
from firmkit.core.platform import PlatformMatcher
from firmkit.manifest.models import (
    SDK_ENV_PLACEHOLDERS,
    TOOL_ENV_PLACEHOLDERS,
    URL_PLACEHOLDERS,
    EnvTemplates,
    Manifest,
    ManifestEntry,
    SdkSpec,
    ToolRequirement,
    template_fields,
)
from firmkit.manifest.refs import GitRef
from firmkit.manifest.versions import ANY_VERSION, VersionConstraint

logger = logging.getLogger(__name__)

MANIFEST_VERSION = 1

_SHA256_RE = re.compile(r"^[0-9a-fA-F]{64}$")
_ENV_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_TOOL_KEYS = {"name", "version", "bin", "env", "optional", "entries"}
_ENTRY_KEYS = {"platform", "version", "url", "sha256", "format", "mirror"}
_MANAGED_SDK_KEYS = {"url", "ref", "shallow", "submodules", "patches"}
_SDK_KEYS = _MANAGED_SDK_KEYS | {"path", "env", "local"}


def load_manifest(manifest_path: Path) -> Manifest:
    """
    Load and validate a manifest file.

    Args:
        manifest_path: Path to a ``.yaml``/``.yml`` or ``.json`` manifest

    Returns:
        Parsed manifest

    Raises:
        ManifestInvalid: If the file is missing, unreadable or invalid
    """
    manifest_path = Path(manifest_path)
    if not manifest_path.exists():
        raise ManifestInvalid(f"Manifest file not found: {manifest_path}")

    try:
        text = manifest_path.read_text(encoding="utf-8")
    except OSError as e:
        raise ManifestInvalid(f"Cannot read manifest {manifest_path}: {e}") from e

    try:
        if manifest_path.suffix.lower() == ".json":
            data = json.loads(text)
        else:
            data = yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ManifestInvalid(f"Invalid manifest syntax in {manifest_path}: {e}") from e

    if data is None:
        raise ManifestInvalid(f"Manifest file is empty: {manifest_path}")

    manifest = parse_manifest(data, base_dir=manifest_path.parent)
    logger.debug(
        f"Loaded manifest {manifest_path}: {len(manifest.tools)} tool(s), "
        f"sdk={'yes' if manifest.sdk else 'no'}"
    )
    return manifest


def parse_manifest(data: Any, base_dir: Optional[Path] = None) -> Manifest:
    """
    Validate a manifest document that has already been deserialized.

    Relative SDK paths (``local``, ``patches``) are resolved against
    ``base_dir`` when given.

    Raises:
        ManifestInvalid: If the document is structurally malformed
    """
    if not isinstance(data, dict):
        raise ManifestInvalid("Manifest must be a mapping")

    if "version" not in data:
        raise ManifestInvalid("Missing required field: version")
    if data["version"] != MANIFEST_VERSION:
        raise ManifestInvalid(
            f"Unsupported manifest version: {data['version']} "
            f"(expected {MANIFEST_VERSION})"
        )
    _reject_unknown(data, {"version", "tools", "sdk"}, "manifest")

    tools = tuple(
        _parse_tool(tool_data, index)
        for index, tool_data in enumerate(_tool_list(data.get("tools")))
    )
    seen = set()
    for tool in tools:
        if tool.name in seen:
            raise ManifestInvalid(f"Duplicate tool name: {tool.name}")
        seen.add(tool.name)

    sdk = parse_sdk(data["sdk"], base_dir) if data.get("sdk") is not None else None
    return Manifest(tools=tools, sdk=sdk)


def parse_sdk(data: Any, base_dir: Optional[Path] = None) -> SdkSpec:
    """
    Validate the ``sdk`` section of a manifest.

    Also used to build an SdkSpec from a standalone mapping. The section
    names either a repository (``url`` and ``ref``) or an existing tree
    (``local``); relative ``local`` and ``patches`` paths are taken from
    ``base_dir``.

    Raises:
        ManifestInvalid: If the section is malformed
    """
    if not isinstance(data, dict):
        raise ManifestInvalid("'sdk' must be a mapping")
    _reject_unknown(data, _SDK_KEYS, "sdk")

    path_entries = _relative_paths(data.get("path"), "sdk.path", default=())
    env = _env_templates(data.get("env"), SDK_ENV_PLACEHOLDERS, "sdk.env")

    local = _optional_str(data, "local", "sdk")
    if local:
        managed_only = sorted(_MANAGED_SDK_KEYS & set(data))
        if managed_only:
            raise ManifestInvalid(
                f"sdk: 'local' cannot be combined with {', '.join(managed_only)}"
            )
        return SdkSpec.local(
            _resolve(local, base_dir), path_entries=path_entries, env=env
        )

    url = _required_str(data, "url", "sdk")
    ref_text = _required_str(data, "ref", "sdk")
    try:
        ref = GitRef.parse(ref_text)
    except ValueError as e:
        raise ManifestInvalid(f"sdk.ref: {e}") from e

    patches = _str_list(data.get("patches"), "sdk.patches", default=())
    return SdkSpec(
        url=url,
        ref=ref,
        shallow=_bool(data, "shallow", True, "sdk"),
        submodules=_str_list(data.get("submodules"), "sdk.submodules", default=()),
        path_entries=path_entries,
        env=env,
        patches=tuple(_resolve(patch, base_dir) for patch in patches),
    )


def _resolve(path: str, base_dir: Optional[Path]) -> Path:
    resolved = Path(path).expanduser()
    if base_dir is not None and not resolved.is_absolute():
        resolved = Path(base_dir) / resolved
    return resolved


def _tool_list(value: Any) -> List[Dict[str, Any]]:
    """Accept either a list of tools or a ``name -> definition`` mapping."""
    if value is None:
        return []
    if isinstance(value, list):
        return value
    if isinstance(value, dict):
        tools = []
        for name, definition in value.items():
            if not isinstance(definition, dict):
                raise ManifestInvalid(f"Tool '{name}' must be a mapping")
            tools.append({"name": name, **definition})
        return tools
    raise ManifestInvalid("'tools' must be a list")


def _parse_tool(data: Any, index: int) -> ToolRequirement:
    if not isinstance(data, dict):
        raise ManifestInvalid(f"Tool #{index + 1} must be a mapping")
    name = _required_str(data, "name", f"tool #{index + 1}")
    where = f"tool '{name}'"
    _reject_unknown(data, _TOOL_KEYS, where)

    constraint = _optional_str(data, "version", where) or ANY_VERSION
    try:
        VersionConstraint.parse(constraint)
    except ValueError as e:
        raise ManifestInvalid(f"{where}: {e}") from e

    entries_data = data.get("entries")
    if not isinstance(entries_data, list) or not entries_data:
        raise ManifestInvalid(f"{where} must declare at least one entry")

    return ToolRequirement(
        name=name,
        constraint=constraint,
        entries=tuple(
            _parse_entry(entry, f"{where} entry #{i + 1}")
            for i, entry in enumerate(entries_data)
        ),
        bin_dirs=_relative_paths(data.get("bin"), f"{where} bin", default=("bin",)),
        env=_env_templates(data.get("env"), TOOL_ENV_PLACEHOLDERS, f"{where} env"),
        optional=_bool(data, "optional", False, where),
    )


def _parse_entry(data: Any, where: str) -> ManifestEntry:
    if not isinstance(data, dict):
        raise ManifestInvalid(f"{where} must be a mapping")
    _reject_unknown(data, _ENTRY_KEYS, where)

    try:
        matcher = PlatformMatcher.parse(data.get("platform"))
    except ValueError as e:
        raise ManifestInvalid(f"{where}: {e}") from e

    version = _required_str(data, "version", where)
    url = _url_template(data, "url", where)
    mirror = _url_template(data, "mirror", where) if data.get("mirror") else None

    sha256 = _required_str(data, "sha256", where)
    if not _SHA256_RE.match(sha256):
        raise ManifestInvalid(f"{where}: sha256 must be 64 hexadecimal characters")

    try:
        fmt = data.get("format")
        if fmt is not None:
            if not isinstance(fmt, str):
                raise ManifestInvalid(f"{where}: 'format' must be a string")
            archive_format = normalize_archive_format(fmt)
        else:
            archive_format = detect_archive_format(url.split("?", 1)[0])
    except UnsupportedArchiveFormat as e:
        raise ManifestInvalid(f"{where}: {e}") from e

    return ManifestEntry(
        platform=matcher,
        version=version,
        url=url,
        sha256=sha256.lower(),
        archive_format=archive_format,
        mirror=mirror,
    )


# ============================================================================
# Field helpers
# ============================================================================


def _reject_unknown(data: Mapping[str, Any], known: set, where: str) -> None:
    unknown = sorted(str(key) for key in set(data) - known)
    if unknown:
        raise ManifestInvalid(f"Unknown field(s) in {where}: {', '.join(unknown)}")


def _required_str(data: Mapping[str, Any], key: str, where: str) -> str:
    value = _optional_str(data, key, where)
    if not value:
        raise ManifestInvalid(f"{where} missing required field: {key}")
    return value


def _optional_str(data: Mapping[str, Any], key: str, where: str) -> Optional[str]:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        # YAML turns 3.10 into the float 3.1; refuse rather than guess
        raise ManifestInvalid(
            f"{where}: '{key}' must be a string (quote numeric versions), "
            f"got {value!r}"
        )
    return value.strip()


def _bool(data: Mapping[str, Any], key: str, default: bool, where: str) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ManifestInvalid(f"{where}: '{key}' must be true or false")
    return value


def _str_list(value: Any, where: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    if value is None:
        return default
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list) or not all(
        isinstance(item, str) and item.strip() for item in value
    ):
        raise ManifestInvalid(f"{where} must be a list of non-empty strings")
    return tuple(item.strip() for item in value)


def _relative_paths(
    value: Any, where: str, default: Tuple[str, ...]
) -> Tuple[str, ...]:
    paths = _str_list(value, where, default)
    for path in paths:
        parts = Path(path).parts
        if Path(path).is_absolute() or path.startswith(("/", "\\")) or ".." in parts:
            raise ManifestInvalid(f"{where}: {path!r} must be a relative path")
    return paths


def _url_template(data: Mapping[str, Any], key: str, where: str) -> str:
    url = _required_str(data, key, where)
    _check_placeholders(url, URL_PLACEHOLDERS, f"{where} {key}")
    return url


def _env_templates(value: Any, allowed: frozenset, where: str) -> EnvTemplates:
    if value is None:
        return ()
    if not isinstance(value, dict):
        raise ManifestInvalid(f"{where} must be a mapping")
    templates = []
    for name, template in value.items():
        if not isinstance(name, str) or not _ENV_NAME_RE.match(name):
            raise ManifestInvalid(f"{where}: invalid variable name {name!r}")
        if name.upper() == "PATH":
            raise ManifestInvalid(f"{where}: PATH is composed from bin directories")
        if not isinstance(template, str):
            raise ManifestInvalid(f"{where}: value of {name} must be a string")
        _check_placeholders(template, allowed, f"{where} {name}")
        templates.append((name, template))
    return tuple(templates)


def _check_placeholders(template: str, allowed: frozenset, where: str) -> None:
    try:
        names = template_fields(template)
    except ValueError as e:
        raise ManifestInvalid(f"{where}: {e}") from e
    unknown = sorted(names - allowed)
    if unknown:
        raise ManifestInvalid(
            f"{where}: unknown placeholder(s) {', '.join(unknown)} "
            f"(allowed: {', '.join(sorted(allowed))})"
        )


__all__ = ["MANIFEST_VERSION", "load_manifest", "parse_manifest", "parse_sdk"]
