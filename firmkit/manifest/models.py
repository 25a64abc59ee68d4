"""
Data model for manifests and installation plans.

A ``Manifest`` is the parsed form of the manifest document; an
``InstallationPlan`` is what ManifestResolver derives from it for one host
platform. Both are immutable.
"""

import hashlib
import string
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Tuple

from firmkit.core.platform import HostPlatform, PlatformMatcher
from firmkit.manifest.refs import GitRef

URL_PLACEHOLDERS = frozenset({"name", "version", "os", "arch", "suffix"})
TOOL_ENV_PLACEHOLDERS = frozenset({"install_dir", "version", "name"})
SDK_ENV_PLACEHOLDERS = frozenset({"sdk_path", "sdk_ref"})

EnvTemplates = Tuple[Tuple[str, str], ...]


def template_fields(template: str) -> set:
    """
    Names referenced by a ``str.format`` template.

    Raises:
        ValueError: If the template is malformed or uses positional fields
    """
    names = set()
    for _, field_name, _, _ in string.Formatter().parse(template):
        if field_name is None:
            continue
        if not field_name or field_name.isdigit():
            raise ValueError(f"Positional placeholder in template {template!r}")
        if not field_name.isidentifier():
            raise ValueError(f"Invalid placeholder {{{field_name}}} in {template!r}")
        names.add(field_name)
    return names


def render_template(template: str, **values: str) -> str:
    return template.format(**values)


@dataclass(frozen=True)
class ManifestEntry:
    """
    One downloadable build of a tool.

    Attributes:
        platform: Platforms this archive runs on
        version: Version the archive provides
        url: Download URL template
        sha256: Expected SHA256 of the archive (lowercase hex)
        archive_format: Canonical archive format name
        mirror: Optional alternate URL template
    """

    platform: PlatformMatcher
    version: str
    url: str
    sha256: str
    archive_format: str
    mirror: Optional[str] = None


@dataclass(frozen=True)
class ToolRequirement:
    """A tool as declared in the manifest, before resolution."""

    name: str
    constraint: str = "*"
    entries: Tuple[ManifestEntry, ...] = ()
    bin_dirs: Tuple[str, ...] = ("bin",)
    env: EnvTemplates = ()
    optional: bool = False


@dataclass(frozen=True)
class SdkSpec:
    """
    Vendor SDK to use.

    Either a managed clone of ``url`` at ``ref``, or a user-provided tree at
    ``local_path`` that is only ever read.

    Attributes:
        url: Repository URL (None for a local tree)
        ref: Target tag, branch or commit (None for a local tree)
        shallow: Clone with depth 1 when the target allows it
        submodules: Submodule paths to synchronize (empty: all)
        path_entries: Directories, relative to the checkout, added to PATH
        env: Environment variable templates (``{sdk_path}``, ``{sdk_ref}``)
        local_path: Existing SDK tree used in place, never cloned or moved
        patches: Patch files applied once to the managed checkout, in order
    """

    url: Optional[str]
    ref: Optional[GitRef]
    shallow: bool = True
    submodules: Tuple[str, ...] = ()
    path_entries: Tuple[str, ...] = ()
    env: EnvTemplates = ()
    local_path: Optional[Path] = None
    patches: Tuple[Path, ...] = ()

    def __post_init__(self):
        if self.local_path is not None:
            if self.url is not None or self.ref is not None:
                raise ValueError("A local SDK takes neither url nor ref")
            if self.patches:
                raise ValueError("Patches cannot be applied to a local SDK")
        elif not self.url or self.ref is None:
            raise ValueError("A managed SDK needs both url and ref")

    @classmethod
    def local(
        cls,
        path: Path,
        path_entries: Tuple[str, ...] = (),
        env: EnvTemplates = (),
    ) -> "SdkSpec":
        return cls(
            url=None,
            ref=None,
            path_entries=tuple(path_entries),
            env=tuple(env),
            local_path=Path(path),
        )

    @property
    def is_local(self) -> bool:
        return self.local_path is not None

    def describe(self) -> str:
        """``<path> (local)`` or the target ref, for log lines."""
        if self.is_local:
            return f"{self.local_path} (local)"
        return str(self.ref)

    @property
    def repo_name(self) -> str:
        """Last component of the URL without ``.git`` (e.g. ``esp-idf``)."""
        if self.is_local:
            return self.local_path.name or "sdk"
        name = self.url.rstrip("/").rsplit("/", 1)[-1]
        if ":" in name:  # scp-like URL without a path: host:repo.git
            name = name.rsplit(":", 1)[-1]
        if name.endswith(".git"):
            name = name[: -len(".git")]
        return name or "sdk"

    @property
    def url_hash(self) -> str:
        """Short stable hash distinguishing checkouts of different URLs."""
        key = self.url if self.url is not None else str(self.local_path)
        return hashlib.sha256(key.encode("utf-8")).hexdigest()[:16]


@dataclass(frozen=True)
class Manifest:
    """Parsed manifest document."""

    tools: Tuple[ToolRequirement, ...] = ()
    sdk: Optional[SdkSpec] = None


@dataclass(frozen=True)
class ToolSpec:
    """
    A tool resolved for one host platform.

    Attributes:
        name: Tool name
        version: Selected version
        constraint: Version constraint the selection satisfies
        matcher: Platform matcher of the selected entry
        platform: Host platform the tool is installed for
        url_template: Download URL template
        sha256: Expected archive checksum
        archive_format: Canonical archive format name
        mirror_template: Optional alternate URL template
        bin_dirs: Directories (relative to the install root) added to PATH
        env: Environment variable templates
    """

    name: str
    version: str
    constraint: str
    matcher: PlatformMatcher
    platform: HostPlatform
    url_template: str
    sha256: str
    archive_format: str
    mirror_template: Optional[str] = None
    bin_dirs: Tuple[str, ...] = ("bin",)
    env: EnvTemplates = ()

    def _render(self, template: str) -> str:
        return render_template(
            template,
            name=self.name,
            version=self.version,
            os=self.platform.os.value,
            arch=self.platform.arch.value,
            suffix=self.platform.toolchain_suffix(),
        )

    @property
    def url(self) -> str:
        return self._render(self.url_template)

    @property
    def mirror_url(self) -> Optional[str]:
        if self.mirror_template is None:
            return None
        return self._render(self.mirror_template)

    @property
    def platform_string(self) -> str:
        return self.platform.platform_string()


@dataclass(frozen=True)
class InstallationPlan:
    """Ordered tool specs, the optional SDK and the platform they target."""

    platform: HostPlatform
    tools: Tuple[ToolSpec, ...] = ()
    sdk: Optional[SdkSpec] = None
    skipped: Tuple[str, ...] = field(default=(), compare=False)

    def tool(self, name: str) -> Optional[ToolSpec]:
        for spec in self.tools:
            if spec.name == name:
                return spec
        return None

    def tool_names(self) -> Tuple[str, ...]:
        return tuple(spec.name for spec in self.tools)

    def versions(self) -> Dict[str, str]:
        return {spec.name: spec.version for spec in self.tools}


__all__ = [
    "URL_PLACEHOLDERS",
    "TOOL_ENV_PLACEHOLDERS",
    "SDK_ENV_PLACEHOLDERS",
    "template_fields",
    "render_template",
    "ManifestEntry",
    "ToolRequirement",
    "SdkSpec",
    "Manifest",
    "ToolSpec",
    "InstallationPlan",
]
