"""
Environment descriptor composition.

The descriptor is the only way downstream build steps discover installed
tools: an ordered list of PATH entries plus a mapping of environment
variables. It is a pure function of the installation plan and the resolved
installs, serialized as canonical JSON so that identical inputs always give
byte-identical files.

Ordering rules:
- PATH: each tool's bin directories in manifest declaration order (earlier
  tools shadow later ones), then the SDK's paths; duplicates keep their
  first position.
- Variables: tools in declaration order, then the SDK; the last writer wins.
"""

import hashlib
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple

from firmkit.core.filesystem import atomic_write
from firmkit.manifest.models import InstallationPlan, render_template
from firmkit.sdk.repository import SdkState
from firmkit.toolchain.installer import InstalledTool

logger = logging.getLogger(__name__)

DESCRIPTOR_VERSION = 1


@dataclass(frozen=True)
class EnvironmentDescriptor:
    """
    Resolved environment for downstream build steps.

    Attributes:
        path: PATH entries, highest priority first
        env: Environment variables
        fingerprint: SHA256 of the inputs the descriptor was derived from
    """

    path: Tuple[str, ...] = ()
    env: Dict[str, str] = field(default_factory=dict)
    fingerprint: str = ""

    def to_dict(self) -> dict:
        return {
            "env": dict(sorted(self.env.items())),
            "fingerprint": self.fingerprint,
            "path": list(self.path),
            "version": DESCRIPTOR_VERSION,
        }

    def to_json(self) -> str:
        """Canonical serialization (sorted keys, two-space indent, final newline)."""
        return json.dumps(self.to_dict(), indent=2, sort_keys=True) + "\n"

    @classmethod
    def from_dict(cls, data: dict) -> "EnvironmentDescriptor":
        """
        Raises:
            ValueError: If the descriptor version is unsupported or malformed
        """
        if data.get("version") != DESCRIPTOR_VERSION:
            raise ValueError(
                f"Unsupported environment descriptor version: {data.get('version')}"
            )
        path = data.get("path", [])
        env = data.get("env", {})
        if not isinstance(path, list) or not isinstance(env, dict):
            raise ValueError("Malformed environment descriptor")
        return cls(
            path=tuple(str(entry) for entry in path),
            env={str(k): str(v) for k, v in env.items()},
            fingerprint=str(data.get("fingerprint", "")),
        )

    def apply(self, base_env: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
        """
        Build a process environment from ``base_env`` (default: ``os.environ``).

        Descriptor variables override the base; descriptor PATH entries are
        prepended to the inherited PATH.
        """
        env = dict(os.environ if base_env is None else base_env)
        path_key = "PATH"
        if os.name == "nt":
            # Windows environment names are case-insensitive ("Path")
            path_key = next((k for k in env if k.upper() == "PATH"), "PATH")

        env.update(self.env)
        inherited = env.get(path_key, "")
        entries = list(self.path) + ([inherited] if inherited else [])
        env[path_key] = os.pathsep.join(entries)
        return env


class EnvironmentComposer:
    """
    Derives EnvironmentDescriptors and persists them.

    Example:
        >>> composer = EnvironmentComposer()
        >>> descriptor = composer.compose(plan, installed_tools, sdk_state)
        >>> composer.write(descriptor, cache_root / "environment.json")
        True
    """

    def compose(
        self,
        plan: InstallationPlan,
        tools: Mapping[str, InstalledTool],
        sdk_state: Optional[SdkState] = None,
    ) -> EnvironmentDescriptor:
        """
        Compose the descriptor for a fully installed plan.

        Args:
            plan: Installation plan
            tools: Installed tool for every tool in the plan, by name
            sdk_state: Synchronized SDK state (required when the plan has an SDK)

        Raises:
            ValueError: If an install or the SDK state is missing
        """
        path_entries: List[str] = []
        env: Dict[str, str] = {}
        inputs: Dict[str, object] = {
            "platform": plan.platform.platform_string(),
            "tools": [],
            "sdk": None,
        }

        for spec in plan.tools:
            installed = tools.get(spec.name)
            if installed is None:
                raise ValueError(f"No installation of '{spec.name}' to compose")

            install_dir = installed.install_path
            for bin_dir in spec.bin_dirs:
                path_entries.append(str(install_dir / bin_dir))

            values = {
                "install_dir": str(install_dir),
                "version": spec.version,
                "name": spec.name,
            }
            for name, template in spec.env:
                env[name] = render_template(template, **values)

            inputs["tools"].append(
                {
                    "name": spec.name,
                    "version": spec.version,
                    "platform": installed.platform,
                    "install_path": str(install_dir),
                    "archive_sha256": installed.archive_sha256,
                    "tree_sha256": installed.tree_sha256,
                    "bin": list(spec.bin_dirs),
                    "env": [list(pair) for pair in spec.env],
                }
            )

        if plan.sdk is not None:
            if sdk_state is None:
                raise ValueError("The plan has an SDK but no SDK state was given")
            sdk_path = sdk_state.path
            for entry in plan.sdk.path_entries:
                path_entries.append(str(sdk_path / entry))

            ref = plan.sdk.ref or sdk_state.current_ref
            values = {"sdk_path": str(sdk_path), "sdk_ref": ref.name if ref else ""}
            for name, template in plan.sdk.env:
                env[name] = render_template(template, **values)

            inputs["sdk"] = {
                "url": plan.sdk.url,
                "ref": ref.spec_string() if ref else None,
                "commit": sdk_state.commit,
                "patches": [str(patch) for patch in plan.sdk.patches],
                "path": str(sdk_path),
                "path_entries": list(plan.sdk.path_entries),
                "env": [list(pair) for pair in plan.sdk.env],
            }

        descriptor = EnvironmentDescriptor(
            path=_dedupe(path_entries),
            env=dict(sorted(env.items())),
            fingerprint=_fingerprint(inputs),
        )
        logger.debug(
            f"Composed environment {descriptor.fingerprint[:12]}: "
            f"{len(descriptor.path)} PATH entries, {len(descriptor.env)} variables"
        )
        return descriptor

    def write(self, descriptor: EnvironmentDescriptor, path: Path) -> bool:
        """
        Write the descriptor atomically unless the file already holds it.

        Returns:
            True if the file was written, False if it was already up to date
        """
        content = descriptor.to_json()
        path = Path(path)
        try:
            if path.read_text(encoding="utf-8") == content:
                logger.debug(f"Environment descriptor unchanged: {path}")
                return False
        except FileNotFoundError:
            pass

        atomic_write(path, content)
        logger.info(f"Wrote environment descriptor: {path}")
        return True


def load_descriptor(path: Path) -> EnvironmentDescriptor:
    """
    Read a descriptor written by ``EnvironmentComposer.write``.

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If the file is not a valid descriptor
    """
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"Malformed environment descriptor: {path}")
    return EnvironmentDescriptor.from_dict(data)


def _dedupe(entries: List[str]) -> Tuple[str, ...]:
    seen = set()
    unique = []
    for entry in entries:
        if entry not in seen:
            seen.add(entry)
            unique.append(entry)
    return tuple(unique)


def _fingerprint(inputs: Mapping[str, object]) -> str:
    canonical = json.dumps(inputs, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


__all__ = [
    "DESCRIPTOR_VERSION",
    "EnvironmentDescriptor",
    "EnvironmentComposer",
    "load_descriptor",
]
