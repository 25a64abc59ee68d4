"""
Manifest resolution: from a manifest to a concrete installation plan.

Selection rules for each tool, in order:

1. Entries whose version does not satisfy the tool's constraint are dropped.
   No satisfying entry on any platform means the constraint has no
   admissible value (``ManifestInvalid``).
2. Entries whose platform matcher does not accept the host are dropped.
   Nothing left means ``UnsupportedPlatform`` (optional tools are skipped).
3. The highest remaining version wins.
4. Among entries of that version the most specific matcher wins; ties go to
   the entry declared first.

Resolution has no side effects.
"""

import logging
from typing import List, Optional, Tuple

from firmkit.core.exceptions import ManifestInvalid, UnsupportedPlatform
from firmkit.core.platform import HostPlatform, detect_platform
from firmkit.manifest.models import (
    InstallationPlan,
    Manifest,
    ManifestEntry,
    SdkSpec,
    ToolRequirement,
    ToolSpec,
)
from firmkit.manifest.versions import VersionConstraint, version_key

logger = logging.getLogger(__name__)


class ManifestResolver:
    """
    Resolves manifests into installation plans.

    Example:
        >>> resolver = ManifestResolver()
        >>> plan = resolver.resolve(load_manifest(Path("firmkit.yaml")))
        >>> [spec.version for spec in plan.tools]
        ['3.24.0', '1.11.1']
    """

    def resolve(
        self,
        manifest: Manifest,
        host: Optional[HostPlatform] = None,
        sdk_spec: Optional[SdkSpec] = None,
    ) -> InstallationPlan:
        """
        Build the installation plan for ``host``.

        Args:
            manifest: Parsed manifest
            host: Target platform (default: the running host)
            sdk_spec: SDK to use instead of the manifest's ``sdk`` section

        Returns:
            One ToolSpec per required tool, in declaration order

        Raises:
            ManifestInvalid: If a constraint has no admissible version
            UnsupportedPlatform: If a required tool has no entry for host
        """
        host = host or detect_platform()
        specs: List[ToolSpec] = []
        skipped: List[str] = []

        for requirement in manifest.tools:
            spec = self.resolve_tool(requirement, host)
            if spec is None:
                skipped.append(requirement.name)
                continue
            specs.append(spec)

        plan = InstallationPlan(
            platform=host,
            tools=tuple(specs),
            sdk=sdk_spec if sdk_spec is not None else manifest.sdk,
            skipped=tuple(skipped),
        )
        logger.debug(
            f"Resolved plan for {host}: "
            + ", ".join(f"{s.name}={s.version}" for s in plan.tools)
        )
        return plan

    def resolve_tool(
        self, requirement: ToolRequirement, host: HostPlatform
    ) -> Optional[ToolSpec]:
        """
        Select the entry of one tool for ``host``.

        Returns:
            The resolved ToolSpec, or None for an optional tool that has no
            entry for the host platform

        Raises:
            ManifestInvalid: If the constraint has no admissible version
            UnsupportedPlatform: If a required tool has no entry for host
        """
        try:
            constraint = VersionConstraint.parse(requirement.constraint)
        except ValueError as e:
            raise ManifestInvalid(f"Tool '{requirement.name}': {e}") from e

        admissible = self._admissible(requirement, constraint)
        if not admissible:
            available = ", ".join(sorted({e.version for e in requirement.entries}))
            raise ManifestInvalid(
                f"Tool '{requirement.name}': no version satisfies "
                f"'{constraint}' (available: {available or 'none'})"
            )

        candidates = [
            (index, entry)
            for index, entry in admissible
            if entry.platform.matches(host)
        ]
        if not candidates:
            if requirement.optional:
                logger.info(
                    f"Skipping optional tool '{requirement.name}': "
                    f"no entry for {host}"
                )
                return None
            raise UnsupportedPlatform(requirement.name, host.platform_string())

        index, entry = self._select(candidates)
        logger.debug(
            f"{requirement.name}: selected {entry.version} for {host} "
            f"(entry #{index + 1}, matcher {entry.platform})"
        )
        return ToolSpec(
            name=requirement.name,
            version=entry.version,
            constraint=constraint.text,
            matcher=entry.platform,
            platform=host,
            url_template=entry.url,
            sha256=entry.sha256,
            archive_format=entry.archive_format,
            mirror_template=entry.mirror,
            bin_dirs=requirement.bin_dirs,
            env=requirement.env,
        )

    @staticmethod
    def _admissible(
        requirement: ToolRequirement, constraint: VersionConstraint
    ) -> List[Tuple[int, ManifestEntry]]:
        admissible = []
        for index, entry in enumerate(requirement.entries):
            try:
                allowed = constraint.allows(entry.version)
            except ValueError as e:
                raise ManifestInvalid(f"Tool '{requirement.name}': {e}") from e
            if allowed:
                admissible.append((index, entry))
        return admissible

    @staticmethod
    def _select(
        candidates: List[Tuple[int, ManifestEntry]]
    ) -> Tuple[int, ManifestEntry]:
        best_version = max(
            (entry.version for _, entry in candidates), key=version_key
        )
        # version_key treats "1.0" and "1.0.0" as equal; compare keys, not text
        best_key = version_key(best_version)
        same_version = [
            (index, entry)
            for index, entry in candidates
            if version_key(entry.version) == best_key
        ]
        # Highest specificity, then lowest declaration index
        return min(same_version, key=lambda c: (-c[1].platform.specificity, c[0]))


__all__ = ["ManifestResolver"]
