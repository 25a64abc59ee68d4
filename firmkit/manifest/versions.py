"""
Version constraints for manifest tool requirements.

Supported forms:
- ``*``, ``latest`` or absent: any version
- PEP 440 specifier sets: ``>=2.0,<3.0``, ``==1.2.*``, ``~=3.11``
- a bare literal: the entry version string must match exactly. Vendor
  versions such as ``esp-12.2.0_20230208`` are not PEP 440, so literals are
  compared as strings.
"""

import re
from dataclasses import dataclass
from typing import Optional, Tuple

from packaging.specifiers import InvalidSpecifier, SpecifierSet
from packaging.version import InvalidVersion, Version

ANY_VERSION = "*"
_ANY_ALIASES = {"", ANY_VERSION, "latest"}
_SPECIFIER_START = ("<", ">", "=", "!", "~")


@dataclass(frozen=True)
class VersionConstraint:
    """A parsed version constraint."""

    text: str
    specifier: Optional[SpecifierSet] = None
    literal: Optional[str] = None

    @classmethod
    def parse(cls, text: Optional[str]) -> "VersionConstraint":
        """
        Parse a constraint string.

        Raises:
            ValueError: If a specifier set is malformed
        """
        text = (text or "").strip()
        if text.lower() in _ANY_ALIASES:
            return cls(ANY_VERSION)

        if text.startswith(_SPECIFIER_START) or "*" in text:
            spec_text = text if text.startswith(_SPECIFIER_START) else f"=={text}"
            try:
                return cls(text, specifier=SpecifierSet(spec_text))
            except InvalidSpecifier as e:
                raise ValueError(f"Invalid version constraint {text!r}: {e}") from e

        return cls(text, literal=text)

    @property
    def is_any(self) -> bool:
        return self.specifier is None and self.literal is None

    def allows(self, version: str) -> bool:
        """
        Check whether ``version`` satisfies this constraint.

        Raises:
            ValueError: If a specifier set is applied to a non-PEP 440 version
        """
        if self.is_any:
            return True
        if self.literal is not None:
            return version == self.literal
        try:
            parsed = Version(version)
        except InvalidVersion:
            raise ValueError(
                f"Version {version!r} is not PEP 440 and cannot be compared "
                f"against constraint {self.text!r}"
            ) from None
        return parsed in self.specifier

    def __str__(self) -> str:
        return self.text


def version_key(version: str) -> Tuple:
    """
    Sortable key for a version string.

    PEP 440 versions sort by their semantics; anything else falls back to its
    numeric components and sorts below every PEP 440 version.

    Example:
        >>> sorted(["2.4", "10.0", "2.10"], key=version_key)
        ['2.4', '2.10', '10.0']
    """
    try:
        return (1, Version(version), ())
    except InvalidVersion:
        parts = re.split(r"[.\-_+]", version)
        return (0, None, tuple(int(p) if p.isdigit() else 0 for p in parts))


__all__ = ["ANY_VERSION", "VersionConstraint", "version_key"]
