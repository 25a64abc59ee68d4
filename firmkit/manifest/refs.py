"""
Git references naming the SDK revision to check out.

A GitRef is a closed tagged value: a tag, a branch, or a commit.

Ref strings use the following format:
- ``commit:<hash>``: the commit ``<hash>`` (a full clone is needed)
- ``tag:<tag>``: the tag ``<tag>``
- ``branch:<branch>``: the branch ``<branch>``
- ``v<major>.<minor>`` or ``<major>.<minor>``: the tag ``v<major>.<minor>``
- ``<branch>``: the branch ``<branch>``
"""

from dataclasses import dataclass
from enum import Enum


class RefKind(Enum):
    TAG = "tag"
    BRANCH = "branch"
    COMMIT = "commit"


@dataclass(frozen=True)
class GitRef:
    """A reference to a git tag, branch or commit."""

    kind: RefKind
    name: str

    def __post_init__(self):
        if not self.name or not self.name.strip():
            raise ValueError("Git ref name must be non-empty")

    @classmethod
    def tag(cls, name: str) -> "GitRef":
        return cls(RefKind.TAG, name)

    @classmethod
    def branch(cls, name: str) -> "GitRef":
        return cls(RefKind.BRANCH, name)

    @classmethod
    def commit(cls, sha: str) -> "GitRef":
        return cls(RefKind.COMMIT, sha.lower())

    @classmethod
    def parse(cls, ref_str: str) -> "GitRef":
        """
        Parse a ref string (see module docstring).

        Raises:
            ValueError: If the string is empty or has an empty name

        Example:
            >>> GitRef.parse("5.1")
            GitRef(kind=<RefKind.TAG: 'tag'>, name='v5.1')
            >>> GitRef.parse("release/v5.1").kind
            <RefKind.BRANCH: 'branch'>
        """
        text = ref_str.strip()
        if not text:
            raise ValueError(f"Ref string {ref_str!r} must be non-empty")

        prefix, sep, rest = text.partition(":")
        if sep and prefix in ("commit", "tag", "branch"):
            if prefix == "commit":
                return cls.commit(rest.strip())
            return cls(RefKind(prefix), rest.strip())

        if text[0].isdigit():
            return cls.tag(f"v{text}")
        if text[0] == "v" and len(text) > 1 and text[1].isdigit():
            return cls.tag(text)
        return cls.branch(text)

    def matches(self, other: "GitRef") -> bool:
        """
        Whether ``other`` denotes the same ref.

        Commits compare by prefix so an abbreviated hash matches the full one.
        """
        if self.kind != other.kind:
            return False
        if self.kind is RefKind.COMMIT:
            shorter, longer = sorted((self.name, other.name), key=len)
            return longer.startswith(shorter)
        return self.name == other.name

    def spec_string(self) -> str:
        """Round-trippable ``kind:name`` form."""
        return f"{self.kind.value}:{self.name}"

    def __str__(self) -> str:
        return f"{self.kind.value.capitalize()} {self.name}"


__all__ = ["RefKind", "GitRef"]
