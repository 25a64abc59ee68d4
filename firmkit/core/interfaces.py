"""
Core interfaces for firmkit.

This module defines the narrow capability interfaces the engine depends on
for everything that crosses the process boundary. The orchestration logic is
written against these, so tests can substitute fakes that never start a
process.
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING, List, Optional, Sequence

if TYPE_CHECKING:
    from firmkit.core.cancellation import CancellationToken
    from firmkit.manifest.refs import GitRef


class VcsBackend(ABC):
    """
    Version-control operations on one working tree.

    Mutating operations (clone, fetch, checkout, submodule sync) may touch the
    network; query operations are local only.
    """

    # ------------------------------------------------------------------
    # Mutating operations
    # ------------------------------------------------------------------

    @abstractmethod
    def clone(
        self,
        url: str,
        destination: Path,
        ref: "GitRef",
        depth: Optional[int] = None,
        cancel: Optional["CancellationToken"] = None,
    ) -> None:
        """
        Clone ``url`` into ``destination`` and check out ``ref``.

        Args:
            url: Repository URL
            destination: Directory to create
            ref: Tag, branch or commit to check out
            depth: History depth for a shallow clone, None for full history
            cancel: Optional cancellation token

        Raises:
            CommandError: If the clone fails
        """
        pass

    @abstractmethod
    def fetch(
        self,
        path: Path,
        ref: "GitRef",
        depth: Optional[int] = None,
        cancel: Optional["CancellationToken"] = None,
    ) -> None:
        """Fetch ``ref`` from the ``origin`` remote."""
        pass

    @abstractmethod
    def checkout(
        self, path: Path, ref: "GitRef", cancel: Optional["CancellationToken"] = None
    ) -> None:
        """Check out a previously fetched ``ref``."""
        pass

    @abstractmethod
    def init_submodules(
        self,
        path: Path,
        submodules: Sequence[str],
        cancel: Optional["CancellationToken"] = None,
    ) -> None:
        """Register submodules in the repository configuration (no network)."""
        pass

    @abstractmethod
    def sync_submodules(
        self,
        path: Path,
        submodules: Sequence[str],
        depth: Optional[int] = None,
        cancel: Optional["CancellationToken"] = None,
    ) -> None:
        """Update submodules (recursively) to the revisions pinned by HEAD."""
        pass

    @abstractmethod
    def apply_patches(
        self,
        path: Path,
        patches: Sequence[Path],
        reverse: bool = False,
        cancel: Optional["CancellationToken"] = None,
    ) -> None:
        """
        Apply patch files to the working tree, in order.

        Args:
            path: Working tree root
            patches: Patch files in ``git apply`` format
            reverse: Undo the patches instead
            cancel: Optional cancellation token

        Raises:
            CommandError: If a patch does not apply
        """
        pass

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @abstractmethod
    def is_repository(self, path: Path) -> bool:
        """Whether ``path`` is the root of a working tree."""
        pass

    @abstractmethod
    def is_clean(self, path: Path) -> bool:
        """Whether tracked files (including submodules) are unmodified."""
        pass

    @abstractmethod
    def current_ref(self, path: Path) -> "GitRef":
        """The branch, tag or commit currently checked out."""
        pass

    @abstractmethod
    def head_commit(self, path: Path) -> str:
        """Full hash of HEAD."""
        pass

    @abstractmethod
    def resolve_commit(self, path: Path, ref: "GitRef") -> Optional[str]:
        """
        Commit a locally known ref points to, or None if it is not known.

        Branches resolve through their ``origin`` remote-tracking ref.
        """
        pass

    @abstractmethod
    def remote_url(self, path: Path) -> Optional[str]:
        """URL of the ``origin`` remote, if any."""
        pass

    @abstractmethod
    def list_submodules(self, path: Path) -> List[str]:
        """Paths of all submodules declared by the checked-out commit."""
        pass

    @abstractmethod
    def patches_applied(self, path: Path, patches: Sequence[Path]) -> bool:
        """Whether every patch is already applied (it reverses cleanly)."""
        pass


class ArchiveExtractor(ABC):
    """Unpacks a downloaded tool archive."""

    @abstractmethod
    def extract(
        self,
        archive_path: Path,
        destination: Path,
        archive_format: str,
        cancel: Optional["CancellationToken"] = None,
    ) -> None:
        """
        Extract ``archive_path`` into the existing directory ``destination``.

        Raises:
            ArchiveExtractionError: If the archive cannot be extracted
        """
        pass


__all__ = ["VcsBackend", "ArchiveExtractor"]
