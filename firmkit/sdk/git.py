"""
VcsBackend implementation over the ``git`` executable.

Every command runs without a shell, with ``LC_ALL=C`` so that output can be
parsed, and with terminal prompts disabled so that a missing credential
fails instead of hanging.
"""

import logging
from pathlib import Path
from typing import List, Optional, Sequence

from firmkit.core.cancellation import CancellationToken
from firmkit.core.exceptions import CommandError
from firmkit.core.interfaces import VcsBackend
from firmkit.core.process import run_command
from firmkit.manifest.refs import GitRef, RefKind

logger = logging.getLogger(__name__)

GIT_ENV = {"LC_ALL": "C", "GIT_TERMINAL_PROMPT": "0"}


class GitCli(VcsBackend):
    """
    Git operations through the command line.

    Attributes:
        executable: git executable name or path
        timeout: Per-command timeout in seconds
    """

    def __init__(self, executable: str = "git", timeout: Optional[float] = 600.0):
        self.executable = executable
        self.timeout = timeout

    def _git(
        self,
        *args: str,
        cwd: Optional[Path] = None,
        cancel: Optional[CancellationToken] = None,
        check: bool = True,
    ):
        return run_command(
            [self.executable, *args],
            cwd=cwd,
            env=GIT_ENV,
            timeout=self.timeout,
            cancel=cancel,
            check=check,
        )

    def _output(self, path: Path, *args: str) -> Optional[str]:
        """Stripped stdout of a query, or None if it exits non-zero."""
        result = self._git(*args, cwd=path, check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip()

    # ------------------------------------------------------------------
    # Mutating operations
    # ------------------------------------------------------------------

    def clone(
        self,
        url: str,
        destination: Path,
        ref: GitRef,
        depth: Optional[int] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> None:
        logger.info(f"Cloning {url} ({ref}) into {destination}")
        if ref.kind is RefKind.COMMIT:
            # An arbitrary commit cannot be named with --branch; clone all of it
            self._git("clone", "--no-checkout", url, str(destination), cancel=cancel)
            self.checkout(destination, ref, cancel=cancel)
            return

        args = ["clone", "--branch", ref.name]
        if depth is not None:
            args += ["--depth", str(depth)]
        self._git(*args, url, str(destination), cancel=cancel)

    def fetch(
        self,
        path: Path,
        ref: GitRef,
        depth: Optional[int] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> None:
        if ref.kind is RefKind.BRANCH:
            refspec = f"+refs/heads/{ref.name}:refs/remotes/origin/{ref.name}"
        elif ref.kind is RefKind.TAG:
            refspec = f"+refs/tags/{ref.name}:refs/tags/{ref.name}"
        else:
            refspec = ref.name

        args = ["fetch", "--no-recurse-submodules"]
        if depth is not None:
            args += ["--depth", str(depth)]
        logger.info(f"Fetching {ref} in {path}")
        self._git(*args, "origin", refspec, cwd=path, cancel=cancel)

    def checkout(
        self, path: Path, ref: GitRef, cancel: Optional[CancellationToken] = None
    ) -> None:
        if ref.kind is RefKind.BRANCH:
            args = ["checkout", "-q", "-B", ref.name, f"origin/{ref.name}"]
        elif ref.kind is RefKind.TAG:
            args = ["checkout", "-q", "--detach", f"refs/tags/{ref.name}"]
        else:
            args = ["checkout", "-q", "--detach", ref.name]
        logger.debug(f"Checking out {ref} in {path}")
        self._git(*args, cwd=path, cancel=cancel)

    def init_submodules(
        self,
        path: Path,
        submodules: Sequence[str],
        cancel: Optional[CancellationToken] = None,
    ) -> None:
        self._git("submodule", "init", "--", *submodules, cwd=path, cancel=cancel)

    def sync_submodules(
        self,
        path: Path,
        submodules: Sequence[str],
        depth: Optional[int] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> None:
        args = ["submodule", "update", "--init", "--recursive"]
        if depth is not None:
            args += ["--depth", str(depth)]
        logger.debug(f"Updating submodule(s) {', '.join(submodules)} in {path}")
        self._git(*args, "--", *submodules, cwd=path, cancel=cancel)

    def apply_patches(
        self,
        path: Path,
        patches: Sequence[Path],
        reverse: bool = False,
        cancel: Optional[CancellationToken] = None,
    ) -> None:
        if not patches:
            return
        args = ["apply", "--whitespace=nowarn"]
        if reverse:
            args.append("--reverse")
        logger.info(
            f"{'Reverting' if reverse else 'Applying'} {len(patches)} patch(es) "
            f"in {path}"
        )
        self._git(*args, *(str(patch) for patch in patches), cwd=path, cancel=cancel)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def is_repository(self, path: Path) -> bool:
        if not (path / ".git").exists():
            return False
        toplevel = self._output(path, "rev-parse", "--show-toplevel")
        return toplevel is not None and Path(toplevel).resolve() == path.resolve()

    def is_clean(self, path: Path) -> bool:
        result = self._git(
            "status",
            "--porcelain",
            "--untracked-files=no",
            "--ignore-submodules=untracked",
            cwd=path,
        )
        return not result.stdout.strip()

    def current_ref(self, path: Path) -> GitRef:
        branch = self._output(path, "symbolic-ref", "-q", "--short", "HEAD")
        if branch:
            return GitRef.branch(branch)

        described = self._output(
            path, "describe", "--all", "--exact-match", "--always", "--abbrev=40"
        )
        if described and described.startswith("tags/"):
            return GitRef.tag(described[len("tags/") :])
        return GitRef.commit(self.head_commit(path))

    def head_commit(self, path: Path) -> str:
        return self._git("rev-parse", "HEAD", cwd=path).stdout.strip()

    def resolve_commit(self, path: Path, ref: GitRef) -> Optional[str]:
        if ref.kind is RefKind.BRANCH:
            name = f"refs/remotes/origin/{ref.name}"
        elif ref.kind is RefKind.TAG:
            name = f"refs/tags/{ref.name}"
        else:
            name = ref.name
        return self._output(path, "rev-parse", "-q", "--verify", f"{name}^{{commit}}")

    def remote_url(self, path: Path) -> Optional[str]:
        return self._output(path, "remote", "get-url", "origin")

    def list_submodules(self, path: Path) -> List[str]:
        if not (path / ".gitmodules").exists():
            return []
        try:
            result = self._git(
                "config", "--file", ".gitmodules", "--get-regexp", r"\.path$", cwd=path
            )
        except CommandError as e:
            # Exit status 1: no submodule has a path entry
            if e.returncode == 1:
                return []
            raise
        paths = []
        for line in result.stdout.splitlines():
            _, _, value = line.partition(" ")
            if value.strip():
                paths.append(value.strip())
        return paths

    def patches_applied(self, path: Path, patches: Sequence[Path]) -> bool:
        if not patches:
            return True
        # Applied patches are exactly the ones that would reverse cleanly
        result = self._git(
            "apply",
            "--check",
            "--reverse",
            *(str(patch) for patch in patches),
            cwd=path,
            check=False,
        )
        return result.returncode == 0


__all__ = ["GIT_ENV", "GitCli"]
