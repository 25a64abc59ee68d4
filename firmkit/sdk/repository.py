"""
Git-based vendor SDK working copy.

One working tree per repository URL lives at ``<cache>/sdk/<repo>-<urlhash>``
with a lock file and a JSON state file beside it:

    sdk/esp-idf-1f2e3d4c5b6a7988/
    sdk/esp-idf-1f2e3d4c5b6a7988.lock
    sdk/esp-idf-1f2e3d4c5b6a7988.state.json

Every mutating operation holds the lock, so two processes never interleave
checkouts of the same tree. Local modifications are never discarded by
``sync``; only an explicit ``reset`` does that. Patches listed by the spec
are applied once after checkout and recorded in the state file, so that
they can be reverted before the tree moves to another ref.

A local SDK (``SdkSpec.local``) is a user-provided tree. It is observed in
place and never cloned, fetched, patched or reset.

State machine::

    ABSENT -> CLONING -> SYNCING -> READY
                 \\          \\
                  -> FAILED   -> FAILED

FAILED blocks ``sync`` only when the tree was left half-updated
(``needs_reset``); a failed clone or fetch leaves nothing to repair and is
retried by the next ``sync``.
"""

import json
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple

from firmkit.config.settings import InstallerConfig
from firmkit.core.cancellation import CancellationToken, ensure_token
from firmkit.core.directory import CacheLayout, sanitize_component
from firmkit.core.exceptions import (
    CommandError,
    DirtyCheckout,
    OperationCancelled,
    SdkSyncFailure,
)
from firmkit.core.filesystem import (
    FilesystemError,
    atomic_move_dir,
    atomic_write,
    safe_rmtree,
)
from firmkit.core.interfaces import VcsBackend
from firmkit.core.locking import LockManager, LockTimeout
from firmkit.manifest.models import SdkSpec
from firmkit.manifest.refs import GitRef, RefKind
from firmkit.sdk.git import GitCli

logger = logging.getLogger(__name__)


class SdkStatus(Enum):
    ABSENT = "absent"
    CLONING = "cloning"
    SYNCING = "syncing"
    READY = "ready"
    FAILED = "failed"


@dataclass(frozen=True)
class SdkState:
    """
    Observed state of an SDK working tree.

    Attributes:
        path: Working tree location
        status: Lifecycle status
        current_ref: Ref checked out (None when absent)
        commit: HEAD commit hash
        dirty: Tracked files have local modifications
        last_synced: ISO 8601 UTC time of the last successful sync
        reason: Failure reason when status is FAILED
        needs_reset: The failure left the tree half-updated; only reset recovers
        patches: Patch files applied to the tree, in order
    """

    path: Path
    status: SdkStatus
    current_ref: Optional[GitRef] = None
    commit: Optional[str] = None
    dirty: bool = False
    last_synced: Optional[str] = None
    reason: Optional[str] = None
    needs_reset: bool = False
    patches: Tuple[str, ...] = ()

    @property
    def is_ready(self) -> bool:
        return self.status is SdkStatus.READY

    def to_dict(self) -> dict:
        return {
            "path": str(self.path),
            "status": self.status.value,
            "current_ref": self.current_ref.spec_string() if self.current_ref else None,
            "commit": self.commit,
            "dirty": self.dirty,
            "last_synced": self.last_synced,
            "reason": self.reason,
            "needs_reset": self.needs_reset,
            "patches": list(self.patches),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SdkState":
        ref = data.get("current_ref")
        return cls(
            path=Path(data["path"]),
            status=SdkStatus(data["status"]),
            current_ref=GitRef.parse(ref) if ref else None,
            commit=data.get("commit"),
            dirty=bool(data.get("dirty", False)),
            last_synced=data.get("last_synced"),
            reason=data.get("reason"),
            needs_reset=bool(data.get("needs_reset", False)),
            patches=tuple(data.get("patches", ())),
        )


class SdkRepository:
    """
    Manages SDK working copies under a cache root.

    Example:
        >>> repo = SdkRepository(CacheLayout(cache_root))
        >>> state = repo.sync(SdkSpec(url, GitRef.parse("v5.1")))
        >>> print(state.path, state.current_ref)
    """

    def __init__(
        self,
        layout: CacheLayout,
        vcs: Optional[VcsBackend] = None,
        config: Optional[InstallerConfig] = None,
        lock_manager: Optional[LockManager] = None,
    ):
        """
        Initialize SDK repository manager.

        Args:
            layout: Cache layout holding the ``sdk/`` directory
            vcs: Version control backend (default: GitCli from the config)
            config: Engine configuration (git settings, lock timeout, jobs)
            lock_manager: Lock manager (default: one over ``layout.lock_dir``)
        """
        self.layout = layout
        self.config = config or InstallerConfig(cache_dir=layout.root)
        self.vcs = vcs or GitCli(
            executable=self.config.git.executable, timeout=self.config.git.timeout
        )
        self._lock_manager = lock_manager

    @property
    def lock_manager(self) -> LockManager:
        if self._lock_manager is None:
            self._lock_manager = LockManager(self.layout.lock_dir)
        return self._lock_manager

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def checkout_dir(self, spec: SdkSpec) -> Path:
        if spec.is_local:
            return spec.local_path
        name = f"{sanitize_component(spec.repo_name)}-{spec.url_hash}"
        return self.layout.sdk_dir / name

    def lock_path(self, spec: SdkSpec) -> Path:
        path = self.checkout_dir(spec)
        return path.with_name(f"{path.name}.lock")

    def state_path(self, spec: SdkSpec) -> Path:
        path = self.checkout_dir(spec)
        return path.with_name(f"{path.name}.state.json")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def sync(
        self, spec: SdkSpec, cancel: Optional[CancellationToken] = None
    ) -> SdkState:
        """
        Bring the working tree to ``spec.ref``.

        Clones when no working tree exists. A clean tree at another ref is
        fetched and checked out; submodules are then updated to the revisions
        pinned by the new commit, and pending patches are applied. A local SDK
        is only observed.

        Returns:
            State with ``current_ref == spec.ref``, or the unchanged state of a
            dirty tree that is already at ``spec.ref``

        Raises:
            DirtyCheckout: If a modified tree would have to move
            SdkSyncFailure: If a git operation fails, the tree belongs to a
                different URL, a patch file is missing, a local SDK does not
                exist, or a previous failure requires a reset
            OperationCancelled: If the token is cancelled
        """
        if spec.is_local:
            ensure_token(cancel).raise_if_cancelled()
            return self._local_state(spec, required=True)
        return self._locked(spec, cancel, fresh=False)

    def reset(
        self, spec: SdkSpec, cancel: Optional[CancellationToken] = None
    ) -> SdkState:
        """
        Discard the working tree (including local modifications) and re-clone.

        Raises:
            SdkSyncFailure: If removal or the clone fails, or the SDK is local
            OperationCancelled: If the token is cancelled
        """
        if spec.is_local:
            raise SdkSyncFailure(
                f"Local SDK at {spec.local_path} is not managed and is never reset"
            )
        return self._locked(spec, cancel, fresh=True)

    def state(self, spec: SdkSpec) -> SdkState:
        """Describe the working tree without modifying it."""
        if spec.is_local:
            return self._local_state(spec, required=False)

        path = self.checkout_dir(spec)
        persisted = self._load_state(spec)

        if not self.vcs.is_repository(path):
            if persisted is not None and persisted.status is SdkStatus.FAILED:
                return replace(persisted, path=path)
            return SdkState(path=path, status=SdkStatus.ABSENT)

        status = persisted.status if persisted is not None else SdkStatus.READY
        last_synced = persisted.last_synced if persisted is not None else None
        patches = persisted.patches if persisted is not None else ()
        observed = self._observe(path, status, last_synced, patches=patches)
        if persisted is not None and status is SdkStatus.FAILED:
            observed = replace(
                observed, reason=persisted.reason, needs_reset=persisted.needs_reset
            )
        return observed

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _local_state(self, spec: SdkSpec, required: bool) -> SdkState:
        path = spec.local_path
        if not path.is_dir():
            if required:
                raise SdkSyncFailure(f"Local SDK {path} does not exist")
            return SdkState(path=path, status=SdkStatus.ABSENT)
        if not self.vcs.is_repository(path):
            logger.debug(f"Using local SDK at {path} (not a git working tree)")
            return SdkState(path=path, status=SdkStatus.READY)
        state = self._observe(path, SdkStatus.READY, None)
        logger.debug(f"Using local SDK at {path} ({state.current_ref})")
        return state

    def _locked(
        self, spec: SdkSpec, cancel: Optional[CancellationToken], fresh: bool
    ) -> SdkState:
        cancel = ensure_token(cancel)
        cancel.raise_if_cancelled()
        missing = [str(patch) for patch in spec.patches if not patch.is_file()]
        if missing:
            raise SdkSyncFailure(f"Patch file(s) not found: {', '.join(missing)}")
        try:
            self.layout.sdk_dir.mkdir(parents=True, exist_ok=True)
            with self.lock_manager.path_lock(
                self.lock_path(spec), timeout=self.config.lock_timeout
            ):
                return self._sync_locked(spec, cancel, fresh)
        except LockTimeout as e:
            raise SdkSyncFailure(str(e)) from e
        except CommandError as e:
            raise SdkSyncFailure(f"git failed: {e}") from e
        except OSError as e:
            raise SdkSyncFailure(f"SDK filesystem error: {e}") from e

    def _sync_locked(
        self, spec: SdkSpec, cancel: CancellationToken, fresh: bool
    ) -> SdkState:
        path = self.checkout_dir(spec)
        persisted = self._load_state(spec)

        if fresh:
            self._remove(spec, path)
            persisted = None

        if not self.vcs.is_repository(path):
            if path.exists():
                raise SdkSyncFailure(
                    f"{path} exists but is not a git working tree; reset to replace it"
                )
            self._run_phase(spec, SdkStatus.CLONING, self._clone, spec, path, cancel)
        else:
            if persisted is not None and persisted.needs_reset:
                raise SdkSyncFailure(
                    f"Previous sync of {path} failed ({persisted.reason}); "
                    "reset the SDK to recover"
                )
            moved = self._update(spec, path, persisted, cancel)
            last_synced = persisted.last_synced if persisted else None
            # A dirty tree at the target (None) only receives pending patches
            already_synced = moved is None or (
                moved is False and persisted is not None and persisted.is_ready
            )
            if already_synced:
                recorded = persisted.patches if persisted else ()
                if not self._pending_patches(spec, path):
                    return self._observe(
                        path,
                        SdkStatus.READY,
                        last_synced,
                        current_ref=spec.ref,
                        patches=recorded,
                    )
                self._run_phase(
                    spec, SdkStatus.SYNCING, self._apply_patches, spec, path, cancel
                )
                return self._finish(spec, path, last_synced)

        self._run_phase(
            spec, SdkStatus.SYNCING, self._sync_submodules, spec, path, cancel
        )
        self._run_phase(
            spec, SdkStatus.SYNCING, self._apply_patches, spec, path, cancel
        )
        return self._finish(spec, path, _now())

    def _finish(
        self, spec: SdkSpec, path: Path, last_synced: Optional[str]
    ) -> SdkState:
        state = self._observe(
            path,
            SdkStatus.READY,
            last_synced,
            current_ref=spec.ref,
            patches=tuple(str(patch) for patch in spec.patches),
        )
        self._save_state(spec, state)
        logger.info(f"SDK ready at {path} ({spec.ref}, {state.commit})")
        return state

    def _update(
        self,
        spec: SdkSpec,
        path: Path,
        persisted: Optional[SdkState],
        cancel: CancellationToken,
    ) -> Optional[bool]:
        """
        Move an existing working tree to ``spec.ref``.

        Patches recorded by the previous sync are reverted before the move;
        any other modification blocks it.

        Returns:
            True if the tree moved, False if it was already there, None for a
            dirty tree already at the target
        """
        origin = self.vcs.remote_url(path)
        if origin != spec.url:
            raise SdkSyncFailure(
                f"SDK checkout at {path} tracks {origin!r}, not {spec.url!r}; "
                "reset the SDK to replace it"
            )

        clean = self.vcs.is_clean(path)
        at_target = self._is_at(path, spec.ref)
        recorded = [Path(patch) for patch in persisted.patches] if persisted else []

        if at_target and not clean:
            if not recorded:
                logger.warning(
                    f"SDK checkout at {path} has local modifications; "
                    "leaving it and its submodules untouched"
                )
            return None

        update_branch = (
            at_target
            and spec.ref.kind is RefKind.BRANCH
            and self.config.git.update_branches
        )
        if at_target and not update_branch:
            logger.debug(f"SDK checkout at {path} already at {spec.ref}")
            return False

        if not clean and not self._revert_patches(path, recorded, cancel):
            current = self.vcs.current_ref(path)
            raise DirtyCheckout(path, str(current), str(spec.ref))

        # Fetching leaves the working tree as it was, so a failure is retryable
        self._run_phase(
            spec,
            SdkStatus.SYNCING,
            self.vcs.fetch,
            path,
            spec.ref,
            self._depth(spec),
            cancel,
            recoverable=True,
        )
        self._run_phase(
            spec, SdkStatus.SYNCING, self.vcs.checkout, path, spec.ref, cancel
        )
        return True

    def _revert_patches(
        self, path: Path, recorded: List[Path], cancel: CancellationToken
    ) -> bool:
        """
        Revert the recorded patches and report whether the tree is now clean.

        The patches are re-applied when other modifications remain, so a
        refused move leaves the tree as it was.
        """
        if not recorded or not all(patch.is_file() for patch in recorded):
            return False
        if not self.vcs.patches_applied(path, recorded):
            return False

        self.vcs.apply_patches(path, recorded[::-1], reverse=True, cancel=cancel)
        if self.vcs.is_clean(path):
            logger.info(f"Reverted {len(recorded)} patch(es) in {path}")
            return True
        self.vcs.apply_patches(path, recorded, cancel=cancel)
        return False

    def _pending_patches(self, spec: SdkSpec, path: Path) -> List[Path]:
        return [
            patch
            for patch in spec.patches
            if not self.vcs.patches_applied(path, [patch])
        ]

    def _apply_patches(
        self, spec: SdkSpec, path: Path, cancel: CancellationToken
    ) -> None:
        for patch in self._pending_patches(spec, path):
            cancel.raise_if_cancelled()
            self.vcs.apply_patches(path, [patch], cancel=cancel)
            logger.info(f"Applied {patch.name} to {path}")

    def _is_at(self, path: Path, ref: GitRef) -> bool:
        head = self.vcs.head_commit(path)
        if ref.kind is RefKind.COMMIT:
            return head.lower().startswith(ref.name)
        if ref.kind is RefKind.TAG:
            return self.vcs.resolve_commit(path, ref) == head
        return self.vcs.current_ref(path).matches(ref)

    def _clone(self, spec: SdkSpec, path: Path, cancel: CancellationToken) -> None:
        # Clone beside the cache so that a crash never leaves a partial tree
        staging = self.layout.new_staging_dir(f"{path.name}.clone")
        try:
            self.vcs.clone(
                spec.url, staging, spec.ref, depth=self._depth(spec), cancel=cancel
            )
            atomic_move_dir(staging, path)
        finally:
            if staging.exists():
                safe_rmtree(staging, require_prefix=self.layout.tmp_dir)

    def _sync_submodules(
        self, spec: SdkSpec, path: Path, cancel: CancellationToken
    ) -> None:
        submodules = list(spec.submodules) or self.vcs.list_submodules(path)
        if not submodules:
            return

        # Registration writes .git/config, so it runs once, serially
        self.vcs.init_submodules(path, submodules, cancel=cancel)

        depth = 1 if spec.shallow else None
        siblings = cancel.child()
        failures: List[Tuple[str, Exception]] = []
        workers = max(1, min(len(submodules), self.config.jobs))

        with ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="firmkit-submodule"
        ) as executor:
            futures = {
                executor.submit(
                    self.vcs.sync_submodules, path, [submodule], depth, siblings
                ): submodule
                for submodule in submodules
            }
            for future in as_completed(futures):
                submodule = futures[future]
                try:
                    future.result()
                except OperationCancelled:
                    if cancel.is_cancelled:
                        raise
                except CommandError as e:
                    failures.append((submodule, e))
                    siblings.cancel(f"submodule {submodule} failed")

        cancel.raise_if_cancelled()
        if failures:
            details = "; ".join(f"{name}: {error}" for name, error in failures)
            raise CommandError(
                ["git", "submodule", "update"],
                message=f"Submodule update failed: {details}",
            )
        logger.info(f"Synchronized {len(submodules)} submodule(s) in {path}")

    def _run_phase(
        self,
        spec: SdkSpec,
        status: SdkStatus,
        action,
        *args,
        recoverable: bool = False,
    ) -> None:
        """
        Run one mutating step, persisting the status before and after a failure.

        A failure of a ``recoverable`` step left the tree as it was, so it is
        recorded without requiring a reset.
        """
        path = self.checkout_dir(spec)
        self._save_state(spec, SdkState(path=path, status=status))
        try:
            action(*args)
        except (CommandError, OperationCancelled, OSError, FilesystemError) as e:
            reason = f"{status.value} failed: {e}"
            self._save_state(
                spec,
                SdkState(
                    path=path,
                    status=SdkStatus.FAILED,
                    reason=reason,
                    needs_reset=not recoverable and self.vcs.is_repository(path),
                ),
            )
            logger.error(f"SDK {reason}")
            if isinstance(e, OperationCancelled):
                raise
            raise SdkSyncFailure(reason) from e

    def _observe(
        self,
        path: Path,
        status: SdkStatus,
        last_synced: Optional[str],
        current_ref: Optional[GitRef] = None,
        patches: Tuple[str, ...] = (),
    ) -> SdkState:
        return SdkState(
            path=path,
            status=status,
            current_ref=current_ref or self.vcs.current_ref(path),
            commit=self.vcs.head_commit(path),
            dirty=not self.vcs.is_clean(path),
            last_synced=last_synced,
            patches=patches,
        )

    def _remove(self, spec: SdkSpec, path: Path) -> None:
        logger.info(f"Resetting SDK checkout at {path}")
        self.state_path(spec).unlink(missing_ok=True)
        try:
            safe_rmtree(path, require_prefix=self.layout.sdk_dir)
        except FilesystemError as e:
            raise SdkSyncFailure(f"Cannot remove {path}: {e}") from e

    def _load_state(self, spec: SdkSpec) -> Optional[SdkState]:
        state_file = self.state_path(spec)
        if not state_file.exists():
            return None
        try:
            data = json.loads(state_file.read_text(encoding="utf-8"))
            return SdkState.from_dict(data)
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Ignoring unreadable SDK state {state_file}: {e}")
            return None

    def _save_state(self, spec: SdkSpec, state: SdkState) -> None:
        atomic_write(
            self.state_path(spec),
            json.dumps(state.to_dict(), indent=2, sort_keys=True) + "\n",
        )

    @staticmethod
    def _depth(spec: SdkSpec) -> Optional[int]:
        if spec.shallow and spec.ref.kind is not RefKind.COMMIT:
            return 1
        return None


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


__all__ = ["SdkStatus", "SdkState", "SdkRepository"]
