"""
Filesystem primitives behind the install cache.

- Archive extraction (tar, tar.gz, tar.xz, tar.bz2, zip, and 7z through an
  external 7-Zip), refusing members that would land outside the destination
- Publication helpers: atomic file writes and single-rename directory moves
- Guarded recursive deletion
- Content hashing of single files and whole directory trees
"""

import hashlib
import logging
import os
import shutil
import stat
import sys
import tarfile
import tempfile
import zipfile
from pathlib import Path, PurePosixPath
from typing import Optional, Union

from firmkit.core.cancellation import CancellationToken
from firmkit.core.exceptions import CommandError
from firmkit.core.process import run_command

logger = logging.getLogger(__name__)

IS_WINDOWS = os.name == "nt"

# Seconds an external 7-Zip extraction may run
SEVEN_ZIP_TIMEOUT = 1800.0


# ============================================================================
# Error Handling
# ============================================================================


class FilesystemError(Exception):
    """Base exception for filesystem operations."""

    pass


class ArchiveExtractionError(FilesystemError):
    """An archive could not be unpacked."""

    pass


class UnsupportedArchiveFormat(ArchiveExtractionError):
    """The archive format is unknown or its extractor is unavailable."""

    pass


class InsecureArchiveError(ArchiveExtractionError):
    """A member path or link target points outside the destination."""

    pass


# ============================================================================
# Archive Extraction
# ============================================================================

# Canonical format name -> recognised file suffixes
ARCHIVE_FORMATS = {
    "tar.gz": (".tar.gz", ".tgz"),
    "tar.xz": (".tar.xz", ".txz"),
    "tar.bz2": (".tar.bz2", ".tbz2"),
    "tar": (".tar",),
    "zip": (".zip",),
    "7z": (".7z",),
}

_FORMAT_ALIASES = {"tgz": "tar.gz", "txz": "tar.xz", "tbz2": "tar.bz2"}

_TAR_MODES = {"tar.gz": "r:gz", "tar.xz": "r:xz", "tar.bz2": "r:bz2", "tar": "r:"}


def normalize_archive_format(archive_format: str) -> str:
    """
    Return the canonical name of an archive format.

    Raises:
        UnsupportedArchiveFormat: If the format is unknown
    """
    name = archive_format.strip().lower().lstrip(".")
    name = _FORMAT_ALIASES.get(name, name)
    if name not in ARCHIVE_FORMATS:
        raise UnsupportedArchiveFormat(
            f"Unsupported archive format: {archive_format}. "
            f"Supported: {', '.join(sorted(ARCHIVE_FORMATS))}"
        )
    return name


def detect_archive_format(archive_path: Union[str, Path]) -> str:
    """
    Detect the archive format from a file name.

    Raises:
        UnsupportedArchiveFormat: If the suffix is not recognised
    """
    archive_name = Path(archive_path).name.lower()
    for name, suffixes in ARCHIVE_FORMATS.items():
        if archive_name.endswith(suffixes):
            return name
    raise UnsupportedArchiveFormat(
        f"Unsupported archive format: {Path(archive_path).name}"
    )


def extract_archive(
    archive_path: Union[str, Path],
    destination: Union[str, Path],
    archive_format: Optional[str] = None,
    cancel: Optional[CancellationToken] = None,
    timeout: Optional[float] = SEVEN_ZIP_TIMEOUT,
) -> None:
    """
    Unpack ``archive_path`` into ``destination`` (created if missing).

    Every member is checked before anything is written: absolute names,
    ``..`` components and links resolving outside ``destination`` reject the
    whole archive. Unix permission bits are kept, so tool binaries stay
    executable.

    Args:
        archive_path: Archive file
        destination: Target directory
        archive_format: Canonical format or alias; detected from the file
            name when None
        cancel: Token that kills an external 7-Zip while it runs
        timeout: Seconds an external 7-Zip may run

    Raises:
        UnsupportedArchiveFormat: If the format is unknown
        InsecureArchiveError: If a member escapes the destination
        ArchiveExtractionError: If the archive is missing or corrupt
        OperationCancelled: If the token fires during a 7-Zip extraction

    Example:
        >>> extract_archive("gcc.tar.xz", staging_dir)
        >>> extract_archive("download.bin", staging_dir, archive_format="zip")
    """
    archive_path = Path(archive_path)
    destination = Path(destination)

    if not archive_path.is_file():
        raise ArchiveExtractionError(f"Archive not found: {archive_path}")

    if archive_format:
        fmt = normalize_archive_format(archive_format)
    else:
        fmt = detect_archive_format(archive_path)
    destination.mkdir(parents=True, exist_ok=True)

    try:
        if fmt == "zip":
            _extract_zip(archive_path, destination)
        elif fmt == "7z":
            _extract_7z(archive_path, destination, cancel, timeout)
        else:
            _extract_tar(archive_path, destination, _TAR_MODES[fmt])
    except ArchiveExtractionError:
        raise
    except (OSError, tarfile.TarError, zipfile.BadZipFile, EOFError) as e:
        raise ArchiveExtractionError(f"Failed to extract {archive_path}: {e}") from e


def _check_member(name: str, root: Path) -> None:
    pure = PurePosixPath(name.replace("\\", "/"))
    if pure.is_absolute() or ".." in pure.parts:
        raise InsecureArchiveError(f"Archive member escapes destination: {name}")
    if not (root / pure).resolve().is_relative_to(root):
        raise InsecureArchiveError(f"Archive member escapes destination: {name}")


def _check_link(member: tarfile.TarInfo, root: Path) -> None:
    if member.issym():
        # Symlink targets are relative to the link's own directory
        parent = PurePosixPath(member.name).parent
        target = (root / parent / member.linkname).resolve()
    else:
        target = (root / member.linkname).resolve()
    absolute = PurePosixPath(member.linkname).is_absolute()
    if absolute or not target.is_relative_to(root):
        raise InsecureArchiveError(
            f"Archive link {member.name} -> {member.linkname} escapes destination"
        )


def _extract_tar(archive_path: Path, destination: Path, mode: str) -> None:
    root = destination.resolve()
    with tarfile.open(archive_path, mode) as tar:
        members = tar.getmembers()
        for member in members:
            _check_member(member.name, root)
            if member.issym() or member.islnk():
                _check_link(member, root)
            if member.isdev():
                raise InsecureArchiveError(
                    f"Archive member is a device file: {member.name}"
                )

        if sys.version_info >= (3, 12):
            tar.extractall(destination, members=members, filter="tar")
        else:
            tar.extractall(destination, members=members)


def _extract_zip(archive_path: Path, destination: Path) -> None:
    root = destination.resolve()
    with zipfile.ZipFile(archive_path) as zf:
        members = zf.infolist()
        for member in members:
            _check_member(member.filename, root)

        for member in members:
            extracted = Path(zf.extract(member, destination))
            # zipfile drops permission bits; they live in the high word
            mode = (member.external_attr >> 16) & 0o777
            if mode and not IS_WINDOWS and not member.is_dir():
                extracted.chmod(mode)


def _extract_7z(
    archive_path: Path,
    destination: Path,
    cancel: Optional[CancellationToken],
    timeout: Optional[float],
) -> None:
    executable = shutil.which("7z") or shutil.which("7za")
    if executable is None:
        raise UnsupportedArchiveFormat(
            "Extracting .7z archives requires 7-Zip (7z or 7za) on PATH"
        )

    try:
        run_command(
            [executable, "x", "-y", f"-o{destination}", str(archive_path)],
            timeout=timeout,
            cancel=cancel,
        )
    except CommandError as e:
        raise ArchiveExtractionError(
            f"7-Zip could not extract {archive_path.name}: {e}"
        ) from e


def collapse_single_root(extract_dir: Path) -> Path:
    """
    Return the real root of an extracted archive.

    Most tool archives wrap everything in a single top-level directory
    (``cmake-3.24.0-linux-x86_64/``); others extract flat.

    Args:
        extract_dir: Directory where archive was extracted

    Returns:
        The single child directory, or ``extract_dir`` itself
    """
    items = list(extract_dir.iterdir())
    if len(items) == 1 and items[0].is_dir() and not items[0].is_symlink():
        return items[0]
    return extract_dir


# ============================================================================
# Safe File Operations
# ============================================================================


def atomic_write(
    file_path: Union[str, Path], content: Union[str, bytes], encoding: str = "utf-8"
) -> None:
    """
    Replace ``file_path`` with ``content`` in one rename.

    Readers see either the old file or the complete new one. Parent
    directories are created as needed.

    Example:
        >>> atomic_write(marker_path, installed.to_json())
    """
    file_path = Path(file_path)
    file_path.parent.mkdir(parents=True, exist_ok=True)

    # Temp file in the same directory keeps the rename on one filesystem
    fd, temp_name = tempfile.mkstemp(
        dir=file_path.parent, prefix=f".{file_path.name}.", suffix=".tmp"
    )
    temp_path = Path(temp_name)

    try:
        if isinstance(content, str):
            with open(fd, "w", encoding=encoding, newline="\n") as f:
                f.write(content)
        else:
            with open(fd, "wb") as f:
                f.write(content)
        temp_path.replace(file_path)
    except BaseException:
        temp_path.unlink(missing_ok=True)
        raise


def atomic_move_dir(source: Path, destination: Path) -> None:
    """
    Move a directory into place with a single rename.

    ``source`` and ``destination`` must be on the same filesystem; this is
    never a copy, so readers observe either nothing or the complete tree.

    Raises:
        FileExistsError: If destination already exists
        OSError: If the rename fails
    """
    if destination.exists() or destination.is_symlink():
        raise FileExistsError(f"Destination already exists: {destination}")
    destination.parent.mkdir(parents=True, exist_ok=True)
    os.rename(source, destination)


def _clear_readonly(func, target, _):
    # Git object files are read-only; on Windows that blocks deletion
    os.chmod(target, stat.S_IWRITE)
    func(target)


def safe_rmtree(
    path: Union[str, Path], require_prefix: Optional[Union[str, Path]] = None
) -> None:
    """
    Delete a file, symlink or directory tree.

    Read-only entries are made writable and retried. A missing path is not
    an error.

    Args:
        path: What to delete
        require_prefix: Refuse unless ``path`` resolves inside this directory

    Raises:
        ValueError: If ``path`` is outside ``require_prefix``
        FilesystemError: If the tree cannot be removed

    Example:
        >>> safe_rmtree(layout.tmp_dir / "cmake.x1y2", require_prefix=layout.tmp_dir)
    """
    path = Path(path).absolute()

    if require_prefix is not None:
        prefix = Path(require_prefix).resolve()
        if not path.resolve().is_relative_to(prefix):
            raise ValueError(
                f"Refusing to delete '{path}': not under required prefix '{prefix}'"
            )

    if path.is_symlink() or path.is_file():
        path.unlink()
        return
    if not path.exists():
        return

    try:
        if sys.version_info >= (3, 12):
            shutil.rmtree(path, onexc=_clear_readonly)
        else:
            shutil.rmtree(path, onerror=_clear_readonly)
    except OSError as e:
        raise FilesystemError(f"Failed to remove directory '{path}': {e}") from e


# ============================================================================
# Hashing
# ============================================================================


def compute_file_hash(file_path: Union[str, Path], algorithm: str = "sha256") -> str:
    """
    Hex digest of a file's content, read in 64 KiB chunks.

    Raises:
        FilesystemError: If the file does not exist
        ValueError: If the algorithm is not supported
    """
    file_path = Path(file_path)
    if not file_path.is_file():
        raise FilesystemError(f"File not found: {file_path}")

    try:
        hasher = hashlib.new(algorithm)
    except ValueError:
        raise ValueError(f"Unsupported hash algorithm: {algorithm}") from None

    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(64 * 1024), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


def compute_tree_hash(root: Union[str, Path]) -> str:
    """
    Compute a SHA256 digest over a directory tree.

    The digest covers every entry's relative path, its type, symlink
    targets, the owner-executable bit and file contents, walked in sorted
    order, so it is stable across runs and machines with the same tree.

    Raises:
        FilesystemError: If root is not a directory
    """
    root = Path(root)
    if not root.is_dir():
        raise FilesystemError(f"Not a directory: {root}")

    digest = hashlib.sha256()
    for dirpath, dirnames, filenames in os.walk(root, followlinks=False):
        dirnames.sort()
        current = Path(dirpath)
        for name in sorted(dirnames + filenames):
            entry = current / name
            rel = entry.relative_to(root).as_posix()
            if entry.is_symlink():
                digest.update(f"L {rel} -> {os.readlink(entry)}\n".encode())
            elif entry.is_dir():
                digest.update(f"D {rel}\n".encode())
            else:
                executable = (
                    "x" if os.access(entry, os.X_OK) and not IS_WINDOWS else "-"
                )
                digest.update(
                    f"F {rel} {executable} {compute_file_hash(entry)}\n".encode()
                )
    return digest.hexdigest()


__all__ = [
    # Exceptions
    "FilesystemError",
    "ArchiveExtractionError",
    "UnsupportedArchiveFormat",
    "InsecureArchiveError",
    # Archive extraction
    "ARCHIVE_FORMATS",
    "normalize_archive_format",
    "detect_archive_format",
    "extract_archive",
    "collapse_single_root",
    # Safe file operations
    "atomic_write",
    "atomic_move_dir",
    "safe_rmtree",
    # Hashing
    "compute_file_hash",
    "compute_tree_hash",
]
