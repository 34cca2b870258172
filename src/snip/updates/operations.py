"""
File-tree operations for installing releases and taking backups.

This module implements:
- Iterative tree traversal yielding (relative path, is_directory) entries
- The protected-path predicate used when installing over a live tree
- Zip archive creation and extraction
- SHA-256 hashing of files
- Safe directory creation and removal

Relative paths are always POSIX-style ("api/config.php") regardless of the
host platform, so that exclusion prefixes compare the same everywhere.
"""

from __future__ import annotations

import hashlib
import os
import shutil
import zipfile
from collections.abc import Callable, Iterable, Iterator
from pathlib import Path

from snip.errors import FailedPreconditionError, IntegrityError
from snip.logging import get_logger

logger = get_logger(__name__)

# Paths never overwritten by a release install. Matched as prefixes of the
# relative path, so "backup/" covers everything below the backup directory.
EXCLUDED_PATHS: tuple[str, ...] = (
    "api/config.php",
    "backup/",
    "storage/",
    ".env",
    ".maintenance",
    ".update-in-progress",
)

# Directory names left out of backup archives
DEFAULT_ARCHIVE_EXCLUDE_DIRS: tuple[str, ...] = ("backup", "storage", ".git", "node_modules")

# Runtime markers at the application root, never part of a snapshot
DEFAULT_ARCHIVE_EXCLUDE_FILES: tuple[str, ...] = (".update-in-progress", ".maintenance")

HASH_CHUNK_SIZE = 64 * 1024


def ensure_directory(path: Path, *, parents: bool = True, mode: int = 0o755) -> Path:
    """
    Ensure a directory exists, creating it if necessary.

    Args:
        path: Path to the directory.
        parents: If True, create parent directories as needed.
        mode: Directory permissions (default 0o755).

    Returns:
        The directory path.

    Raises:
        FailedPreconditionError: If directory cannot be created.
    """
    try:
        path.mkdir(parents=parents, mode=mode, exist_ok=True)
        return path
    except OSError as e:
        raise FailedPreconditionError(
            f"Failed to create directory: {path}",
            details={"path": str(path), "error": str(e)},
        ) from e


def safe_remove_directory(path: Path, *, ignore_errors: bool = True) -> bool:
    """
    Safely remove a directory and its contents.

    Args:
        path: Path to the directory to remove.
        ignore_errors: If True, ignore errors during removal.

    Returns:
        True if directory was removed, False if it didn't exist.

    Raises:
        FailedPreconditionError: If removal fails and ignore_errors is False.
    """
    if not path.exists():
        return False

    try:
        shutil.rmtree(path, ignore_errors=ignore_errors)
        logger.debug("Removed directory", extra={"path": str(path)})
        return True
    except OSError as e:
        if not ignore_errors:
            raise FailedPreconditionError(
                f"Failed to remove directory: {path}",
                details={"path": str(path), "error": str(e)},
            ) from e
        return False


def is_protected_path(
    relative_path: str,
    excluded: Iterable[str] = EXCLUDED_PATHS,
) -> bool:
    """
    Check whether a relative path falls under an excluded prefix.

    The check is a plain prefix match: "api/config.php" is protected,
    "api/configuration.php" is not.

    Args:
        relative_path: POSIX-style path relative to the tree root.
        excluded: Prefixes to protect.

    Returns:
        True if the path starts with any excluded prefix.
    """
    return any(relative_path.startswith(prefix) for prefix in excluded)


def iter_tree(
    root: Path,
    *,
    skip: Callable[[str, bool], bool] | None = None,
) -> Iterator[tuple[str, bool]]:
    """
    Walk a directory tree without recursion.

    Entries are yielded parent-first. The skip predicate is consulted before
    an entry is yielded; a skipped directory is not descended into.

    Args:
        root: Directory to walk.
        skip: Optional predicate ``(relative_path, is_dir) -> bool``.

    Yields:
        Tuples of (relative POSIX path, is_directory).
    """
    pending: list[tuple[Path, str]] = [(root, "")]

    while pending:
        directory, prefix = pending.pop()
        with os.scandir(directory) as entries:
            children = sorted(entries, key=lambda entry: entry.name)

        for entry in children:
            relative = f"{prefix}{entry.name}"
            is_dir = entry.is_dir(follow_symlinks=False)
            if skip is not None and skip(relative, is_dir):
                continue
            yield relative, is_dir
            if is_dir:
                pending.append((Path(entry.path), f"{relative}/"))


def _protected_entry(excluded: tuple[str, ...]) -> Callable[[str, bool], bool]:
    def skip(relative: str, is_dir: bool) -> bool:
        # Directories also match as "name/" so "backup/" covers "backup" itself
        if is_protected_path(relative, excluded):
            return True
        return is_dir and is_protected_path(f"{relative}/", excluded)

    return skip


def copy_tree_excluding(
    source: Path,
    destination: Path,
    excluded: Iterable[str] = EXCLUDED_PATHS,
) -> int:
    """
    Copy a tree over another, skipping protected paths.

    Existing files at the destination are overwritten; files only present at
    the destination are left alone.

    Args:
        source: Tree to copy from.
        destination: Tree to copy over.
        excluded: Relative path prefixes never written.

    Returns:
        Number of files copied.
    """
    skip = _protected_entry(tuple(excluded))
    copied = 0

    for relative, is_dir in iter_tree(source, skip=skip):
        target = destination / relative
        if is_dir:
            target.mkdir(parents=True, exist_ok=True)
            continue
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source / relative, target)
        copied += 1

    logger.debug(
        "Copied tree",
        extra={"source": str(source), "destination": str(destination), "files": copied},
    )
    return copied


def archive_tree(
    root: Path,
    archive_path: Path,
    exclude_dirs: Iterable[str] = DEFAULT_ARCHIVE_EXCLUDE_DIRS,
    exclude_files: Iterable[str] = DEFAULT_ARCHIVE_EXCLUDE_FILES,
) -> int:
    """
    Write a zip archive of a directory tree.

    Files older than 1980 are stored with the 1980 zip epoch.

    Args:
        root: Tree to archive.
        archive_path: Zip file to create.
        exclude_dirs: Directory names left out wherever they appear.
        exclude_files: Relative file paths left out.

    Returns:
        Number of files archived.
    """
    excluded_names = frozenset(exclude_dirs)
    excluded_files = frozenset(exclude_files)
    archive_resolved = archive_path.resolve()

    def skip(relative: str, is_dir: bool) -> bool:
        if is_dir:
            return relative.rsplit("/", 1)[-1] in excluded_names
        if relative in excluded_files:
            return True
        return (root / relative).resolve() == archive_resolved

    file_count = 0
    with zipfile.ZipFile(
        archive_path, "w", compression=zipfile.ZIP_DEFLATED, strict_timestamps=False
    ) as zf:
        for relative, is_dir in iter_tree(root, skip=skip):
            if is_dir:
                zf.writestr(f"{relative}/", "")
                continue
            zf.write(root / relative, arcname=relative)
            file_count += 1

    return file_count


def extract_archive(archive_path: Path, destination: Path) -> Path:
    """
    Extract a zip archive into a directory.

    Args:
        archive_path: Zip file to extract.
        destination: Directory receiving the contents.

    Returns:
        The destination directory.

    Raises:
        IntegrityError: If the archive is unreadable or a member would land
            outside the destination.
    """
    destination.mkdir(parents=True, exist_ok=True)
    base = destination.resolve()

    try:
        with zipfile.ZipFile(archive_path) as zf:
            for name in zf.namelist():
                target = (base / name).resolve()
                if target != base and base not in target.parents:
                    raise IntegrityError(
                        f"Archive member escapes extraction directory: {name}",
                        details={"archive": str(archive_path), "member": name},
                    )
            zf.extractall(base)
    except (zipfile.BadZipFile, OSError) as e:
        raise IntegrityError(
            f"Failed to extract archive: {archive_path.name}",
            details={"archive": str(archive_path), "error": str(e)},
        ) from e

    return destination


def find_single_top_dir(directory: Path) -> Path:
    """
    Locate the one top-level folder a release archive unpacks to.

    Raises:
        IntegrityError: If the directory does not hold exactly one folder.
    """
    entries = list(directory.iterdir())
    if len(entries) != 1 or not entries[0].is_dir():
        raise IntegrityError(
            "Release archive must contain a single top-level directory",
            details={"directory": str(directory), "entries": sorted(e.name for e in entries)},
        )
    return entries[0]


def sha256_file(path: Path) -> str:
    """Return the lowercase hex SHA-256 digest of a file."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(HASH_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()
