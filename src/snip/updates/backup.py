"""
Backup snapshots of the application database and file tree.

Each backup lives in its own directory under the backup root::

    <backup_dir>/<backup_id>/
        manifest.json   # BackupManifest, source of truth for metadata
        files.zip       # application tree, minus excluded directories
        database.sql    # SQL text dump

Backups are discovered by scanning manifests; there is no separate index.
"""

from __future__ import annotations

import json
import platform
import re
import sqlite3
import zipfile
from collections.abc import Callable, Iterable
from datetime import UTC, datetime, timedelta
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from snip.db import Database, SettingsStore
from snip.errors import (
    IntegrityError,
    InternalError,
    InvalidArgumentError,
    NotFoundError,
    SnipError,
)
from snip.logging import get_logger
from snip.updates.dumpers import DatabaseDumper, restore_dump, select_dumper
from snip.updates.operations import (
    DEFAULT_ARCHIVE_EXCLUDE_DIRS,
    archive_tree,
    ensure_directory,
    extract_archive,
    safe_remove_directory,
)

logger = get_logger(__name__)

MANIFEST_FILE = "manifest.json"
FILES_ARCHIVE = "files.zip"
DATABASE_DUMP = "database.sql"

BACKUP_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")
BACKUP_ID_FORMAT = "%Y-%m-%d_%H%M%S"


def parse_timestamp(value: str) -> datetime | None:
    """Parse an ISO 8601 timestamp, assuming UTC when no offset is given."""
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


class BackupManifest(BaseModel):
    """Metadata stored alongside each backup."""

    backup_id: str
    version: str
    created_at: str
    python_version: str = Field(default_factory=platform.python_version)
    file_count: int = Field(default=0, ge=0)
    database_size: int = Field(default=0, ge=0)
    integrity_verified: bool = False

    def created_datetime(self) -> datetime | None:
        """Parse created_at, or None if it is not ISO 8601."""
        return parse_timestamp(self.created_at)


class BackupSummary(BaseModel):
    """One entry of a backup listing."""

    backup_id: str
    version: str
    created_at: str
    size_bytes: int = 0
    is_valid: bool = False


class RetentionPolicy(BaseModel):
    """
    Which backups survive pruning.

    The newest ``keep`` backups are kept, except that any backup older than
    ``max_age_days`` is dropped even when it is among them.
    """

    keep: int = Field(default=10, ge=1)
    max_age_days: int = Field(default=90, ge=1)


def validate_backup_id(backup_id: str) -> str:
    """
    Check a backup id against the allowed token pattern.

    Raises:
        InvalidArgumentError: If the id contains anything but letters,
            digits, underscores and hyphens.
    """
    if not isinstance(backup_id, str) or not BACKUP_ID_PATTERN.match(backup_id):
        raise InvalidArgumentError(
            "Invalid backup ID",
            details={"backup_id": backup_id},
        )
    return backup_id


class BackupStore:
    """
    Creates, verifies, restores, lists, deletes and prunes backups.

    Example:
        >>> store = BackupStore(db, settings, Path("/var/www/snip"), Path("/var/www/snip/backup"))
        >>> backup_id = store.create("1.0.3")
        >>> store.restore(backup_id)
    """

    def __init__(
        self,
        database: Database,
        settings: SettingsStore,
        app_root: Path,
        backup_dir: Path,
        *,
        dumper: DatabaseDumper | None = None,
        exclude_dirs: Iterable[str] = DEFAULT_ARCHIVE_EXCLUDE_DIRS,
        retention: RetentionPolicy | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        """
        Initialize the BackupStore.

        Args:
            database: Database to dump and restore.
            settings: Settings store receiving the restored version.
            app_root: Application tree to archive and restore over.
            backup_dir: Directory holding backup snapshots.
            dumper: Dump strategy; chosen by select_dumper when omitted.
            exclude_dirs: Directory names left out of file archives.
            retention: Pruning policy applied after each create.
            clock: Source of the current UTC time.
        """
        self.database = database
        self.settings = settings
        self.app_root = app_root
        self.backup_dir = backup_dir
        self.dumper = dumper or select_dumper()
        self.exclude_dirs = tuple(exclude_dirs)
        self.retention = retention or RetentionPolicy()
        self._clock = clock

    @classmethod
    def from_config(
        cls,
        config,
        database: Database,
        settings: SettingsStore,
        *,
        dumper: DatabaseDumper | None = None,
    ) -> BackupStore:
        """Create a BackupStore from an AppConfig."""
        return cls(
            database,
            settings,
            config.app_root,
            config.backup_dir,
            dumper=dumper
            or select_dumper(
                config.database.dump_command,
                config.database.dump_timeout_seconds,
            ),
            exclude_dirs=config.backup.exclude_dirs,
            retention=RetentionPolicy(
                keep=config.backup.retention_count,
                max_age_days=config.backup.max_age_days,
            ),
        )

    # -------------------------------------------------------------------------
    # Paths and manifests
    # -------------------------------------------------------------------------

    def _allocate_id(self) -> str:
        base = self._clock().strftime(BACKUP_ID_FORMAT)
        candidate = base
        suffix = 1
        while (self.backup_dir / candidate).exists():
            candidate = f"{base}-{suffix}"
            suffix += 1
        return candidate

    def _backup_path(self, backup_id: str) -> Path:
        validate_backup_id(backup_id)
        path = self.backup_dir / backup_id
        if not (path / MANIFEST_FILE).is_file():
            raise NotFoundError(
                "Backup not found",
                details={"backup_id": backup_id},
            )
        return path

    @staticmethod
    def _read_manifest(path: Path) -> BackupManifest:
        data = json.loads((path / MANIFEST_FILE).read_text(encoding="utf-8"))
        return BackupManifest.model_validate(data)

    @staticmethod
    def _write_manifest(path: Path, manifest: BackupManifest) -> None:
        target = path / MANIFEST_FILE
        temp = path / f"{MANIFEST_FILE}.tmp"
        temp.write_text(manifest.model_dump_json(indent=2), encoding="utf-8")
        temp.replace(target)

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def create(self, app_version: str | None = None) -> str:
        """
        Take a verified backup of the database and file tree.

        A failed backup leaves nothing behind. Retention pruning runs after
        a successful create.

        Args:
            app_version: Version recorded in the manifest; defaults to the
                persisted application version.

        Returns:
            The new backup id.

        Raises:
            InternalError: If any step fails.
        """
        version = app_version or self.settings.get_app_version()
        ensure_directory(self.backup_dir)
        backup_id = self._allocate_id()
        path = self.backup_dir / backup_id

        logger.info(
            "Creating backup",
            extra={"backup_id": backup_id, "version": version},
        )

        try:
            path.mkdir()
            dump_path = path / DATABASE_DUMP
            self.dumper.dump(self.database, dump_path)
            file_count = archive_tree(self.app_root, path / FILES_ARCHIVE, self.exclude_dirs)

            manifest = BackupManifest(
                backup_id=backup_id,
                version=version,
                created_at=self._clock().isoformat(),
                file_count=file_count,
                database_size=dump_path.stat().st_size,
            )
            self._write_manifest(path, manifest)

            if not self.verify(backup_id):
                raise IntegrityError(
                    "Backup verification failed",
                    details={"backup_id": backup_id},
                )

            manifest.integrity_verified = True
            self._write_manifest(path, manifest)
        except Exception as e:
            safe_remove_directory(path)
            message = e.message if isinstance(e, SnipError) else str(e) or type(e).__name__
            logger.error(
                "Backup creation failed",
                extra={"backup_id": backup_id, "error": message},
            )
            raise InternalError(
                f"Backup creation failed: {message}",
                details={"backup_id": backup_id},
            ) from e

        logger.info(
            "Backup created",
            extra={
                "backup_id": backup_id,
                "file_count": file_count,
                "database_size": manifest.database_size,
            },
        )

        try:
            self.prune()
        except (SnipError, OSError) as e:
            logger.warning(f"Backup pruning failed: {e}")

        return backup_id

    def verify(self, backup_id: str) -> bool:
        """
        Check that a backup is complete and readable.

        A backup verifies when its manifest parses, its file archive opens
        cleanly, and its database dump is present and non-empty.
        """
        if not BACKUP_ID_PATTERN.match(backup_id):
            return False
        path = self.backup_dir / backup_id

        try:
            self._read_manifest(path)
        except (OSError, ValueError, ValidationError):
            return False

        try:
            with zipfile.ZipFile(path / FILES_ARCHIVE) as zf:
                if zf.testzip() is not None:
                    return False
        except (OSError, zipfile.BadZipFile):
            return False

        dump_path = path / DATABASE_DUMP
        return dump_path.is_file() and dump_path.stat().st_size > 0

    def restore(self, backup_id: str) -> None:
        """
        Restore the database, then the file tree, then the recorded version.

        Args:
            backup_id: Backup to restore.

        Raises:
            InvalidArgumentError: If the id is malformed.
            NotFoundError: If the backup does not exist.
            IntegrityError: If the manifest is unreadable.
            InternalError: If the database or file restore fails.
        """
        path = self._backup_path(backup_id)
        try:
            manifest = self._read_manifest(path)
        except (OSError, ValueError, ValidationError) as e:
            raise IntegrityError(
                "Backup manifest is unreadable",
                details={"backup_id": backup_id, "error": str(e)},
            ) from e

        logger.info(
            "Restoring backup",
            extra={"backup_id": backup_id, "version": manifest.version},
        )

        dump_path = path / DATABASE_DUMP
        if dump_path.is_file():
            try:
                restore_dump(self.database, dump_path)
            except (SnipError, sqlite3.Error, OSError) as e:
                message = e.message if isinstance(e, SnipError) else str(e)
                raise InternalError(
                    f"Database restore failed: {message}",
                    details={"backup_id": backup_id},
                ) from e
        else:
            logger.warning("Backup has no database dump", extra={"backup_id": backup_id})

        archive_path = path / FILES_ARCHIVE
        if archive_path.is_file():
            try:
                extract_archive(archive_path, self.app_root)
            except IntegrityError as e:
                raise InternalError(
                    f"File restore failed: {e.message}",
                    details={"backup_id": backup_id},
                ) from e
        else:
            logger.warning("Backup has no file archive", extra={"backup_id": backup_id})

        self.settings.set_app_version(manifest.version)
        logger.info("Backup restored", extra={"backup_id": backup_id})

    def list(self) -> list[BackupSummary]:
        """
        List backups, newest first.

        Directories without a readable manifest, or with no payload file,
        are skipped.
        """
        if not self.backup_dir.is_dir():
            return []

        summaries: list[BackupSummary] = []
        for path in sorted(self.backup_dir.iterdir(), key=lambda p: p.name, reverse=True):
            if not path.is_dir() or not (path / MANIFEST_FILE).is_file():
                continue
            try:
                manifest = self._read_manifest(path)
            except (OSError, ValueError, ValidationError) as e:
                logger.debug(f"Skipping backup with unreadable manifest {path.name}: {e}")
                continue

            payloads = [path / FILES_ARCHIVE, path / DATABASE_DUMP]
            present = [p for p in payloads if p.is_file()]
            if not present:
                continue

            summaries.append(
                BackupSummary(
                    backup_id=path.name,
                    version=manifest.version,
                    created_at=manifest.created_at,
                    size_bytes=sum(p.stat().st_size for p in present),
                    is_valid=manifest.integrity_verified,
                )
            )

        return summaries

    def delete(self, backup_id: str) -> None:
        """
        Remove a backup.

        Raises:
            InvalidArgumentError: If the id is malformed.
            NotFoundError: If the backup does not exist.
        """
        validate_backup_id(backup_id)
        path = self.backup_dir / backup_id
        if not path.is_dir():
            raise NotFoundError("Backup not found", details={"backup_id": backup_id})

        safe_remove_directory(path, ignore_errors=False)
        logger.info("Backup deleted", extra={"backup_id": backup_id})

    def prune(self) -> list[str]:
        """
        Apply the retention policy.

        Returns:
            Ids of the deleted backups.
        """
        cutoff = self._clock() - timedelta(days=self.retention.max_age_days)
        deleted: list[str] = []

        for index, summary in enumerate(self.list()):
            if index >= self.retention.keep:
                reason = "count"
            else:
                created = parse_timestamp(summary.created_at)
                if created is None or created >= cutoff:
                    continue
                reason = "age"

            self.delete(summary.backup_id)
            deleted.append(summary.backup_id)
            logger.info(
                "Pruned backup",
                extra={"backup_id": summary.backup_id, "reason": reason},
            )

        return deleted
