"""
Append-only record of update attempts.

SQLite Schema:
    CREATE TABLE update_history (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        old_version TEXT,
        new_version TEXT,
        status TEXT,             -- 'in_progress', 'success', 'failed'
        duration_seconds REAL,
        error_message TEXT,      -- truncated to MAX_ERROR_MESSAGE_LENGTH
        backup_id TEXT,
        updated_at TEXT          -- ISO 8601 UTC
    );
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from snip.db import Database
from snip.logging import get_logger

logger = get_logger(__name__)

STATUS_IN_PROGRESS = "in_progress"
STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"

MAX_ERROR_MESSAGE_LENGTH = 500

HISTORY_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS update_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    old_version TEXT,
    new_version TEXT,
    status TEXT,
    duration_seconds REAL,
    error_message TEXT,
    backup_id TEXT,
    updated_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_update_history_updated_at ON update_history(updated_at);
"""


@dataclass
class UpdateAttempt:
    """One update attempt.

    Attributes:
        id: Database ID.
        previous_version: Version installed when the attempt started.
        target_version: Version the attempt installs.
        status: 'in_progress', 'success' or 'failed'.
        duration_seconds: Wall time of the attempt, set at its outcome.
        error_message: Failure reason, truncated.
        backup_id: Backup taken for the attempt.
        timestamp: ISO 8601 time of the last change.
    """

    id: int | None
    previous_version: str
    target_version: str
    status: str = STATUS_IN_PROGRESS
    duration_seconds: float | None = None
    error_message: str | None = None
    backup_id: str | None = None
    timestamp: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "previous_version": self.previous_version,
            "target_version": self.target_version,
            "status": self.status,
            "duration_seconds": self.duration_seconds,
            "error_message": self.error_message,
            "backup_id": self.backup_id,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> UpdateAttempt:
        return cls(
            id=row["id"],
            previous_version=row["old_version"],
            target_version=row["new_version"],
            status=row["status"],
            duration_seconds=row["duration_seconds"],
            error_message=row["error_message"],
            backup_id=row["backup_id"],
            timestamp=row["updated_at"],
        )


def truncate_error(message: str, limit: int = MAX_ERROR_MESSAGE_LENGTH) -> str:
    return message[:limit]


class UpdateHistory:
    """
    Stores UpdateAttempt rows.

    A row moves from in_progress to success or failed exactly once. Rows
    are never deleted here.
    """

    def __init__(self, database: Database) -> None:
        self._database = database

    def ensure_schema(self) -> None:
        """Create the update_history table if it does not exist."""
        with self._database.connect() as conn:
            conn.executescript(HISTORY_SCHEMA_SQL)

    def record_attempt(self, previous_version: str, target_version: str) -> int:
        """
        Insert an in-progress attempt.

        Returns:
            The new row id.
        """
        with self._database.connect() as conn:
            conn.executescript(HISTORY_SCHEMA_SQL)
            cursor = conn.execute(
                """
                INSERT INTO update_history (old_version, new_version, status, updated_at)
                VALUES (?, ?, ?, ?)
                """,
                (
                    previous_version,
                    target_version,
                    STATUS_IN_PROGRESS,
                    datetime.now(UTC).isoformat(),
                ),
            )
            attempt_id = cursor.lastrowid

        logger.debug(
            "Recorded update attempt",
            extra={"attempt_id": attempt_id, "target_version": target_version},
        )
        return attempt_id

    def _finish(
        self,
        attempt_id: int,
        status: str,
        *,
        previous_version: str,
        target_version: str,
        duration_seconds: float,
        error_message: str | None,
        backup_id: str | None,
    ) -> None:
        now = datetime.now(UTC).isoformat()
        with self._database.connect() as conn:
            conn.executescript(HISTORY_SCHEMA_SQL)
            cursor = conn.execute(
                """
                UPDATE update_history
                SET status = ?, duration_seconds = ?, error_message = ?,
                    backup_id = ?, updated_at = ?
                WHERE id = ? AND status = ?
                """,
                (
                    status,
                    duration_seconds,
                    error_message,
                    backup_id,
                    now,
                    attempt_id,
                    STATUS_IN_PROGRESS,
                ),
            )
            if cursor.rowcount == 0:
                # The row can vanish when a rollback restores an older dump
                conn.execute(
                    """
                    INSERT INTO update_history
                        (old_version, new_version, status, duration_seconds,
                         error_message, backup_id, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        previous_version,
                        target_version,
                        status,
                        duration_seconds,
                        error_message,
                        backup_id,
                        now,
                    ),
                )

    def record_success(
        self,
        attempt_id: int,
        *,
        previous_version: str,
        target_version: str,
        duration_seconds: float,
        backup_id: str | None,
    ) -> None:
        """Mark an attempt successful."""
        self._finish(
            attempt_id,
            STATUS_SUCCESS,
            previous_version=previous_version,
            target_version=target_version,
            duration_seconds=duration_seconds,
            error_message=None,
            backup_id=backup_id,
        )

    def record_failure(
        self,
        attempt_id: int,
        error_message: str,
        *,
        previous_version: str,
        target_version: str,
        duration_seconds: float,
        backup_id: str | None,
    ) -> None:
        """Mark an attempt failed, keeping a truncated error message."""
        self._finish(
            attempt_id,
            STATUS_FAILED,
            previous_version=previous_version,
            target_version=target_version,
            duration_seconds=duration_seconds,
            error_message=truncate_error(error_message),
            backup_id=backup_id,
        )

    def list(self, limit: int = 50) -> list[UpdateAttempt]:
        """
        Get the most recent attempts, newest first.

        Returns an empty list when the table does not exist yet.
        """
        try:
            with self._database.connect() as conn:
                rows = conn.execute(
                    "SELECT * FROM update_history ORDER BY id DESC LIMIT ?",
                    (limit,),
                ).fetchall()
        except sqlite3.OperationalError as e:
            logger.debug(f"Update history unavailable: {e}")
            return []

        return [UpdateAttempt.from_row(row) for row in rows]

    def get(self, attempt_id: int) -> UpdateAttempt | None:
        with self._database.connect() as conn:
            row = conn.execute(
                "SELECT * FROM update_history WHERE id = ?", (attempt_id,)
            ).fetchone()
        return UpdateAttempt.from_row(row) if row else None
