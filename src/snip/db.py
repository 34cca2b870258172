"""
SQLite database handle and application settings store.

The Database class is the explicit handle passed to every component that
touches the database. Each operation acquires and releases its own
connection, so a restore that rewrites the file never races a cached
connection.

SQLite Schema:
    CREATE TABLE app_settings (
        setting_key TEXT PRIMARY KEY,
        setting_value TEXT,
        updated_at TEXT
    );
"""

from __future__ import annotations

import sqlite3
from collections.abc import Generator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

from snip.errors import FailedPreconditionError
from snip.logging import get_logger

logger = get_logger(__name__)

APP_VERSION_KEY = "app_version"

SETTINGS_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS app_settings (
    setting_key TEXT PRIMARY KEY,
    setting_value TEXT,
    updated_at TEXT
);
"""


class Database:
    """
    Handle on the application's SQLite database.

    Example:
        >>> db = Database("/var/www/snip/storage/snip.db")
        >>> with db.connect() as conn:
        ...     conn.execute("SELECT 1")
    """

    def __init__(self, path: str | Path, timeout: float = 30.0) -> None:
        """
        Initialize the Database handle.

        Args:
            path: Path to the SQLite database file.
            timeout: Seconds to wait on a locked database.
        """
        self.path = Path(path)
        self.timeout = timeout

    @contextmanager
    def connect(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Open a connection, committing on success and rolling back on error.

        Yields:
            SQLite connection with Row factory.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.path), timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def raw_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Open a connection in autocommit mode for explicit transaction control.

        Yields:
            SQLite connection; the caller issues BEGIN/COMMIT/ROLLBACK.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            str(self.path), timeout=self.timeout, isolation_level=None
        )
        try:
            yield conn
        finally:
            conn.close()

    def ping(self) -> None:
        """
        Check that the database answers a trivial query.

        Raises:
            FailedPreconditionError: If the database cannot be reached.
        """
        try:
            with self.connect() as conn:
                conn.execute("SELECT 1").fetchone()
        except sqlite3.Error as e:
            raise FailedPreconditionError(
                "Database connection failed",
                details={"path": str(self.path), "error": str(e)},
            ) from e


class SettingsStore:
    """
    Key-value application settings persisted in the app_settings table.

    Holds at least the current application version under ``app_version``.
    """

    def __init__(self, database: Database, default_version: str = "1.0.0") -> None:
        """
        Initialize the SettingsStore.

        Args:
            database: Database handle.
            default_version: Version reported when none is stored.
        """
        self._database = database
        self.default_version = default_version

    def ensure_schema(self) -> None:
        """Create the app_settings table if it does not exist."""
        with self._database.connect() as conn:
            conn.executescript(SETTINGS_SCHEMA_SQL)

    def get(self, key: str, default: str | None = None) -> str | None:
        """
        Read a setting.

        Returns:
            The stored value, or ``default`` if the key or the table is missing.
        """
        try:
            with self._database.connect() as conn:
                row = conn.execute(
                    "SELECT setting_value FROM app_settings WHERE setting_key = ? LIMIT 1",
                    (key,),
                ).fetchone()
        except sqlite3.OperationalError as e:
            logger.debug(f"Could not read setting {key}: {e}")
            return default

        if row is None:
            return default
        return row["setting_value"]

    def set(self, key: str, value: str) -> None:
        """Insert or replace a setting."""
        with self._database.connect() as conn:
            conn.executescript(SETTINGS_SCHEMA_SQL)
            conn.execute(
                """
                INSERT INTO app_settings (setting_key, setting_value, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(setting_key) DO UPDATE SET
                    setting_value = excluded.setting_value,
                    updated_at = excluded.updated_at
                """,
                (key, value, datetime.now(UTC).isoformat()),
            )

    def get_app_version(self) -> str:
        """Get the persisted application version, or the default."""
        return self.get(APP_VERSION_KEY) or self.default_version

    def set_app_version(self, version: str) -> None:
        """Persist the application version."""
        self.set(APP_VERSION_KEY, version)
        logger.info("Application version set", extra={"version": version})
