"""
Database dump strategies and dump replay.

Backups prefer the ``sqlite3`` command-line shell for dumping. When the tool
is missing or exits non-zero, the dump is produced in-process with
``sqlite3.Connection.iterdump()`` over a connection to the same database.

Restores replay a dump inside a single transaction: any failing statement
rolls back the whole replay and the error propagates.
"""

from __future__ import annotations

import shutil
import sqlite3
import subprocess
from abc import ABC, abstractmethod
from collections.abc import Iterator, Sequence
from pathlib import Path

from snip.db import Database
from snip.errors import IntegrityError, InternalError, SnipError, UnavailableError
from snip.logging import get_logger

logger = get_logger(__name__)

DEFAULT_DUMP_COMMAND = "sqlite3"
DEFAULT_DUMP_TIMEOUT_SECONDS = 300

# Transaction control emitted by dump tools; the replay supplies its own
_DUMP_TRANSACTION_STATEMENTS = frozenset({"BEGIN TRANSACTION;", "BEGIN;", "COMMIT;"})


class DatabaseDumper(ABC):
    """Writes a SQL text dump of a database to a file."""

    name: str = "dumper"

    @abstractmethod
    def dump(self, database: Database, destination: Path) -> None:
        """
        Dump the database to ``destination``.

        Raises:
            SnipError: If the dump cannot be produced.
        """


class SqliteCliDumper(DatabaseDumper):
    """Dumps through the ``sqlite3`` command-line shell."""

    name = "sqlite3-cli"

    def __init__(
        self,
        command: str = DEFAULT_DUMP_COMMAND,
        timeout: float = DEFAULT_DUMP_TIMEOUT_SECONDS,
    ) -> None:
        self.command = command
        self.timeout = timeout

    def executable(self) -> str | None:
        """Resolve the command on PATH."""
        return shutil.which(self.command)

    def is_available(self) -> bool:
        return self.executable() is not None

    def dump(self, database: Database, destination: Path) -> None:
        executable = self.executable()
        if executable is None:
            raise UnavailableError(
                f"Dump tool not found: {self.command}",
                details={"command": self.command},
            )

        try:
            with open(destination, "wb") as out:
                result = subprocess.run(
                    [executable, str(database.path), ".dump"],
                    stdout=out,
                    stderr=subprocess.PIPE,
                    timeout=self.timeout,
                    check=False,
                )
        except subprocess.TimeoutExpired as e:
            raise InternalError(
                f"Database dump timed out after {self.timeout}s",
                details={"command": self.command},
            ) from e
        except OSError as e:
            raise InternalError(
                f"Failed to run dump tool: {e}",
                details={"command": self.command},
            ) from e

        if result.returncode != 0:
            raise InternalError(
                f"Dump tool exited with code {result.returncode}",
                details={
                    "command": self.command,
                    "returncode": result.returncode,
                    "stderr": result.stderr.decode(errors="replace").strip(),
                },
            )


class IterdumpDumper(DatabaseDumper):
    """Dumps schema and data over a regular connection."""

    name = "iterdump"

    def dump(self, database: Database, destination: Path) -> None:
        try:
            with database.connect() as conn, open(destination, "w", encoding="utf-8") as out:
                for line in conn.iterdump():
                    out.write(f"{line}\n")
        except (sqlite3.Error, OSError) as e:
            raise InternalError(
                f"In-process database dump failed: {e}",
                details={"database": str(database.path)},
            ) from e


class FallbackDumper(DatabaseDumper):
    """
    Tries a sequence of dumpers until one succeeds.

    A failed attempt's partial output is discarded before the next one runs.
    """

    name = "fallback"

    def __init__(self, dumpers: Sequence[DatabaseDumper]) -> None:
        if not dumpers:
            raise ValueError("FallbackDumper needs at least one dumper")
        self.dumpers = list(dumpers)
        self.used: str | None = None

    def dump(self, database: Database, destination: Path) -> None:
        last_error: SnipError | None = None

        for dumper in self.dumpers:
            try:
                dumper.dump(database, destination)
                self.used = dumper.name
                return
            except SnipError as e:
                logger.warning(
                    f"Database dump via {dumper.name} failed, trying next method",
                    extra={"dumper": dumper.name, "error": e.message},
                )
                destination.unlink(missing_ok=True)
                last_error = e

        assert last_error is not None
        raise last_error


def select_dumper(
    command: str = DEFAULT_DUMP_COMMAND,
    timeout: float = DEFAULT_DUMP_TIMEOUT_SECONDS,
) -> DatabaseDumper:
    """
    Pick the dump strategy for this host.

    Returns:
        The CLI dumper backed by the in-process dumper when the CLI tool is
        installed, otherwise the in-process dumper alone.
    """
    cli = SqliteCliDumper(command, timeout)
    if cli.is_available():
        return FallbackDumper([cli, IterdumpDumper()])

    logger.info(
        "Dump tool not installed, using in-process dump",
        extra={"command": command},
    )
    return IterdumpDumper()


# =============================================================================
# Replay
# =============================================================================


def iter_statements(sql: str) -> Iterator[str]:
    """
    Split a SQL dump into complete statements.

    Statements spanning several lines (multi-line string literals, CREATE
    TRIGGER bodies) are kept whole.
    """
    buffer: list[str] = []
    for line in sql.splitlines(keepends=True):
        if not buffer and not line.strip():
            continue
        buffer.append(line)
        candidate = "".join(buffer)
        if sqlite3.complete_statement(candidate):
            yield candidate.strip()
            buffer = []

    leftover = "".join(buffer).strip()
    if leftover:
        yield leftover


def restore_dump(database: Database, dump_path: Path) -> int:
    """
    Replace the database contents with a SQL dump.

    Live user tables and views are dropped and the dump is replayed in one
    transaction.

    Args:
        database: Database to restore into.
        dump_path: SQL dump file.

    Returns:
        Number of statements executed.

    Raises:
        IntegrityError: If the dump is not valid UTF-8 text.
        sqlite3.Error: If any statement fails; nothing is changed.
    """
    try:
        sql = dump_path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise IntegrityError(
            "Database dump is not valid UTF-8",
            details={"path": str(dump_path), "position": e.start},
        ) from e
    executed = 0

    with database.raw_connection() as conn:
        conn.execute("PRAGMA foreign_keys=OFF")
        conn.execute("BEGIN")
        try:
            objects = conn.execute(
                "SELECT type, name FROM sqlite_master "
                "WHERE type IN ('table', 'view') AND name NOT LIKE 'sqlite_%'"
            ).fetchall()
            # Views first, they may reference tables
            for obj_type, obj_name in sorted(objects, key=lambda row: row[0] != "view"):
                quoted = obj_name.replace('"', '""')
                conn.execute(f'DROP {obj_type.upper()} IF EXISTS "{quoted}"')

            # Dumps address sqlite_sequence directly; make sure it exists
            conn.execute(
                "CREATE TABLE _restore_sequence_init (id INTEGER PRIMARY KEY AUTOINCREMENT)"
            )
            conn.execute("DROP TABLE _restore_sequence_init")

            for statement in iter_statements(sql):
                if statement.upper() in _DUMP_TRANSACTION_STATEMENTS:
                    continue
                conn.execute(statement)
                executed += 1

            conn.execute("COMMIT")
        except Exception:
            conn.execute("ROLLBACK")
            raise

    logger.info(
        "Database restored from dump",
        extra={"dump": str(dump_path), "statements": executed},
    )
    return executed
