"""
Tests for database dump strategies and dump replay.

Tests cover:
- SqliteCliDumper success, missing tool and non-zero exit
- IterdumpDumper
- FallbackDumper and select_dumper
- iter_statements / restore_dump, including all-or-nothing replay
"""

from __future__ import annotations

import sqlite3
import subprocess
from pathlib import Path
from unittest import mock

import pytest

from snip.db import Database
from snip.errors import IntegrityError, InternalError, UnavailableError
from snip.updates.dumpers import (
    FallbackDumper,
    IterdumpDumper,
    SqliteCliDumper,
    iter_statements,
    restore_dump,
    select_dumper,
)


def _rows(database: Database) -> list[tuple[str, str]]:
    with database.connect() as conn:
        return [
            (row["short_code"], row["long_url"])
            for row in conn.execute("SELECT short_code, long_url FROM urls ORDER BY id")
        ]


class TestSqliteCliDumper:
    """Tests for the command-line dumper."""

    def test_missing_tool(self, database: Database, tmp_path: Path) -> None:
        dumper = SqliteCliDumper(command="definitely-not-installed-sqlite")

        assert dumper.is_available() is False
        with pytest.raises(UnavailableError):
            dumper.dump(database, tmp_path / "dump.sql")

    def test_nonzero_exit(self, database: Database, tmp_path: Path) -> None:
        dumper = SqliteCliDumper()
        completed = subprocess.CompletedProcess(args=[], returncode=1, stderr=b"Error: no such db")

        with (
            mock.patch("snip.updates.dumpers.shutil.which", return_value="/usr/bin/sqlite3"),
            mock.patch("snip.updates.dumpers.subprocess.run", return_value=completed),
            pytest.raises(InternalError) as exc_info,
        ):
            dumper.dump(database, tmp_path / "dump.sql")

        assert exc_info.value.details["returncode"] == 1
        assert exc_info.value.details["stderr"] == "Error: no such db"

    def test_timeout(self, database: Database, tmp_path: Path) -> None:
        dumper = SqliteCliDumper(timeout=1)

        with (
            mock.patch("snip.updates.dumpers.shutil.which", return_value="/usr/bin/sqlite3"),
            mock.patch(
                "snip.updates.dumpers.subprocess.run",
                side_effect=subprocess.TimeoutExpired(cmd="sqlite3", timeout=1),
            ),
            pytest.raises(InternalError, match="timed out"),
        ):
            dumper.dump(database, tmp_path / "dump.sql")

    def test_invokes_dump_command(self, database: Database, tmp_path: Path) -> None:
        completed = subprocess.CompletedProcess(args=[], returncode=0, stderr=b"")

        with (
            mock.patch("snip.updates.dumpers.shutil.which", return_value="/usr/bin/sqlite3"),
            mock.patch("snip.updates.dumpers.subprocess.run", return_value=completed) as run,
        ):
            SqliteCliDumper(timeout=42).dump(database, tmp_path / "dump.sql")

        args, kwargs = run.call_args
        assert args[0] == ["/usr/bin/sqlite3", str(database.path), ".dump"]
        assert kwargs["timeout"] == 42


class TestIterdumpDumper:
    """Tests for the in-process dumper."""

    def test_dump_contains_schema_and_data(self, database: Database, tmp_path: Path) -> None:
        dump_path = tmp_path / "dump.sql"

        IterdumpDumper().dump(database, dump_path)

        sql = dump_path.read_text()
        assert "CREATE TABLE urls" in sql
        assert "abc123" in sql
        assert "app_settings" in sql


class TestFallbackDumper:
    """Tests for fallback between dump strategies."""

    def test_falls_back_when_first_fails(self, database: Database, tmp_path: Path) -> None:
        dump_path = tmp_path / "dump.sql"
        failing = SqliteCliDumper(command="definitely-not-installed-sqlite")
        dumper = FallbackDumper([failing, IterdumpDumper()])

        dumper.dump(database, dump_path)

        assert dumper.used == "iterdump"
        assert "CREATE TABLE urls" in dump_path.read_text()

    def test_falls_back_on_nonzero_exit(self, database: Database, tmp_path: Path) -> None:
        dump_path = tmp_path / "dump.sql"
        completed = subprocess.CompletedProcess(args=[], returncode=2, stderr=b"boom")
        dumper = FallbackDumper([SqliteCliDumper(), IterdumpDumper()])

        with (
            mock.patch("snip.updates.dumpers.shutil.which", return_value="/usr/bin/sqlite3"),
            mock.patch("snip.updates.dumpers.subprocess.run", return_value=completed),
        ):
            dumper.dump(database, dump_path)

        assert dumper.used == "iterdump"
        assert "abc123" in dump_path.read_text()

    def test_all_fail(self, database: Database, tmp_path: Path) -> None:
        dumper = FallbackDumper([SqliteCliDumper(command="definitely-not-installed-sqlite")])

        with pytest.raises(UnavailableError):
            dumper.dump(database, tmp_path / "dump.sql")

    def test_requires_a_dumper(self) -> None:
        with pytest.raises(ValueError):
            FallbackDumper([])


class TestSelectDumper:
    """Tests for select_dumper."""

    def test_tool_available(self) -> None:
        with mock.patch("snip.updates.dumpers.shutil.which", return_value="/usr/bin/sqlite3"):
            dumper = select_dumper()

        assert isinstance(dumper, FallbackDumper)
        assert [d.name for d in dumper.dumpers] == ["sqlite3-cli", "iterdump"]

    def test_tool_missing(self) -> None:
        with mock.patch("snip.updates.dumpers.shutil.which", return_value=None):
            assert isinstance(select_dumper(), IterdumpDumper)


class TestIterStatements:
    """Tests for splitting a dump into statements."""

    def test_multiline_literal_kept_whole(self) -> None:
        sql = "BEGIN TRANSACTION;\nINSERT INTO t VALUES('line1;\nline2');\nCOMMIT;\n"

        assert list(iter_statements(sql)) == [
            "BEGIN TRANSACTION;",
            "INSERT INTO t VALUES('line1;\nline2');",
            "COMMIT;",
        ]

    def test_trigger_body_kept_whole(self) -> None:
        sql = (
            "CREATE TRIGGER trg AFTER INSERT ON t BEGIN\n"
            "  UPDATE t SET v = 1;\n"
            "END;\n"
        )

        assert len(list(iter_statements(sql))) == 1


class TestRestoreDump:
    """Tests for restore_dump."""

    def test_restore_replaces_contents(self, database: Database, tmp_path: Path) -> None:
        dump_path = tmp_path / "dump.sql"
        IterdumpDumper().dump(database, dump_path)

        with database.connect() as conn:
            conn.execute("DELETE FROM urls")
            conn.execute("INSERT INTO urls (short_code, long_url) VALUES ('new', 'https://n')")
            conn.execute("CREATE TABLE added_later (id INTEGER)")

        restore_dump(database, dump_path)

        assert _rows(database) == [
            ("abc123", "https://example.com/a"),
            ("xyz789", "https://example.com/b"),
        ]
        with database.connect() as conn:
            tables = {
                row[0]
                for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
            }
        assert "added_later" not in tables

    def test_failing_statement_rolls_back_everything(
        self, database: Database, tmp_path: Path
    ) -> None:
        dump_path = tmp_path / "dump.sql"
        dump_path.write_text(
            "BEGIN TRANSACTION;\n"
            "CREATE TABLE urls (id INTEGER PRIMARY KEY, short_code TEXT, long_url TEXT);\n"
            "INSERT INTO urls VALUES(1, 'only', 'https://only');\n"
            "INSERT INTO missing_table VALUES(1);\n"
            "COMMIT;\n"
        )
        before = _rows(database)

        with pytest.raises(sqlite3.OperationalError) as exc_info:
            restore_dump(database, dump_path)

        assert "missing_table" in str(exc_info.value)
        assert _rows(database) == before

    def test_non_utf8_dump_rejected(self, database: Database, tmp_path: Path) -> None:
        """Test that undecodable dump bytes are reported and leave the database intact."""
        dump_path = tmp_path / "dump.sql"
        dump_path.write_bytes(b"DROP TABLE urls;\nINSERT INTO t VALUES('\xff');\n")
        before = _rows(database)

        with pytest.raises(IntegrityError, match="not valid UTF-8"):
            restore_dump(database, dump_path)

        assert _rows(database) == before

    def test_unexpected_error_rolls_back(self, database: Database, tmp_path: Path) -> None:
        dump_path = tmp_path / "dump.sql"
        dump_path.write_text("DROP TABLE urls;\nCREATE TABLE other (id INTEGER);\n")
        before = _rows(database)

        with (
            mock.patch(
                "snip.updates.dumpers.iter_statements",
                side_effect=RuntimeError("splitter crashed"),
            ),
            pytest.raises(RuntimeError),
        ):
            restore_dump(database, dump_path)

        assert _rows(database) == before
