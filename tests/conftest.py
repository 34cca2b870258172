"""
Pytest configuration and shared fixtures for the Snip update subsystem tests.
"""

from __future__ import annotations

import io
import json
import logging
import zipfile
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import httpx
import pytest

from snip.db import Database, SettingsStore
from snip.kvstore import FileKeyValueStore
from snip.maintenance import MaintenanceGate
from snip.updates.backup import BackupStore
from snip.updates.dumpers import IterdumpDumper
from snip.updates.history import UpdateHistory
from snip.updates.state_machine import UpdateOrchestrator
from snip.updates.version import VersionSource

API_BASE = "https://api.example.test"
DOWNLOAD_BASE = "https://downloads.example.test"
OWNER = "snip-app"
REPO = "snip"

APP_FILES: dict[str, str] = {
    "api/admin.php": "<?php // admin 1.0.0",
    "api/config.php": "<?php // live config",
    "api/UrlShortener.php": "<?php // shortener 1.0.0",
    "index.html": "<html>1.0.0</html>",
}


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers",
        "integration: marks tests as integration tests (deselect with '-m \"not integration\"')",
    )


@pytest.fixture(autouse=True)
def reset_snip_logger() -> Iterator[None]:
    """Undo handler and propagation changes made by setup_logging."""
    yield
    logger = logging.getLogger("snip")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


# =============================================================================
# Helpers
# =============================================================================


def write_tree(root: Path, files: dict[str, str]) -> None:
    """Create files (and their parent directories) under root."""
    for relative, content in files.items():
        path = root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)


def make_release_zip(files: dict[str, str], top_dir: str = "snip-1.2.0") -> bytes:
    """Build a release archive with a single top-level directory."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as zf:
        for relative, content in files.items():
            zf.writestr(f"{top_dir}/{relative}", content)
    return buffer.getvalue()


def release_payload(
    tag: str,
    body: str = "",
    assets: list[dict[str, Any]] | None = None,
) -> dict[str, Any]:
    return {"tag_name": tag, "body": body, "assets": assets or []}


def make_client(
    routes: dict[str, Any],
    calls: list[str] | None = None,
) -> httpx.Client:
    """
    Build an httpx.Client answering from a route table.

    Route values may be a dict (JSON body), bytes, str, an int status code,
    or an httpx.Response.
    """

    def handler(request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        if calls is not None:
            calls.append(url)
        if url not in routes:
            return httpx.Response(404, json={"message": "Not Found"})

        value = routes[url]
        if isinstance(value, httpx.Response):
            return value
        if isinstance(value, int):
            return httpx.Response(value)
        if isinstance(value, bytes):
            return httpx.Response(200, content=value)
        if isinstance(value, str):
            return httpx.Response(200, text=value)
        return httpx.Response(200, json=value)

    return httpx.Client(transport=httpx.MockTransport(handler))


def api_url(endpoint: str) -> str:
    return f"{API_BASE}/repos/{OWNER}/{REPO}{endpoint}"


def archive_url(version: str) -> str:
    return f"{DOWNLOAD_BASE}/{OWNER}/{REPO}/archive/refs/tags/v{version}.zip"


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def app_root(tmp_path: Path) -> Path:
    """An installed application tree at version 1.0.0."""
    root = tmp_path / "app"
    root.mkdir()
    write_tree(root, APP_FILES)
    (root / "storage").mkdir()
    return root


@pytest.fixture
def database(app_root: Path) -> Database:
    """A database with a links table and app_version 1.0.0."""
    db = Database(app_root / "storage" / "snip.db")
    with db.connect() as conn:
        conn.execute(
            "CREATE TABLE urls (id INTEGER PRIMARY KEY AUTOINCREMENT, "
            "short_code TEXT UNIQUE, long_url TEXT)"
        )
        conn.executemany(
            "INSERT INTO urls (short_code, long_url) VALUES (?, ?)",
            [("abc123", "https://example.com/a"), ("xyz789", "https://example.com/b")],
        )
    SettingsStore(db).set_app_version("1.0.0")
    return db


@pytest.fixture
def settings(database: Database) -> SettingsStore:
    return SettingsStore(database)


@pytest.fixture
def backup_store(database: Database, settings: SettingsStore, app_root: Path) -> BackupStore:
    return BackupStore(
        database,
        settings,
        app_root,
        app_root / "backup",
        dumper=IterdumpDumper(),
    )


@pytest.fixture
def gate(app_root: Path) -> MaintenanceGate:
    return MaintenanceGate(FileKeyValueStore(app_root))


@pytest.fixture
def make_orchestrator(
    app_root: Path,
    database: Database,
    settings: SettingsStore,
    backup_store: BackupStore,
    gate: MaintenanceGate,
) -> Callable[[dict[str, Any]], UpdateOrchestrator]:
    """Factory building an orchestrator whose registry answers from routes."""

    def factory(routes: dict[str, Any]) -> UpdateOrchestrator:
        versions = VersionSource(
            OWNER,
            REPO,
            cache_file=app_root / "storage" / "cache" / "version-check.json",
            api_base=API_BASE,
            download_base=DOWNLOAD_BASE,
            client=make_client(routes),
        )
        return UpdateOrchestrator(
            app_root,
            database,
            settings,
            versions,
            backup_store,
            gate,
            UpdateHistory(database),
        )

    return factory


def read_json(path: Path) -> Any:
    return json.loads(path.read_text())
