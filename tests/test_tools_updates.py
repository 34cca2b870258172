"""
Tests for the update, backup and maintenance admin operations.

Tests cover:
- Operator checks on every admin operation
- Parameter validation
- Update lock contract
- Restore with maintenance mode
- Public maintenance status
"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any
from unittest import mock

import pytest

from snip.context import SessionInfo
from snip.errors import (
    FailedPreconditionError,
    InternalError,
    InvalidArgumentError,
    NotFoundError,
    PermissionDeniedError,
)
from snip.kvstore import FileKeyValueStore
from snip.maintenance import MaintenanceGate
from snip.tools.updates import (
    handle_check_updates,
    handle_create_backup,
    handle_delete_backup,
    handle_list_backups,
    handle_maintenance_status,
    handle_restore_backup,
    handle_update,
    handle_update_history,
)
from snip.updates.lock import UpdateLock
from snip.updates.state_machine import UpdateOrchestrator, UpdateResult

# =============================================================================
# Test Fixtures
# =============================================================================


@pytest.fixture
def operator() -> SessionInfo:
    return SessionInfo.operator(user_id="admin", ip_address="192.0.2.10")


@pytest.fixture
def orchestrator(
    make_orchestrator: Callable[[dict[str, Any]], UpdateOrchestrator],
) -> UpdateOrchestrator:
    return make_orchestrator({})


@pytest.fixture
def lock(app_root: Path) -> UpdateLock:
    return UpdateLock(FileKeyValueStore(app_root))


# =============================================================================
# Authorization
# =============================================================================


class TestOperatorCheck:
    """Tests that admin operations reject anonymous callers."""

    @pytest.mark.parametrize(
        "handler",
        [
            handle_check_updates,
            handle_update_history,
            handle_create_backup,
            handle_list_backups,
            handle_restore_backup,
            handle_delete_backup,
        ],
    )
    def test_anonymous_rejected(
        self, handler: Callable[..., Any], orchestrator: UpdateOrchestrator
    ) -> None:
        """Test that an anonymous session gets permission_denied."""
        with pytest.raises(PermissionDeniedError) as exc_info:
            handler(SessionInfo.anonymous(), {}, orchestrator=orchestrator)

        assert exc_info.value.error_code == "permission_denied"
        assert "Authentication required" in exc_info.value.message

    def test_anonymous_update_rejected_before_lock(
        self, orchestrator: UpdateOrchestrator, lock: UpdateLock
    ) -> None:
        """Test that a rejected update never takes the lock."""
        with pytest.raises(PermissionDeniedError):
            handle_update(
                SessionInfo.anonymous(),
                {"version": "1.2.0"},
                orchestrator=orchestrator,
                lock=lock,
            )

        assert lock.is_locked() is False

    def test_session_marker_must_be_true(self, orchestrator: UpdateOrchestrator) -> None:
        """Test that a truthy but non-True marker is not an operator."""
        session = SessionInfo(admin_authenticated="yes", user_id="admin")  # type: ignore[arg-type]

        with pytest.raises(PermissionDeniedError):
            handle_list_backups(session, {}, orchestrator=orchestrator)


# =============================================================================
# Updates
# =============================================================================


class TestHandleUpdate:
    """Tests for handle_update."""

    @pytest.mark.parametrize("params", [{}, {"version": ""}, {"version": 120}])
    def test_version_required(
        self,
        params: dict[str, Any],
        operator: SessionInfo,
        orchestrator: UpdateOrchestrator,
        lock: UpdateLock,
    ) -> None:
        with pytest.raises(InvalidArgumentError, match="Version required"):
            handle_update(operator, params, orchestrator=orchestrator, lock=lock)

    def test_invalid_create_backup(
        self, operator: SessionInfo, orchestrator: UpdateOrchestrator, lock: UpdateLock
    ) -> None:
        with pytest.raises(InvalidArgumentError, match="create_backup"):
            handle_update(
                operator,
                {"version": "1.2.0", "create_backup": "maybe"},
                orchestrator=orchestrator,
                lock=lock,
            )

    def test_runs_update_under_lock(
        self, operator: SessionInfo, orchestrator: UpdateOrchestrator, lock: UpdateLock
    ) -> None:
        """Test that the lock is held during the update and released after."""
        seen: list[bool] = []

        def fake_update(version: str, create_backup: bool = True) -> UpdateResult:
            seen.append(lock.is_locked())
            return UpdateResult(success=True, message=f"Successfully updated to version {version}")

        with mock.patch.object(orchestrator, "update", side_effect=fake_update) as update:
            result = handle_update(
                operator,
                {"version": "1.2.0", "create_backup": "false"},
                orchestrator=orchestrator,
                lock=lock,
            )

        update.assert_called_once_with("1.2.0", create_backup=False)
        assert seen == [True]
        assert lock.is_locked() is False
        assert result["success"] is True
        assert result["backup_id"] is None

    def test_update_in_progress(
        self,
        operator: SessionInfo,
        orchestrator: UpdateOrchestrator,
        lock: UpdateLock,
        app_root: Path,
    ) -> None:
        """Test that an existing lock rejects the update without running it."""
        (app_root / ".update-in-progress").write_text("other process")

        with (
            mock.patch.object(orchestrator, "update") as update,
            pytest.raises(FailedPreconditionError, match="Update already in progress"),
        ):
            handle_update(operator, {"version": "1.2.0"}, orchestrator=orchestrator, lock=lock)

        update.assert_not_called()
        assert (app_root / ".update-in-progress").read_text() == "other process"

    def test_lock_released_when_update_raises(
        self, operator: SessionInfo, orchestrator: UpdateOrchestrator, lock: UpdateLock
    ) -> None:
        with (
            mock.patch.object(orchestrator, "update", side_effect=InternalError("boom")),
            pytest.raises(InternalError),
        ):
            handle_update(operator, {"version": "1.2.0"}, orchestrator=orchestrator, lock=lock)

        assert lock.is_locked() is False


class TestHandleCheckUpdates:
    """Tests for handle_check_updates."""

    def test_returns_check_result(
        self, operator: SessionInfo, orchestrator: UpdateOrchestrator
    ) -> None:
        expected = {
            "update_available": True,
            "current_version": "1.0.0",
            "latest_version": "1.2.0",
            "release_notes": "notes",
        }
        with mock.patch.object(orchestrator, "check_for_updates", return_value=expected):
            assert handle_check_updates(operator, {}, orchestrator=orchestrator) == expected


class TestHandleUpdateHistory:
    """Tests for handle_update_history."""

    def test_limit_clamped(self, operator: SessionInfo, orchestrator: UpdateOrchestrator) -> None:
        for minor in range(12):
            orchestrator.history.record_attempt("1.0.0", f"1.{minor}.0")

        result = handle_update_history(operator, {"limit": "3"}, orchestrator=orchestrator)

        assert len(result["history"]) == 10
        assert result["history"][0]["target_version"] == "1.11.0"

    def test_invalid_limit(self, operator: SessionInfo, orchestrator: UpdateOrchestrator) -> None:
        with pytest.raises(InvalidArgumentError, match="limit"):
            handle_update_history(operator, {"limit": "many"}, orchestrator=orchestrator)


# =============================================================================
# Backups
# =============================================================================


class TestBackupOperations:
    """Tests for the backup handlers."""

    def test_create_list_delete(
        self, operator: SessionInfo, orchestrator: UpdateOrchestrator
    ) -> None:
        created = handle_create_backup(operator, {}, orchestrator=orchestrator)

        assert created["success"] is True
        listed = handle_list_backups(operator, {}, orchestrator=orchestrator)
        assert [b["backup_id"] for b in listed["backups"]] == [created["backup_id"]]
        assert listed["backups"][0]["version"] == "1.0.0"

        deleted = handle_delete_backup(
            operator, {"backup_id": created["backup_id"]}, orchestrator=orchestrator
        )

        assert deleted["success"] is True
        assert handle_list_backups(operator, {}, orchestrator=orchestrator) == {"backups": []}

    @pytest.mark.parametrize("backup_id", ["../etc", "2024-01-01 000000", "a/b", "x;rm"])
    def test_invalid_backup_id_rejected(
        self, backup_id: str, operator: SessionInfo, orchestrator: UpdateOrchestrator
    ) -> None:
        with pytest.raises(InvalidArgumentError, match="Invalid backup ID"):
            handle_restore_backup(operator, {"backup_id": backup_id}, orchestrator=orchestrator)

    def test_backup_id_required(
        self, operator: SessionInfo, orchestrator: UpdateOrchestrator
    ) -> None:
        with pytest.raises(InvalidArgumentError, match="Backup ID required"):
            handle_delete_backup(operator, {}, orchestrator=orchestrator)

    def test_delete_missing_backup(
        self, operator: SessionInfo, orchestrator: UpdateOrchestrator
    ) -> None:
        with pytest.raises(NotFoundError):
            handle_delete_backup(
                operator, {"backup_id": "2020-01-01_000000"}, orchestrator=orchestrator
            )


class TestHandleRestoreBackup:
    """Tests for handle_restore_backup."""

    def test_restore_round_trip(
        self, operator: SessionInfo, orchestrator: UpdateOrchestrator, app_root: Path
    ) -> None:
        """Test that a restore brings back files and lowers maintenance."""
        backup_id = handle_create_backup(operator, {}, orchestrator=orchestrator)["backup_id"]
        (app_root / "index.html").write_text("<html>broken</html>")

        result = handle_restore_backup(
            operator, {"backup_id": backup_id}, orchestrator=orchestrator
        )

        assert result["success"] is True
        assert (app_root / "index.html").read_text() == "<html>1.0.0</html>"
        assert orchestrator.maintenance.is_enabled() is False

    def test_maintenance_lowered_on_failure(
        self, operator: SessionInfo, orchestrator: UpdateOrchestrator
    ) -> None:
        """Test that maintenance mode is disabled even when the restore fails."""
        messages: list[str] = []

        def failing_restore(backup_id: str) -> None:
            messages.append(orchestrator.maintenance.status()["message"])
            raise InternalError("Database restore failed: disk I/O error")

        with (
            mock.patch.object(orchestrator.backups, "restore", side_effect=failing_restore),
            pytest.raises(InternalError),
        ):
            handle_restore_backup(
                operator, {"backup_id": "2024-01-01_000000"}, orchestrator=orchestrator
            )

        assert messages == ["Restoring from backup..."]
        assert orchestrator.maintenance.is_enabled() is False


# =============================================================================
# Maintenance
# =============================================================================


class TestHandleMaintenanceStatus:
    """Tests for handle_maintenance_status."""

    def test_public_when_disabled(self, gate: MaintenanceGate) -> None:
        assert handle_maintenance_status(None, {}, gate=gate) == {"enabled": False}

    def test_reports_message(self, gate: MaintenanceGate) -> None:
        gate.enable("Updating to version 1.2.0...")

        status = handle_maintenance_status(SessionInfo.anonymous(), {}, gate=gate)

        assert status["enabled"] is True
        assert status["message"] == "Updating to version 1.2.0..."
