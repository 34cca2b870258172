"""
Admin operations on updates, backups and maintenance mode.

Every handler takes the caller's SessionInfo and a params dict and returns
a JSON-serializable dict. Failures raise SnipError subclasses; the entry
layer reports them with ``to_dict()``.

Operations:
- check_updates: Compare installed and latest versions
- update: Install a release under the update lock
- create_backup / list_backups / restore_backup / delete_backup
- update_history: Recent update attempts
- maintenance_status: Public maintenance-mode status
"""

from __future__ import annotations

from typing import Any

from snip.context import SessionInfo
from snip.errors import InvalidArgumentError, PermissionDeniedError
from snip.logging import get_logger
from snip.maintenance import MaintenanceGate
from snip.updates.backup import validate_backup_id
from snip.updates.lock import UpdateLock
from snip.updates.state_machine import (
    HISTORY_LIMIT_DEFAULT,
    UpdateOrchestrator,
    clamp_history_limit,
)

logger = get_logger(__name__)

RESTORE_MAINTENANCE_MESSAGE = "Restoring from backup..."


def _check_operator(session: SessionInfo, *, operation: str) -> None:
    """
    Check that the caller is an authenticated operator.

    Raises:
        PermissionDeniedError: If the session lacks the operator marker.
    """
    if not session.is_operator:
        raise PermissionDeniedError(
            f"Authentication required for {operation} operations",
            details={"operation": operation},
        )


def _parse_bool(value: Any, *, name: str, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in ("true", "1", "yes", "on"):
        return True
    if isinstance(value, str) and value.lower() in ("false", "0", "no", "off"):
        return False
    raise InvalidArgumentError(
        f"Parameter '{name}' must be a boolean",
        details={"parameter": name, "value": value},
    )


def _require_backup_id(params: dict[str, Any]) -> str:
    backup_id = params.get("backup_id")
    if not backup_id:
        raise InvalidArgumentError(
            "Backup ID required",
            details={"parameter": "backup_id"},
        )
    return validate_backup_id(backup_id)


# =============================================================================
# Updates
# =============================================================================


def handle_check_updates(
    session: SessionInfo,
    _params: dict[str, Any],
    *,
    orchestrator: UpdateOrchestrator,
) -> dict[str, Any]:
    """
    Check whether a newer release is available.

    Returns:
        Dictionary with update_available, current_version, latest_version
        and release_notes.
    """
    _check_operator(session, operation="check")
    return orchestrator.check_for_updates()


def handle_update(
    session: SessionInfo,
    params: dict[str, Any],
    *,
    orchestrator: UpdateOrchestrator,
    lock: UpdateLock,
) -> dict[str, Any]:
    """
    Install a release while holding the update lock.

    Args:
        session: Caller session.
        params: Request parameters:
            - version: Version to install (required)
            - create_backup: Take a backup first (default: True)
        orchestrator: Update orchestrator.
        lock: Update-in-progress lock.

    Returns:
        Dictionary with success, message, duration_seconds and backup_id.

    Raises:
        FailedPreconditionError: If another update is in progress.
        RollbackFailedError: If the update and its rollback both failed.
    """
    _check_operator(session, operation="update")

    version = params.get("version")
    if not version or not isinstance(version, str):
        raise InvalidArgumentError(
            "Version required",
            details={"parameter": "version"},
        )
    create_backup = _parse_bool(
        params.get("create_backup"), name="create_backup", default=True
    )

    logger.info(
        "Update requested",
        extra={"version": version, "user_id": session.user_id, "ip": session.ip_address},
    )

    with lock:
        result = orchestrator.update(version, create_backup=create_backup)

    return result.to_dict()


def handle_update_history(
    session: SessionInfo,
    params: dict[str, Any],
    *,
    orchestrator: UpdateOrchestrator,
) -> dict[str, Any]:
    """Return recent update attempts; ``limit`` is clamped to [10, 100]."""
    _check_operator(session, operation="history")

    raw_limit = params.get("limit", HISTORY_LIMIT_DEFAULT)
    try:
        limit = clamp_history_limit(int(raw_limit))
    except (TypeError, ValueError) as e:
        raise InvalidArgumentError(
            "Parameter 'limit' must be an integer",
            details={"parameter": "limit", "value": raw_limit},
        ) from e

    return {"history": orchestrator.get_update_history(limit)}


# =============================================================================
# Backups
# =============================================================================


def handle_create_backup(
    session: SessionInfo,
    _params: dict[str, Any],
    *,
    orchestrator: UpdateOrchestrator,
) -> dict[str, Any]:
    _check_operator(session, operation="backup")
    backup_id = orchestrator.backups.create(orchestrator.get_current_version())
    return {"success": True, "backup_id": backup_id}


def handle_list_backups(
    session: SessionInfo,
    _params: dict[str, Any],
    *,
    orchestrator: UpdateOrchestrator,
) -> dict[str, Any]:
    _check_operator(session, operation="backup")
    return {"backups": [summary.model_dump() for summary in orchestrator.backups.list()]}


def handle_restore_backup(
    session: SessionInfo,
    params: dict[str, Any],
    *,
    orchestrator: UpdateOrchestrator,
) -> dict[str, Any]:
    """
    Restore a backup with maintenance mode raised for the duration.

    The maintenance gate is lowered whether or not the restore succeeds.
    """
    _check_operator(session, operation="restore")
    backup_id = _require_backup_id(params)

    logger.info(
        "Backup restore requested",
        extra={"backup_id": backup_id, "user_id": session.user_id},
    )

    orchestrator.maintenance.enable(RESTORE_MAINTENANCE_MESSAGE)
    try:
        orchestrator.backups.restore(backup_id)
    finally:
        orchestrator.maintenance.disable()

    return {"success": True, "message": "Backup restored successfully", "backup_id": backup_id}


def handle_delete_backup(
    session: SessionInfo,
    params: dict[str, Any],
    *,
    orchestrator: UpdateOrchestrator,
) -> dict[str, Any]:
    _check_operator(session, operation="delete")
    backup_id = _require_backup_id(params)
    orchestrator.backups.delete(backup_id)
    return {"success": True, "message": "Backup deleted successfully", "backup_id": backup_id}


# =============================================================================
# Maintenance
# =============================================================================


def handle_maintenance_status(
    _session: SessionInfo | None,
    _params: dict[str, Any],
    *,
    gate: MaintenanceGate,
) -> dict[str, Any]:
    """Return maintenance status; available without authentication."""
    return gate.status()
