"""
Update orchestration for the Snip URL shortener.

This module implements the UpdateOrchestrator, which drives a release
upgrade through a fixed sequence of states with rollback from backup.

State machine states:
- idle: No update in progress
- validating: Checking runtime version, write access and database
- backing_up: Taking a pre-update backup
- maintenance_on: Enabling the maintenance gate
- downloading: Fetching the release archive
- verifying: Comparing the archive hash with the published one
- installing: Copying the release over the application tree
- migrating: Ensuring tracking tables and recording the new version
- integrity_check: Confirming required files exist
- maintenance_off: Disabling the maintenance gate
- success: Update completed
- rolling_back: Restoring the pre-update backup
- failed: Update failed

Each step returns a StepResult instead of raising. ``update()`` converts
every failure into an UpdateResult, except a failed rollback, which raises
RollbackFailedError.
"""

from __future__ import annotations

import os
import sqlite3
import sys
import tempfile
import time
import zipfile
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import httpx
from pydantic import BaseModel, Field

from snip.db import Database, SettingsStore
from snip.errors import (
    FailedPreconditionError,
    IntegrityError,
    InternalError,
    RollbackFailedError,
    SnipError,
)
from snip.kvstore import FileKeyValueStore
from snip.logging import get_logger
from snip.maintenance import MaintenanceGate
from snip.updates.backup import BackupStore
from snip.updates.dumpers import DatabaseDumper
from snip.updates.history import UpdateHistory
from snip.updates.operations import (
    EXCLUDED_PATHS,
    copy_tree_excluding,
    ensure_directory,
    extract_archive,
    find_single_top_dir,
    safe_remove_directory,
    sha256_file,
)
from snip.updates.version import (
    VersionSource,
    compare_versions,
    normalize_version,
    parse_semantic_version,
)

logger = get_logger(__name__)

DEFAULT_REQUIRED_FILES: tuple[str, ...] = (
    "api/admin.php",
    "api/config.php",
    "api/UrlShortener.php",
    "index.html",
)

HISTORY_LIMIT_MIN = 10
HISTORY_LIMIT_MAX = 100
HISTORY_LIMIT_DEFAULT = 50


class UpdateState(str, Enum):
    """
    States for the update state machine.

    State transitions:
    - idle → validating (start update)
    - validating → backing_up | maintenance_on | failed
    - backing_up → maintenance_on | failed
    - maintenance_on → downloading | rolling_back | failed
    - downloading → verifying | rolling_back | failed
    - verifying → installing | rolling_back | failed
    - installing → migrating | rolling_back | failed
    - migrating → integrity_check | rolling_back | failed
    - integrity_check → maintenance_off | rolling_back | failed
    - maintenance_off → success
    - rolling_back → failed
    - success → idle, failed → idle
    """

    IDLE = "idle"
    VALIDATING = "validating"
    BACKING_UP = "backing_up"
    MAINTENANCE_ON = "maintenance_on"
    DOWNLOADING = "downloading"
    VERIFYING = "verifying"
    INSTALLING = "installing"
    MIGRATING = "migrating"
    INTEGRITY_CHECK = "integrity_check"
    MAINTENANCE_OFF = "maintenance_off"
    SUCCESS = "success"
    ROLLING_BACK = "rolling_back"
    FAILED = "failed"


# Valid state transitions
_VALID_TRANSITIONS: dict[UpdateState, set[UpdateState]] = {
    UpdateState.IDLE: {UpdateState.VALIDATING},
    UpdateState.VALIDATING: {
        UpdateState.BACKING_UP,
        UpdateState.MAINTENANCE_ON,
        UpdateState.FAILED,
    },
    UpdateState.BACKING_UP: {UpdateState.MAINTENANCE_ON, UpdateState.FAILED},
    UpdateState.MAINTENANCE_ON: {
        UpdateState.DOWNLOADING,
        UpdateState.ROLLING_BACK,
        UpdateState.FAILED,
    },
    UpdateState.DOWNLOADING: {
        UpdateState.VERIFYING,
        UpdateState.ROLLING_BACK,
        UpdateState.FAILED,
    },
    UpdateState.VERIFYING: {
        UpdateState.INSTALLING,
        UpdateState.ROLLING_BACK,
        UpdateState.FAILED,
    },
    UpdateState.INSTALLING: {
        UpdateState.MIGRATING,
        UpdateState.ROLLING_BACK,
        UpdateState.FAILED,
    },
    UpdateState.MIGRATING: {
        UpdateState.INTEGRITY_CHECK,
        UpdateState.ROLLING_BACK,
        UpdateState.FAILED,
    },
    UpdateState.INTEGRITY_CHECK: {
        UpdateState.MAINTENANCE_OFF,
        UpdateState.ROLLING_BACK,
        UpdateState.FAILED,
    },
    UpdateState.MAINTENANCE_OFF: {UpdateState.SUCCESS},
    UpdateState.ROLLING_BACK: {UpdateState.FAILED},
    UpdateState.SUCCESS: {UpdateState.IDLE},
    UpdateState.FAILED: {UpdateState.IDLE},
}


# =============================================================================
# Results
# =============================================================================


@dataclass(frozen=True)
class StepResult:
    """Outcome of one update step.

    Attributes:
        ok: Whether the step succeeded.
        error_kind: Error code of the failure (e.g., "unavailable", "integrity").
        message: Human-readable outcome.
    """

    ok: bool
    error_kind: str | None = None
    message: str = ""

    @classmethod
    def success(cls, message: str = "") -> StepResult:
        return cls(ok=True, message=message)

    @classmethod
    def failure(cls, error_kind: str, message: str) -> StepResult:
        return cls(ok=False, error_kind=error_kind, message=message)


class UpdateResult(BaseModel):
    """Structured outcome of ``UpdateOrchestrator.update``."""

    success: bool
    message: str
    duration_seconds: float = Field(default=0.0, ge=0)
    backup_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump()


@dataclass
class _UpdateRun:
    """Mutable bookkeeping for one update() call."""

    target_version: str
    previous_version: str
    started: float
    create_backup: bool = True
    attempt_id: int | None = None
    backup_id: str | None = None
    scratch_dir: Path | None = None
    archive_path: Path | None = None
    state_log: list[str] = field(default_factory=list)


def clamp_history_limit(limit: int | None) -> int:
    """Clamp a history page size to the allowed range."""
    if limit is None:
        return HISTORY_LIMIT_DEFAULT
    return max(HISTORY_LIMIT_MIN, min(HISTORY_LIMIT_MAX, int(limit)))


# =============================================================================
# Orchestrator
# =============================================================================


class UpdateOrchestrator:
    """
    Checks for, installs and rolls back application updates.

    The orchestrator is not reentrant. Callers serialize update() calls
    with an UpdateLock.

    Attributes:
        versions: Release registry access.
        backups: Backup store used for pre-update snapshots and rollback.
        maintenance: Maintenance gate raised during installs.
        history: Update attempt log.
    """

    def __init__(
        self,
        app_root: Path,
        database: Database,
        settings: SettingsStore,
        versions: VersionSource,
        backups: BackupStore,
        maintenance: MaintenanceGate,
        history: UpdateHistory,
        *,
        scratch_dir: Path | None = None,
        required_files: Iterable[str] = DEFAULT_REQUIRED_FILES,
        min_python: str = "3.11.0",
        excluded_paths: Iterable[str] = EXCLUDED_PATHS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize the UpdateOrchestrator.

        Args:
            app_root: Live application tree.
            database: Database handle.
            settings: Application settings store.
            versions: Release registry access.
            backups: Backup store.
            maintenance: Maintenance gate.
            history: Update attempt log.
            scratch_dir: Parent of per-update download directories.
            required_files: Files that must exist after install.
            min_python: Minimum interpreter version for installs.
            excluded_paths: Relative path prefixes never overwritten.
            clock: Monotonic clock for durations.
        """
        self.app_root = app_root
        self.database = database
        self.settings = settings
        self.versions = versions
        self.backups = backups
        self.maintenance = maintenance
        self.history = history
        self.scratch_dir = scratch_dir or app_root / "storage"
        self.required_files = tuple(required_files)
        self.min_python = min_python
        self.excluded_paths = tuple(excluded_paths)
        self._clock = clock
        self._state = UpdateState.IDLE
        self._target_version: str | None = None

    @classmethod
    def from_config(
        cls,
        config,
        *,
        client: httpx.Client | None = None,
        dumper: DatabaseDumper | None = None,
    ) -> UpdateOrchestrator:
        """
        Wire an orchestrator and its collaborators from an AppConfig.

        Args:
            config: AppConfig.
            client: Optional httpx.Client for the release registry.
            dumper: Optional database dump strategy.
        """
        database = Database(config.database_path)
        settings = SettingsStore(database, default_version=config.app.version)
        store = FileKeyValueStore(config.maintenance_flag_file.parent)
        return cls(
            config.app_root,
            database,
            settings,
            VersionSource.from_config(config, client=client),
            BackupStore.from_config(config, database, settings, dumper=dumper),
            MaintenanceGate(
                store,
                key=config.maintenance_flag_file.name,
                default_timeout_seconds=config.maintenance.timeout_seconds,
            ),
            UpdateHistory(database),
            scratch_dir=config.scratch_dir,
            required_files=config.app.required_files,
            min_python=config.app.min_python,
        )

    @property
    def state(self) -> UpdateState:
        """Get the current state."""
        return self._state

    def _transition_to(self, new_state: UpdateState) -> None:
        """
        Transition to a new state.

        Raises:
            InternalError: If the transition is not valid.
        """
        current = self._state

        if new_state not in _VALID_TRANSITIONS.get(current, set()):
            raise InternalError(
                f"Invalid state transition from {current.value} to {new_state.value}",
                details={
                    "current_state": current.value,
                    "target_state": new_state.value,
                },
            )

        logger.info(
            f"State transition: {current.value} -> {new_state.value}",
            extra={
                "old_state": current.value,
                "new_state": new_state.value,
                "target_version": self._target_version,
            },
        )
        self._state = new_state

    def get_status(self) -> dict[str, Any]:
        return {
            "state": self._state.value,
            "target_version": self._target_version,
            "current_version": self.get_current_version(),
        }

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_current_version(self) -> str:
        """Get the installed version from settings, or the configured default."""
        return self.settings.get_app_version()

    def check_for_updates(self) -> dict[str, Any]:
        """
        Compare the installed version with the latest release.

        Returns:
            Dictionary with update_available, current_version,
            latest_version and release_notes.

        Raises:
            InvalidArgumentError: If either version is not a semantic version.
        """
        current = self.get_current_version()
        latest = self.versions.latest_version()
        available = compare_versions(latest, current) > 0

        logger.info(
            "Checked for updates",
            extra={
                "current_version": current,
                "latest_version": latest,
                "update_available": available,
            },
        )

        return {
            "update_available": available,
            "current_version": current,
            "latest_version": latest,
            "release_notes": self.versions.release_notes(latest) if available else "",
        }

    def get_update_history(self, limit: int | None = HISTORY_LIMIT_DEFAULT) -> list[dict[str, Any]]:
        """Get recent update attempts, newest first."""
        return [attempt.to_dict() for attempt in self.history.list(clamp_history_limit(limit))]

    # -------------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------------

    def _run_step(
        self,
        state: UpdateState,
        step: Callable[[_UpdateRun], StepResult],
        run: _UpdateRun,
    ) -> StepResult:
        self._transition_to(state)
        run.state_log.append(state.value)
        try:
            result = step(run)
        except SnipError as e:
            result = StepResult.failure(e.error_code, e.message)
        except (OSError, sqlite3.Error, zipfile.BadZipFile) as e:
            result = StepResult.failure("internal", str(e))
        except Exception as e:
            logger.exception(f"Unexpected error in step {state.value}")
            result = StepResult.failure("internal", str(e) or type(e).__name__)

        if result.ok:
            logger.debug(f"Step {state.value} completed", extra={"step": state.value})
        else:
            logger.error(
                f"Step {state.value} failed: {result.message}",
                extra={"step": state.value, "error_kind": result.error_kind},
            )
        return result

    def _validate(self, run: _UpdateRun) -> StepResult:
        parse_semantic_version(run.target_version)

        minimum = parse_semantic_version(self.min_python)
        required = (minimum["major"], minimum["minor"], minimum["patch"])
        if tuple(sys.version_info[:3]) < required:
            raise FailedPreconditionError(
                f"Python {self.min_python} or higher is required",
                details={"python_version": ".".join(map(str, sys.version_info[:3]))},
            )

        if not os.access(self.app_root, os.W_OK):
            raise FailedPreconditionError(
                "Application directory is not writable",
                details={"path": str(self.app_root)},
            )

        self.database.ping()
        return StepResult.success("Environment validated")

    def _backup(self, run: _UpdateRun) -> StepResult:
        run.backup_id = self.backups.create(run.previous_version)
        return StepResult.success(f"Backup {run.backup_id} created")

    def _enable_maintenance(self, run: _UpdateRun) -> StepResult:
        self.maintenance.enable(f"Updating to version {run.target_version}...")
        return StepResult.success()

    def _download(self, run: _UpdateRun) -> StepResult:
        ensure_directory(self.scratch_dir)
        run.scratch_dir = Path(tempfile.mkdtemp(prefix="update-", dir=self.scratch_dir))
        run.archive_path = self.versions.download_release(run.target_version, run.scratch_dir)
        return StepResult.success()

    @staticmethod
    def _downloaded_archive(run: _UpdateRun) -> tuple[Path, Path]:
        if run.archive_path is None or run.scratch_dir is None:
            raise InternalError(
                "Release archive has not been downloaded",
                details={"version": run.target_version},
            )
        return run.archive_path, run.scratch_dir

    def _verify(self, run: _UpdateRun) -> StepResult:
        archive_path, _ = self._downloaded_archive(run)
        expected = self.versions.release_hash(run.target_version)
        if expected is None:
            logger.warning(
                "No published hash for release, skipping verification",
                extra={"version": run.target_version},
            )
            return StepResult.success("Verification skipped")

        actual = sha256_file(archive_path)
        if actual != expected.lower():
            raise IntegrityError(
                "Release archive hash mismatch",
                details={"expected": expected, "actual": actual},
            )
        return StepResult.success("Hash verified")

    def _install(self, run: _UpdateRun) -> StepResult:
        archive_path, scratch_dir = self._downloaded_archive(run)
        extracted = extract_archive(archive_path, scratch_dir / "extracted")
        release_root = find_single_top_dir(extracted)
        copied = copy_tree_excluding(release_root, self.app_root, self.excluded_paths)
        return StepResult.success(f"Installed {copied} files")

    def _migrate(self, run: _UpdateRun) -> StepResult:
        try:
            self.history.ensure_schema()
            self.settings.ensure_schema()
            self.settings.set_app_version(run.target_version)
        except (sqlite3.Error, SnipError) as e:
            # Migration problems do not fail an otherwise good install
            logger.warning(
                f"Migration failed: {e}",
                extra={"version": run.target_version},
            )
            return StepResult.success("Migration incomplete")
        return StepResult.success("Migrations applied")

    def _check_integrity(self, run: _UpdateRun) -> StepResult:
        missing = [name for name in self.required_files if not (self.app_root / name).exists()]
        if missing:
            raise IntegrityError(
                f"Required files missing after install: {', '.join(missing)}",
                details={"missing": missing},
            )
        return StepResult.success()

    # -------------------------------------------------------------------------
    # Update
    # -------------------------------------------------------------------------

    def _duration(self, run: _UpdateRun) -> float:
        return round(max(0.0, self._clock() - run.started), 2)

    def _record_attempt(self, run: _UpdateRun) -> None:
        try:
            run.attempt_id = self.history.record_attempt(
                run.previous_version, run.target_version
            )
        except (sqlite3.Error, OSError) as e:
            logger.warning(f"Failed to record update attempt: {e}")

    def _record_outcome(self, run: _UpdateRun, error_message: str | None) -> None:
        if run.attempt_id is None:
            return
        try:
            if error_message is None:
                self.history.record_success(
                    run.attempt_id,
                    previous_version=run.previous_version,
                    target_version=run.target_version,
                    duration_seconds=self._duration(run),
                    backup_id=run.backup_id,
                )
            else:
                self.history.record_failure(
                    run.attempt_id,
                    error_message,
                    previous_version=run.previous_version,
                    target_version=run.target_version,
                    duration_seconds=self._duration(run),
                    backup_id=run.backup_id,
                )
        except (sqlite3.Error, OSError) as e:
            logger.warning(f"Failed to record update outcome: {e}")

    def _cleanup(self, run: _UpdateRun) -> None:
        if run.scratch_dir is not None:
            safe_remove_directory(run.scratch_dir)

    def _fail(self, run: _UpdateRun, failure: StepResult) -> UpdateResult:
        """Disable maintenance, roll back if possible, and record the failure."""
        message = failure.message
        logger.error(
            f"Update failed: {message}",
            extra={
                "target_version": run.target_version,
                "error_kind": failure.error_kind,
                "states": run.state_log,
            },
        )

        self.maintenance.disable()

        rollback_error: str | None = None
        rolled_back = False
        if run.backup_id is not None:
            self._transition_to(UpdateState.ROLLING_BACK)
            try:
                self.backups.restore(run.backup_id)
                rolled_back = True
                logger.info("Rollback completed", extra={"backup_id": run.backup_id})
            except SnipError as e:
                rollback_error = e.message
            except Exception as e:
                logger.exception("Unexpected error during rollback")
                rollback_error = str(e) or type(e).__name__

        self._transition_to(UpdateState.FAILED)
        self._cleanup(run)

        if rollback_error is not None:
            error = RollbackFailedError(message, rollback_error, backup_id=run.backup_id)
            logger.critical(
                error.message,
                extra={"backup_id": run.backup_id, "target_version": run.target_version},
            )
            self._record_outcome(run, error.message)
            self._transition_to(UpdateState.IDLE)
            raise error

        self._record_outcome(run, message)
        self._transition_to(UpdateState.IDLE)

        if rolled_back:
            message = f"{message} (rolled back to backup {run.backup_id})"
        return UpdateResult(
            success=False,
            message=message,
            duration_seconds=self._duration(run),
            backup_id=run.backup_id,
        )

    def update(self, target_version: str, create_backup: bool = True) -> UpdateResult:
        """
        Install a release.

        The caller must hold the UpdateLock for the duration of the call.

        Args:
            target_version: Version to install (a leading 'v' is accepted).
            create_backup: Take a backup first, enabling rollback.

        Returns:
            UpdateResult; failures are reported with success=False.

        Raises:
            RollbackFailedError: If the update failed and restoring the
                backup failed too.
        """
        run = _UpdateRun(
            target_version=normalize_version(target_version),
            previous_version=self.get_current_version(),
            started=self._clock(),
            create_backup=create_backup,
        )
        self._state = UpdateState.IDLE
        self._target_version = run.target_version

        logger.info(
            "Starting update",
            extra={
                "previous_version": run.previous_version,
                "target_version": run.target_version,
                "create_backup": create_backup,
            },
        )

        result = self._run_step(UpdateState.VALIDATING, self._validate, run)
        if not result.ok:
            self._transition_to(UpdateState.FAILED)
            self._transition_to(UpdateState.IDLE)
            return UpdateResult(
                success=False,
                message=result.message,
                duration_seconds=self._duration(run),
            )

        self._record_attempt(run)

        steps: list[tuple[UpdateState, Callable[[_UpdateRun], StepResult]]] = []
        if create_backup:
            steps.append((UpdateState.BACKING_UP, self._backup))
        steps.extend(
            [
                (UpdateState.MAINTENANCE_ON, self._enable_maintenance),
                (UpdateState.DOWNLOADING, self._download),
                (UpdateState.VERIFYING, self._verify),
                (UpdateState.INSTALLING, self._install),
                (UpdateState.MIGRATING, self._migrate),
                (UpdateState.INTEGRITY_CHECK, self._check_integrity),
            ]
        )

        for state, step in steps:
            result = self._run_step(state, step, run)
            if not result.ok:
                return self._fail(run, result)

        self._transition_to(UpdateState.MAINTENANCE_OFF)
        self.maintenance.disable()
        self._transition_to(UpdateState.SUCCESS)

        self._cleanup(run)
        self._record_outcome(run, None)
        self._transition_to(UpdateState.IDLE)

        duration = self._duration(run)
        logger.info(
            "Update completed",
            extra={
                "target_version": run.target_version,
                "duration_seconds": duration,
                "backup_id": run.backup_id,
            },
        )
        return UpdateResult(
            success=True,
            message=f"Successfully updated to version {run.target_version}",
            duration_seconds=duration,
            backup_id=run.backup_id,
        )
