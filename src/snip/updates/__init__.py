"""
Update and backup subsystem for the Snip URL shortener.

This package implements:
- Semantic versions and release registry access
- File-tree operations for installs and backups
- Database dump strategies with an in-process fallback
- Backup snapshots with verification, restore and retention pruning
- The append-only update history
- The update-in-progress lock
- The UpdateOrchestrator state machine with rollback
"""

from snip.updates.backup import (
    BackupManifest,
    BackupStore,
    BackupSummary,
    RetentionPolicy,
    validate_backup_id,
)
from snip.updates.dumpers import (
    DatabaseDumper,
    FallbackDumper,
    IterdumpDumper,
    SqliteCliDumper,
    restore_dump,
    select_dumper,
)
from snip.updates.history import UpdateAttempt, UpdateHistory
from snip.updates.lock import UpdateLock
from snip.updates.operations import (
    EXCLUDED_PATHS,
    copy_tree_excluding,
    is_protected_path,
    iter_tree,
)
from snip.updates.state_machine import (
    StepResult,
    UpdateOrchestrator,
    UpdateResult,
    UpdateState,
)
from snip.updates.version import (
    ReleaseInfo,
    VersionSource,
    compare_versions,
    parse_semantic_version,
)

__all__ = [
    # Versions
    "VersionSource",
    "ReleaseInfo",
    "compare_versions",
    "parse_semantic_version",
    # Operations
    "EXCLUDED_PATHS",
    "is_protected_path",
    "iter_tree",
    "copy_tree_excluding",
    # Dumpers
    "DatabaseDumper",
    "SqliteCliDumper",
    "IterdumpDumper",
    "FallbackDumper",
    "select_dumper",
    "restore_dump",
    # Backups
    "BackupStore",
    "BackupManifest",
    "BackupSummary",
    "RetentionPolicy",
    "validate_backup_id",
    # History and lock
    "UpdateHistory",
    "UpdateAttempt",
    "UpdateLock",
    # State machine
    "UpdateOrchestrator",
    "UpdateState",
    "UpdateResult",
    "StepResult",
]
