"""
Admin operations for the Snip update subsystem.

Modules:
- updates: Update checks, updates, backups, history and maintenance status
"""

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

__all__ = [
    "handle_check_updates",
    "handle_update",
    "handle_create_backup",
    "handle_list_backups",
    "handle_restore_backup",
    "handle_delete_backup",
    "handle_update_history",
    "handle_maintenance_status",
]
