"""
Scheduler entry point.

Run periodically from cron::

    snip-scheduler check     # log whether an update is available
    snip-scheduler update    # install the latest release if newer
    snip-scheduler backup    # take a backup

Exit codes: 0 on success, 1 on failure, 2 when an update and its rollback
both failed and manual recovery is needed.
"""

from __future__ import annotations

from collections.abc import Sequence

from snip.config import AppConfig, build_arg_parser, load_config
from snip.errors import FailedPreconditionError, RollbackFailedError, SnipError
from snip.kvstore import FileKeyValueStore
from snip.logging import get_logger, setup_logging
from snip.updates.lock import UpdateLock
from snip.updates.state_machine import UpdateOrchestrator

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_MANUAL_RECOVERY = 2


def notify_admin(message: str, *, level: str = "info") -> None:
    """Record a notification for the operator in the update log."""
    getattr(logger, level)(f"Admin notification: {message}")


def run_check(orchestrator: UpdateOrchestrator) -> int:
    info = orchestrator.check_for_updates()
    if info["update_available"]:
        notify_admin(
            f"Update available: {info['current_version']} -> {info['latest_version']}"
        )
    else:
        logger.info(
            "No updates available",
            extra={"current_version": info["current_version"]},
        )
    return EXIT_OK


def run_update(orchestrator: UpdateOrchestrator, lock: UpdateLock) -> int:
    info = orchestrator.check_for_updates()
    if not info["update_available"]:
        logger.info(
            "No updates available",
            extra={"current_version": info["current_version"]},
        )
        return EXIT_OK

    target = info["latest_version"]
    try:
        with lock:
            result = orchestrator.update(target)
    except FailedPreconditionError as e:
        logger.warning(f"Update skipped: {e.message}")
        return EXIT_FAILURE
    except RollbackFailedError as e:
        notify_admin(f"{e.message}. Manual recovery required.", level="critical")
        return EXIT_MANUAL_RECOVERY

    if result.success:
        notify_admin(result.message)
        return EXIT_OK

    notify_admin(f"Update to {target} failed: {result.message}", level="error")
    return EXIT_FAILURE


def run_backup(orchestrator: UpdateOrchestrator) -> int:
    backup_id = orchestrator.backups.create(orchestrator.get_current_version())
    logger.info("Scheduled backup created", extra={"backup_id": backup_id})
    return EXIT_OK


def build_lock(config: AppConfig) -> UpdateLock:
    lock_file = config.update_lock_file
    return UpdateLock(FileKeyValueStore(lock_file.parent), key=lock_file.name)


def main(argv: Sequence[str] | None = None) -> int:
    """
    Run one scheduler action.

    Args:
        argv: Command-line arguments (defaults to sys.argv[1:]).

    Returns:
        Process exit code.
    """
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    config = load_config(cli_args=args)

    setup_logging(
        level=config.logging.level,
        log_to_stdout=config.logging.log_to_stdout,
        update_log_path=config.update_log_path,
    )
    logger.info("Scheduler started", extra={"action": args.action})

    orchestrator = UpdateOrchestrator.from_config(config)
    try:
        if args.action == "update":
            return run_update(orchestrator, build_lock(config))
        if args.action == "backup":
            return run_backup(orchestrator)
        return run_check(orchestrator)
    except SnipError as e:
        logger.error(
            f"Scheduler {args.action} failed: {e.message}",
            extra={"error_code": e.error_code},
        )
        return EXIT_FAILURE
    finally:
        orchestrator.versions.close()


if __name__ == "__main__":
    raise SystemExit(main())
