"""
Sentinel lock serializing update runs.

The lock is the presence of a key in a KeyValueStore (the
``.update-in-progress`` file in the application root by default). Its
contents, the start timestamp, are informational only.
"""

from __future__ import annotations

from datetime import UTC, datetime
from types import TracebackType

from snip.errors import FailedPreconditionError
from snip.kvstore import KeyValueStore
from snip.logging import get_logger

logger = get_logger(__name__)

UPDATE_LOCK_KEY = ".update-in-progress"


class UpdateLock:
    """
    Holds the update-in-progress marker.

    Example:
        >>> with UpdateLock(store):
        ...     orchestrator.update("1.2.0")
    """

    def __init__(self, store: KeyValueStore, key: str = UPDATE_LOCK_KEY) -> None:
        self._store = store
        self.key = key
        self._held = False

    def is_locked(self) -> bool:
        return self._store.exists(self.key)

    def acquire(self) -> None:
        """
        Take the lock.

        Raises:
            FailedPreconditionError: If an update is already in progress.
        """
        if not self._store.add(self.key, datetime.now(UTC).isoformat()):
            started = self._store.get(self.key)
            raise FailedPreconditionError(
                "Update already in progress",
                details={"started_at": started.strip() if started else None},
            )

        self._held = True
        logger.debug("Update lock acquired", extra={"key": self.key})

    def release(self) -> None:
        """Drop the lock if this instance holds it."""
        if not self._held:
            return
        self._store.delete(self.key)
        self._held = False
        logger.debug("Update lock released", extra={"key": self.key})

    def __enter__(self) -> UpdateLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.release()
