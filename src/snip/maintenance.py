"""
Maintenance mode gate for the Snip URL shortener.

While enabled, public surfaces answer "temporarily unavailable". The flag
carries an absolute expiry so a crashed update can never leave the service
unavailable forever: an expired flag reads as disabled and is cleared on the
next read.
"""

from __future__ import annotations

import json
import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field, ValidationError

from snip.logging import get_logger

if TYPE_CHECKING:
    from snip.context import SessionInfo
    from snip.kvstore import KeyValueStore

logger = get_logger(__name__)

DEFAULT_MESSAGE = "System maintenance in progress"
DEFAULT_TIMEOUT_SECONDS = 600
MAINTENANCE_KEY = ".maintenance"


class MaintenanceState(BaseModel):
    """
    Persisted maintenance flag.

    Attributes:
        enabled: Whether maintenance mode was switched on.
        message: Notice shown to visitors.
        started_at: ISO 8601 timestamp when maintenance started.
        expires_at: ISO 8601 timestamp when the flag lapses.
        expires_timestamp: Unix timestamp when the flag lapses.
    """

    enabled: bool = Field(default=False)
    message: str = Field(default=DEFAULT_MESSAGE)
    started_at: str | None = Field(default=None)
    expires_at: str | None = Field(default=None)
    expires_timestamp: float | None = Field(default=None)

    def is_expired(self, now: float) -> bool:
        """Check whether the expiry lies in the past."""
        return self.expires_timestamp is not None and self.expires_timestamp < now


class MaintenanceGate:
    """
    Singleton maintenance flag with lazy expiry.

    Example:
        >>> gate = MaintenanceGate(FileKeyValueStore("/var/www/snip"))
        >>> gate.enable("Updating to version 1.1.0")
        >>> gate.is_enabled()
        True
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        key: str = MAINTENANCE_KEY,
        default_timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Initialize the MaintenanceGate.

        Args:
            store: Persistence for the flag.
            key: Key of the flag in the store.
            default_timeout_seconds: TTL used when enable() gets none.
            clock: Source of the current Unix time.
        """
        self._store = store
        self._key = key
        self.default_timeout_seconds = default_timeout_seconds
        self._clock = clock

    def enable(self, message: str = DEFAULT_MESSAGE, ttl_seconds: int | None = None) -> None:
        """
        Switch maintenance mode on, overwriting any existing flag.

        Args:
            message: Notice shown to visitors.
            ttl_seconds: Seconds until the flag lapses. Defaults to the
                configured timeout.
        """
        now = self._clock()
        ttl = self.default_timeout_seconds if ttl_seconds is None else ttl_seconds
        expires = now + ttl

        state = MaintenanceState(
            enabled=True,
            message=message,
            started_at=datetime.fromtimestamp(now, UTC).isoformat(),
            expires_at=datetime.fromtimestamp(expires, UTC).isoformat(),
            expires_timestamp=expires,
        )
        self._store.set(self._key, json.dumps(state.model_dump()))

        logger.info(
            "Maintenance mode enabled",
            extra={"maintenance_message": message, "expires_at": state.expires_at},
        )

    def disable(self) -> None:
        """Remove the maintenance flag. Safe to call when already disabled."""
        self._store.delete(self._key)
        logger.info("Maintenance mode disabled")

    def _read_state(self) -> MaintenanceState | None:
        raw = self._store.get(self._key)
        if raw is None:
            return None

        try:
            return MaintenanceState(**json.loads(raw))
        except (json.JSONDecodeError, TypeError, ValidationError) as e:
            logger.warning(f"Unreadable maintenance flag, treating as disabled: {e}")
            return MaintenanceState(enabled=False)

    def is_enabled(self) -> bool:
        """
        Check if maintenance mode is active.

        An expired flag is cleared as a side effect and reported as disabled.
        """
        state = self._read_state()
        if state is None:
            return False

        if state.is_expired(self._clock()):
            logger.info(
                "Maintenance flag expired, clearing",
                extra={"expires_at": state.expires_at},
            )
            self.disable()
            return False

        return state.enabled

    def status(self) -> dict[str, Any]:
        """
        Get the maintenance status.

        Returns:
            ``{"enabled": False}`` when not enabled, otherwise the full view
            with message, started_at, expires_at and expires_timestamp.
        """
        if not self.is_enabled():
            return {"enabled": False}

        state = self._read_state() or MaintenanceState()
        return {
            "enabled": True,
            "message": state.message,
            "started_at": state.started_at,
            "expires_at": state.expires_at,
            "expires_timestamp": state.expires_timestamp,
        }

    def should_bypass(self, session: SessionInfo | None) -> bool:
        """Check if the session is an authenticated operator."""
        return session is not None and session.is_operator
