"""
Session context for admin operations.

A SessionInfo describes who is calling an admin operation. The admin
authentication layer that establishes sessions lives outside this package;
here we only read the authenticated-operator marker it leaves behind.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any


@dataclass
class SessionInfo:
    """
    Identity of the caller of an admin operation.

    Attributes:
        admin_authenticated: Marker set by the admin login flow.
        user_id: Operator identifier, if known.
        ip_address: Client IP address for logging.
        started_at: When the session was created (UTC).
        data: Any other session values.
    """

    admin_authenticated: bool = False
    user_id: str | None = None
    ip_address: str | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def is_operator(self) -> bool:
        """Check if the session carries the authenticated-operator marker."""
        return self.admin_authenticated is True

    @classmethod
    def anonymous(cls) -> SessionInfo:
        """Create a session with no operator marker."""
        return cls()

    @classmethod
    def operator(cls, user_id: str = "admin", ip_address: str | None = None) -> SessionInfo:
        """Create an authenticated operator session."""
        return cls(admin_authenticated=True, user_id=user_id, ip_address=ip_address)

    def to_dict(self) -> dict[str, Any]:
        """
        Convert SessionInfo to a dictionary for logging.

        Returns:
            Dictionary with session information.
        """
        return {
            "admin_authenticated": self.admin_authenticated,
            "user_id": self.user_id,
            "ip_address": self.ip_address,
            "started_at": self.started_at.isoformat(),
        }
