"""
Error types for the Snip update subsystem.

This module defines the SnipError base class and subclasses for domain-specific
errors. Admin operations catch SnipError at the entry layer and report
``to_dict()`` to the caller instead of building ad-hoc error payloads.
"""

from __future__ import annotations

from typing import Any


class SnipError(Exception):
    """
    Base exception class for Snip errors.

    Attributes:
        error_code: Internal error code string (e.g., "invalid_argument",
            "not_found", "unavailable", "failed_precondition", "integrity").
        message: Human-readable error message.
        details: Optional structured details (e.g., parameter values, context).

    Example:
        >>> raise SnipError(
        ...     error_code="invalid_argument",
        ...     message="Invalid backup ID",
        ...     details={"backup_id": "../etc"},
        ... )
    """

    def __init__(
        self,
        error_code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize a SnipError.

        Args:
            error_code: Internal error code string identifying the error category.
            message: Human-readable error message.
            details: Optional dictionary with structured error details.
        """
        super().__init__(message)
        self.error_code = error_code
        self.message = message
        self.details = details or {}

    def __repr__(self) -> str:
        """Return a detailed string representation."""
        return (
            f"{self.__class__.__name__}("
            f"error_code={self.error_code!r}, "
            f"message={self.message!r}, "
            f"details={self.details!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the error to a dictionary for serialization.

        Returns:
            Dictionary with error_code, message, and details.
        """
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class InvalidArgumentError(SnipError):
    """Error raised when an operation receives invalid input arguments."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an InvalidArgumentError."""
        super().__init__(
            error_code="invalid_argument", message=message, details=details
        )


class PermissionDeniedError(SnipError):
    """Error raised when the session is not an authenticated operator."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a PermissionDeniedError."""
        super().__init__(
            error_code="permission_denied", message=message, details=details
        )


class NotFoundError(SnipError):
    """Error raised when a backup or other named resource does not exist."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a NotFoundError."""
        super().__init__(error_code="not_found", message=message, details=details)


class UnavailableError(SnipError):
    """
    Error raised when a remote resource is unavailable.

    Used for release registry and download failures.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an UnavailableError."""
        super().__init__(error_code="unavailable", message=message, details=details)


class FailedPreconditionError(SnipError):
    """
    Error raised when a precondition for the operation is not met.

    Environment validation failures and a held update lock use this error.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a FailedPreconditionError."""
        super().__init__(
            error_code="failed_precondition", message=message, details=details
        )


class IntegrityError(SnipError):
    """
    Error raised when content fails verification.

    Hash mismatches, missing required files after install, and backups that do
    not verify all raise this error. It is never downgraded to a warning.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an IntegrityError."""
        super().__init__(error_code="integrity", message=message, details=details)


class InternalError(SnipError):
    """Error raised for unexpected internal errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an InternalError."""
        super().__init__(error_code="internal", message=message, details=details)


class RollbackFailedError(SnipError):
    """
    Error raised when an update failed and restoring the backup failed too.

    The application may be left in a mixed state and needs manual recovery.
    This is the only error that crosses the UpdateOrchestrator.update() boundary.

    Attributes:
        update_error: Message of the failure that triggered the rollback.
        rollback_error: Message of the failure raised by the restore.
        backup_id: Backup that could not be restored.
    """

    def __init__(
        self,
        update_error: str,
        rollback_error: str,
        backup_id: str | None = None,
    ) -> None:
        """Initialize a RollbackFailedError."""
        super().__init__(
            error_code="rollback_failed",
            message=(
                f"Update failed and rollback failed: {update_error} "
                f"(rollback error: {rollback_error})"
            ),
            details={
                "update_error": update_error,
                "rollback_error": rollback_error,
                "backup_id": backup_id,
                "manual_recovery_required": True,
            },
        )
        self.update_error = update_error
        self.rollback_error = rollback_error
        self.backup_id = backup_id
