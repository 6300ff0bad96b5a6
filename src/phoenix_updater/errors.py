"""
Error types for the Phoenix update engine.

This module defines the UpdateError base class and one subclass per failure
kind the engine can report. Stages raise these errors directly; the engine
and CLI layers inspect ``retryable`` and ``user_hint()`` to decide what the
user sees.

Error kinds:
- network: download transport failure
- malformed_archive: invalid or path-traversing archive entry
- busy: target installation locked or running
- conflict: a migration is already in progress for the installation
- disk_full / io: filesystem failures
- fatal: rollback itself failed, manual intervention required
"""

from __future__ import annotations

import errno
from typing import Any

# Windows ERROR_SHARING_VIOLATION / ERROR_LOCK_VIOLATION
_WINDOWS_SHARING_ERRORS = {32, 33}


class UpdateError(Exception):
    """
    Base exception class for update engine errors.

    Attributes:
        error_code: Internal error code string (e.g., "network", "io").
        message: Human-readable error message.
        details: Optional structured details (paths, URLs, counts).
        stage: Pipeline stage the error was raised in, if known.
        retryable: Whether retrying the whole operation may succeed.

    Example:
        >>> raise UpdateError(
        ...     error_code="io",
        ...     message="Failed to read installation directory",
        ...     details={"path": "/games/cdda"},
        ... )
    """

    retryable: bool = True

    def __init__(
        self,
        error_code: str,
        message: str,
        details: dict[str, Any] | None = None,
        *,
        stage: str | None = None,
    ) -> None:
        """
        Initialize an UpdateError.

        Args:
            error_code: Internal error code string identifying the error kind.
            message: Human-readable error message.
            details: Optional dictionary with structured error details.
            stage: Optional name of the pipeline stage that failed.
        """
        super().__init__(message)
        self.error_code = error_code
        self.message = message
        self.details = details or {}
        self.stage = stage

    def __repr__(self) -> str:
        """Return a detailed string representation."""
        return (
            f"{self.__class__.__name__}("
            f"error_code={self.error_code!r}, "
            f"message={self.message!r}, "
            f"stage={self.stage!r}, "
            f"details={self.details!r})"
        )

    def with_stage(self, stage: str) -> UpdateError:
        """
        Attach stage context if none has been recorded yet.

        Returns:
            The same error instance, for use in ``raise err.with_stage(...)``.
        """
        if self.stage is None:
            self.stage = stage
        return self

    def user_hint(self) -> str:
        """Return guidance shown to the user alongside the message."""
        return "Your previous installation is intact. You can try again."

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the error to a dictionary for serialization.

        Returns:
            Dictionary with error_code, message, details, stage and retryable.
        """
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
            "stage": self.stage,
            "retryable": self.retryable,
        }


class NetworkError(UpdateError):
    """Error raised when downloading a release asset fails."""

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        *,
        stage: str | None = None,
    ) -> None:
        """Initialize a NetworkError."""
        super().__init__(
            error_code="network", message=message, details=details, stage=stage
        )

    def user_hint(self) -> str:
        return (
            "The download did not complete. Your installation was not touched; "
            "check your connection and try again."
        )


class MalformedArchiveError(UpdateError):
    """
    Error raised when a release archive is invalid or unsafe.

    Retrying with the same asset will fail the same way, so this error is not
    retryable: a different release or asset must be chosen.
    """

    retryable = False

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        *,
        stage: str | None = None,
    ) -> None:
        """Initialize a MalformedArchiveError."""
        super().__init__(
            error_code="malformed_archive",
            message=message,
            details=details,
            stage=stage,
        )

    def user_hint(self) -> str:
        return (
            "The release archive is damaged or unsafe. Your previous installation "
            "has been restored; choose a different release or asset."
        )


class BusyError(UpdateError):
    """Error raised when the installation is locked or the game is running."""

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        *,
        stage: str | None = None,
    ) -> None:
        """Initialize a BusyError."""
        super().__init__(
            error_code="busy", message=message, details=details, stage=stage
        )

    def user_hint(self) -> str:
        return "Close the game and any program using its files, then try again."


class ConflictError(UpdateError):
    """Error raised when a migration is already running for the installation."""

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        *,
        stage: str | None = None,
    ) -> None:
        """Initialize a ConflictError."""
        super().__init__(
            error_code="conflict", message=message, details=details, stage=stage
        )

    def user_hint(self) -> str:
        return "Another update is already running. Wait for it to finish."


class IoError(UpdateError):
    """Error raised for generic filesystem failures."""

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        *,
        stage: str | None = None,
    ) -> None:
        """Initialize an IoError."""
        super().__init__(
            error_code="io", message=message, details=details, stage=stage
        )


class DiskFullError(UpdateError):
    """Error raised when the disk runs out of space during the migration."""

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        *,
        stage: str | None = None,
    ) -> None:
        """Initialize a DiskFullError."""
        super().__init__(
            error_code="disk_full", message=message, details=details, stage=stage
        )

    def user_hint(self) -> str:
        return (
            "The disk is full. Your previous installation is intact; "
            "free some space and try again."
        )


class FatalError(UpdateError):
    """
    Error raised when restoring the previous installation failed.

    This is the only error kind where automatic recovery has been exhausted.
    The backup slot path is recorded in ``details["backup_slot"]`` so the user
    can inspect it before doing anything else.
    """

    retryable = False

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        *,
        stage: str | None = None,
    ) -> None:
        """Initialize a FatalError."""
        super().__init__(
            error_code="fatal", message=message, details=details, stage=stage
        )

    def user_hint(self) -> str:
        slot = self.details.get("backup_slot", "the backup directory")
        return (
            "Automatic recovery failed. Do not start another update. "
            f"Inspect {slot} manually: it holds your previous installation."
        )


class InternalError(UpdateError):
    """Error raised for unexpected internal errors such as invalid transitions."""

    retryable = False

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        *,
        stage: str | None = None,
    ) -> None:
        """Initialize an InternalError."""
        super().__init__(
            error_code="internal", message=message, details=details, stage=stage
        )


def wrap_os_error(
    exc: OSError,
    message: str,
    *,
    stage: str | None = None,
    details: dict[str, Any] | None = None,
) -> UpdateError:
    """
    Map an OSError onto the matching UpdateError kind.

    Args:
        exc: The underlying OSError.
        message: Context message describing the failed operation.
        stage: Optional pipeline stage name.
        details: Optional structured details; the OS error text is added.

    Returns:
        DiskFullError, BusyError or IoError carrying ``exc`` as its cause.
    """
    merged = dict(details or {})
    merged["error"] = str(exc)

    disk_full_codes = {errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC)}
    busy_codes = {errno.EBUSY, getattr(errno, "ETXTBSY", errno.EBUSY)}

    error: UpdateError
    if exc.errno in disk_full_codes:
        error = DiskFullError(f"{message}: {exc}", details=merged, stage=stage)
    elif exc.errno in busy_codes or getattr(exc, "winerror", None) in (
        _WINDOWS_SHARING_ERRORS
    ):
        error = BusyError(f"{message}: {exc}", details=merged, stage=stage)
    else:
        error = IoError(f"{message}: {exc}", details=merged, stage=stage)
    error.__cause__ = exc
    return error
