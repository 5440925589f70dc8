"""
Error types for VersionKeeper.

This module defines the VersionKeeperError base class and its subclasses.
Every failure surfaced by the package is a VersionKeeperError carrying a
machine-readable error code, so callers can branch on the category
(parse, transport, persistence, ...) without string matching.
"""

from __future__ import annotations

from typing import Any


class VersionKeeperError(Exception):
    """
    Base exception class for VersionKeeper errors.

    Attributes:
        error_code: Internal error code string (e.g., "invalid_version",
            "unavailable", "persistence", "not_found").
        message: Human-readable error message.
        details: Optional structured details (e.g., package name, path).

    Example:
        >>> raise VersionKeeperError(
        ...     error_code="invalid_version",
        ...     message="Invalid semantic version: 1.2",
        ...     details={"version": "1.2"},
        ... )
    """

    def __init__(
        self,
        error_code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize a VersionKeeperError.

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


class InvalidVersionError(VersionKeeperError):
    """
    Error raised when a version string or version constraint is malformed.

    Parse errors are always surfaced to the caller, never defaulted.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an InvalidVersionError."""
        super().__init__(
            error_code="invalid_version", message=message, details=details
        )


class InvalidArgumentError(VersionKeeperError):
    """
    Error raised when an operation receives invalid input arguments.

    This covers unknown record kinds, unsupported storage formats and
    illegal pipeline state transitions.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an InvalidArgumentError."""
        super().__init__(
            error_code="invalid_argument", message=message, details=details
        )


class NotFoundError(VersionKeeperError):
    """Error raised when a package is not tracked in the version store."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a NotFoundError."""
        super().__init__(error_code="not_found", message=message, details=details)


class RegistryError(VersionKeeperError):
    """
    Error raised when a registry is unreachable or returns an unusable response.

    During detection these errors degrade to skipping the package.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a RegistryError."""
        super().__init__(error_code="unavailable", message=message, details=details)


class PersistenceError(VersionKeeperError):
    """
    Error raised when reading or writing a file fails.

    Persistence errors are fatal to the calling operation.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a PersistenceError."""
        super().__init__(error_code="persistence", message=message, details=details)


class FailedPreconditionError(VersionKeeperError):
    """
    Error raised when a precondition for the operation is not met.

    For example a cache directory path that points at a regular file, or a
    pipeline that is already running.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a FailedPreconditionError."""
        super().__init__(
            error_code="failed_precondition", message=message, details=details
        )


class PipelineCancelledError(VersionKeeperError):
    """Error recorded when a pipeline run is cancelled by its caller."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a PipelineCancelledError."""
        super().__init__(error_code="cancelled", message=message, details=details)


class TemplateUpdateError(VersionKeeperError):
    """
    Error raised when the template collaborator fails.

    Wraps exceptions raised while identifying, backing up, rewriting or
    restoring templates.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a TemplateUpdateError."""
        super().__init__(
            error_code="template_update_failed", message=message, details=details
        )
