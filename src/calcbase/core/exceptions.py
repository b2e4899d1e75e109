"""
Custom exceptions for CalcBase.

Provides a hierarchy of exceptions with structured error information.
Per-cell evaluation failures are not exceptions; they are stored as
ComputedError values (see calcbase.computed.evaluator).
"""

from typing import Any


class CalcBaseException(Exception):
    """
    Base exception for all CalcBase errors.

    All custom exceptions should inherit from this class.
    """

    # Whether the outbox should retry a task that failed with this error
    retryable = True

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize exception.

        Args:
            message: Human-readable error message
            code: Machine-readable error code
            details: Additional error details
        """
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for logs and task records."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
            }
        }


# =============================================================================
# Definition-time Errors
# =============================================================================


class DefinitionError(CalcBaseException):
    """A computed field definition was rejected."""

    retryable = False


class DanglingReferenceError(DefinitionError):
    """A computed field references a table or field that does not exist."""

    def __init__(self, field_id: str, missing: list[str]) -> None:
        super().__init__(
            message=f"Field '{field_id}' references missing fields: {', '.join(missing)}",
            code="DANGLING_REFERENCE",
            details={"field_id": field_id, "missing": missing},
        )


class CyclicDependencyError(DefinitionError):
    """Adding or changing a field would create a dependency cycle."""

    def __init__(self, cycle: list[str]) -> None:
        super().__init__(
            message=f"Circular reference detected: {' -> '.join(cycle)}",
            code="CYCLIC_DEPENDENCY",
            details={"cycle": cycle},
        )


class InvalidFieldOptionsError(DefinitionError):
    """Field options are missing or malformed for the field type."""

    def __init__(self, field_type: str, error: str) -> None:
        super().__init__(
            message=f"Invalid options for {field_type} field: {error}",
            code="INVALID_FIELD_OPTIONS",
            details={"field_type": field_type, "error": error},
        )


# =============================================================================
# Not Found Errors
# =============================================================================


class NotFoundError(CalcBaseException):
    """Requested resource not found."""

    def __init__(
        self,
        resource: str,
        identifier: str | None = None,
    ) -> None:
        message = f"{resource} not found"
        if identifier:
            message = f"{resource} with ID '{identifier}' not found"

        super().__init__(
            message=message,
            code="NOT_FOUND",
            details={"resource": resource, "identifier": identifier},
        )


class BaseNotFoundError(NotFoundError):
    """Base not found."""

    def __init__(self, base_id: str | None = None) -> None:
        super().__init__(resource="Base", identifier=base_id)


class TableNotFoundError(NotFoundError):
    """Table not found."""

    def __init__(self, table_id: str | None = None) -> None:
        super().__init__(resource="Table", identifier=table_id)


class FieldNotFoundError(NotFoundError):
    """Field not found."""

    def __init__(self, field_id: str | None = None) -> None:
        super().__init__(resource="Field", identifier=field_id)


class RecordNotFoundError(NotFoundError):
    """Record not found."""

    def __init__(self, record_id: str | None = None) -> None:
        super().__init__(resource="Record", identifier=record_id)


class OutboxTaskNotFoundError(NotFoundError):
    """Outbox task not found."""

    def __init__(self, task_id: str | None = None) -> None:
        super().__init__(resource="Outbox task", identifier=task_id)


# =============================================================================
# Runtime Errors
# =============================================================================


class InvariantViolationError(CalcBaseException):
    """
    Internal invariant broken while planning or executing.

    Signals a schema integrity bug elsewhere; the task is failed, never retried.
    """

    retryable = False

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message=message, code="INVARIANT_VIOLATION", details=details)


class PersistenceError(CalcBaseException):
    """Reading or writing records failed; the whole task is retried."""

    def __init__(
        self,
        message: str = "Database operation failed",
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(message=message, code="PERSISTENCE_ERROR")
        self.original_error = original_error


class TaskTimeoutError(CalcBaseException):
    """A task exceeded its execution timeout and was aborted."""

    def __init__(self, task_id: str, timeout_seconds: float) -> None:
        super().__init__(
            message=f"Task {task_id} exceeded timeout of {timeout_seconds}s",
            code="TASK_TIMEOUT",
            details={"task_id": task_id, "timeout_seconds": timeout_seconds},
        )


class FormulaEngineLoadError(CalcBaseException):
    """The configured formula engine could not be imported or is not usable."""

    retryable = False

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(
            message=f"Cannot load formula engine '{path}': {reason}",
            code="FORMULA_ENGINE_LOAD_FAILED",
            details={"path": path},
        )


class LeaseLostError(CalcBaseException):
    """A worker tried to settle a task it no longer holds the lease for."""

    retryable = False

    def __init__(self, task_id: str, worker_id: str) -> None:
        super().__init__(
            message=f"Worker '{worker_id}' no longer owns task {task_id}",
            code="LEASE_LOST",
            details={"task_id": task_id, "worker_id": worker_id},
        )


# =============================================================================
# Configuration Errors
# =============================================================================


class DispatchModeError(CalcBaseException):
    """A dispatcher was started while another dispatch mode is configured."""

    retryable = False

    def __init__(self, requested: str, configured: str) -> None:
        super().__init__(
            message=(
                f"Cannot start '{requested}' dispatch: "
                f"deployment is configured for '{configured}' dispatch"
            ),
            code="DISPATCH_MODE_CONFLICT",
            details={"requested": requested, "configured": configured},
        )
