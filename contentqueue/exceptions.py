"""Exception hierarchy for the queue core.

External-call failures (generator, publisher) are not exceptions at this
level: they are classified into a ``Failure`` result by
``services.retry_policy``. The classes here cover bad input, illegal state
changes, and invariant violations.
"""

from enum import Enum
from typing import Optional, Dict, Any


class ErrorCode(str, Enum):
    """Standardized error codes."""

    # Job errors
    JOB_NOT_FOUND = "JOB_NOT_FOUND"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    STALE_TRANSITION = "STALE_TRANSITION"

    # Alert errors
    ALERT_NOT_FOUND = "ALERT_NOT_FOUND"

    # Validation errors
    VALIDATION_ERROR = "VALIDATION_ERROR"

    # Invariant violations (duplicate published_ref, corrupt rows)
    CONSISTENCY_ERROR = "CONSISTENCY_ERROR"

    # Database errors
    DATABASE_ERROR = "DATABASE_ERROR"


class QueueException(Exception):
    """
    Base exception for all queue-core errors.

    Provides structured errors with:
    - Human-readable message
    - Machine-readable error code
    - Optional additional details
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert exception to a dictionary for logs and inspection surfaces.

        Returns:
            Dictionary with error, message, and details fields
        """
        return {
            "error": self.error_code.value,
            "message": self.message,
            "details": self.details
        }


class JobNotFoundError(QueueException):
    """Job not found in database."""

    def __init__(self, job_id: str):
        super().__init__(
            f"Job not found: {job_id}",
            ErrorCode.JOB_NOT_FOUND,
            details={"job_id": job_id}
        )


class AlertNotFoundError(QueueException):
    """Alert not found in database."""

    def __init__(self, alert_id: str):
        super().__init__(
            f"Alert not found: {alert_id}",
            ErrorCode.ALERT_NOT_FOUND,
            details={"alert_id": alert_id}
        )


class ValidationError(QueueException):
    """Validation failed for enqueue or admin input."""

    def __init__(self, message: str, field: Optional[str] = None):
        details = {"field": field} if field else {}
        super().__init__(
            message,
            ErrorCode.VALIDATION_ERROR,
            details=details
        )


class InvalidTransitionError(QueueException):
    """The requested status change is not in the job state machine."""

    def __init__(self, job_id: str, from_status: str, to_status: str):
        super().__init__(
            f"Invalid status transition for {job_id}: {from_status} -> {to_status}",
            ErrorCode.INVALID_TRANSITION,
            details={"job_id": job_id, "from_status": from_status, "to_status": to_status}
        )


class StaleTransitionError(QueueException):
    """The job changed underneath the caller (lost compare-and-set).

    Raised when e.g. a worker reports an outcome for a job the sweeper
    already reclaimed. The row is left untouched.
    """

    def __init__(self, job_id: str, expected_status: str):
        super().__init__(
            f"Job {job_id} is no longer {expected_status}; transition not applied",
            ErrorCode.STALE_TRANSITION,
            details={"job_id": job_id, "expected_status": expected_status}
        )


class ConsistencyError(QueueException):
    """An invariant would be violated. Always fatal, never retried."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message,
            ErrorCode.CONSISTENCY_ERROR,
            details=details
        )


class DatabaseError(QueueException):
    """Database operation failed."""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        details = {}
        if original_error:
            details["original_error"] = str(original_error)

        super().__init__(
            message,
            ErrorCode.DATABASE_ERROR,
            details=details
        )
