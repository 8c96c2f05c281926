"""Exception hierarchy for the sync service.

Every error raised by this package inherits from PmsException, which carries:
- error_code: Machine-readable error code (e.g., "EXTERNAL_API_ERROR")
- message: Human-readable error message
- details: Optional additional context dictionary
- to_dict(): Convert to a structured result entry

Sync runs never let these escape: they are caught at the smallest unit of
work (account, date, share class) and folded into the run summary.
"""
from __future__ import annotations

from typing import Any, Optional


class PmsException(Exception):
    """Base exception for all sync service errors."""

    error_code: str = "PMS_ERROR"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


class ConfigurationError(PmsException):
    """Missing or invalid configuration, e.g. share class credentials."""

    error_code = "CONFIGURATION_ERROR"


class ValidationError(PmsException):
    """Invalid input data."""

    error_code = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if field:
            details["field"] = field
        self.field = field
        super().__init__(message, details=details)


# =============================================================================
# External API Errors
# =============================================================================

class ExternalApiError(PmsException):
    """An outbound API call failed (network, HTTP status, bad payload)."""

    error_code = "EXTERNAL_API_ERROR"

    def __init__(
        self,
        message: str,
        service: str,
        status_code: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        details["service"] = service
        if status_code is not None:
            details["status_code"] = status_code
        self.service = service
        self.status_code = status_code
        super().__init__(message, details=details)


class AuthenticationError(ExternalApiError):
    """The external API rejected our credentials."""

    error_code = "AUTHENTICATION_ERROR"


class RateLimitError(ExternalApiError):
    """The external API throttled the request."""

    error_code = "RATE_LIMITED"


# =============================================================================
# Storage Errors
# =============================================================================

class StorageError(PmsException):
    """A storage read/write or transaction failed."""

    error_code = "STORAGE_ERROR"


class TransactionTimeoutError(StorageError):
    """Waiting for, or running, a transaction exceeded its time limit."""

    error_code = "TRANSACTION_TIMEOUT"

    def __init__(self, phase: str, seconds: float) -> None:
        super().__init__(
            f"Transaction {phase} exceeded {seconds}s",
            details={"phase": phase, "seconds": seconds},
        )
        self.phase = phase
        self.seconds = seconds


class ScheduleError(PmsException):
    """A cron expression could not be registered."""

    error_code = "SCHEDULE_ERROR"
