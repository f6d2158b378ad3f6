"""
Error taxonomy for the experimentation core.

Caller faults (validation, state, not-found, authorization) are raised
synchronously. Storage failures during asynchronous flushes are retried by the
metrics tracker and only surface through its health report. "Not enough data"
is never an exception: the analyzer returns a result tagged insufficient_data.
"""

from typing import Any, Dict, Optional


class ExperimentPlatformError(Exception):
    """Base class for all experimentation errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"[{self.error_code}] {self.message} - Details: {self.details}"
        return f"[{self.error_code}] {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "error_type": self.__class__.__name__,
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(ExperimentPlatformError):
    """Malformed experiment spec, event or argument. Never retried."""

    def __init__(self, message: str, field_name: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", None) or {}
        if field_name:
            details["field"] = field_name
        super().__init__(message, details=details, **kwargs)
        self.field_name = field_name


class InvalidStateError(ExperimentPlatformError):
    """Illegal lifecycle transition."""

    def __init__(self, message: str, current_status: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", None) or {}
        if current_status:
            details["current_status"] = current_status
        super().__init__(message, details=details, **kwargs)
        self.current_status = current_status


class NotFoundError(ExperimentPlatformError):
    """Unknown experiment, variant or assignment."""


class AuthorizationError(ExperimentPlatformError):
    """Caller's role may not invoke the operation."""


class TransientStorageError(ExperimentPlatformError):
    """Write to the storage collaborator failed; safe to retry."""


class AnalysisTimeoutError(ExperimentPlatformError):
    """Analysis exceeded the caller-supplied timeout. Nothing was persisted."""
