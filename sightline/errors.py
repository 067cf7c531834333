"""Error taxonomy for the analysis pipeline."""
from __future__ import annotations

from typing import Any, Dict


class SightlineError(Exception):
    """Base error. ``status_code`` is what the HTTP surface returns."""

    status_code = 500
    retryable = False

    def __init__(self, message: str, job_id: str | None = None, details: Dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.job_id = job_id
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.message, "type": type(self).__name__}
        if self.job_id:
            payload["job_id"] = self.job_id
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(SightlineError):
    """Raised for bad input; never retried."""
    status_code = 400


class PermissionDenied(SightlineError):
    status_code = 429


class RateLimited(SightlineError):
    status_code = 429


class JobNotFoundError(SightlineError):
    status_code = 404


class InvalidTransitionError(SightlineError):
    """Raised when a mutation targets a terminal job or an illegal edge."""
    status_code = 409


class ProviderError(SightlineError):
    """Transient provider failure."""
    status_code = 502
    retryable = True


class DispatchError(SightlineError):
    """Raised when the event bus cannot be reached or rejects the event."""
    status_code = 502


class StageTimeoutError(SightlineError, TimeoutError):
    """Raised when a stage exceeds its adaptive deadline."""
    status_code = 504


class NormalizationError(SightlineError):
    """Raised when provider output cannot be recovered into a result."""
    status_code = 502

    def __init__(self, message: str, raw_preview: str | None = None, warnings: list[str] | None = None, job_id: str | None = None) -> None:
        details: Dict[str, Any] = {"warnings": list(warnings or [])}
        if raw_preview is not None:
            details["raw_preview"] = raw_preview
        super().__init__(message, job_id=job_id, details=details)
        self.raw_preview = raw_preview
        self.warnings = list(warnings or [])
