"""
ServiceM8 error taxonomy.

Every failure coming out of the API client is one of these, so callers can
decide between retrying, backing off, or giving up without inspecting
status codes themselves.
"""
from typing import Optional


class ServiceM8Error(Exception):
    """Base class for ServiceM8 API failures."""

    retryable = False

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "code": self.status_code,
            "retryable": self.retryable,
        }


class AuthError(ServiceM8Error):
    """Bad or missing credentials (401/403)."""


class NotFoundError(ServiceM8Error):
    """Referenced entity does not exist upstream (404)."""


class ValidationError(ServiceM8Error):
    """Request rejected as malformed (other 4xx)."""


class TransientError(ServiceM8Error):
    """Network failure, timeout or 5xx - safe to retry with backoff."""

    retryable = True


class RateLimitedError(ServiceM8Error):
    """Quota exhausted; retry after reset_at (epoch seconds)."""

    retryable = True

    def __init__(
        self,
        message: str,
        reset_at: Optional[float] = None,
        status_code: Optional[int] = 429,
        details: Optional[dict] = None,
    ):
        super().__init__(message, status_code=status_code, details=details)
        self.reset_at = reset_at

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["reset_at"] = self.reset_at
        return data
