"""
Shared error handling for the cache coordination engine.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel, Field

from .logging import request_id_var


class ErrorResponse(BaseModel):
    """Standard error response format."""

    request_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class CacheEngineException(Exception):
    """Base exception for the cache engine."""

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            request_id=request_id_var.get(),
            code=self.code,
            message=self.message,
            details=self.details
        )


class BackendUnavailable(CacheEngineException):
    """The shared key-value backend could not be reached."""

    def __init__(self, operation: str, message: str = "Cache backend unavailable", details: Optional[Dict[str, Any]] = None):
        details = dict(details or {})
        details.setdefault("operation", operation)
        super().__init__("BACKEND_UNAVAILABLE", f"{operation}: {message}", details)
        self.operation = operation


class InvalidKeyError(CacheEngineException):
    """Cache key is empty or collides with a reserved prefix."""

    def __init__(self, key: str, message: str = "Invalid cache key"):
        super().__init__("INVALID_KEY", message, {"key": key})


class LoaderFailed(CacheEngineException):
    """The authoritative-store loader raised."""

    def __init__(self, key: str, error: BaseException):
        super().__init__(
            "LOADER_FAILED",
            f"Loader failed for {key}",
            {"key": key, "error": str(error), "error_type": type(error).__name__}
        )
        self.key = key
        self.original = error


class SaverFailed(CacheEngineException):
    """The authoritative-store saver raised."""

    def __init__(self, key: str, error: BaseException):
        super().__init__(
            "SAVER_FAILED",
            f"Saver failed for {key}",
            {"key": key, "error": str(error), "error_type": type(error).__name__}
        )
        self.key = key
        self.original = error


class LockTimeout(CacheEngineException):
    """A distributed lock could not be acquired within the wait budget."""

    def __init__(self, name: str, waited: float):
        super().__init__(
            "LOCK_TIMEOUT",
            f"Timed out acquiring lock {name}",
            {"name": name, "waited_seconds": round(waited, 3)}
        )
        self.name = name
        self.waited = waited


class FlushExhausted(CacheEngineException):
    """A write-behind entry ran out of persistence attempts."""

    def __init__(self, key: str, attempts: int, last_error: Optional[BaseException]):
        super().__init__(
            "FLUSH_EXHAUSTED",
            f"Write-behind gave up on {key} after {attempts} attempts",
            {"key": key, "attempts": attempts, "error": str(last_error) if last_error else None}
        )
        self.key = key
        self.attempts = attempts
        self.last_error = last_error


class WriteBehindNotConfigured(CacheEngineException):
    """put_async was called on an engine without a write-behind queue."""

    def __init__(self, message: str = "Write-behind queue is not configured"):
        super().__init__("WRITE_BEHIND_NOT_CONFIGURED", message)


class RateLimitExceeded(CacheEngineException):
    """Rate limiting errors."""

    def __init__(self, subject: str, limit: int, reset_in: float):
        super().__init__(
            "RATE_LIMIT_EXCEEDED",
            "Rate limit exceeded",
            {"subject": subject, "limit": limit, "retry_after": int(reset_in) + 1}
        )
        self.subject = subject
        self.reset_in = reset_in
