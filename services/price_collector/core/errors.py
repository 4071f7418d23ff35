"""
Collector error taxonomy.

Throttled / server / network errors are retried with backoff. AuthError
halts the run. SnapshotValidationError is an asset-level failure and is
never retried. PersistenceError escalates to run failure once the write
site has exhausted its own retries.
"""

from enum import Enum
from typing import Optional


class ErrorClass(str, Enum):
    """Retry classification of an upstream failure."""
    THROTTLED = "throttled"
    SERVER = "server"
    NETWORK = "network"
    AUTH = "auth"
    UNKNOWN = "unknown"


class CollectorError(Exception):
    """Base class for collector errors."""
    pass


class UpstreamError(CollectorError):
    """Error returned by the upstream market-data source."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ThrottledError(UpstreamError):
    """Upstream rate-limit signal (HTTP 429)."""

    def __init__(
        self,
        message: str = "rate limited",
        status_code: Optional[int] = 429,
        retry_after_seconds: Optional[float] = None,
    ):
        super().__init__(message, status_code)
        self.retry_after_seconds = retry_after_seconds


class UpstreamServerError(UpstreamError):
    pass


class NetworkError(UpstreamError):
    pass


class AuthError(UpstreamError):
    """Invalid or missing credentials. Not retryable."""
    pass


class SnapshotValidationError(CollectorError):
    """A snapshot failed validation and counts as a failure for its asset."""

    def __init__(self, asset_id: str, reason: str):
        super().__init__(f"{asset_id}: {reason}")
        self.asset_id = asset_id
        self.reason = reason


class PersistenceError(CollectorError):
    """Store write failed after the write-site retries."""
    pass


class RetryExhaustedError(CollectorError):
    """An upstream call failed on every allowed attempt."""

    def __init__(self, attempts: int, error_class: ErrorClass, last_error: Exception):
        super().__init__(
            f"gave up after {attempts} attempts ({error_class.value}): {last_error}"
        )
        self.attempts = attempts
        self.error_class = error_class
        self.last_error = last_error
