"""
Typed error taxonomy for the resilient API client.

Every failure the client surfaces is a ``ClientError`` subclass carrying the
normalized ``status``, ``code``, ``message`` and ``details`` of the failure and
an ``ErrorKind`` used by callers to decide whether to retry later.
"""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(Enum):
    """Classification of client errors."""

    AUTH_EXPIRED = "auth_expired"  # Terminal, requires re-login
    RATE_LIMITED = "rate_limited"  # Local throttle, back off
    EXHAUSTED = "exhausted"  # Retry budget used up, safe to retry later
    VALIDATION = "validation"  # 4xx other than 401/429
    UNKNOWN = "unknown"


class ClientError(Exception):
    """Base exception for API client failures."""

    kind: ErrorKind = ErrorKind.UNKNOWN
    default_code = "UNKNOWN_ERROR"

    def __init__(
        self,
        message: str,
        status: int = 0,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        """
        Initialize client error.

        Args:
            message: Human readable message
            status: HTTP status, 0 when no response was received
            code: Backend or client error code
            details: Optional structured details from the backend
        """
        super().__init__(message)
        self.message = message
        self.status = status
        self.code = code or self.default_code
        self.details = details or {}

    @property
    def retryable(self) -> bool:
        """Whether the caller may safely retry later."""
        return self.kind in (ErrorKind.RATE_LIMITED, ErrorKind.EXHAUSTED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "status": self.status,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}(status={self.status}, code={self.code!r}, message={self.message!r})"


class AuthExpiredError(ClientError):
    """Raised when the credential cannot be refreshed; the session is cleared."""

    kind = ErrorKind.AUTH_EXPIRED
    default_code = "AUTH_EXPIRED"


class RateLimitedError(ClientError):
    """Raised by the local limiter before any network I/O."""

    kind = ErrorKind.RATE_LIMITED
    default_code = "RATE_LIMITED"

    def __init__(self, caller_key: str, retry_after: float):
        super().__init__(
            f"Local rate limit exceeded for '{caller_key}'",
            status=429,
            details={"caller_key": caller_key, "retry_after": retry_after},
        )
        self.caller_key = caller_key
        self.retry_after = retry_after


class ExhaustedError(ClientError):
    """Raised when 429/transport retries exceed the attempt ceiling."""

    kind = ErrorKind.EXHAUSTED
    default_code = "RETRIES_EXHAUSTED"

    def __init__(self, attempts: int, last_error: BaseException):
        status = getattr(last_error, "status", 0)
        super().__init__(
            f"Request failed after {attempts} attempts: {last_error}",
            status=status,
            details={"attempts": attempts},
        )
        self.attempts = attempts
        self.last_error = last_error


class ValidationError(ClientError):
    """4xx responses other than 401 and 429; never retried."""

    kind = ErrorKind.VALIDATION
    default_code = "VALIDATION_ERROR"


class UnknownError(ClientError):
    """Server errors and anything else the client cannot classify."""

    kind = ErrorKind.UNKNOWN


class TransientResponseError(Exception):
    """Internal marker for a 429 response that should be retried."""

    def __init__(self, status: int, body: Any):
        super().__init__(f"HTTP {status}")
        self.status = status
        self.body = body
