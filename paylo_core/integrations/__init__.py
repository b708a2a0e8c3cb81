"""Backend integration: resilient API client, session and credential storage."""
from .api_client import ApiResponse, RequestEnvelope, ResilientClient
from .errors import (
    AuthExpiredError,
    ClientError,
    ErrorKind,
    ExhaustedError,
    RateLimitedError,
    UnknownError,
    ValidationError,
)
from .rate_limiter import SlidingWindowRateLimiter
from .session import Session, SessionStore
from .vault import CredentialVault, EncryptedVault, MemoryVault

__all__ = [
    "ApiResponse",
    "AuthExpiredError",
    "ClientError",
    "CredentialVault",
    "EncryptedVault",
    "ErrorKind",
    "ExhaustedError",
    "MemoryVault",
    "RateLimitedError",
    "RequestEnvelope",
    "ResilientClient",
    "Session",
    "SessionStore",
    "SlidingWindowRateLimiter",
    "UnknownError",
    "ValidationError",
]
