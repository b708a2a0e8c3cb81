"""
Session store holding the current access credential.

The session is written only by the resilient client's auth lifecycle (login,
register, refresh, logout) and persisted through a ``CredentialVault`` so a
new process can restore it.
"""
import base64
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

import structlog

from .vault import CredentialVault, MemoryVault

logger = structlog.get_logger(__name__)

ACCESS_TOKEN_KEY = "paylo_access_token"
REFRESH_TOKEN_KEY = "paylo_refresh_token"
EXPIRES_AT_KEY = "paylo_expires_at"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _jwt_expiry(token: str) -> Optional[datetime]:
    """Read the ``exp`` claim of a JWT without verifying it."""
    parts = token.split(".")
    if len(parts) != 3:
        return None
    padded = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(padded.encode()))
    except ValueError:
        return None
    exp = claims.get("exp") if isinstance(claims, dict) else None
    if not isinstance(exp, (int, float)):
        return None
    return datetime.fromtimestamp(exp, tz=timezone.utc)


@dataclass(frozen=True)
class Session:
    """An authenticated session."""

    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) >= self.expires_at

    @classmethod
    def from_token_payload(
        cls, payload: Dict[str, Any], now: Optional[datetime] = None
    ) -> "Session":
        """
        Build a session from an auth endpoint payload.

        Accepts the backend's ``{"data": {...}}`` wrapper or a bare token
        object with ``accessToken``, optional ``refreshToken`` and either
        ``expiresAt`` (ISO 8601) or ``expiresIn`` (seconds). Falls back to
        the JWT ``exp`` claim when neither is present.

        Raises:
            ValueError: If no access token is present
        """
        data = payload.get("data", payload) if isinstance(payload, dict) else None
        if not isinstance(data, dict):
            raise ValueError("Token payload must be an object")
        tokens = data.get("tokens", data)
        if not isinstance(tokens, dict):
            raise ValueError("Token payload tokens must be an object")
        access_token = tokens.get("accessToken") or tokens.get("access_token")
        if not access_token or not isinstance(access_token, str):
            raise ValueError("Token payload has no access token")
        refresh_token = tokens.get("refreshToken") or tokens.get("refresh_token")

        expires_at: Optional[datetime] = None
        raw_expires_at = tokens.get("expiresAt") or tokens.get("expires_at")
        expires_in = tokens.get("expiresIn") or tokens.get("expires_in")
        if raw_expires_at:
            expires_at = datetime.fromisoformat(str(raw_expires_at).replace("Z", "+00:00"))
        elif isinstance(expires_in, (int, float)):
            expires_at = (now or utcnow()) + timedelta(seconds=expires_in)
        else:
            expires_at = _jwt_expiry(access_token)
        return cls(access_token=access_token, refresh_token=refresh_token, expires_at=expires_at)


class SessionStore:
    """
    Holds the current session and mirrors it into a credential vault.

    Example:
        >>> store = SessionStore(MemoryVault())
        >>> store.save(Session("tok", "ref"))
        >>> store.access_token
        'tok'
    """

    def __init__(
        self,
        vault: Optional[CredentialVault] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.vault = vault or MemoryVault()
        self._clock = clock
        self._session: Optional[Session] = None

    @property
    def current(self) -> Optional[Session]:
        return self._session

    @property
    def access_token(self) -> Optional[str]:
        return self._session.access_token if self._session else None

    @property
    def refresh_token(self) -> Optional[str]:
        return self._session.refresh_token if self._session else None

    def is_authenticated(self) -> bool:
        return self._session is not None

    def is_expired(self) -> bool:
        """True when there is no session or its expiry has passed."""
        if self._session is None:
            return True
        return self._session.is_expired(self._clock())

    def save(self, session: Session) -> None:
        self._session = session
        self.vault.set(ACCESS_TOKEN_KEY, session.access_token)
        if session.refresh_token:
            self.vault.set(REFRESH_TOKEN_KEY, session.refresh_token)
        else:
            self.vault.delete(REFRESH_TOKEN_KEY)
        if session.expires_at:
            self.vault.set(EXPIRES_AT_KEY, session.expires_at.isoformat())
        else:
            self.vault.delete(EXPIRES_AT_KEY)
        logger.info(
            "session_saved",
            expires_at=session.expires_at.isoformat() if session.expires_at else None,
        )

    def restore(self) -> Optional[Session]:
        """Load a previously persisted session from the vault."""
        access_token = self.vault.get(ACCESS_TOKEN_KEY)
        if not access_token:
            return None
        raw_expiry = self.vault.get(EXPIRES_AT_KEY)
        expires_at = datetime.fromisoformat(raw_expiry) if raw_expiry else None
        self._session = Session(
            access_token=access_token,
            refresh_token=self.vault.get(REFRESH_TOKEN_KEY),
            expires_at=expires_at,
        )
        logger.info("session_restored")
        return self._session

    def clear(self) -> None:
        self._session = None
        self.vault.clear()
        logger.info("session_cleared")
