"""
Resilient API client with session management and retry logic.

Implements:
- Local sliding-window rate limiting before any network I/O
- Exponential backoff for 429 and transport errors
- Single-flight credential refresh with one replay per request
- Error normalization into the ``ClientError`` hierarchy
- Hand-off of entity-bearing responses to an ingestion sink
"""
import asyncio
import time
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..config import Settings, get_settings
from ..monitoring.metrics import metrics
from . import endpoints
from .errors import (
    AuthExpiredError,
    ClientError,
    ExhaustedError,
    RateLimitedError,
    TransientResponseError,
    UnknownError,
    ValidationError,
)
from .rate_limiter import SlidingWindowRateLimiter
from .sanitize import sanitize_body
from .session import Session, SessionStore
from .single_flight import SingleFlight

logger = structlog.get_logger(__name__)

EntitySink = Callable[[str, Any], Any]
SessionExpiredListener = Callable[[str], Any]


@dataclass
class RequestEnvelope:
    """A single logical request, carried unchanged across retries and replay."""

    method: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: Any = None
    params: Optional[Dict[str, Any]] = None
    retry_count: int = 0
    idempotency_key: Optional[str] = None
    auth_retried: bool = False
    caller_key: Optional[str] = None
    entity_kind: Optional[str] = None
    authenticate: bool = True
    sanitize: bool = True
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def __post_init__(self) -> None:
        self.method = self.method.upper()
        if self.caller_key is None:
            self.caller_key = self.url


@dataclass
class ApiResponse:
    """Successful response returned by ``ResilientClient.send``."""

    status: int
    data: Any
    headers: Dict[str, str]
    request_id: str

    @property
    def payload(self) -> Any:
        """The body with the backend's ``{"data": ...}`` wrapper removed."""
        if isinstance(self.data, dict) and "data" in self.data:
            return self.data["data"]
        return self.data


def _json_or_none(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


class ResilientClient:
    """
    Authenticated HTTP client for the payment backend.

    The client is the only writer of the session. A 401 triggers one shared
    refresh no matter how many requests observed it; each request is then
    replayed at most once.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        session_store: Optional[SessionStore] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Initialize resilient client.

        Args:
            settings: Client settings, defaults to ``get_settings()``
            session_store: Session store, defaults to an in-memory one
            http_client: Preconfigured ``httpx.AsyncClient`` (tests pass a MockTransport)
            rate_limiter: Local rate limiter
            sleep: Coroutine used for backoff delays
        """
        self.settings = settings or get_settings()
        self.session = session_store or SessionStore()
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(
            base_url=self.settings.api_base_url,
            timeout=self.settings.request_timeout,
        )
        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter(
            max_requests=self.settings.rate_limit_max_requests,
            window_seconds=self.settings.rate_limit_window_seconds,
        )
        self._sleep = sleep
        self._refresh_gate = SingleFlight()
        self._entity_sink: Optional[EntitySink] = None
        self._session_expired_listeners: List[SessionExpiredListener] = []

    async def __aenter__(self) -> "ResilientClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    def set_entity_sink(self, sink: Optional[EntitySink]) -> None:
        """Register the callable receiving ``(entity_kind, body)`` for entity-bearing calls."""
        self._entity_sink = sink

    def add_session_expired_listener(self, listener: SessionExpiredListener) -> None:
        self._session_expired_listeners.append(listener)

    # ------------------------------------------------------------------
    # Request pipeline
    # ------------------------------------------------------------------

    async def send(self, envelope: RequestEnvelope) -> ApiResponse:
        """
        Send a request through the full resilience pipeline.

        Args:
            envelope: Request to send

        Returns:
            ApiResponse: Successful response

        Raises:
            RateLimitedError: Local budget exceeded; nothing was sent
            AuthExpiredError: Credential could not be refreshed
            ExhaustedError: 429/transport retries exceeded the ceiling
            ValidationError: 4xx response
            UnknownError: 5xx or unclassifiable response
        """
        caller_key = envelope.caller_key or envelope.url
        if not self.rate_limiter.try_acquire(caller_key):
            metrics.record_rate_limit_rejection()
            raise RateLimitedError(caller_key, self.rate_limiter.retry_after(caller_key))

        start = time.perf_counter()
        try:
            response = await self._send_with_retries(envelope)
            if response.status_code == 401 and envelope.authenticate:
                response = await self._replay_after_refresh(envelope, response)
            result = self._to_api_response(envelope, response)
        except ClientError as exc:
            metrics.record_api_request(envelope.method, exc.kind.value, time.perf_counter() - start)
            logger.warning(
                "api_request_failed",
                method=envelope.method,
                url=envelope.url,
                request_id=envelope.request_id,
                error_kind=exc.kind.value,
                status=exc.status,
                code=exc.code,
            )
            raise

        metrics.record_api_request(envelope.method, "success", time.perf_counter() - start)
        logger.debug(
            "api_request_succeeded",
            method=envelope.method,
            url=envelope.url,
            status=result.status,
            request_id=envelope.request_id,
        )

        if envelope.entity_kind and self._entity_sink is not None:
            self._entity_sink(envelope.entity_kind, result.data)
        return result

    def _build_headers(self, envelope: RequestEnvelope) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "X-Request-ID": envelope.request_id}
        headers.update(envelope.headers)
        if envelope.authenticate and self.session.access_token:
            headers["Authorization"] = f"Bearer {self.session.access_token}"
        if envelope.idempotency_key:
            headers["Idempotency-Key"] = envelope.idempotency_key
        return headers

    def _before_retry(self, envelope: RequestEnvelope, state: RetryCallState) -> None:
        envelope.retry_count += 1
        error = state.outcome.exception() if state.outcome else None
        reason = "rate_limited" if isinstance(error, TransientResponseError) else "transport"
        delay = state.next_action.sleep if state.next_action else 0.0
        metrics.record_retry(reason)
        logger.warning(
            "api_request_retrying",
            method=envelope.method,
            url=envelope.url,
            request_id=envelope.request_id,
            attempt=state.attempt_number,
            reason=reason,
            delay_seconds=delay,
        )

    async def _send_with_retries(self, envelope: RequestEnvelope) -> httpx.Response:
        """Send once, retrying 429 and transport errors with exponential backoff."""
        body = sanitize_body(envelope.body) if envelope.sanitize else envelope.body
        retrying = AsyncRetrying(
            retry=retry_if_exception_type((TransientResponseError, httpx.TransportError)),
            stop=stop_after_attempt(self.settings.retry_max_retries + 1),
            wait=wait_exponential(
                multiplier=self.settings.retry_base_delay,
                min=0,
                max=self.settings.retry_max_delay,
            ),
            before_sleep=lambda state: self._before_retry(envelope, state),
            sleep=self._sleep,
        )

        response: Optional[httpx.Response] = None
        try:
            async for attempt in retrying:
                with attempt:
                    response = await self._http.request(
                        envelope.method,
                        envelope.url,
                        headers=self._build_headers(envelope),
                        params=envelope.params,
                        json=body,
                    )
                    if response.status_code == 429:
                        raise TransientResponseError(429, _json_or_none(response))
        except RetryError as exc:
            last_error = exc.last_attempt.exception()
            attempts = exc.last_attempt.attempt_number
            logger.error(
                "api_request_exhausted",
                method=envelope.method,
                url=envelope.url,
                request_id=envelope.request_id,
                attempts=attempts,
                error=str(last_error),
            )
            raise ExhaustedError(attempts, last_error) from last_error

        assert response is not None
        return response

    async def _replay_after_refresh(
        self, envelope: RequestEnvelope, response: httpx.Response
    ) -> httpx.Response:
        if envelope.auth_retried:
            self._expire_session("replay_unauthorized")
            raise AuthExpiredError("Credential rejected after refresh", status=401)
        envelope.auth_retried = True

        sent_authorization = response.request.headers.get("Authorization")
        current_token = self.session.access_token
        if current_token and sent_authorization != f"Bearer {current_token}":
            # Another request already refreshed the credential
            logger.info("auth_replay_with_current_token", request_id=envelope.request_id)
        else:
            await self.refresh()

        replay = await self._send_with_retries(envelope)
        if replay.status_code == 401:
            self._expire_session("replay_unauthorized")
            raise AuthExpiredError("Credential rejected after refresh", status=401)
        return replay

    def _to_api_response(self, envelope: RequestEnvelope, response: httpx.Response) -> ApiResponse:
        if response.is_success:
            return ApiResponse(
                status=response.status_code,
                data=_json_or_none(response),
                headers=dict(response.headers),
                request_id=envelope.request_id,
            )
        raise self._normalize_error(response)

    @staticmethod
    def _normalize_error(response: httpx.Response) -> ClientError:
        """
        Map a non-success response onto the error hierarchy.

        Reads ``message``/``code``/``details`` from the body (or from a nested
        ``error`` object), falling back to the reason phrase and
        ``UNKNOWN_ERROR``.
        """
        status = response.status_code
        body = _json_or_none(response)
        message: Any = None
        code: Any = None
        details: Any = None
        if isinstance(body, dict):
            nested = body.get("error")
            source = nested if isinstance(nested, dict) else body
            message = source.get("message") or (nested if isinstance(nested, str) else None)
            code = source.get("code")
            details = source.get("details")

        if details is not None and not isinstance(details, dict):
            details = {"details": details}
        error_cls = ValidationError if 400 <= status < 500 else UnknownError
        return error_cls(
            str(message or response.reason_phrase or f"HTTP {status}"),
            status=status,
            code=str(code) if code else "UNKNOWN_ERROR",
            details=details,
        )

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def _expire_session(self, reason: str) -> None:
        logger.warning("session_expired", reason=reason)
        self.session.clear()
        for listener in list(self._session_expired_listeners):
            try:
                listener(reason)
            except Exception:
                logger.exception("session_expired_listener_failed", reason=reason)

    async def refresh(self) -> Session:
        """
        Refresh the access token, sharing one refresh across concurrent callers.

        Raises:
            AuthExpiredError: No refresh token, or the backend refused the refresh
            ExhaustedError: The refresh endpoint stayed unreachable
        """
        refresh_token = self.session.refresh_token
        if not refresh_token:
            metrics.record_token_refresh("failed")
            if self.session.is_authenticated():
                self._expire_session("missing_refresh_token")
            raise AuthExpiredError("No refresh token available", status=401)
        return await self._refresh_gate.do(
            refresh_token, lambda: self._perform_refresh(refresh_token)
        )

    async def _perform_refresh(self, refresh_token: str) -> Session:
        logger.info("token_refresh_started")
        envelope = RequestEnvelope(
            "POST",
            endpoints.AUTH_REFRESH,
            body={"refreshToken": refresh_token},
            authenticate=False,
            sanitize=False,
        )
        try:
            response = await self._send_with_retries(envelope)
        except ExhaustedError:
            metrics.record_token_refresh("exhausted")
            raise

        if not response.is_success:
            error = self._normalize_error(response)
            self._fail_refresh(error.message, error.status)

        try:
            session = Session.from_token_payload(_json_or_none(response))
        except ValueError as exc:
            self._fail_refresh(str(exc), response.status_code)

        if session.refresh_token is None:
            session = replace(session, refresh_token=refresh_token)
        self.session.save(session)
        metrics.record_token_refresh("success")
        logger.info("token_refresh_succeeded")
        return session

    def _fail_refresh(self, message: str, status: int) -> None:
        metrics.record_token_refresh("failed")
        logger.error("token_refresh_failed", status=status, error=message)
        self._expire_session("refresh_failed")
        raise AuthExpiredError(f"Token refresh failed: {message}", status=status or 401)

    def _open_session(self, response: ApiResponse) -> Dict[str, Any]:
        try:
            session = Session.from_token_payload(response.data)
        except ValueError as exc:
            raise UnknownError(
                f"Malformed auth response: {exc}", status=response.status, code="MALFORMED_TOKENS"
            ) from exc
        self.session.save(session)
        payload = response.payload
        return payload if isinstance(payload, dict) else {}

    async def login(self, email: str, password: str) -> Dict[str, Any]:
        """
        Authenticate with email and password and open a session.

        Returns:
            Dict[str, Any]: The auth payload (``user`` and ``tokens`` when provided)
        """
        logger.info("login_started")
        response = await self.send(
            RequestEnvelope(
                "POST",
                endpoints.AUTH_LOGIN,
                body={"email": email, "password": password},
                authenticate=False,
                sanitize=False,
                caller_key="auth",
            )
        )
        return self._open_session(response)

    async def register(self, registration: Dict[str, Any]) -> Dict[str, Any]:
        """Create an account and open a session for it."""
        logger.info("registration_started", role=registration.get("role"))
        response = await self.send(
            RequestEnvelope(
                "POST",
                endpoints.AUTH_REGISTER,
                body=registration,
                authenticate=False,
                sanitize=False,
                caller_key="auth",
            )
        )
        return self._open_session(response)

    async def logout(self) -> None:
        """Notify the backend (best effort) and always clear the local session."""
        if self.session.is_authenticated():
            try:
                await self.send(RequestEnvelope("POST", endpoints.AUTH_LOGOUT, caller_key="auth"))
            except ClientError as exc:
                logger.warning("logout_notification_failed", error_kind=exc.kind.value, status=exc.status)
        self.session.clear()
        logger.info("logout_completed")

    def restore(self) -> Optional[Session]:
        return self.session.restore()

    def is_authenticated(self) -> bool:
        return self.session.is_authenticated()

    def is_token_expired(self) -> bool:
        return self.session.is_expired()

    # ------------------------------------------------------------------
    # Convenience verbs
    # ------------------------------------------------------------------

    async def get(self, url: str, params: Optional[Dict[str, Any]] = None, **kwargs: Any) -> ApiResponse:
        return await self.send(RequestEnvelope("GET", url, params=params, **kwargs))

    async def post(self, url: str, body: Any = None, **kwargs: Any) -> ApiResponse:
        return await self.send(RequestEnvelope("POST", url, body=body, **kwargs))

    async def put(self, url: str, body: Any = None, **kwargs: Any) -> ApiResponse:
        return await self.send(RequestEnvelope("PUT", url, body=body, **kwargs))

    async def patch(self, url: str, body: Any = None, **kwargs: Any) -> ApiResponse:
        return await self.send(RequestEnvelope("PATCH", url, body=body, **kwargs))

    async def delete(self, url: str, **kwargs: Any) -> ApiResponse:
        return await self.send(RequestEnvelope("DELETE", url, **kwargs))
