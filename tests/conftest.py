"""
Pytest configuration and fixtures.
"""
import asyncio
import json
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncGenerator, Callable, Dict, List, Tuple

import httpx
import pytest
import pytest_asyncio

from paylo_core.config import Settings
from paylo_core.core.stores import EntityRegistry
from paylo_core.integrations.api_client import ResilientClient
from paylo_core.integrations.session import Session, SessionStore
from paylo_core.integrations.vault import MemoryVault

Handler = Callable[[httpx.Request], httpx.Response]

START = datetime(2025, 1, 6, 10, 0, tzinfo=timezone.utc)


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: fast isolated tests")
    config.addinivalue_line("markers", "race: concurrency and interleaving tests")


class FakeClock:
    """Controllable wall clock with a sleep that only returns when time is advanced."""

    def __init__(self, start: datetime = START):
        self.now = start
        self.sleeps: List[float] = []
        self._waiters: List[Tuple[datetime, "asyncio.Future[None]"]] = []

    def __call__(self) -> datetime:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        future: "asyncio.Future[None]" = asyncio.get_running_loop().create_future()
        self._waiters.append((self.now + timedelta(seconds=seconds), future))
        await future

    async def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)
        for target, future in list(self._waiters):
            if target <= self.now:
                self._waiters.remove((target, future))
                if not future.done():
                    future.set_result(None)
        await settle()


class RecordingSleep:
    """Sleep replacement that records delays and returns immediately."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


async def settle(rounds: int = 10) -> None:
    """Let scheduled tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def json_response(status: int, body: Any = None, **kwargs: Any) -> httpx.Response:
    return httpx.Response(status, json=body, **kwargs)


class FakeBackend:
    """Route table behind an ``httpx.MockTransport`` that records every request."""

    def __init__(self) -> None:
        self.routes: Dict[Tuple[str, str], Handler] = {}
        self.requests: List[httpx.Request] = []

    def route(self, method: str, path: str, handler: Any) -> None:
        """Register a handler; a plain ``httpx.Response`` or JSON-able value is returned as-is."""
        if isinstance(handler, httpx.Response):
            response = handler
            self.routes[(method, path)] = lambda request: response
        elif callable(handler):
            self.routes[(method, path)] = handler
        else:
            self.routes[(method, path)] = lambda request: json_response(200, handler)

    def calls(self, method: str, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]

    def body(self, request: httpx.Request) -> Any:
        return json.loads(request.content) if request.content else None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.routes.get((request.method, request.url.path))
        if handler is None:
            return json_response(404, {"message": f"No route for {request.method} {request.url.path}"})
        return handler(request)


@pytest.fixture
def settings() -> Settings:
    """Create test settings."""
    return Settings(
        _env_file=None,
        api_base_url="http://test",
        app_env="test",
        log_level="DEBUG",
        retry_max_retries=3,
        retry_base_delay=1.0,
        retry_max_delay=30.0,
        rate_limit_max_requests=100,
        rate_limit_window_seconds=60.0,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def session_store() -> SessionStore:
    return SessionStore(MemoryVault())


@pytest.fixture
def signed_in(session_store: SessionStore) -> SessionStore:
    """Session store holding a live credential."""
    session_store.save(Session(access_token="access-1", refresh_token="refresh-1"))
    return session_store


@pytest_asyncio.fixture
async def api_client(
    settings: Settings,
    backend: FakeBackend,
    session_store: SessionStore,
    recording_sleep: RecordingSleep,
) -> AsyncGenerator[ResilientClient, Any]:
    """Resilient client talking to the fake backend."""
    http = httpx.AsyncClient(transport=httpx.MockTransport(backend), base_url=settings.api_base_url)
    client = ResilientClient(
        settings=settings,
        session_store=session_store,
        http_client=http,
        sleep=recording_sleep,
    )
    yield client
    await http.aclose()


@pytest.fixture
def registry(settings: Settings) -> EntityRegistry:
    return EntityRegistry(settings)

