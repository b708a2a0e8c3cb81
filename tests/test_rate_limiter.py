"""
Tests for the sliding-window rate limiter, input sanitization and single-flight.
"""
import asyncio

import pytest

from paylo_core.integrations.rate_limiter import SlidingWindowRateLimiter
from paylo_core.integrations.sanitize import sanitize_body, sanitize_input
from paylo_core.integrations.single_flight import SingleFlight


class ManualClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


class TestSlidingWindowRateLimiter:
    """Per-key rolling window."""

    @pytest.mark.unit
    def test_rejects_beyond_budget_within_window(self):
        clock = ManualClock()
        limiter = SlidingWindowRateLimiter(2, 60.0, clock=clock)

        assert limiter.try_acquire("wallets")
        assert limiter.try_acquire("wallets")
        assert not limiter.try_acquire("wallets")
        assert limiter.remaining("wallets") == 0

    @pytest.mark.unit
    def test_budget_returns_once_oldest_request_leaves_window(self):
        """Test the window rolls rather than resetting in fixed buckets."""
        clock = ManualClock()
        limiter = SlidingWindowRateLimiter(2, 60.0, clock=clock)
        limiter.try_acquire("wallets")
        clock.now += 30
        limiter.try_acquire("wallets")

        clock.now += 20
        assert limiter.retry_after("wallets") == pytest.approx(10.0)
        assert not limiter.try_acquire("wallets")

        clock.now += 10
        assert limiter.try_acquire("wallets")
        assert not limiter.try_acquire("wallets")

    @pytest.mark.unit
    def test_keys_are_independent(self):
        limiter = SlidingWindowRateLimiter(1, 60.0, clock=ManualClock())

        assert limiter.try_acquire("a")
        assert limiter.try_acquire("b")
        assert limiter.retry_after("c") == 0.0

    @pytest.mark.unit
    def test_reset_forgets_history(self):
        limiter = SlidingWindowRateLimiter(1, 60.0, clock=ManualClock())
        limiter.try_acquire("a")

        limiter.reset()

        assert limiter.try_acquire("a")

    @pytest.mark.unit
    @pytest.mark.parametrize("max_requests,window", [(0, 1.0), (1, 0.0), (-1, 5.0)])
    def test_invalid_configuration(self, max_requests, window):
        with pytest.raises(ValueError):
            SlidingWindowRateLimiter(max_requests, window)


class TestSanitize:
    """Outgoing body sanitization."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("  plain text  ", "plain text"),
            ("<script type='x'>steal()</script>Hi", "Hi"),
            ("JavaScript:void(0)", "void(0)"),
            ('<a href="#" onclick = "go()">x</a>', 'a href="#"  "go()"x/a'),
            ("5 > 3", "5  3"),
        ],
    )
    def test_sanitize_input(self, raw, expected):
        assert sanitize_input(raw) == expected

    @pytest.mark.unit
    def test_non_dict_bodies_pass_through(self):
        body = ["<b>", "x"]

        assert sanitize_body(body) is body
        assert sanitize_body(None) is None


class TestSingleFlight:
    """Concurrent calls sharing one task."""

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_execution(self):
        flight = SingleFlight()
        calls = 0
        release = asyncio.Event()

        async def work():
            nonlocal calls
            calls += 1
            await release.wait()
            return "token"

        waiters = [asyncio.create_task(flight.do("refresh-1", work)) for _ in range(5)]
        await asyncio.sleep(0)
        assert flight.in_flight("refresh-1")
        release.set()
        results = await asyncio.gather(*waiters)

        assert results == ["token"] * 5
        assert calls == 1
        assert not flight.in_flight("refresh-1")

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_failure_reaches_every_caller_and_releases_key(self):
        flight = SingleFlight()

        async def boom():
            await asyncio.sleep(0)
            raise RuntimeError("refresh failed")

        results = await asyncio.gather(
            *(flight.do("k", boom) for _ in range(3)), return_exceptions=True
        )

        assert all(isinstance(r, RuntimeError) for r in results)
        assert not flight.in_flight("k")

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_cancel_shared_task(self):
        flight = SingleFlight()
        release = asyncio.Event()

        async def work():
            await release.wait()
            return 1

        first = asyncio.create_task(flight.do("k", work))
        second = asyncio.create_task(flight.do("k", work))
        await asyncio.sleep(0)
        first.cancel()
        await asyncio.sleep(0)
        release.set()

        assert await second == 1
        with pytest.raises(asyncio.CancelledError):
            await first
