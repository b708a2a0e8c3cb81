"""
Local sliding-window rate limiter.

Applied by the API client before any network I/O so a caller that exceeds its
budget fails immediately instead of hammering the backend.
"""
import time
from collections import deque
from typing import Callable, Deque, Dict

import structlog

logger = structlog.get_logger(__name__)


class SlidingWindowRateLimiter:
    """
    Allows at most ``max_requests`` per rolling ``window_seconds`` per key.

    Each key keeps a deque of request timestamps; timestamps that fall out of
    the window are discarded on every check, so memory per key is bounded by
    ``max_requests``.

    Example:
        >>> limiter = SlidingWindowRateLimiter(max_requests=2, window_seconds=1.0)
        >>> limiter.try_acquire("wallets"), limiter.try_acquire("wallets")
        (True, True)
        >>> limiter.try_acquire("wallets")
        False
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_requests <= 0:
            raise ValueError("max_requests must be positive")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._requests: Dict[str, Deque[float]] = {}

    def _prune(self, key: str, now: float) -> Deque[float]:
        timestamps = self._requests.setdefault(key, deque())
        window_start = now - self.window_seconds
        while timestamps and timestamps[0] <= window_start:
            timestamps.popleft()
        return timestamps

    def try_acquire(self, key: str) -> bool:
        """
        Record a request for ``key`` if the budget allows it.

        Args:
            key: Logical caller key

        Returns:
            bool: True when the request is allowed
        """
        now = self._clock()
        timestamps = self._prune(key, now)
        if len(timestamps) >= self.max_requests:
            logger.warning("rate_limit_exceeded", caller_key=key, limit=self.max_requests)
            return False
        timestamps.append(now)
        return True

    def retry_after(self, key: str) -> float:
        """Seconds until ``key`` regains one request of budget."""
        now = self._clock()
        timestamps = self._prune(key, now)
        if len(timestamps) < self.max_requests:
            return 0.0
        return max(0.0, timestamps[0] + self.window_seconds - now)

    def remaining(self, key: str) -> int:
        return self.max_requests - len(self._prune(key, self._clock()))

    def reset(self) -> None:
        self._requests.clear()
