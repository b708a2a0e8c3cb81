"""Collapse concurrent calls for the same key into a single in-flight task."""
import asyncio
from typing import Any, Awaitable, Callable, Dict, Hashable

import structlog

logger = structlog.get_logger(__name__)


class SingleFlight:
    """
    Share one running coroutine between every caller using the same key.

    The first caller for a key starts ``fn``; callers arriving while it runs
    await the same task and receive the same result or exception. Once the
    task settles the key is released so a later call starts fresh.
    """

    def __init__(self) -> None:
        self._inflight: Dict[Hashable, "asyncio.Task[Any]"] = {}

    def in_flight(self, key: Hashable) -> bool:
        return key in self._inflight

    async def do(self, key: Hashable, fn: Callable[[], Awaitable[Any]]) -> Any:
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(fn())
            self._inflight[key] = task
            task.add_done_callback(lambda done: self._release(key, done))
        else:
            logger.debug("single_flight_joined")
        # A cancelled waiter must not cancel the shared task
        return await asyncio.shield(task)

    def _release(self, key: Hashable, task: "asyncio.Task[Any]") -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
