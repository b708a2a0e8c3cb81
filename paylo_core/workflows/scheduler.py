"""
Deferred follow-up actions keyed by wall-clock time.

Each key fires at most once. Scheduling an existing pending key replaces its
timer, so callers can recompute the fire time from authoritative data.
"""
import asyncio
import inspect
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Set

import structlog

from ..monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeferredScheduler:
    """
    Runs actions at a wall-clock time as cancellable asyncio tasks.

    Example:
        >>> scheduler = DeferredScheduler()
        >>> scheduler.schedule("invoice-expiration:inv_1", expires_at, expire)  # doctest: +SKIP
    """

    def __init__(
        self,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._clock = clock
        self._sleep = sleep
        self._tasks: Dict[str, "asyncio.Task[None]"] = {}
        self._fired: Set[str] = set()

    def schedule(self, key: str, fire_at: datetime, action: Callable[[], Any], once: bool = True) -> bool:
        """
        Schedule ``action`` to run at ``fire_at``.

        A fire time already in the past runs the action immediately. With
        ``once=False`` the key is not remembered after firing, for recurring
        jobs that use a fresh key per run.

        Returns:
            bool: False if ``key`` has already fired
        """
        if key in self._fired:
            logger.debug("scheduled_action_already_fired", key=key)
            return False

        existing = self._tasks.pop(key, None)
        if existing is not None:
            existing.cancel()

        now = self._clock()
        if fire_at.tzinfo is None:
            fire_at = fire_at.replace(tzinfo=timezone.utc)
        delay = max(0.0, (fire_at - now).total_seconds())
        self._tasks[key] = asyncio.create_task(self._run(key, delay, action, once))
        metrics.set_scheduled_actions(len(self._tasks))
        logger.info(
            "scheduled_action_registered",
            key=key,
            fire_at=fire_at.isoformat(),
            delay_seconds=delay,
            rescheduled=existing is not None,
        )
        return True

    async def _run(self, key: str, delay: float, action: Callable[[], Any], once: bool) -> None:
        if delay > 0:
            await self._sleep(delay)
        if self._tasks.get(key) is asyncio.current_task():
            del self._tasks[key]
        if once:
            self._fired.add(key)
        metrics.set_scheduled_actions(len(self._tasks))
        logger.info("scheduled_action_firing", key=key)
        try:
            result = action()
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("scheduled_action_failed", key=key)

    def cancel(self, key: str) -> bool:
        task = self._tasks.pop(key, None)
        if task is None:
            return False
        task.cancel()
        metrics.set_scheduled_actions(len(self._tasks))
        logger.info("scheduled_action_cancelled", key=key)
        return True

    def cancel_all(self, forget_fired: bool = False) -> int:
        """
        Cancel every pending action.

        Args:
            forget_fired: Also allow keys that already fired to be scheduled again

        Returns:
            int: Number of actions cancelled
        """
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if forget_fired:
            self._fired.clear()
        metrics.set_scheduled_actions(0)
        logger.info("scheduled_actions_cancelled", count=len(tasks))
        return len(tasks)

    def pending(self) -> List[str]:
        return list(self._tasks)

    def is_pending(self, key: str) -> bool:
        return key in self._tasks

    def has_fired(self, key: str) -> bool:
        return key in self._fired
