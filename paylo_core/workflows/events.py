"""Notification events published by workflows."""
import asyncio
import inspect
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Deque, List, Optional, Set

import structlog

logger = structlog.get_logger(__name__)


class EventType(Enum):
    SUCCESS = "success"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class EventPriority(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(frozen=True)
class WorkflowEvent:
    """A user-facing notification emitted by a workflow."""

    type: EventType
    title: str
    message: str
    category: str = "system"
    priority: EventPriority = EventPriority.MEDIUM
    workflow: Optional[str] = None
    run_id: Optional[str] = None
    action_url: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


EventSubscriber = Callable[[WorkflowEvent], Any]


class EventBus:
    """
    Fire-and-forget publisher for workflow events.

    Subscribers may be sync or async. Async subscribers run as background
    tasks. Subscriber errors are logged and never reach the publisher.
    """

    def __init__(self, history_size: int = 100):
        self._subscribers: List[EventSubscriber] = []
        self._recent: Deque[WorkflowEvent] = deque(maxlen=history_size)
        self._tasks: Set["asyncio.Task[Any]"] = set()

    def subscribe(self, subscriber: EventSubscriber) -> Callable[[], None]:
        """Register a subscriber; returns a function that unsubscribes it."""
        self._subscribers.append(subscriber)

        def unsubscribe() -> None:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

        return unsubscribe

    def publish(self, event: WorkflowEvent) -> None:
        self._recent.append(event)
        logger.info(
            "workflow_event_published",
            event_type=event.type.value,
            title=event.title,
            workflow=event.workflow,
            run_id=event.run_id,
        )
        for subscriber in list(self._subscribers):
            try:
                result = subscriber(event)
            except Exception:
                logger.exception("event_subscriber_failed", title=event.title)
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: "asyncio.Task[Any]") -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("event_subscriber_failed", error=str(error))

    def recent(self, limit: Optional[int] = None) -> List[WorkflowEvent]:
        """Published events, newest first."""
        events = list(reversed(self._recent))
        return events[:limit] if limit is not None else events

    async def drain(self) -> None:
        """Wait for in-flight async subscribers."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
