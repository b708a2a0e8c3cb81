"""
Update ingestion channel.

Consumes push messages, routes them by type into ``UpdateEvent``s applied to
the entity registry, and fans them out to subscribers. Delivery is
at-least-once; the entity store diffs against current values so duplicates
are harmless.
"""
import asyncio
import inspect
from datetime import datetime
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

import structlog

from ..config import Settings, get_settings
from ..core.models import EntityKind, UpdateEvent, utcnow
from ..core.stores import EntityRegistry
from ..monitoring.metrics import metrics
from .transport import PushTransport, TransportDisconnected

logger = structlog.get_logger(__name__)

MessageHandler = Callable[[Dict[str, Any], datetime, Optional[str]], Optional[UpdateEvent]]
ResyncCallback = Callable[[], Awaitable[Any]]
ReconnectListener = Callable[[], Any]

ALL_KINDS = "*"


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str) and value:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    return utcnow()


def _entity_update(kind: EntityKind, id_key: str, renames: Optional[Dict[str, str]] = None) -> MessageHandler:
    """Build a handler lifting ``payload[id_key]`` into an UpdateEvent for ``kind``."""

    def handle(payload: Dict[str, Any], timestamp: datetime, message_id: Optional[str]) -> UpdateEvent:
        new_value = dict(payload)
        entity_id = new_value.pop(id_key)
        for source, target in (renames or {}).items():
            if source in new_value:
                new_value[target] = new_value.pop(source)
        return UpdateEvent(
            kind=kind.value,
            id=str(entity_id),
            new_value=new_value,
            timestamp=timestamp,
            cause_id=payload.get("transactionId") if kind is not EntityKind.TRANSACTION else None,
            event_id=message_id,
        )

    return handle


def _invoice_paid(payload: Dict[str, Any], timestamp: datetime, message_id: Optional[str]) -> UpdateEvent:
    event = _entity_update(EntityKind.INVOICE, "invoiceId")(payload, timestamp, message_id)
    return UpdateEvent(
        kind=event.kind,
        id=event.id,
        new_value={**event.new_value, "status": "paid"},
        timestamp=event.timestamp,
        cause_id=event.cause_id,
        event_id=event.event_id,
    )


class UpdateIngestionChannel:
    """
    Push-update consumer with reconnect, resync and subscriber fan-out.

    Example:
        channel = UpdateIngestionChannel(transport, registry, resync=refresh_snapshots)
        await channel.start()
        async for event in channel.subscribe("transaction"):
            ...
    """

    def __init__(
        self,
        transport: PushTransport,
        registry: EntityRegistry,
        settings: Optional[Settings] = None,
        resync: Optional[ResyncCallback] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Initialize channel.

        Args:
            transport: Source of push messages
            registry: Entity stores receiving the updates
            settings: Reconnect and buffering settings
            resync: Coroutine re-fetching authoritative snapshots after each connect
            sleep: Coroutine used for reconnect delays
        """
        self.transport = transport
        self.registry = registry
        self.settings = settings or get_settings()
        self._resync = resync
        self._sleep = sleep
        self._handlers: Dict[str, MessageHandler] = {}
        self._subscribers: Dict[str, List["asyncio.Queue[UpdateEvent]"]] = {}
        self._reconnect_listeners: List[ReconnectListener] = []
        self._task: Optional["asyncio.Task[None]"] = None
        self._stopping = False
        self.status = "idle"
        self.reconnect_attempts = 0

        self.register_handler("balance_update", _entity_update(EntityKind.WALLET, "walletId", {"lastUpdated": "updatedAt"}))
        self.register_handler("transaction_update", _entity_update(EntityKind.TRANSACTION, "transactionId"))
        self.register_handler("invoice_update", _entity_update(EntityKind.INVOICE, "invoiceId"))
        self.register_handler("invoice_paid", _invoice_paid)

    @property
    def connected(self) -> bool:
        return self.status == "connected"

    def register_handler(self, message_type: str, handler: MessageHandler) -> None:
        """
        Register a handler turning messages of ``message_type`` into UpdateEvents.

        A handler returning None consumes the message without touching the store.
        """
        self._handlers[message_type] = handler
        logger.info("push_handler_registered", message_type=message_type)

    def set_resync(self, resync: Optional[ResyncCallback]) -> None:
        self._resync = resync

    def add_reconnect_listener(self, listener: ReconnectListener) -> None:
        self._reconnect_listeners.append(listener)

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._stopping = False
        self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        self._stopping = True
        await self.transport.close()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._set_status("closed")

    def _set_status(self, status: str) -> None:
        if status != self.status:
            logger.info("realtime_status_changed", previous=self.status, status=status)
        self.status = status
        metrics.set_realtime_connected(status == "connected")

    def _backoff(self, attempt: int) -> float:
        delay = self.settings.reconnect_base_delay * 2 ** (attempt - 1)
        return min(delay, self.settings.reconnect_max_delay)

    async def _wait_before_reconnect(self, error: Exception) -> bool:
        self.reconnect_attempts += 1
        if self.reconnect_attempts > self.settings.max_reconnect_attempts:
            logger.error(
                "realtime_reconnect_abandoned",
                attempts=self.reconnect_attempts - 1,
                error=str(error),
            )
            self._set_status("failed")
            return False
        delay = self._backoff(self.reconnect_attempts)
        self._set_status("reconnecting")
        logger.warning(
            "realtime_reconnect_scheduled",
            attempt=self.reconnect_attempts,
            delay_seconds=delay,
            error=str(error),
        )
        await self._sleep(delay)
        return True

    async def run(self) -> None:
        """Connect, resync and consume until stopped or reconnects are exhausted."""
        has_connected = False
        while not self._stopping:
            self._set_status("connecting")
            try:
                await self.transport.connect()
            except TransportDisconnected as exc:
                if not await self._wait_before_reconnect(exc):
                    return
                continue

            self.reconnect_attempts = 0
            self._set_status("connected")
            await self._after_connect(is_reconnect=has_connected)
            has_connected = True

            try:
                async for message in self.transport.messages():
                    self.dispatch(message)
            except TransportDisconnected as exc:
                if self._stopping or not await self._wait_before_reconnect(exc):
                    return
                continue
            # Transport closed cleanly
            self._set_status("closed")
            return

    async def _after_connect(self, is_reconnect: bool) -> None:
        if self._resync is not None:
            try:
                await self._resync()
                logger.info("realtime_resync_completed", reconnect=is_reconnect)
            except Exception:
                logger.exception("realtime_resync_failed", reconnect=is_reconnect)
        if not is_reconnect:
            return
        for listener in list(self._reconnect_listeners):
            try:
                result = listener()
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("reconnect_listener_failed")

    # ------------------------------------------------------------------
    # Routing and fan-out
    # ------------------------------------------------------------------

    def dispatch(self, message: Dict[str, Any]) -> Optional[UpdateEvent]:
        """
        Route one raw message to its handler and apply the resulting event.

        Unknown types and malformed messages are logged and dropped.

        Returns:
            The routed event, or None if the message was dropped
        """
        message_type = message.get("type") if isinstance(message, dict) else None
        handler = self._handlers.get(message_type) if isinstance(message_type, str) else None
        if handler is None:
            logger.warning("push_message_unhandled", message_type=message_type)
            metrics.record_push_event(str(message_type), "unhandled")
            return None

        try:
            payload = message["payload"]
            timestamp = _parse_timestamp(message.get("timestamp"))
            event = handler(payload, timestamp, message.get("id"))
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            logger.warning("push_message_malformed", message_type=message_type, error=str(exc))
            metrics.record_push_event(message_type, "malformed")
            return None
        if event is None:
            return None

        applied = self.registry.apply(event)
        metrics.record_push_event(event.kind, "applied" if applied else "not_applied")
        logger.debug(
            "push_event_routed",
            message_type=message_type,
            kind=event.kind,
            entity_id=event.id,
            applied=applied,
        )
        self._fan_out(event)
        return event

    def _fan_out(self, event: UpdateEvent) -> None:
        queues = self._subscribers.get(event.kind, []) + self._subscribers.get(ALL_KINDS, [])
        for queue in queues:
            if queue.full():
                queue.get_nowait()
                logger.warning("subscriber_queue_overflow", kind=event.kind)
            queue.put_nowait(event)

    async def subscribe(self, kind: Optional[str] = None) -> AsyncIterator[UpdateEvent]:
        """
        Stream routed events of ``kind`` (all kinds when None).

        The subscription is registered on first iteration and removed when the
        iterator is closed. Each call creates an independent subscription.
        """
        key = kind or ALL_KINDS
        queue: "asyncio.Queue[UpdateEvent]" = asyncio.Queue(maxsize=self.settings.subscriber_queue_size)
        self._subscribers.setdefault(key, []).append(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._subscribers[key].remove(queue)

    def subscriber_count(self, kind: Optional[str] = None) -> int:
        return len(self._subscribers.get(kind or ALL_KINDS, []))
