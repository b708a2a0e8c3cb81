"""
Push transports feeding the update ingestion channel.

A transport yields raw messages shaped ``{id, type, payload, timestamp}``.
``messages()`` raises ``TransportDisconnected`` when the connection drops and
ends normally once the transport is closed.
"""
import asyncio
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict

import structlog

logger = structlog.get_logger(__name__)


class TransportDisconnected(Exception):
    """Raised when the push connection cannot be opened or is lost."""

    pass


class PushTransport(ABC):
    """Source of out-of-band update messages."""

    @abstractmethod
    async def connect(self) -> None:
        """Open the connection; raises TransportDisconnected on failure."""

    @abstractmethod
    def messages(self) -> AsyncIterator[Dict[str, Any]]:
        """Iterate over messages until the connection drops or closes."""

    @abstractmethod
    async def close(self) -> None:
        """Close the connection and end ``messages()``."""


_DROP = object()
_CLOSE = object()


class InMemoryTransport(PushTransport):
    """
    Transport for in-process producers.

    ``publish`` enqueues a message, ``drop`` simulates a lost connection and
    ``fail_connects`` makes the next N ``connect`` calls fail.
    """

    def __init__(self, fail_connects: int = 0):
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue()
        self._fail_connects = fail_connects
        self.connected = False
        self.connect_count = 0

    def fail_connects(self, count: int) -> None:
        self._fail_connects = count

    async def connect(self) -> None:
        self.connect_count += 1
        if self._fail_connects > 0:
            self._fail_connects -= 1
            logger.debug("in_memory_transport_connect_refused", attempt=self.connect_count)
            raise TransportDisconnected("connection refused")
        self.connected = True

    async def messages(self) -> AsyncIterator[Dict[str, Any]]:
        while True:
            item = await self._queue.get()
            if item is _CLOSE:
                return
            if item is _DROP:
                self.connected = False
                raise TransportDisconnected("connection dropped")
            yield item

    def publish(self, message: Dict[str, Any]) -> None:
        self._queue.put_nowait(message)

    def drop(self) -> None:
        self._queue.put_nowait(_DROP)

    async def close(self) -> None:
        self.connected = False
        self._queue.put_nowait(_CLOSE)
