"""
Tests for the update ingestion channel and the in-memory push transport.
"""
import asyncio
from decimal import Decimal
from typing import List

import pytest

from paylo_core.core.models import InvoiceStatus, TransactionStatus, UpdateEvent
from paylo_core.realtime.channel import UpdateIngestionChannel
from paylo_core.realtime.transport import InMemoryTransport, TransportDisconnected


async def settle(rounds: int = 20) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


def balance_message(wallet_id="w1", usd="150.00", at="2025-01-06T10:05:00Z", message_id="m1"):
    return {
        "id": message_id,
        "type": "balance_update",
        "timestamp": at,
        "payload": {
            "walletId": wallet_id,
            "balance": "2.5",
            "usdValue": usd,
            "lastUpdated": at,
            "transactionId": "tx-42",
        },
    }


class Delays:
    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def transport():
    return InMemoryTransport()


@pytest.fixture
def delays():
    return Delays()


@pytest.fixture
def channel(transport, registry, settings, delays):
    return UpdateIngestionChannel(transport, registry, settings=settings, sleep=delays)


class TestDispatch:
    """Routing of raw messages into the registry."""

    @pytest.mark.unit
    def test_balance_update_is_applied_to_wallet_store(self, channel, registry):
        event = channel.dispatch(balance_message())

        stored = registry.wallets.get("w1")
        assert event.kind == "wallet"
        assert event.cause_id == "tx-42"
        assert event.event_id == "m1"
        assert stored.usd_value == Decimal("150.00")
        assert stored.updated_at.isoformat() == "2025-01-06T10:05:00+00:00"
        assert registry.wallets.history(limit=1)[0].cause_id == "tx-42"

    @pytest.mark.unit
    def test_duplicate_delivery_is_harmless(self, channel, registry):
        channel.dispatch(balance_message())
        channel.dispatch(balance_message())

        assert len(registry.wallets) == 1
        assert registry.wallets.total_usd_value == Decimal("150.00")

    @pytest.mark.unit
    def test_transaction_update_for_unknown_id_is_deferred(self, channel, registry):
        event = channel.dispatch(
            {
                "type": "transaction_update",
                "timestamp": "2025-01-06T10:05:00Z",
                "payload": {"transactionId": "tx1", "status": "confirmed", "confirmations": 3},
            }
        )

        assert event.id == "tx1"
        assert registry.transactions.pending_deferred() == ["tx1"]

        registry.transactions.upsert({"id": "tx1", "status": "pending", "updatedAt": "2025-01-06T10:00:00Z"})
        assert registry.transactions.get("tx1").status == TransactionStatus.CONFIRMED

    @pytest.mark.unit
    def test_invoice_paid_forces_paid_status(self, channel, registry):
        registry.invoices.upsert({"id": "inv1", "amount": "10", "currency": "bitcoin"})

        channel.dispatch({"type": "invoice_paid", "payload": {"invoiceId": "inv1", "paidAmount": "10"}})

        invoice = registry.invoices.get("inv1")
        assert invoice.status == InvoiceStatus.PAID
        assert invoice.paid_amount == Decimal("10")
        assert registry.invoices.outstanding_count == 0

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "message",
        [
            {"type": "price_tick", "payload": {}},
            {"payload": {"walletId": "w1"}},
            {"type": "balance_update"},
            {"type": "balance_update", "payload": {"usdValue": "1"}},
            {"type": "balance_update", "payload": {"walletId": "w1"}, "timestamp": "yesterday"},
            "not a message",
        ],
    )
    def test_unhandled_or_malformed_messages_are_dropped(self, channel, registry, message):
        assert channel.dispatch(message) is None
        assert len(registry.wallets) == 0

    @pytest.mark.unit
    def test_custom_handler_can_consume_without_event(self, channel, registry):
        seen = []

        def heartbeat(payload, timestamp, message_id):
            seen.append(message_id)
            return None

        channel.register_handler("heartbeat", heartbeat)

        assert channel.dispatch({"id": "hb1", "type": "heartbeat", "payload": {}}) is None
        assert seen == ["hb1"]


class TestSubscribe:
    """Subscriber fan-out."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_subscriber_receives_events_of_its_kind(self, channel):
        wallets = channel.subscribe("wallet")
        everything = channel.subscribe()
        transactions = channel.subscribe("transaction")
        next_wallet = asyncio.create_task(wallets.__anext__())
        next_any = asyncio.create_task(everything.__anext__())
        next_tx = asyncio.create_task(transactions.__anext__())
        await settle()
        assert channel.subscriber_count("wallet") == 1
        assert channel.subscriber_count() == 1

        channel.dispatch(balance_message())
        await settle()

        assert isinstance(next_wallet.result(), UpdateEvent)
        assert next_any.result().id == "w1"
        assert not next_tx.done()

        next_tx.cancel()
        await settle()
        await wallets.aclose()
        await everything.aclose()
        await transactions.aclose()
        assert channel.subscriber_count("wallet") == 0
        assert channel.subscriber_count("transaction") == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_slow_subscriber_drops_oldest_events(self, channel, settings):
        settings.subscriber_queue_size = 2
        stream = channel.subscribe("wallet")
        first = asyncio.create_task(stream.__anext__())
        await settle()
        channel.dispatch(balance_message("w1", message_id="m1"))
        await settle()
        assert first.result().event_id == "m1"

        for i in range(2, 5):
            channel.dispatch(balance_message(f"w{i}", message_id=f"m{i}"))

        received = [await stream.__anext__(), await stream.__anext__()]
        assert [e.event_id for e in received] == ["m3", "m4"]
        await stream.aclose()


class TestReconnect:
    """Connection lifecycle, backoff and resync."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_connect_failures_back_off_exponentially(self, channel, transport, delays):
        transport.fail_connects(3)
        resyncs = []

        async def resync():
            resyncs.append(channel.status)

        channel.set_resync(resync)
        await channel.start()
        await settle()

        assert delays.delays == [5.0, 10.0, 20.0]
        assert transport.connect_count == 4
        assert channel.connected
        assert channel.reconnect_attempts == 0
        assert resyncs == ["connected"]
        await channel.stop()
        assert channel.status == "closed"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_backoff_is_capped(self, channel, transport, delays, settings):
        settings.reconnect_max_delay = 12.0
        transport.fail_connects(4)

        await channel.start()
        await settle()

        assert delays.delays == [5.0, 10.0, 12.0, 12.0]
        await channel.stop()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, channel, transport, delays, settings):
        settings.max_reconnect_attempts = 3
        transport.fail_connects(100)

        await channel.start()
        await settle()

        assert channel.status == "failed"
        assert delays.delays == [5.0, 10.0, 20.0]
        assert transport.connect_count == 4
        assert channel._task.done()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_dropped_connection_resyncs_and_notifies_listeners(self, channel, transport, delays, registry):
        resyncs = []
        reconnects = []

        async def resync():
            resyncs.append(transport.connect_count)

        async def on_reconnect():
            reconnects.append(transport.connect_count)

        channel.set_resync(resync)
        channel.add_reconnect_listener(on_reconnect)
        await channel.start()
        await settle()
        assert resyncs == [1]
        assert reconnects == []

        transport.drop()
        await settle()
        transport.publish(balance_message())
        await settle()

        assert delays.delays == [5.0]
        assert resyncs == [1, 2]
        assert reconnects == [2]
        assert channel.connected
        assert "w1" in registry.wallets
        await channel.stop()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failing_resync_does_not_stop_consumption(self, channel, transport, registry):
        async def resync():
            raise RuntimeError("snapshot fetch failed")

        def bad_listener():
            raise RuntimeError("listener failed")

        channel.set_resync(resync)
        channel.add_reconnect_listener(bad_listener)
        await channel.start()
        await settle()
        transport.drop()
        await settle()
        transport.publish(balance_message())
        await settle()

        assert channel.connected
        assert "w1" in registry.wallets
        await channel.stop()


class TestInMemoryTransport:
    """Test double semantics used by the channel tests."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_drop_raises_and_close_ends_iteration(self):
        transport = InMemoryTransport(fail_connects=1)
        with pytest.raises(TransportDisconnected):
            await transport.connect()
        await transport.connect()

        transport.publish({"type": "x"})
        transport.drop()
        received = []
        with pytest.raises(TransportDisconnected):
            async for message in transport.messages():
                received.append(message)
        assert received == [{"type": "x"}]
        assert not transport.connected

        await transport.close()
        assert [m async for m in transport.messages()] == []
