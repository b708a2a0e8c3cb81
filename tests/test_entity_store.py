"""
Tests for the entity stores and registry.
"""
import random
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from paylo_core.core.entity_store import EntityStore, UnknownEntityPolicy
from paylo_core.core.models import (
    EntityKind,
    InvoiceStatus,
    TransactionStatus,
    UpdateEvent,
    Wallet,
)
from paylo_core.core.stores import EntityRegistry, InvoiceStore, TransactionStore, WalletStore

T0 = datetime(2025, 1, 6, 10, 0, tzinfo=timezone.utc)


def wallet(wallet_id="w1", usd="100.00", blockchain="ethereum", **extra):
    return {
        "id": wallet_id,
        "blockchain": blockchain,
        "address": f"addr-{wallet_id}",
        "balance": "1.5",
        "usdValue": usd,
        "updatedAt": T0.isoformat(),
        **extra,
    }


def transaction(tx_id="tx1", status="pending", fee_usd="0.50", **extra):
    return {"id": tx_id, "status": status, "amount": "0.1", "blockchain": "bitcoin", "feeUsd": fee_usd, **extra}


def push(kind, entity_id, value, at=T0 + timedelta(minutes=1), cause_id=None):
    return UpdateEvent(kind=kind, id=entity_id, new_value=value, timestamp=at, cause_id=cause_id)


class TestEntityStoreMutations:
    """Upsert, remove, history and snapshots."""

    @pytest.mark.unit
    def test_upsert_parses_camel_case_payload(self):
        store = WalletStore()

        record = store.upsert(wallet(usd=12.3))

        stored = store.get("w1")
        assert stored.usd_value == Decimal("12.3")
        assert record.previous_value is None
        assert record.new_value == stored
        assert store.total_usd_value == Decimal("12.3")

    @pytest.mark.unit
    def test_upsert_is_idempotent(self):
        """Test re-applying the same value changes neither entities nor aggregates."""
        store = WalletStore()
        store.upsert(wallet())
        before = (store.all(), store.aggregates())

        record = store.upsert(wallet())

        assert (store.all(), store.aggregates()) == before
        assert record.previous_value == record.new_value
        assert len(store.history()) == 2

    @pytest.mark.unit
    def test_replace_adjusts_aggregate_by_delta(self):
        store = WalletStore()
        store.upsert(wallet("w1", "100"))
        store.upsert(wallet("w2", "50"))

        store.upsert(wallet("w1", "40"))

        assert store.total_usd_value == Decimal("90")

    @pytest.mark.unit
    def test_remove_subtracts_contribution(self):
        store = WalletStore()
        store.upsert(wallet("w1", "100"))
        store.upsert(wallet("w2", "50"))

        removed = store.remove("w1", cause_id="cleanup")

        assert removed.id == "w1"
        assert "w1" not in store
        assert store.total_usd_value == Decimal("50")
        assert store.history(limit=1)[0].cause_id == "cleanup"
        assert store.remove("missing") is None

    @pytest.mark.unit
    def test_invalid_payload_is_rejected_without_side_effects(self):
        store = WalletStore()

        assert store.upsert({"blockchain": "ethereum"}) is None
        assert store.upsert({"id": "w1", "usdValue": "not-a-number"}) is None
        assert len(store) == 0
        assert store.history() == []

    @pytest.mark.unit
    def test_history_is_bounded_and_newest_first(self):
        store = WalletStore(history_limit=3)
        for i in range(5):
            store.upsert(wallet(usd=str(i)))

        history = store.history()

        assert store.history_limit == 3
        assert [r.new_value.usd_value for r in history] == [Decimal("4"), Decimal("3"), Decimal("2")]

    @pytest.mark.unit
    def test_history_filters_by_entity(self):
        store = WalletStore()
        store.upsert(wallet("w1"))
        store.upsert(wallet("w2"))
        store.upsert(wallet("w1", "5"))

        assert [r.entity_id for r in store.history("w1")] == ["w1", "w1"]

    @pytest.mark.unit
    def test_load_snapshot_removes_absent_ids(self):
        store = WalletStore()
        store.upsert(wallet("w1", "10"))
        store.upsert(wallet("w2", "20"))

        count = store.load_snapshot([wallet("w2", "25"), wallet("w3", "5"), {"bad": True}])

        assert count == 2
        assert sorted(w.id for w in store) == ["w2", "w3"]
        assert store.total_usd_value == Decimal("30")

    @pytest.mark.unit
    def test_clear_resets_entities_history_and_aggregates(self):
        store = TransactionStore()
        store.upsert(transaction())
        store.apply_push_update(push("transaction", "tx-unknown", {"status": "confirmed"}))

        store.clear()

        assert len(store) == 0
        assert store.history() == []
        assert store.pending_deferred() == []
        assert store.pending_count == 0
        assert store.total_fee_usd == Decimal("0")

    @pytest.mark.unit
    def test_history_limit_must_be_positive(self):
        with pytest.raises(ValueError):
            EntityStore("wallet", Wallet, history_limit=0)


class TestIngest:
    """Extraction of entities from response envelopes."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "payload,expected",
        [
            ({"data": [wallet("w1"), wallet("w2")]}, 2),
            ({"data": {"wallets": [wallet("w1")]}}, 1),
            ({"data": {"items": [wallet("w1")], "total": 1}}, 1),
            ({"data": wallet("w1")}, 1),
            ({"wallet": wallet("w1")}, 1),
            ([wallet("w1"), {"noId": True}], 1),
            ({"data": {"unrelated": []}}, 0),
            ("not json", 0),
            (None, 0),
        ],
    )
    def test_ingest_envelopes(self, payload, expected):
        store = WalletStore()

        assert store.ingest(payload) == expected
        assert len(store) == expected


class TestPushUpdates:
    """Partial updates from the real-time channel."""

    @pytest.mark.unit
    def test_merges_partial_update_over_current_record(self):
        store = WalletStore()
        store.upsert(wallet(usd="100"))

        applied = store.apply_push_update(push("wallet", "w1", {"usdValue": "120", "balance": "2"}, cause_id="tx9"))

        stored = store.get("w1")
        assert applied
        assert stored.usd_value == Decimal("120")
        assert stored.balance == Decimal("2")
        assert stored.address == "addr-w1"
        assert stored.updated_at == T0 + timedelta(minutes=1)
        assert store.total_usd_value == Decimal("120")
        assert store.history(limit=1)[0].cause_id == "tx9"

    @pytest.mark.unit
    def test_stale_update_is_ignored(self):
        store = WalletStore()
        store.upsert(wallet(usd="100"))

        applied = store.apply_push_update(push("wallet", "w1", {"usdValue": "1"}, at=T0 - timedelta(seconds=1)))

        assert not applied
        assert store.total_usd_value == Decimal("100")

    @pytest.mark.unit
    def test_unknown_wallet_is_synthesized(self):
        store = WalletStore()

        applied = store.apply_push_update(push("wallet", "w9", {"usdValue": "7", "blockchain": "solana"}))

        assert applied
        assert store.get("w9").blockchain == "solana"
        assert store.total_usd_value == Decimal("7")

    @pytest.mark.unit
    def test_unknown_transaction_is_deferred_until_snapshot(self):
        """Test a deferred update is applied once the entity is fetched."""
        store = TransactionStore()

        applied = store.apply_push_update(push("transaction", "tx1", {"status": "confirmed", "confirmations": 6}))

        assert not applied
        assert "tx1" not in store
        assert store.pending_deferred() == ["tx1"]

        store.upsert(transaction("tx1", updatedAt=T0.isoformat()))

        stored = store.get("tx1")
        assert stored.status == TransactionStatus.CONFIRMED
        assert stored.confirmations == 6
        assert store.pending_count == 0
        assert store.pending_deferred() == []

    @pytest.mark.unit
    def test_deferred_update_older_than_snapshot_is_discarded(self):
        store = TransactionStore()
        store.apply_push_update(push("transaction", "tx1", {"status": "failed"}, at=T0))

        store.upsert(transaction("tx1", updatedAt=(T0 + timedelta(hours=1)).isoformat()))

        assert store.get("tx1").status == TransactionStatus.PENDING
        assert store.pending_deferred() == []

    @pytest.mark.unit
    def test_repeated_deferrals_merge_and_are_bounded(self):
        store = TransactionStore(deferred_limit=2)
        store.apply_push_update(push("transaction", "tx1", {"status": "confirmed"}, at=T0))
        store.apply_push_update(push("transaction", "tx1", {"confirmations": 3}, at=T0 + timedelta(seconds=5)))
        store.apply_push_update(push("transaction", "tx2", {"status": "failed"}))
        store.apply_push_update(push("transaction", "tx3", {"status": "failed"}))

        assert store.pending_deferred() == ["tx2", "tx3"]

        store = TransactionStore()
        store.apply_push_update(push("transaction", "tx1", {"status": "confirmed"}, at=T0 + timedelta(seconds=1)))
        store.apply_push_update(push("transaction", "tx1", {"confirmations": 3}, at=T0 + timedelta(seconds=2)))
        store.upsert(transaction("tx1", updatedAt=T0.isoformat()))
        assert store.get("tx1").status == TransactionStatus.CONFIRMED
        assert store.get("tx1").confirmations == 3

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "event",
        [
            push("invoice", "w1", {"status": "paid"}),
            push("wallet", "w1", ["not", "a", "mapping"]),
            push("wallet", "w1", {"usdValue": "abc"}),
        ],
    )
    def test_malformed_or_misrouted_updates_never_raise(self, event):
        store = WalletStore()
        store.upsert(wallet(usd="10"))

        assert not store.apply_push_update(event)
        assert store.total_usd_value == Decimal("10")


class TestAggregateInvariant:
    """Aggregates always equal the sum over live entities."""

    @pytest.mark.unit
    @pytest.mark.parametrize("seed", [1, 7, 42, 1234, 99999])
    def test_random_mutation_sequence_keeps_aggregates_exact(self, seed):
        rng = random.Random(seed)
        wallets = WalletStore(history_limit=10)
        transactions = TransactionStore(history_limit=10)
        statuses = [s.value for s in TransactionStatus]

        for step in range(300):
            entity_id = f"e{rng.randint(0, 15)}"
            at = T0 + timedelta(seconds=rng.randint(-30, 300))
            op = rng.random()
            if op < 0.4:
                usd = f"{rng.randint(0, 100000) / 100:.2f}"
                wallets.upsert(wallet(entity_id, usd))
                transactions.upsert(
                    transaction(entity_id, rng.choice(statuses), rng.choice([None, f"{rng.randint(0, 500) / 100}"]))
                )
            elif op < 0.6:
                wallets.remove(entity_id)
                transactions.remove(entity_id)
            elif op < 0.9:
                wallets.apply_push_update(push("wallet", entity_id, {"usdValue": str(rng.randint(0, 999))}, at=at))
                transactions.apply_push_update(push("transaction", entity_id, {"status": rng.choice(statuses)}, at=at))
            else:
                wallets.load_snapshot([wallet(f"e{i}", str(i)) for i in range(rng.randint(0, 5))])

            assert wallets.total_usd_value == sum((w.usd_value for w in wallets), Decimal("0"))
            assert transactions.pending_count == sum(1 for t in transactions if t.status == TransactionStatus.PENDING)
            assert transactions.total_fee_usd == sum((t.fee_usd or Decimal("0") for t in transactions), Decimal("0"))
            assert len(wallets.history()) <= 10


class TestProjections:
    """Derived read views."""

    @pytest.mark.unit
    def test_wallet_projections(self):
        store = WalletStore()
        store.upsert(wallet("w1", "100", "ethereum"))
        store.upsert(wallet("w2", "50", "ethereum", isActive=False))
        store.upsert(wallet("w3", "25", "bitcoin"))

        balances = store.blockchain_balances()

        assert balances["ethereum"] == {"balance": Decimal("3.0"), "usd_value": Decimal("150"), "count": 2}
        assert [w.id for w in store.by_blockchain("bitcoin")] == ["w3"]
        assert store.by_address("addr-w2").id == "w2"
        assert store.by_address("nowhere") is None
        assert store.stats() == {
            "total_wallets": 3,
            "active_wallets": 2,
            "total_usd_value": Decimal("175"),
            "blockchains": ["bitcoin", "ethereum"],
        }

    @pytest.mark.unit
    def test_transaction_stats_and_status_changes(self):
        store = TransactionStore()
        store.upsert(transaction("tx1"))
        store.upsert(transaction("tx2", "confirmed", None))
        store.apply_push_update(push("transaction", "tx1", {"status": "confirmed", "confirmations": 6}))

        stats = store.stats()
        changes = store.recent_status_changes()

        assert stats["total"] == 2
        assert stats["confirmed"] == 2
        assert stats["pending"] == 0
        assert stats["total_fee_usd"] == Decimal("0.50")
        assert len(changes) == 1
        assert changes[0]["transaction_id"] == "tx1"
        assert changes[0]["previous_status"] == TransactionStatus.PENDING
        assert changes[0]["confirmations"] == 6

    @pytest.mark.unit
    def test_invoice_expiry_helpers(self):
        store = InvoiceStore()
        store.upsert({"id": "inv1", "amount": "10", "expirationTime": T0.isoformat()})
        store.upsert({"id": "inv2", "amount": "10", "expirationTime": (T0 + timedelta(hours=2)).isoformat()})

        assert [i.id for i in store.expiring_before(T0 + timedelta(hours=1))] == ["inv1"]
        assert store.outstanding_count == 2

        assert store.mark_expired("inv1")
        assert not store.mark_expired("inv1")
        assert not store.mark_expired("missing")
        assert store.get("inv1").status == InvoiceStatus.EXPIRED
        assert store.outstanding_count == 1


class TestEntityRegistry:
    """Routing across the three stores."""

    @pytest.mark.unit
    def test_ingest_routes_by_kind(self, registry):
        assert registry.ingest("wallet", {"data": [wallet("w1")]}) == 1
        assert registry.ingest("transaction", {"data": {"transactions": [transaction()]}}) == 1
        assert registry.ingest("gizmo", {"data": []}) == 0
        assert len(registry.wallets) == 1
        assert len(registry.transactions) == 1

    @pytest.mark.unit
    def test_apply_accepts_enum_or_string_kind(self, registry):
        assert registry.apply(push(EntityKind.WALLET, "w1", {"usdValue": "3"}))
        assert registry.apply(push("wallet", "w2", {"usdValue": "4"}))
        assert not registry.apply(push("gizmo", "g1", {}))
        assert registry.wallets.total_usd_value == Decimal("7")

    @pytest.mark.unit
    def test_store_lookup_and_clear(self, registry):
        registry.load_snapshot("wallet", {"data": [wallet("w1")]})

        assert registry.store("wallet") is registry.wallets
        with pytest.raises(KeyError):
            registry.store("gizmo")

        registry.clear()
        assert len(registry.wallets) == 0

    @pytest.mark.unit
    def test_settings_drive_store_limits(self, settings):
        settings.transaction_history_limit = 5
        registry = EntityRegistry(settings)

        assert registry.transactions.history_limit == 5
        assert registry.wallets.unknown_policy is UnknownEntityPolicy.SYNTHESIZE
        assert registry.invoices.unknown_policy is UnknownEntityPolicy.DEFER
