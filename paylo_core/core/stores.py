"""
Wallet, transaction and invoice stores and the registry that groups them.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog

from ..config import Settings, get_settings
from .entity_store import EntityStore, UnknownEntityPolicy
from .models import (
    EntityKind,
    Invoice,
    InvoiceStatus,
    Transaction,
    TransactionStatus,
    UpdateEvent,
    Wallet,
    as_utc,
)

logger = structlog.get_logger(__name__)

ZERO = Decimal("0")
ONE = Decimal("1")


class WalletStore(EntityStore[Wallet]):
    """Wallets with a running ``total_usd_value``."""

    def __init__(
        self,
        history_limit: int = 100,
        unknown_policy: UnknownEntityPolicy = UnknownEntityPolicy.SYNTHESIZE,
        deferred_limit: int = 500,
    ):
        super().__init__(
            EntityKind.WALLET.value,
            Wallet,
            aggregates={"total_usd_value": lambda w: w.usd_value},
            history_limit=history_limit,
            unknown_policy=unknown_policy,
            deferred_limit=deferred_limit,
        )

    @property
    def total_usd_value(self) -> Decimal:
        return self.aggregate("total_usd_value")

    def by_blockchain(self, blockchain: str) -> List[Wallet]:
        return self.filter(lambda w: w.blockchain == blockchain)

    def by_address(self, address: str) -> Optional[Wallet]:
        for wallet in self:
            if wallet.address == address:
                return wallet
        return None

    def active(self) -> List[Wallet]:
        return self.filter(lambda w: w.is_active)

    def blockchain_balances(self) -> Dict[str, Dict[str, Any]]:
        """Balance, USD value and wallet count per blockchain."""
        balances: Dict[str, Dict[str, Any]] = {}
        for wallet in self:
            entry = balances.setdefault(
                wallet.blockchain, {"balance": ZERO, "usd_value": ZERO, "count": 0}
            )
            entry["balance"] += wallet.balance
            entry["usd_value"] += wallet.usd_value
            entry["count"] += 1
        return balances

    def stats(self) -> Dict[str, Any]:
        return {
            "total_wallets": len(self),
            "active_wallets": len(self.active()),
            "total_usd_value": self.total_usd_value,
            "blockchains": sorted({w.blockchain for w in self if w.blockchain}),
        }


class TransactionStore(EntityStore[Transaction]):
    """Transactions with ``pending_count`` and ``total_fee_usd`` aggregates."""

    def __init__(
        self,
        history_limit: int = 50,
        unknown_policy: UnknownEntityPolicy = UnknownEntityPolicy.DEFER,
        deferred_limit: int = 500,
    ):
        super().__init__(
            EntityKind.TRANSACTION.value,
            Transaction,
            aggregates={
                "pending_count": lambda t: ONE if t.status == TransactionStatus.PENDING else ZERO,
                "total_fee_usd": lambda t: t.fee_usd or ZERO,
            },
            history_limit=history_limit,
            unknown_policy=unknown_policy,
            deferred_limit=deferred_limit,
        )

    @property
    def pending_count(self) -> int:
        return int(self.aggregate("pending_count"))

    @property
    def total_fee_usd(self) -> Decimal:
        return self.aggregate("total_fee_usd")

    def by_status(self, status: TransactionStatus) -> List[Transaction]:
        return self.filter(lambda t: t.status == status)

    def pending(self) -> List[Transaction]:
        return self.by_status(TransactionStatus.PENDING)

    def by_blockchain(self, blockchain: str) -> List[Transaction]:
        return self.filter(lambda t: t.blockchain == blockchain)

    def stats(self) -> Dict[str, Any]:
        counts = {status.value: 0 for status in TransactionStatus}
        for transaction in self:
            counts[TransactionStatus(transaction.status).value] += 1
        return {"total": len(self), "total_fee_usd": self.total_fee_usd, **counts}

    def recent_status_changes(self, limit: int = 10) -> List[Dict[str, Any]]:
        """Latest status transitions recorded in the change history."""
        changes: List[Dict[str, Any]] = []
        for record in self.history():
            if record.previous_value is None or record.new_value is None:
                continue
            if record.previous_value.status == record.new_value.status:
                continue
            changes.append(
                {
                    "transaction_id": record.entity_id,
                    "previous_status": record.previous_value.status,
                    "status": record.new_value.status,
                    "confirmations": record.new_value.confirmations,
                    "timestamp": record.timestamp,
                }
            )
            if len(changes) >= limit:
                break
        return changes


class InvoiceStore(EntityStore[Invoice]):
    """Invoices with an ``outstanding_count`` of pending invoices."""

    def __init__(
        self,
        history_limit: int = 50,
        unknown_policy: UnknownEntityPolicy = UnknownEntityPolicy.DEFER,
        deferred_limit: int = 500,
    ):
        super().__init__(
            EntityKind.INVOICE.value,
            Invoice,
            aggregates={
                "outstanding_count": lambda i: ONE if i.status == InvoiceStatus.PENDING else ZERO,
            },
            history_limit=history_limit,
            unknown_policy=unknown_policy,
            deferred_limit=deferred_limit,
        )

    @property
    def outstanding_count(self) -> int:
        return int(self.aggregate("outstanding_count"))

    def pending(self) -> List[Invoice]:
        return self.filter(lambda i: i.status == InvoiceStatus.PENDING)

    def expiring_before(self, when: datetime) -> List[Invoice]:
        """Pending invoices whose expiration time is before ``when``."""
        cutoff = as_utc(when)
        return [
            invoice
            for invoice in self.pending()
            if invoice.expiration_time is not None and as_utc(invoice.expiration_time) < cutoff
        ]

    def mark_expired(self, invoice_id: str, cause_id: Optional[str] = None) -> bool:
        """Mark a pending invoice expired; returns False if it is not pending."""
        invoice = self.get(invoice_id)
        if invoice is None or invoice.status != InvoiceStatus.PENDING:
            return False
        self.upsert(invoice.model_copy(update={"status": InvoiceStatus.EXPIRED}), cause_id=cause_id)
        return True


class EntityRegistry:
    """
    The three entity stores behind a single ingestion surface.

    ``ingest`` is the sink handed to the API client for entity-bearing
    responses; ``apply`` receives push updates from the real-time channel.
    """

    def __init__(self, settings: Optional[Settings] = None):
        settings = settings or get_settings()
        self.wallets = WalletStore(
            history_limit=settings.wallet_history_limit,
            deferred_limit=settings.deferred_update_limit,
        )
        self.transactions = TransactionStore(
            history_limit=settings.transaction_history_limit,
            deferred_limit=settings.deferred_update_limit,
        )
        self.invoices = InvoiceStore(
            history_limit=settings.invoice_history_limit,
            deferred_limit=settings.deferred_update_limit,
        )
        self._stores: Dict[str, EntityStore[Any]] = {
            EntityKind.WALLET.value: self.wallets,
            EntityKind.TRANSACTION.value: self.transactions,
            EntityKind.INVOICE.value: self.invoices,
        }

    def store(self, kind: str) -> EntityStore[Any]:
        try:
            return self._stores[EntityKind(kind).value]
        except ValueError:
            raise KeyError(f"Unknown entity kind: {kind}") from None

    def ingest(self, kind: str, payload: Any) -> int:
        """Merge an entity-bearing response body into the matching store."""
        try:
            store = self.store(kind)
        except KeyError:
            logger.warning("ingest_unknown_kind", kind=kind)
            return 0
        return store.ingest(payload)

    def load_snapshot(self, kind: str, payload: Any) -> int:
        store = self.store(kind)
        return store.load_snapshot(store.extract_items(payload))

    def apply(self, event: UpdateEvent) -> bool:
        """Route a push update to its store; unknown kinds are ignored."""
        store = self._stores.get(str(getattr(event.kind, "value", event.kind)))
        if store is None:
            logger.warning("push_update_unknown_kind", kind=event.kind, entity_id=event.id)
            return False
        return store.apply_push_update(event)

    def clear(self) -> None:
        for store in self._stores.values():
            store.clear()
