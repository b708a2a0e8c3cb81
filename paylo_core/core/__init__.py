"""In-memory entity model: stores, aggregates and change history."""
from .entity_store import EntityStore, UnknownEntityPolicy
from .models import (
    ChangeRecord,
    EntityKind,
    Invoice,
    InvoiceStatus,
    Transaction,
    TransactionStatus,
    UpdateEvent,
    Wallet,
)
from .stores import EntityRegistry, InvoiceStore, TransactionStore, WalletStore

__all__ = [
    "ChangeRecord",
    "EntityKind",
    "EntityRegistry",
    "EntityStore",
    "Invoice",
    "InvoiceStatus",
    "InvoiceStore",
    "Transaction",
    "TransactionStatus",
    "TransactionStore",
    "UnknownEntityPolicy",
    "UpdateEvent",
    "Wallet",
    "WalletStore",
]
