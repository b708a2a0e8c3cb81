"""
Entity models shared by the store, the real-time channel and the workflows.

Models accept the backend's camelCase payloads as well as snake_case field
names, and are frozen so stored values change only through the entity store.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Generic, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class EntityKind(str, Enum):
    """Collections held by the entity registry."""

    WALLET = "wallet"
    TRANSACTION = "transaction"
    INVOICE = "invoice"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class InvoiceStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    OVERPAID = "overpaid"
    UNDERPAID = "underpaid"


def _to_decimal(value: Any) -> Any:
    # str() keeps the literal digits; Decimal(float) would carry binary noise
    if isinstance(value, float):
        return Decimal(str(value))
    return value


class EntityModel(BaseModel):
    """Base for every stored entity; identity is ``id``."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        frozen=True,
    )

    id: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v: Any) -> Any:
        if isinstance(v, int):
            return str(v)
        return v


class Wallet(EntityModel):
    """A blockchain wallet and its last known balance."""

    user_id: Optional[str] = None
    blockchain: str = ""
    address: str = ""
    balance: Decimal = Decimal("0")
    usd_value: Decimal = Decimal("0")
    label: Optional[str] = None
    is_active: bool = True
    is_watch_only: bool = False

    @field_validator("balance", "usd_value", mode="before")
    @classmethod
    def coerce_decimal(cls, v: Any) -> Any:
        return _to_decimal(v)


class Transaction(EntityModel):
    """A P2P or merchant transaction."""

    type: str = "p2p"
    from_address: Optional[str] = None
    to_address: Optional[str] = None
    amount: Decimal = Decimal("0")
    blockchain: str = ""
    status: TransactionStatus = TransactionStatus.PENDING
    tx_hash: Optional[str] = None
    fee: Optional[Decimal] = None
    fee_usd: Optional[Decimal] = None
    confirmations: int = 0
    required_confirmations: Optional[int] = None
    memo: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("amount", "fee", "fee_usd", mode="before")
    @classmethod
    def coerce_decimal(cls, v: Any) -> Any:
        return _to_decimal(v)


class Invoice(EntityModel):
    """A merchant invoice awaiting payment."""

    merchant_id: Optional[str] = None
    amount: Decimal = Decimal("0")
    currency: str = ""
    description: Optional[str] = None
    status: InvoiceStatus = InvoiceStatus.PENDING
    payment_address: Optional[str] = None
    blockchain: Optional[str] = None
    expiration_time: Optional[datetime] = None
    paid_amount: Optional[Decimal] = None
    paid_at: Optional[datetime] = None
    transaction_id: Optional[str] = None

    @field_validator("amount", "paid_amount", mode="before")
    @classmethod
    def coerce_decimal(cls, v: Any) -> Any:
        return _to_decimal(v)


E = TypeVar("E", bound=EntityModel)


def to_field_names(model: Type[EntityModel], data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Rename camelCase keys of ``data`` to the model's field names.

    Keys that are neither a field name nor an alias are dropped.
    """
    fields = model.model_fields
    by_alias = {info.alias: name for name, info in fields.items() if info.alias}
    renamed: Dict[str, Any] = {}
    for key, value in data.items():
        if key in fields:
            renamed[key] = value
        elif key in by_alias:
            renamed[by_alias[key]] = value
    return renamed


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so they compare with aware ones."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class UpdateEvent:
    """A pushed state change for one entity."""

    kind: str
    id: str
    new_value: Dict[str, Any]
    timestamp: datetime = field(default_factory=utcnow)
    cause_id: Optional[str] = None
    event_id: Optional[str] = None


@dataclass(frozen=True)
class ChangeRecord(Generic[E]):
    """One entry of a collection's bounded change history."""

    entity_id: str
    previous_value: Optional[E]
    new_value: Optional[E]
    timestamp: datetime
    cause_id: Optional[str] = None
