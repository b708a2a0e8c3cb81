"""
Generic in-memory entity store with incremental aggregates.

Every mutation is a synchronous method that computes all aggregate deltas
before writing state, so readers on the event loop never observe a partial
update. Aggregates are maintained as ``aggregate += new - old`` in ``Decimal``
and always equal the sum over live entities.
"""
from collections import OrderedDict, deque
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import (
    Any,
    Callable,
    Deque,
    Dict,
    Generic,
    Iterable,
    Iterator,
    List,
    Mapping,
    Optional,
    Type,
    Union,
)

import structlog
from pydantic import ValidationError as PydanticValidationError

from ..monitoring.metrics import metrics
from .models import E, ChangeRecord, UpdateEvent, as_utc, to_field_names, utcnow

logger = structlog.get_logger(__name__)

Contribution = Callable[[Any], Decimal]
EntityInput = Union[Any, Mapping[str, Any]]

ZERO = Decimal("0")


class UnknownEntityPolicy(Enum):
    """What a push update for an id the store has never seen does."""

    SYNTHESIZE = "synthesize"  # Build the entity from the payload and model defaults
    DEFER = "defer"  # Hold the update until a snapshot for the id arrives


class EntityStore(Generic[E]):
    """
    Keyed collection of one entity kind.

    Example:
        >>> store = EntityStore("wallet", Wallet, {"total_usd_value": lambda w: w.usd_value})
        >>> store.upsert({"id": "w1", "usdValue": "10.5"})
        >>> store.aggregate("total_usd_value")
        Decimal('10.5')
    """

    def __init__(
        self,
        kind: str,
        model: Type[E],
        aggregates: Optional[Dict[str, Contribution]] = None,
        history_limit: int = 100,
        unknown_policy: UnknownEntityPolicy = UnknownEntityPolicy.DEFER,
        deferred_limit: int = 500,
    ):
        """
        Initialize entity store.

        Args:
            kind: Entity kind routed to this store
            model: Pydantic model of the entity
            aggregates: Aggregate name -> per-entity contribution
            history_limit: Change records retained (oldest evicted first)
            unknown_policy: Handling of push updates for unseen ids
            deferred_limit: Deferred updates retained under ``DEFER``
        """
        if history_limit <= 0:
            raise ValueError("history_limit must be positive")
        self.kind = kind
        self.model = model
        self.unknown_policy = unknown_policy
        self.deferred_limit = deferred_limit
        self._contributions: Dict[str, Contribution] = dict(aggregates or {})
        self._aggregates: Dict[str, Decimal] = {name: ZERO for name in self._contributions}
        self._entities: Dict[str, E] = {}
        self._history: Deque[ChangeRecord[E]] = deque(maxlen=history_limit)
        self._deferred: "OrderedDict[str, UpdateEvent]" = OrderedDict()

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def _coerce(self, entity: EntityInput) -> Optional[E]:
        if isinstance(entity, self.model):
            return entity
        try:
            return self.model.model_validate(entity)
        except PydanticValidationError as exc:
            logger.warning(
                "entity_rejected",
                kind=self.kind,
                errors=exc.error_count(),
                entity_id=entity.get("id") if isinstance(entity, Mapping) else None,
            )
            return None

    def _contribution(self, name: str, entity: Optional[E]) -> Decimal:
        if entity is None:
            return ZERO
        return Decimal(self._contributions[name](entity))

    def _commit(self, entity_id: str, new: Optional[E], cause_id: Optional[str], operation: str) -> ChangeRecord[E]:
        previous = self._entities.get(entity_id)
        deltas = {
            name: self._contribution(name, new) - self._contribution(name, previous)
            for name in self._contributions
        }

        if new is None:
            self._entities.pop(entity_id, None)
        else:
            self._entities[entity_id] = new
        for name, delta in deltas.items():
            self._aggregates[name] += delta

        record = ChangeRecord(
            entity_id=entity_id,
            previous_value=previous,
            new_value=new,
            timestamp=utcnow(),
            cause_id=cause_id,
        )
        self._history.append(record)
        metrics.record_entity_mutation(self.kind, operation)
        return record

    def upsert(self, entity: EntityInput, cause_id: Optional[str] = None) -> Optional[ChangeRecord[E]]:
        """
        Insert or replace an entity by id.

        Accepts a model instance or a raw payload. Invalid payloads are logged
        and ignored. Re-applying an identical value leaves entities and
        aggregates unchanged and only appends a history entry.

        Returns:
            The change record, or None when the payload was rejected
        """
        value = self._coerce(entity)
        if value is None:
            return None
        record = self._commit(value.id, value, cause_id, "upsert")
        if value.id in self._deferred:
            self._apply_deferred(value.id)
        return record

    def remove(self, entity_id: str, cause_id: Optional[str] = None) -> Optional[E]:
        """Remove an entity; returns the removed value."""
        previous = self._entities.get(entity_id)
        if previous is None:
            return None
        self._commit(entity_id, None, cause_id, "remove")
        return previous

    def clear(self) -> None:
        """Drop every entity, change record and deferred update."""
        self._entities.clear()
        self._history.clear()
        self._deferred.clear()
        self._aggregates = {name: ZERO for name in self._contributions}
        metrics.record_entity_mutation(self.kind, "clear")
        logger.info("entity_store_cleared", kind=self.kind)

    def load_snapshot(self, entities: Iterable[EntityInput], cause_id: Optional[str] = None) -> int:
        """
        Replace the collection with an authoritative snapshot.

        Ids absent from the snapshot are removed. Invalid items are skipped.

        Returns:
            int: Entities held after the snapshot
        """
        values = [v for v in (self._coerce(item) for item in entities) if v is not None]
        incoming = {value.id for value in values}
        for stale_id in [eid for eid in self._entities if eid not in incoming]:
            self._commit(stale_id, None, cause_id, "remove")
        for value in values:
            self.upsert(value, cause_id=cause_id)
        logger.info("entity_snapshot_loaded", kind=self.kind, count=len(self._entities))
        return len(self._entities)

    def ingest(self, payload: Any, cause_id: Optional[str] = None) -> int:
        """
        Merge entities from an API response body.

        Accepts a single entity object, a list of them, or an envelope holding
        them under ``data``, ``items`` or the plural kind name.

        Returns:
            int: Number of entities upserted
        """
        items = self.extract_items(payload)
        applied = 0
        for item in items:
            if self.upsert(item, cause_id=cause_id) is not None:
                applied += 1
        return applied

    def extract_items(self, payload: Any) -> List[Any]:
        if isinstance(payload, list):
            return payload
        if not isinstance(payload, Mapping):
            if payload is not None:
                logger.warning("entity_payload_unrecognized", kind=self.kind, payload_type=type(payload).__name__)
            return []
        if "id" in payload:
            return [payload]
        for key in ("data", "items", f"{self.kind}s", self.kind):
            if key in payload:
                return self.extract_items(payload[key])
        logger.warning("entity_payload_unrecognized", kind=self.kind, keys=sorted(payload)[:10])
        return []

    def apply_push_update(self, event: UpdateEvent) -> bool:
        """
        Merge a pushed partial update over the current record.

        Never raises: malformed and stale events are logged and reported as
        not applied. Unknown ids follow ``unknown_policy``.

        Returns:
            bool: True when the store changed
        """
        if event.kind != self.kind:
            logger.warning("push_update_wrong_kind", expected=self.kind, kind=event.kind)
            return False
        if not isinstance(event.new_value, Mapping):
            logger.warning("push_update_malformed", kind=self.kind, entity_id=event.id)
            return False

        current = self._entities.get(event.id)
        if current is None and self.unknown_policy is UnknownEntityPolicy.DEFER:
            self._defer(event)
            return False
        if current is not None and self._is_stale(current, event.timestamp):
            logger.info(
                "push_update_stale",
                kind=self.kind,
                entity_id=event.id,
                event_timestamp=event.timestamp.isoformat(),
            )
            return False

        base = current.model_dump() if current is not None else {}
        merged = self._merge(base, event)
        try:
            value = self.model.model_validate(merged)
        except PydanticValidationError as exc:
            logger.warning(
                "push_update_malformed",
                kind=self.kind,
                entity_id=event.id,
                errors=exc.error_count(),
            )
            return False

        operation = "push_update" if current is not None else "push_synthesize"
        self._commit(value.id, value, event.cause_id or event.event_id, operation)
        return True

    def _merge(self, base: Dict[str, Any], event: UpdateEvent) -> Dict[str, Any]:
        changes = to_field_names(self.model, dict(event.new_value))
        changes.setdefault("updated_at", event.timestamp)
        merged = {**base, **changes}
        merged["id"] = event.id
        return merged

    @staticmethod
    def _is_stale(current: Any, timestamp: datetime) -> bool:
        updated_at = getattr(current, "updated_at", None)
        if updated_at is None:
            return False
        return as_utc(timestamp) < as_utc(updated_at)

    def _defer(self, event: UpdateEvent) -> None:
        held = self._deferred.pop(event.id, None)
        if held is not None:
            older, newer = sorted((held, event), key=lambda e: as_utc(e.timestamp))
            event = UpdateEvent(
                kind=newer.kind,
                id=newer.id,
                new_value={**older.new_value, **newer.new_value},
                timestamp=newer.timestamp,
                cause_id=newer.cause_id,
                event_id=newer.event_id,
            )
        self._deferred[event.id] = event
        while len(self._deferred) > self.deferred_limit:
            dropped_id, _ = self._deferred.popitem(last=False)
            logger.warning("deferred_update_dropped", kind=self.kind, entity_id=dropped_id)
        logger.debug("push_update_deferred", kind=self.kind, entity_id=event.id)

    def _apply_deferred(self, entity_id: str) -> None:
        event = self._deferred.pop(entity_id)
        current = self._entities[entity_id]
        if self._is_stale(current, event.timestamp):
            logger.info("deferred_update_stale", kind=self.kind, entity_id=entity_id)
            return
        try:
            value = self.model.model_validate(self._merge(current.model_dump(), event))
        except PydanticValidationError as exc:
            logger.warning("push_update_malformed", kind=self.kind, entity_id=entity_id, errors=exc.error_count())
            return
        self._commit(entity_id, value, event.cause_id or event.event_id, "push_update")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, entity_id: str) -> Optional[E]:
        return self._entities.get(entity_id)

    def all(self) -> List[E]:
        return list(self._entities.values())

    def filter(self, predicate: Callable[[E], bool]) -> List[E]:
        return [entity for entity in self._entities.values() if predicate(entity)]

    def aggregate(self, name: str) -> Decimal:
        return self._aggregates[name]

    def aggregates(self) -> Dict[str, Decimal]:
        return dict(self._aggregates)

    def history(self, entity_id: Optional[str] = None, limit: Optional[int] = None) -> List[ChangeRecord[E]]:
        """Change records, newest first, optionally for a single entity."""
        records = [r for r in reversed(self._history) if entity_id is None or r.entity_id == entity_id]
        return records[:limit] if limit is not None else records

    @property
    def history_limit(self) -> int:
        return self._history.maxlen or 0

    def pending_deferred(self) -> List[str]:
        """Ids holding a deferred update."""
        return list(self._deferred)

    def __len__(self) -> int:
        return len(self._entities)

    def __contains__(self, entity_id: object) -> bool:
        return entity_id in self._entities

    def __iter__(self) -> Iterator[E]:
        return iter(list(self._entities.values()))
