"""
Event envelope types.

An envelope is an immutable record emitted by the producers of the order
stream. The stream is the source of truth; the view is derived from the
envelopes by replaying them in per-key sequence order.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


def _generate_event_id() -> str:
    """Generate a unique event ID using ULID."""
    from ulid import ULID

    return str(ULID())


def _utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(UTC)


CURRENT_SCHEMA_VERSION = 1


class EventType(Enum):
    """
    The closed set of event types the projector understands.

    Anything else on the wire is rejected at decode time.
    """

    ORDER_CREATED = "order.created"
    ITEM_ADDED = "order.item_added"
    ITEM_REMOVED = "order.item_removed"
    STATUS_CHANGED = "order.status_changed"
    ORDER_CANCELLED = "order.cancelled"


class OrderStatus(Enum):
    """Lifecycle status of an order as carried by order.status_changed."""

    PENDING = "pending"
    PLACED = "placed"
    PAID = "paid"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class EventEnvelope:
    """
    Immutable event record.

    Attributes:
        event_id: Unique identifier (ULID for time-ordering).
        entity_key: Business identity the stream orders by (an order id).
        sequence: Per-entity, strictly increasing event counter.
        occurred_at: When the event occurred (UTC).
        event_type: Type of event from the EventType enum.
        payload: Event-specific data.
        schema_version: Envelope schema version.
    """

    entity_key: str
    sequence: int
    event_type: EventType
    payload: dict[str, Any] = field(default_factory=dict)
    event_id: str = field(default_factory=_generate_event_id)
    occurred_at: datetime = field(default_factory=_utc_now)
    schema_version: int = CURRENT_SCHEMA_VERSION

    def to_dict(self) -> dict[str, Any]:
        """Convert envelope to its wire dictionary."""
        return {
            "event_id": self.event_id,
            "entity_key": self.entity_key,
            "sequence": self.sequence,
            "occurred_at": self.occurred_at.isoformat(),
            "type": self.event_type.value,
            "payload": self.payload,
            "schema_version": self.schema_version,
        }

    def __repr__(self) -> str:
        return (
            f"EventEnvelope(id={self.event_id[:8]}..., "
            f"type={self.event_type.value}, "
            f"key={self.entity_key}, "
            f"seq={self.sequence})"
        )


# Factory functions for the order event types


def order_created(
    entity_key: str,
    sequence: int,
    customer_id: str,
    currency: str = "USD",
    **kwargs: Any,
) -> EventEnvelope:
    """Create an order.created event."""
    return EventEnvelope(
        entity_key=entity_key,
        sequence=sequence,
        event_type=EventType.ORDER_CREATED,
        payload={"customer_id": customer_id, "currency": currency},
        **kwargs,
    )


def item_added(
    entity_key: str,
    sequence: int,
    sku: str,
    quantity: int,
    unit_price: str,
    **kwargs: Any,
) -> EventEnvelope:
    """Create an order.item_added event. ``unit_price`` is a decimal string."""
    return EventEnvelope(
        entity_key=entity_key,
        sequence=sequence,
        event_type=EventType.ITEM_ADDED,
        payload={"sku": sku, "quantity": quantity, "unit_price": str(unit_price)},
        **kwargs,
    )


def item_removed(entity_key: str, sequence: int, sku: str, quantity: int, **kwargs: Any) -> EventEnvelope:
    """Create an order.item_removed event."""
    return EventEnvelope(
        entity_key=entity_key,
        sequence=sequence,
        event_type=EventType.ITEM_REMOVED,
        payload={"sku": sku, "quantity": quantity},
        **kwargs,
    )


def status_changed(entity_key: str, sequence: int, status: str, **kwargs: Any) -> EventEnvelope:
    """Create an order.status_changed event."""
    return EventEnvelope(
        entity_key=entity_key,
        sequence=sequence,
        event_type=EventType.STATUS_CHANGED,
        payload={"status": status},
        **kwargs,
    )


def order_cancelled(entity_key: str, sequence: int, reason: str = "", **kwargs: Any) -> EventEnvelope:
    """Create an order.cancelled event."""
    return EventEnvelope(
        entity_key=entity_key,
        sequence=sequence,
        event_type=EventType.ORDER_CANCELLED,
        payload={"reason": reason},
        **kwargs,
    )
