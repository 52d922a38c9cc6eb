"""
Projectors turn (row, event) into the next row.

A projector is a pure function of its inputs: no clock, no I/O, no hidden
state. Replaying the same events therefore reproduces the same rows,
which is what makes the view disposable and rebuildable.
"""

from __future__ import annotations

import dataclasses
from abc import ABC, abstractmethod
from collections.abc import Callable
from decimal import Decimal

from viewkeeper.errors import ValidationError
from viewkeeper.events.envelope import EventEnvelope, EventType, OrderStatus
from viewkeeper.projection.row import ZERO, OrderLine, ViewRow


class ViewProjector(ABC):
    """
    Abstract base class for view projectors.

    Subclasses compute the denormalized row for one entity key. ``apply``
    must be deterministic: the ingest loop relies on it to make replays
    and redeliveries converge on identical rows.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique name for this projector."""
        pass

    @abstractmethod
    def apply(self, row: ViewRow | None, event: EventEnvelope) -> ViewRow:
        """
        Apply an event to a row.

        Args:
            row: Current row, or None for a key that has never been applied
            event: Decoded event for the same entity key

        Returns:
            The new row, stamped with the event's sequence and id
        """
        pass

    def handles_event_type(self, event_type: EventType) -> bool:
        """Check whether this projector knows the event type."""
        return True


Handler = Callable[[ViewRow, EventEnvelope], ViewRow]


class OrderProjector(ViewProjector):
    """Projects the order event stream into ViewRow."""

    def __init__(self) -> None:
        self._handlers: dict[EventType, Handler] = {
            EventType.ORDER_CREATED: self._on_created,
            EventType.ITEM_ADDED: self._on_item_added,
            EventType.ITEM_REMOVED: self._on_item_removed,
            EventType.STATUS_CHANGED: self._on_status_changed,
            EventType.ORDER_CANCELLED: self._on_cancelled,
        }

    @property
    def name(self) -> str:
        return "orders"

    def handles_event_type(self, event_type: EventType) -> bool:
        return event_type in self._handlers

    def apply(self, row: ViewRow | None, event: EventEnvelope) -> ViewRow:
        current = row if row is not None else ViewRow.empty(event.entity_key)
        if current.entity_key != event.entity_key:
            raise ValidationError(
                f"Event for {event.entity_key!r} applied to row {current.entity_key!r}",
                field="entity_key",
            )

        handler = self._handlers.get(event.event_type)
        if handler is None:
            raise ValidationError(f"No projection for event type {event.event_type}", field="type")

        updated = handler(current, event)
        return dataclasses.replace(
            updated,
            item_count=sum(line.quantity for line in updated.lines.values()),
            total=sum((line.subtotal for line in updated.lines.values()), ZERO),
            updated_at=event.occurred_at,
            last_applied_sequence=event.sequence,
            last_applied_event_id=event.event_id,
        )

    def _on_created(self, row: ViewRow, event: EventEnvelope) -> ViewRow:
        return dataclasses.replace(
            row,
            customer_id=event.payload["customer_id"],
            currency=event.payload.get("currency", "USD").upper(),
            created_at=event.occurred_at,
        )

    def _on_item_added(self, row: ViewRow, event: EventEnvelope) -> ViewRow:
        sku = event.payload["sku"]
        quantity = int(event.payload["quantity"])
        unit_price = Decimal(str(event.payload["unit_price"]))

        lines = dict(row.lines)
        held = lines.get(sku)
        # latest price wins for the whole line
        lines[sku] = OrderLine(sku=sku, quantity=quantity + (held.quantity if held else 0), unit_price=unit_price)
        return dataclasses.replace(row, lines=lines)

    def _on_item_removed(self, row: ViewRow, event: EventEnvelope) -> ViewRow:
        sku = event.payload["sku"]
        quantity = int(event.payload["quantity"])

        lines = dict(row.lines)
        held = lines.get(sku)
        if held is None:
            return row
        remaining = held.quantity - quantity
        if remaining > 0:
            lines[sku] = dataclasses.replace(held, quantity=remaining)
        else:
            del lines[sku]
        return dataclasses.replace(row, lines=lines)

    def _on_status_changed(self, row: ViewRow, event: EventEnvelope) -> ViewRow:
        return dataclasses.replace(row, status=OrderStatus(event.payload["status"]).value)

    def _on_cancelled(self, row: ViewRow, event: EventEnvelope) -> ViewRow:
        return dataclasses.replace(
            row,
            status=OrderStatus.CANCELLED.value,
            cancel_reason=event.payload.get("reason") or None,
        )
