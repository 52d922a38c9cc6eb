"""
Denormalized order view row.

One row per entity key, holding the cumulative effect of every applied
event plus the sequence bookkeeping the ingest loop decides from.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any

from viewkeeper.events.envelope import OrderStatus

ZERO = Decimal("0")


@dataclass(frozen=True)
class OrderLine:
    """Quantity of a SKU on an order and its current unit price."""

    sku: str
    quantity: int
    unit_price: Decimal

    @property
    def subtotal(self) -> Decimal:
        return self.unit_price * self.quantity

    def to_dict(self) -> dict[str, Any]:
        return {"quantity": self.quantity, "unit_price": str(self.unit_price)}


@dataclass(frozen=True)
class ViewRow:
    """
    Materialized order row.

    Attributes:
        entity_key: Order id (unique)
        customer_id: Customer owning the order
        currency: ISO currency code of all amounts
        status: OrderStatus value
        lines: SKU -> OrderLine
        item_count: Sum of line quantities (computed)
        total: Sum of line subtotals (computed, exact decimal)
        cancel_reason: Reason given by order.cancelled
        created_at: occurred_at of order.created
        updated_at: occurred_at of the last applied event
        last_applied_sequence: Sequence of the last applied event
        last_applied_event_id: event_id of the last applied event
    """

    entity_key: str
    customer_id: str | None = None
    currency: str | None = None
    status: str = OrderStatus.PENDING.value
    lines: dict[str, OrderLine] = field(default_factory=dict)
    item_count: int = 0
    total: Decimal = ZERO
    cancel_reason: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    last_applied_sequence: int | None = None
    last_applied_event_id: str | None = None

    @classmethod
    def empty(cls, entity_key: str) -> ViewRow:
        """Zero-value row for a key that has never been applied."""
        return cls(entity_key=entity_key)

    def lines_to_dict(self) -> dict[str, dict[str, Any]]:
        return {sku: line.to_dict() for sku, line in sorted(self.lines.items())}

    @staticmethod
    def lines_from_dict(data: dict[str, dict[str, Any]]) -> dict[str, OrderLine]:
        return {
            sku: OrderLine(sku=sku, quantity=int(line["quantity"]), unit_price=Decimal(str(line["unit_price"])))
            for sku, line in data.items()
        }

    def to_dict(self) -> dict[str, Any]:
        """Convert row to a JSON-safe dictionary."""
        return {
            "entity_key": self.entity_key,
            "customer_id": self.customer_id,
            "currency": self.currency,
            "status": self.status,
            "lines": self.lines_to_dict(),
            "item_count": self.item_count,
            "total": str(self.total),
            "cancel_reason": self.cancel_reason,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "last_applied_sequence": self.last_applied_sequence,
            "last_applied_event_id": self.last_applied_event_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ViewRow:
        """Create a row from the dictionary produced by to_dict()."""
        created_at = data.get("created_at")
        updated_at = data.get("updated_at")
        return cls(
            entity_key=data["entity_key"],
            customer_id=data.get("customer_id"),
            currency=data.get("currency"),
            status=data.get("status", OrderStatus.PENDING.value),
            lines=cls.lines_from_dict(data.get("lines") or {}),
            item_count=int(data.get("item_count", 0)),
            total=Decimal(str(data.get("total", "0"))),
            cancel_reason=data.get("cancel_reason"),
            created_at=datetime.fromisoformat(created_at) if isinstance(created_at, str) else created_at,
            updated_at=datetime.fromisoformat(updated_at) if isinstance(updated_at, str) else updated_at,
            last_applied_sequence=data.get("last_applied_sequence"),
            last_applied_event_id=data.get("last_applied_event_id"),
        )
