"""Row conversion between ViewRow and the SQL order_view table."""

from __future__ import annotations

import json
from collections.abc import Mapping
from datetime import datetime
from decimal import Decimal
from typing import Any

from viewkeeper.projection.row import ViewRow


def _timestamp(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


TOTAL_KEY_WIDTH = 30


def total_sort_key(total: Decimal) -> str:
    """
    Text that sorts like the amount it encodes.

    The integer part is zero-padded to a fixed width and the fraction keeps
    its significant digits, so plain string comparison orders totals
    exactly. Order totals are never negative.
    """
    whole, _, fraction = format(total.normalize(), "f").partition(".")
    key = whole.rjust(TOTAL_KEY_WIDTH, "0")
    return f"{key}.{fraction}" if fraction else key


def row_to_params(row: ViewRow) -> dict[str, Any]:
    """Named parameters for INSERT/UPDATE of an order_view row."""
    return {
        "entity_key": row.entity_key,
        "customer_id": row.customer_id,
        "currency": row.currency,
        "status": row.status,
        "lines": json.dumps(row.lines_to_dict(), sort_keys=True),
        "item_count": row.item_count,
        "total": str(row.total),
        "cancel_reason": row.cancel_reason,
        "created_at": row.created_at.isoformat() if row.created_at else None,
        "updated_at": row.updated_at.isoformat() if row.updated_at else None,
        "last_applied_sequence": row.last_applied_sequence,
        "last_applied_event_id": row.last_applied_event_id,
    }


def row_from_db(data: Mapping[str, Any]) -> ViewRow:
    """Build a ViewRow from a sqlite3.Row or psycopg dict row."""
    lines = data["lines"]
    if isinstance(lines, str):
        lines = json.loads(lines)
    return ViewRow(
        entity_key=data["entity_key"],
        customer_id=data["customer_id"],
        currency=data["currency"],
        status=data["status"],
        lines=ViewRow.lines_from_dict(lines or {}),
        item_count=int(data["item_count"]),
        total=Decimal(str(data["total"])),
        cancel_reason=data["cancel_reason"],
        created_at=_timestamp(data["created_at"]),
        updated_at=_timestamp(data["updated_at"]),
        last_applied_sequence=data["last_applied_sequence"],
        last_applied_event_id=data["last_applied_event_id"],
    )
