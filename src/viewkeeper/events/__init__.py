"""
Event envelopes for the order stream.

Usage:
    from viewkeeper.events import decode_envelope, encode_envelope, item_added

    raw = encode_envelope(item_added("order-1", 2, sku="A-1", quantity=1, unit_price="9.99"))
    envelope = decode_envelope(raw)
"""

from viewkeeper.events.codec import decode_envelope, encode_envelope
from viewkeeper.events.envelope import (
    CURRENT_SCHEMA_VERSION,
    EventEnvelope,
    EventType,
    OrderStatus,
    item_added,
    item_removed,
    order_cancelled,
    order_created,
    status_changed,
)

__all__ = [
    "CURRENT_SCHEMA_VERSION",
    "EventEnvelope",
    "EventType",
    "OrderStatus",
    "decode_envelope",
    "encode_envelope",
    "item_added",
    "item_removed",
    "order_cancelled",
    "order_created",
    "status_changed",
]
