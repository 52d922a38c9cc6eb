"""
Wire codec for event envelopes.

Envelopes travel as UTF-8 JSON objects:

    {"event_id": "01J...", "entity_key": "order-1", "sequence": 3,
     "occurred_at": "2024-05-01T10:00:00+00:00", "type": "order.item_added",
     "payload": {"sku": "A-1", "quantity": 2, "unit_price": "9.99"},
     "schema_version": 1}

decode_envelope() is the single validation gate of the ingest path: every
problem (bad JSON, missing field, unknown type, malformed payload) raises
ValidationError so the caller can dead-letter the raw bytes.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from viewkeeper.errors import ValidationError
from viewkeeper.events.envelope import CURRENT_SCHEMA_VERSION, EventEnvelope, EventType, OrderStatus


def encode_envelope(envelope: EventEnvelope) -> bytes:
    """Serialize an envelope to its wire bytes."""
    return json.dumps(envelope.to_dict(), sort_keys=True, separators=(",", ":")).encode("utf-8")


def decode_envelope(raw: bytes | str | dict[str, Any]) -> EventEnvelope:
    """Parse and validate wire data into an EventEnvelope.

    Args:
        raw: Wire bytes, a JSON string, or an already parsed mapping

    Returns:
        The validated envelope

    Raises:
        ValidationError: If the data is not a well-formed envelope of a
            known event type
    """
    data = _parse(raw)

    event_id = _require_str(data, "event_id")
    entity_key = _require_str(data, "entity_key")

    sequence = data.get("sequence")
    if not isinstance(sequence, int) or isinstance(sequence, bool):
        raise ValidationError("sequence must be an integer", field="sequence")
    if sequence < 0:
        raise ValidationError(f"sequence must be >= 0, got {sequence}", field="sequence")

    type_tag = data.get("type")
    try:
        event_type = EventType(type_tag)
    except ValueError as e:
        raise ValidationError(f"Unknown event type: {type_tag!r}", field="type", cause=e) from e

    schema_version = data.get("schema_version", CURRENT_SCHEMA_VERSION)
    if not isinstance(schema_version, int) or isinstance(schema_version, bool):
        raise ValidationError("schema_version must be an integer", field="schema_version")
    if schema_version < 1 or schema_version > CURRENT_SCHEMA_VERSION:
        raise ValidationError(f"Unsupported schema_version {schema_version}", field="schema_version")

    payload = data.get("payload", {})
    if not isinstance(payload, dict):
        raise ValidationError("payload must be an object", field="payload")
    _PAYLOAD_VALIDATORS[event_type](payload)

    return EventEnvelope(
        event_id=event_id,
        entity_key=entity_key,
        sequence=sequence,
        occurred_at=_parse_timestamp(data.get("occurred_at")),
        event_type=event_type,
        payload=payload,
        schema_version=schema_version,
    )


def _parse(raw: bytes | str | dict[str, Any]) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    try:
        text = raw.decode("utf-8") if isinstance(raw, (bytes, bytearray)) else raw
        data = json.loads(text)
    except (UnicodeDecodeError, json.JSONDecodeError, TypeError) as e:
        raise ValidationError(f"Event is not valid UTF-8 JSON: {e}", cause=e) from e
    if not isinstance(data, dict):
        raise ValidationError(f"Event must be a JSON object, got {type(data).__name__}")
    return data


def _require_str(data: dict[str, Any], name: str) -> str:
    value = data.get(name)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{name} must be a non-empty string", field=name)
    return value


def _parse_timestamp(value: Any) -> datetime:
    if not isinstance(value, str):
        raise ValidationError("occurred_at must be an ISO-8601 string", field="occurred_at")
    text = value[:-1] + "+00:00" if value.endswith("Z") else value
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as e:
        raise ValidationError(f"occurred_at is not ISO-8601: {value!r}", field="occurred_at", cause=e) from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _positive_quantity(payload: dict[str, Any]) -> None:
    quantity = payload.get("quantity")
    if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
        raise ValidationError("payload.quantity must be a positive integer", field="payload.quantity")


def _sku(payload: dict[str, Any]) -> None:
    sku = payload.get("sku")
    if not isinstance(sku, str) or not sku.strip():
        raise ValidationError("payload.sku must be a non-empty string", field="payload.sku")


def _validate_created(payload: dict[str, Any]) -> None:
    customer_id = payload.get("customer_id")
    if not isinstance(customer_id, str) or not customer_id.strip():
        raise ValidationError("payload.customer_id must be a non-empty string", field="payload.customer_id")
    currency = payload.get("currency", "USD")
    if not isinstance(currency, str) or len(currency) != 3 or not currency.isalpha():
        raise ValidationError("payload.currency must be a 3-letter code", field="payload.currency")


def _validate_item_added(payload: dict[str, Any]) -> None:
    _sku(payload)
    _positive_quantity(payload)
    price = payload.get("unit_price")
    # floats are refused so money never passes through binary floating point
    if not isinstance(price, (str, int)) or isinstance(price, bool):
        raise ValidationError("payload.unit_price must be a decimal string", field="payload.unit_price")
    try:
        amount = Decimal(str(price))
    except InvalidOperation as e:
        raise ValidationError(
            f"payload.unit_price is not a decimal: {price!r}", field="payload.unit_price", cause=e
        ) from e
    if not amount.is_finite() or amount < 0:
        raise ValidationError("payload.unit_price must be a finite, non-negative amount", field="payload.unit_price")


def _validate_item_removed(payload: dict[str, Any]) -> None:
    _sku(payload)
    _positive_quantity(payload)


def _validate_status_changed(payload: dict[str, Any]) -> None:
    status = payload.get("status")
    try:
        OrderStatus(status)
    except ValueError as e:
        raise ValidationError(
            f"payload.status is not a known status: {status!r}", field="payload.status", cause=e
        ) from e


def _validate_cancelled(payload: dict[str, Any]) -> None:
    reason = payload.get("reason", "")
    if reason is not None and not isinstance(reason, str):
        raise ValidationError("payload.reason must be a string", field="payload.reason")


_PAYLOAD_VALIDATORS: dict[EventType, Callable[[dict[str, Any]], None]] = {
    EventType.ORDER_CREATED: _validate_created,
    EventType.ITEM_ADDED: _validate_item_added,
    EventType.ITEM_REMOVED: _validate_item_removed,
    EventType.STATUS_CHANGED: _validate_status_changed,
    EventType.ORDER_CANCELLED: _validate_cancelled,
}
