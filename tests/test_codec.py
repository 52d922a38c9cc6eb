"""Tests for event envelopes and the wire codec."""

import json
from datetime import UTC, datetime

import pytest

from viewkeeper.errors import ValidationError
from viewkeeper.events import (
    EventEnvelope,
    EventType,
    decode_envelope,
    encode_envelope,
    item_added,
    order_cancelled,
    order_created,
    status_changed,
)


def _wire(**overrides: object) -> dict[str, object]:
    data: dict[str, object] = {
        "event_id": "01HZY3K0000000000000000000",
        "entity_key": "order-1",
        "sequence": 1,
        "occurred_at": "2024-05-01T10:00:00+00:00",
        "type": "order.created",
        "payload": {"customer_id": "c-1", "currency": "EUR"},
        "schema_version": 1,
    }
    data.update(overrides)
    return data


class TestEnvelope:
    """Tests for EventEnvelope and its factories."""

    def test_factory_assigns_ulid_and_utc_timestamp(self) -> None:
        envelope = order_created("order-1", 1, customer_id="c-1")

        assert len(envelope.event_id) == 26
        assert envelope.occurred_at.tzinfo is not None
        assert envelope.event_type is EventType.ORDER_CREATED
        assert envelope.payload == {"customer_id": "c-1", "currency": "USD"}

    def test_item_added_keeps_price_as_string(self) -> None:
        envelope = item_added("order-1", 2, sku="A-1", quantity=2, unit_price="9.99")
        assert envelope.payload["unit_price"] == "9.99"

    def test_envelope_is_immutable(self) -> None:
        envelope = status_changed("order-1", 3, status="paid")
        with pytest.raises(AttributeError):
            envelope.sequence = 4  # type: ignore[misc]

    def test_repr_is_short(self) -> None:
        envelope = order_cancelled("order-9", 5, reason="fraud")
        assert "key=order-9" in repr(envelope)
        assert "seq=5" in repr(envelope)


class TestDecode:
    """decode_envelope() is the validation gate of the ingest path."""

    def test_decodes_bytes_text_and_mappings(self) -> None:
        raw = json.dumps(_wire())
        for source in (raw.encode("utf-8"), raw, _wire()):
            envelope = decode_envelope(source)
            assert envelope.entity_key == "order-1"
            assert envelope.sequence == 1
            assert envelope.event_type is EventType.ORDER_CREATED

    def test_encode_then_decode_preserves_envelope(self) -> None:
        original = EventEnvelope(
            entity_key="order-2",
            sequence=7,
            event_type=EventType.ITEM_ADDED,
            payload={"sku": "B-2", "quantity": 3, "unit_price": "1.50"},
            occurred_at=datetime(2024, 5, 1, 12, 30, tzinfo=UTC),
        )
        assert decode_envelope(encode_envelope(original)) == original

    def test_zulu_timestamp_is_utc(self) -> None:
        envelope = decode_envelope(_wire(occurred_at="2024-05-01T10:00:00Z"))
        assert envelope.occurred_at == datetime(2024, 5, 1, 10, 0, tzinfo=UTC)

    def test_naive_timestamp_is_taken_as_utc(self) -> None:
        envelope = decode_envelope(_wire(occurred_at="2024-05-01T10:00:00"))
        assert envelope.occurred_at.tzinfo is not None

    @pytest.mark.parametrize(
        ("overrides", "field"),
        [
            ({"event_id": ""}, "event_id"),
            ({"entity_key": None}, "entity_key"),
            ({"sequence": "3"}, "sequence"),
            ({"sequence": True}, "sequence"),
            ({"sequence": -1}, "sequence"),
            ({"type": "order.teleported"}, "type"),
            ({"occurred_at": "yesterday"}, "occurred_at"),
            ({"schema_version": 99}, "schema_version"),
            ({"payload": []}, "payload"),
            ({"payload": {"currency": "EUR"}}, "payload.customer_id"),
            ({"payload": {"customer_id": "c-1", "currency": "EURO"}}, "payload.currency"),
        ],
    )
    def test_malformed_envelope_is_rejected(self, overrides: dict[str, object], field: str) -> None:
        with pytest.raises(ValidationError) as exc_info:
            decode_envelope(_wire(**overrides))
        assert exc_info.value.field == field

    @pytest.mark.parametrize(
        "payload",
        [
            {"sku": "A-1", "quantity": 1, "unit_price": 9.99},
            {"sku": "A-1", "quantity": 1, "unit_price": "abc"},
            {"sku": "A-1", "quantity": 1, "unit_price": "-1"},
            {"sku": "A-1", "quantity": 0, "unit_price": "1"},
            {"sku": "", "quantity": 1, "unit_price": "1"},
        ],
    )
    def test_item_added_payload_is_validated(self, payload: dict[str, object]) -> None:
        """Float prices are refused along with negative and non-numeric amounts."""
        with pytest.raises(ValidationError):
            decode_envelope(_wire(type="order.item_added", payload=payload))

    def test_unknown_status_is_rejected(self) -> None:
        with pytest.raises(ValidationError):
            decode_envelope(_wire(type="order.status_changed", payload={"status": "lost"}))

    def test_garbage_bytes_are_rejected(self) -> None:
        with pytest.raises(ValidationError):
            decode_envelope(b"\xff\xfe not json")

    def test_non_object_json_is_rejected(self) -> None:
        with pytest.raises(ValidationError):
            decode_envelope(b"[1, 2, 3]")
