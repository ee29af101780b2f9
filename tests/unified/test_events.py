"""Tests for realtime events and transformer lookup."""

from datetime import UTC, datetime

import pytest
from pydantic import ValidationError

from cortex.unified.events import RealtimeEvent, TransformerRegistry, passthrough


class TestRealtimeEvent:
    def test_camel_case_export(self):
        event = RealtimeEvent.model_validate(
            {
                "eventId": 7,
                "eventType": "order.created",
                "createdAt": "2024-06-01T10:00:00Z",
                "payload": {"total_price": "12.00"},
                "userId": "u-1",
            }
        )
        assert event.event_id == "7"
        assert event.event_type == "order.created"
        assert event.created_at == datetime(2024, 6, 1, 10, tzinfo=UTC)
        assert event.owner_id == "u-1"
        assert event.processed is False

    def test_snake_case(self):
        event = RealtimeEvent(
            event_id="e1", event_type="refund", created_at=datetime(2024, 6, 1), payload={}
        )
        assert event.created_at.tzinfo is UTC

    def test_requires_created_at(self):
        with pytest.raises(ValidationError):
            RealtimeEvent.model_validate({"id": "e1", "type": "order"})

    def test_frozen(self):
        event = RealtimeEvent(event_id="e1", event_type="order", created_at=datetime.now(UTC))
        with pytest.raises(ValidationError):
            event.processed = True


class TestTransformerRegistry:
    """Tests for TransformerRegistry."""

    def test_exact_and_prefix_match(self):
        def order(payload):
            return {"kind": "order"}

        def order_refund(payload):
            return {"kind": "refund"}

        registry = TransformerRegistry({"order": order, "order.refund": order_refund})

        assert registry.resolve("order") is order
        assert registry.resolve("order.created") is order
        assert registry.resolve("order.refund.partial") is order_refund
        assert registry.resolve("customer.created") is None

    def test_register_and_handles(self):
        registry = TransformerRegistry()
        assert not registry.handles("product")
        registry.register("product", passthrough)
        assert registry.handles("product.updated")
        assert registry.event_types() == ["product"]

    def test_passthrough_copies(self):
        payload = {"a": 1}
        row = passthrough(payload)
        row["b"] = 2
        assert payload == {"a": 1}
