"""
Tests for WAHA webhook event parsing.
"""

import pytest

from whatsapp_sessions.contracts.events import (
    MessageAckEvent,
    MessageAnyEvent,
    MessageEvent,
    SessionStatusEvent,
    StateChangeEvent,
    parse_webhook_event,
)
from whatsapp_sessions.errors import ValidationError

from waha_fakes import make_message_event


class TestParseWebhookEvent:
    """Tests for tagged event parsing."""

    def test_message_event(self):
        """Test a message event parses with camelCase aliases."""
        event = parse_webhook_event(make_message_event("tenant-1_own_1"))

        assert isinstance(event, MessageEvent)
        assert event.session == "tenant-1_own_1"
        assert event.payload.from_ == "5511999998888@c.us"
        assert event.payload.from_me is False
        assert event.payload.body == "Hello"

    def test_message_any_event(self):
        event = parse_webhook_event(make_message_event("s", event="message.any", from_me=True))

        assert isinstance(event, MessageAnyEvent)
        assert event.payload.from_me is True

    def test_ack_event(self):
        event = parse_webhook_event(
            {
                "event": "message.ack",
                "session": "s",
                "payload": {"id": "true_5511999998888@c.us_ABC", "ack": 3, "ackName": "READ"},
            }
        )

        assert isinstance(event, MessageAckEvent)
        assert event.payload.ack == 3

    def test_session_status_event(self):
        event = parse_webhook_event(
            {
                "event": "session.status",
                "session": "s",
                "timestamp": 1704110400000,
                "payload": {"status": "WORKING"},
                "me": {"id": "5511888887777@c.us", "pushName": "Store"},
            }
        )

        assert isinstance(event, SessionStatusEvent)
        assert event.me.push_name == "Store"

    def test_state_change_event(self):
        event = parse_webhook_event(
            {"event": "state.change", "session": "s", "payload": {"state": "CONNECTED"}}
        )
        assert isinstance(event, StateChangeEvent)

    def test_unknown_event_rejected(self):
        """Test event kinds outside the subscription are rejected, not passed through."""
        with pytest.raises(ValidationError) as exc_info:
            parse_webhook_event({"event": "group.join", "session": "s", "payload": {}})
        assert exc_info.value.code == "unknown_event"

    def test_non_object_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            parse_webhook_event(["message"])
        assert exc_info.value.code == "malformed_payload"

    def test_missing_fields_rejected(self):
        """Test a message without sender is rejected with field errors."""
        data = make_message_event("s")
        del data["payload"]["from"]

        with pytest.raises(ValidationError) as exc_info:
            parse_webhook_event(data)
        assert exc_info.value.code == "invalid_payload"
        assert any("from" in error for error in exc_info.value.details["errors"])


class TestDedupeKey:
    """Tests for delivery idempotency keys."""

    def test_uses_event_id(self):
        event = parse_webhook_event(make_message_event("s"))
        assert event.dedupe_key() == event.id

    def test_fallback_is_stable(self):
        """Test redeliveries without an event id get the same key."""
        data = make_message_event("s")
        del data["id"]

        first = parse_webhook_event(data).dedupe_key()
        second = parse_webhook_event(dict(data)).dedupe_key()

        assert first == second
        assert len(first) == 64

    def test_fallback_differs_per_message(self):
        a = make_message_event("s", message_id="A")
        b = make_message_event("s", message_id="B")
        del a["id"], b["id"]

        assert parse_webhook_event(a).dedupe_key() != parse_webhook_event(b).dedupe_key()

    def test_status_without_id_or_timestamp_has_no_key(self):
        """Test a status report with no delivery identity is never deduplicated."""
        event = parse_webhook_event(
            {"event": "session.status", "session": "s", "payload": {"status": "WORKING"}}
        )

        assert event.dedupe_key() is None

    def test_status_with_timestamp_has_key(self):
        event = parse_webhook_event(
            {
                "event": "state.change",
                "session": "s",
                "timestamp": 1704110400000,
                "payload": {"state": "CONNECTED"},
            }
        )

        assert len(event.dedupe_key()) == 64

    def test_event_time_is_naive_utc(self):
        event = parse_webhook_event(make_message_event("s", timestamp=1704110400))
        assert event.event_time().tzinfo is None
        assert event.event_time().isoformat() == "2024-01-01T12:00:00"
