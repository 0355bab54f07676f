"""
Tests for the stream layout: trim limits and consumer groups.
"""

from unittest.mock import MagicMock
from uuid import uuid4

from whatsapp_sessions.contracts.envelope import WhatsAppEnvelope
from whatsapp_sessions.streams.groups import (
    DLQ_STREAM,
    INBOUND_STREAM,
    WHATSAPP_GROUP,
    ensure_whatsapp_streams,
    get_stream_info,
)
from whatsapp_sessions.streams.producer import WhatsAppStreamProducer


def make_envelope() -> WhatsAppEnvelope:
    return WhatsAppEnvelope.create(
        event_type="message",
        tenant_id="tenant-1",
        session_id=uuid4(),
        payload={"id": "m1"},
    )


class TestProducerTrimming:
    def test_inbound_is_trimmed_at_its_limit(self):
        redis_client = MagicMock()
        redis_client.xadd.return_value = "1-0"

        WhatsAppStreamProducer(redis_client).publish_inbound(make_envelope())

        args, kwargs = redis_client.xadd.call_args
        assert args[0] == INBOUND_STREAM
        assert kwargs["maxlen"] == 100000
        assert kwargs["approximate"] is True

    def test_dlq_has_its_own_limit(self):
        redis_client = MagicMock()
        redis_client.xadd.return_value = "1-0"

        WhatsAppStreamProducer(redis_client).publish_to_dlq(make_envelope(), "boom", 3)

        args, kwargs = redis_client.xadd.call_args
        assert args[0] == DLQ_STREAM
        assert kwargs["maxlen"] == 10000


class TestStreamGroups:
    def test_only_inbound_gets_a_group(self, redis_client):
        ensure_whatsapp_streams(redis_client)
        ensure_whatsapp_streams(redis_client)

        groups = redis_client.xinfo_groups(INBOUND_STREAM)
        assert [group["name"] for group in groups] == [WHATSAPP_GROUP]
        assert redis_client.exists(DLQ_STREAM) == 0

    def test_stream_info_reports_limit(self, redis_client):
        ensure_whatsapp_streams(redis_client)

        info = get_stream_info(redis_client, INBOUND_STREAM)

        assert info["length"] == 0
        assert info["max_len"] == 100000
