"""
Tests for the dead letter replay and stream commands of the CLI.
"""

from uuid import uuid4

import pytest
from typer.testing import CliRunner

from whatsapp_sessions.cli import main as cli
from whatsapp_sessions.contracts.envelope import WhatsAppEnvelope
from whatsapp_sessions.streams.groups import DLQ_STREAM, INBOUND_STREAM, ensure_whatsapp_streams
from whatsapp_sessions.streams.producer import WhatsAppStreamProducer

from waha_fakes import make_message_event

runner = CliRunner()


@pytest.fixture
def cli_redis(redis_client, monkeypatch):
    monkeypatch.setattr(cli, "get_redis", lambda: redis_client)
    return redis_client


class TestReplayDlq:
    """Tests for replaying dead-lettered events."""

    def test_empty_dlq(self, cli_redis):
        result = runner.invoke(cli.app, ["replay-dlq"])

        assert result.exit_code == 0
        assert "No messages in DLQ" in result.output

    def test_replays_original_event(self, cli_redis, sample_tenant_id):
        original = WhatsAppEnvelope.create(
            event_type="message",
            tenant_id=sample_tenant_id,
            session_id=uuid4(),
            payload=make_message_event("tenant-1_own_1"),
            dedupe_key="evt_1",
        )
        WhatsAppStreamProducer(cli_redis).publish_to_dlq(original, "session not found", 1)

        result = runner.invoke(cli.app, ["replay-dlq"])

        assert result.exit_code == 0
        assert cli_redis.xlen(DLQ_STREAM) == 0
        entries = cli_redis.xrange(INBOUND_STREAM)
        assert len(entries) == 1
        replayed = WhatsAppEnvelope.from_stream_message(*entries[0])
        assert replayed.event_id == original.event_id
        assert replayed.payload == original.payload


class TestStreamInfo:
    def test_shows_groups(self, cli_redis):
        ensure_whatsapp_streams(cli_redis)

        result = runner.invoke(cli.app, ["stream-info"])

        assert result.exit_code == 0
        assert INBOUND_STREAM in result.output
        assert "whatsapp-sessions" in result.output
