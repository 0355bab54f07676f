"""
WhatsApp Stream Consumer

Consumes accepted webhook events from the inbound stream using XREADGROUP.
"""

import logging

import redis

from whatsapp_sessions.contracts.envelope import WhatsAppEnvelope
from whatsapp_sessions.streams.groups import INBOUND_STREAM, WHATSAPP_GROUP

logger = logging.getLogger(__name__)


class WhatsAppStreamConsumer:
    """
    Consumer group reader for one stream.

    Entries stay in the group's pending list until acknowledged, so a worker
    that dies mid-event leaves it for reclaim_pending.
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        consumer_name: str,
        stream_name: str = INBOUND_STREAM,
        group_name: str = WHATSAPP_GROUP,
    ):
        self.redis = redis_client
        self.consumer_name = consumer_name
        self.stream_name = stream_name
        self.group_name = group_name

    def read_messages(
        self,
        count: int = 10,
        block_ms: int | None = 5000,
    ) -> list[tuple[str, WhatsAppEnvelope]]:
        """
        Read new messages for this consumer.

        Args:
            count: Maximum messages to read
            block_ms: Milliseconds to block waiting for messages (None = don't block)

        Returns:
            List of (message_id, envelope) tuples
        """
        try:
            result = self.redis.xreadgroup(
                self.group_name,
                self.consumer_name,
                {self.stream_name: ">"},
                count=count,
                block=block_ms,
            )
        except redis.ResponseError as e:
            if "NOGROUP" in str(e):
                logger.error(
                    f"Consumer group {self.group_name} does not exist for {self.stream_name}"
                )
            raise

        if not result:
            return []

        messages = []
        for _stream, entries in result:
            messages.extend(self._parse_entries(entries))
        return messages

    def ack(self, message_id: str) -> int:
        """
        Acknowledge a message as processed.

        Returns:
            Number of messages acknowledged (0 or 1)
        """
        return self.redis.xack(self.stream_name, self.group_name, message_id)

    def reclaim_pending(
        self,
        min_idle_ms: int = 60000,
        count: int = 100,
    ) -> list[tuple[str, WhatsAppEnvelope]]:
        """
        Take over messages other consumers left unacknowledged for too long.

        Args:
            min_idle_ms: Minimum idle time before a message can be claimed
            count: Maximum messages to claim

        Returns:
            List of (message_id, envelope) tuples now owned by this consumer
        """
        try:
            result = self.redis.xautoclaim(
                self.stream_name,
                self.group_name,
                self.consumer_name,
                min_idle_time=min_idle_ms,
                start_id="0-0",
                count=count,
            )
        except redis.ResponseError as e:
            logger.error(f"Failed to reclaim pending messages: {e}")
            return []

        # [next_start_id, [(id, fields), ...], (deleted ids on Redis >= 7)]
        entries = result[1] if result and len(result) > 1 else []
        return self._parse_entries(entries)

    def get_pending_count(self) -> int:
        """Count of delivered but unacknowledged messages in the group."""
        try:
            info = self.redis.xpending(self.stream_name, self.group_name)
        except redis.ResponseError:
            return 0
        return info.get("pending", 0) if info else 0

    def _parse_entries(self, entries) -> list[tuple[str, WhatsAppEnvelope]]:
        messages = []
        for msg_id, data in entries:
            if not data:
                # Trimmed from the stream while pending
                self.ack(msg_id)
                continue
            try:
                envelope = WhatsAppEnvelope.from_stream_message(msg_id, data)
            except (KeyError, ValueError) as e:
                logger.error(f"Failed to parse message {msg_id}: {e}")
                # ACK invalid messages to prevent blocking
                self.ack(msg_id)
                continue
            messages.append((msg_id, envelope))
        return messages
