"""
WhatsApp Stream Producer

Publishes accepted webhook events and dead letters to Redis Streams.
"""

import logging

import redis

from whatsapp_sessions.contracts.envelope import WhatsAppEnvelope
from whatsapp_sessions.contracts.event_types import DLQ_ENTRY
from whatsapp_sessions.streams.groups import DLQ_STREAM, INBOUND_STREAM, stream_max_len

logger = logging.getLogger(__name__)


class WhatsAppStreamProducer:
    """
    Producer for the inbound event stream and the dead letter stream.
    """

    def __init__(self, redis_client: redis.Redis):
        self.redis = redis_client

    def publish_inbound(self, envelope: WhatsAppEnvelope) -> str:
        """
        Queue an accepted webhook event for the worker.

        Returns:
            Stream message ID
        """
        return self._publish(INBOUND_STREAM, envelope)

    def publish_to_dlq(
        self,
        original_envelope: WhatsAppEnvelope,
        error: str,
        attempts: int,
    ) -> str:
        """
        Publish an event that will not be retried automatically.

        Returns:
            Stream message ID
        """
        dlq_envelope = WhatsAppEnvelope.create(
            event_type=DLQ_ENTRY,
            tenant_id=original_envelope.tenant_id,
            session_id=original_envelope.session_id,
            payload={
                "original_event": original_envelope.to_dict(),
                "error": error,
                "attempts": attempts,
            },
            dedupe_key=original_envelope.dedupe_key,
        )

        return self._publish(DLQ_STREAM, dlq_envelope)

    def _publish(self, stream_name: str, envelope: WhatsAppEnvelope) -> str:
        """
        Publish an envelope to a stream.

        Returns:
            Stream message ID
        """
        msg_id = self.redis.xadd(
            stream_name,
            envelope.to_stream_data(),
            maxlen=stream_max_len(stream_name),
            approximate=True,
        )

        logger.debug(
            f"Published to {stream_name}",
            extra={
                "stream": stream_name,
                "event_type": envelope.event_type,
                "event_id": str(envelope.event_id),
                "msg_id": msg_id,
            },
        )

        return msg_id
