"""
WhatsApp Redis Streams

Producer and consumer for accepted webhook events via Redis Streams.
"""

from whatsapp_sessions.streams.consumer import WhatsAppStreamConsumer
from whatsapp_sessions.streams.groups import (
    DLQ_STREAM,
    INBOUND_STREAM,
    WHATSAPP_GROUP,
    StreamConfig,
    ensure_whatsapp_streams,
)
from whatsapp_sessions.streams.producer import WhatsAppStreamProducer

__all__ = [
    "WhatsAppStreamProducer",
    "WhatsAppStreamConsumer",
    "ensure_whatsapp_streams",
    "StreamConfig",
    "INBOUND_STREAM",
    "DLQ_STREAM",
    "WHATSAPP_GROUP",
]
