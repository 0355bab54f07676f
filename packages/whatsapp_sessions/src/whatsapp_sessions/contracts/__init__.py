"""
WhatsApp Session Contracts

Webhook event kinds, tagged event models and the stream envelope.
"""

from whatsapp_sessions.contracts.envelope import WhatsAppEnvelope
from whatsapp_sessions.contracts.event_types import (
    MESSAGE_EVENTS,
    STATUS_EVENTS,
    SUBSCRIBED_EVENTS,
    WebhookEventType,
)
from whatsapp_sessions.contracts.events import (
    MessageAckEvent,
    MessageAnyEvent,
    MessageEvent,
    SessionStatusEvent,
    StateChangeEvent,
    WebhookEvent,
    parse_webhook_event,
)

__all__ = [
    "WhatsAppEnvelope",
    "MESSAGE_EVENTS",
    "STATUS_EVENTS",
    "SUBSCRIBED_EVENTS",
    "WebhookEventType",
    "MessageAckEvent",
    "MessageAnyEvent",
    "MessageEvent",
    "SessionStatusEvent",
    "StateChangeEvent",
    "WebhookEvent",
    "parse_webhook_event",
]
