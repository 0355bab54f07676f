"""
WhatsApp Webhook Event Types

The five WAHA event kinds this integration subscribes to and accepts.
"""

from enum import Enum


class WebhookEventType(str, Enum):
    """
    WAHA webhook event kinds.

    - MESSAGE: Inbound message received
    - MESSAGE_ANY: Any message, including ones sent from the connected phone
    - MESSAGE_ACK: Delivery/read acknowledgement for a message
    - SESSION_STATUS: Session lifecycle status (STOPPED, SCAN_QR_CODE, WORKING, ...)
    - STATE_CHANGE: Connection state change (CONNECTED, UNPAIRED, ...)
    """

    MESSAGE = "message"
    MESSAGE_ANY = "message.any"
    MESSAGE_ACK = "message.ack"
    SESSION_STATUS = "session.status"
    STATE_CHANGE = "state.change"

    def __str__(self) -> str:
        return self.value


# Registered on every session at creation time
SUBSCRIBED_EVENTS = tuple(event.value for event in WebhookEventType)

MESSAGE_EVENTS = frozenset({WebhookEventType.MESSAGE.value, WebhookEventType.MESSAGE_ANY.value})
STATUS_EVENTS = frozenset(
    {WebhookEventType.SESSION_STATUS.value, WebhookEventType.STATE_CHANGE.value}
)

# Internal stream record types
DLQ_ENTRY = "whatsapp_dlq_entry"
