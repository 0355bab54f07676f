"""
WAHA Provider

Client for the WAHA (WhatsApp HTTP API) sessions API and webhook helpers.
"""

from whatsapp_sessions.providers.waha.client import (
    WahaSessionClient,
    sent_message_id,
    webhook_urls,
)
from whatsapp_sessions.providers.waha.webhook import compute_signature, validate_signature

__all__ = [
    "WahaSessionClient",
    "sent_message_id",
    "webhook_urls",
    "compute_signature",
    "validate_signature",
]
