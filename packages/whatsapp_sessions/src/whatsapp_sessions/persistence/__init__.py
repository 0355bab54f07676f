"""
WhatsApp Session Persistence

Database models and repository for sessions, credentials, conversations,
messages and contacts.
"""

from whatsapp_sessions.persistence.models import (
    MessageStatus,
    MessageType,
    SessionStatus,
    StatusSource,
    WhatsAppBase,
    WhatsAppContact,
    WhatsAppConversation,
    WhatsAppMessage,
    WhatsAppPendingAck,
    WhatsAppSession,
    WhatsAppWebhookCredential,
)
from whatsapp_sessions.persistence.repo import WhatsAppRepository

__all__ = [
    "MessageStatus",
    "MessageType",
    "SessionStatus",
    "StatusSource",
    "WhatsAppBase",
    "WhatsAppContact",
    "WhatsAppConversation",
    "WhatsAppMessage",
    "WhatsAppPendingAck",
    "WhatsAppSession",
    "WhatsAppWebhookCredential",
    "WhatsAppRepository",
]
