"""
WhatsApp Routing

Phone normalization used to key conversations and contacts.
"""

from whatsapp_sessions.routing.phone import chat_id_for, normalize_phone, strip_jid

__all__ = [
    "chat_id_for",
    "normalize_phone",
    "strip_jid",
]
