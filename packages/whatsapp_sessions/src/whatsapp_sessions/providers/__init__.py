"""
WhatsApp Providers

Provider integrations. WAHA is the only supported provider.
"""

from whatsapp_sessions.providers.waha import WahaSessionClient

__all__ = [
    "WahaSessionClient",
]
