"""
Webhook Credentials

Per-session webhook token and HMAC secret management.
"""

from whatsapp_sessions.credentials.store import (
    IssuedCredential,
    ResolvedCredential,
    WebhookCredentialStore,
    hash_token,
)

__all__ = [
    "IssuedCredential",
    "ResolvedCredential",
    "WebhookCredentialStore",
    "hash_token",
]
