"""
Webhook Deduplication

Idempotency stores used by the ingestion gateway.
"""

from whatsapp_sessions.dedupe.store import (
    IdempotencyStore,
    InMemoryIdempotencyStore,
    RedisIdempotencyStore,
)

__all__ = [
    "IdempotencyStore",
    "InMemoryIdempotencyStore",
    "RedisIdempotencyStore",
]
