"""
Webhook Idempotency Store

Remembers accepted webhook event keys for the provider's redelivery window.
Claiming a key is a single atomic check-and-set.
"""

import logging
import threading
import time
from abc import ABC, abstractmethod

import redis

logger = logging.getLogger(__name__)

DEDUPE_PREFIX = "wa:dedupe:"


class IdempotencyStore(ABC):
    """Atomic check-and-set over event keys."""

    @abstractmethod
    def claim(self, key: str, ttl_seconds: int) -> bool:
        """
        Claim a key.

        Returns:
            True if the key was unseen and is now claimed, False if it is a duplicate
        """

    @abstractmethod
    def release(self, key: str) -> None:
        """Forget a claimed key so a redelivery is accepted again."""


class RedisIdempotencyStore(IdempotencyStore):
    """
    Idempotency store on Redis.

    Uses SET NX EX so two concurrent deliveries of the same event
    cannot both pass the unseen check.
    """

    def __init__(self, redis_client: redis.Redis, prefix: str = DEDUPE_PREFIX):
        self.redis = redis_client
        self.prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def claim(self, key: str, ttl_seconds: int) -> bool:
        was_set = self.redis.set(self._key(key), "1", nx=True, ex=ttl_seconds)
        if not was_set:
            logger.debug("Duplicate webhook event", extra={"dedupe_key": key[:12]})
        return bool(was_set)

    def release(self, key: str) -> None:
        self.redis.delete(self._key(key))


class InMemoryIdempotencyStore(IdempotencyStore):
    """Process-local idempotency store for tests and single-node development."""

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._expires: dict[str, float] = {}
        self._lock = threading.Lock()

    def claim(self, key: str, ttl_seconds: int) -> bool:
        now = self._clock()
        with self._lock:
            expires_at = self._expires.get(key)
            if expires_at is not None and expires_at > now:
                return False
            self._expires[key] = now + ttl_seconds
            return True

    def release(self, key: str) -> None:
        with self._lock:
            self._expires.pop(key, None)
