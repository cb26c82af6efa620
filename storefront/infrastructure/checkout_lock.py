"""In-flight claims for client idempotency keys.

A claim is held from before the card is charged until the order is written
(or the attempt fails), so a double-submitted checkout cannot authorize two
charges at once. Redis is used when configured; otherwise, or when Redis is
unreachable, claims live in a process-local TTL cache.
"""
from threading import Lock
from typing import Optional

import redis
from cachetools import TTLCache

from storefront.core.logging_config import get_logger

logger = get_logger(__name__)

KEY_PREFIX = "checkout:inflight:"


class CheckoutLock:
    def __init__(self, redis_client: Optional[redis.Redis] = None, ttl_seconds: int = 120):
        self.redis_client = redis_client
        self.ttl_seconds = ttl_seconds
        self.local_claims = TTLCache(maxsize=4096, ttl=ttl_seconds)
        self._local_lock = Lock()

    @classmethod
    def from_url(cls, redis_url: Optional[str], ttl_seconds: int = 120) -> "CheckoutLock":
        client = None
        if redis_url:
            try:
                client = redis.from_url(redis_url, decode_responses=True)
                client.ping()
            except redis.RedisError as e:
                logger.warning(f"Redis unavailable for checkout locks, using local cache: {e}")
                client = None
        return cls(client, ttl_seconds)

    @staticmethod
    def _key(user_id: str, checkout_key: str) -> str:
        return f"{KEY_PREFIX}{user_id}:{checkout_key}"

    def acquire(self, user_id: str, checkout_key: str) -> bool:
        key = self._key(user_id, checkout_key)
        if self.redis_client is not None:
            try:
                return bool(self.redis_client.set(key, "1", nx=True, ex=self.ttl_seconds))
            except redis.RedisError as e:
                logger.warning(f"Redis claim failed, falling back to local cache: {e}")
        with self._local_lock:
            if key in self.local_claims:
                return False
            self.local_claims[key] = True
            return True

    def release(self, user_id: str, checkout_key: str) -> None:
        key = self._key(user_id, checkout_key)
        if self.redis_client is not None:
            try:
                self.redis_client.delete(key)
            except redis.RedisError as e:
                logger.warning(f"Redis release failed for {key}: {e}")
        with self._local_lock:
            self.local_claims.pop(key, None)
