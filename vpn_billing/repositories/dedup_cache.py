"""Dedup cache - short-lived flags with per-key TTL.

Used by reconciliation to remember which users were already warned about an
upcoming expiry. Redis backs it in production; a process-local map is used
when no Redis URL is configured.
"""

import threading
import time
from typing import Callable, Dict, Optional

import redis

from vpn_billing.logging_config import get_logger

logger = get_logger(__name__)


class DedupCache:
    """Key/TTL store interface."""

    backend = "none"

    def exists(self, key: str) -> bool:
        raise NotImplementedError

    def set(self, key: str, ttl_seconds: int) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        pass


class RedisDedupCache(DedupCache):
    """Redis-backed dedup flags (SET key 1 EX ttl)."""

    backend = "redis"

    def __init__(
        self,
        redis_url: str,
        socket_timeout: float = 5.0,
        client: Optional[redis.Redis] = None,
    ):
        self._client = client or redis.Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def exists(self, key: str) -> bool:
        return bool(self._client.exists(key))

    def set(self, key: str, ttl_seconds: int) -> None:
        self._client.set(key, "1", ex=ttl_seconds)

    def delete(self, key: str) -> None:
        self._client.delete(key)

    def ping(self) -> bool:
        try:
            return bool(self._client.ping())
        except redis.RedisError as e:
            logger.error("redis_ping_failed", error=str(e))
            return False

    def close(self) -> None:
        self._client.close()


class MemoryDedupCache(DedupCache):
    """Process-local dedup flags.

    Thread-safe. Flags are lost on restart, so a restarted single instance may
    repeat one warning; use Redis when that matters.

    Args:
        clock: Monotonic seconds source, replaceable in tests
    """

    backend = "memory"

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._entries: Dict[str, float] = {}
        self._lock = threading.RLock()
        self._clock = clock

    def exists(self, key: str) -> bool:
        with self._lock:
            expires_at = self._entries.get(key)
            if expires_at is None:
                return False
            if expires_at <= self._clock():
                del self._entries[key]
                return False
            return True

    def set(self, key: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            raise ValueError("TTL must be positive")
        with self._lock:
            self._entries[key] = self._clock() + ttl_seconds

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


# Global cache instance
_cache_instance: Optional[DedupCache] = None
_cache_lock = threading.Lock()


def create_dedup_cache(redis_url: Optional[str], socket_timeout: float = 5.0) -> DedupCache:
    """Build the cache backend selected by configuration."""
    if redis_url:
        logger.info("dedup_cache_backend", backend="redis")
        return RedisDedupCache(redis_url, socket_timeout=socket_timeout)
    logger.info("dedup_cache_backend", backend="memory")
    return MemoryDedupCache()


def get_dedup_cache() -> DedupCache:
    """Get global dedup cache instance (singleton) built from configuration."""
    global _cache_instance
    if _cache_instance is None:
        with _cache_lock:
            if _cache_instance is None:
                from vpn_billing.config import get_config

                settings = get_config().cache
                _cache_instance = create_dedup_cache(
                    settings.redis_url, socket_timeout=settings.socket_timeout_seconds
                )
    return _cache_instance


def reset_dedup_cache() -> None:
    """Close and forget the global dedup cache."""
    global _cache_instance
    with _cache_lock:
        if _cache_instance is not None:
            _cache_instance.close()
        _cache_instance = None
