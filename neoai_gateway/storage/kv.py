"""Key-value store with per-key TTL.

The gateway only needs ``get`` and ``put`` with an expiry (the daily quota
cleanup flag).  The in-memory backend suits single-process deployments; the
Redis backend shares the flag across replicas.
"""

import asyncio
import threading
from collections.abc import Callable
from time import monotonic
from typing import Any, Protocol

from neoai_gateway.config.settings import Settings

try:  # pragma: no cover - optional dependency at runtime
    import redis  # type: ignore[import-not-found,import-untyped]
except Exception:  # pragma: no cover - optional dependency at runtime
    redis = None


class KVBackendError(Exception):
    """Raised when the key-value backend is unavailable or misconfigured."""


class KeyValueStore(Protocol):
    backend: str

    async def get(self, key: str) -> str | None:
        """Return the value stored at ``key`` or None when absent or expired."""

    async def put(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        """Store ``value`` at ``key``, expiring after ``ttl_seconds`` if given."""


class MemoryKeyValueStore:
    backend = "memory"

    def __init__(self, clock: Callable[[], float] = monotonic) -> None:
        self._clock = clock
        self._entries: dict[str, tuple[str, float | None]] = {}
        self._lock = threading.Lock()

    async def get(self, key: str) -> str | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at is not None and self._clock() >= expires_at:
                del self._entries[key]
                return None
            return value

    async def put(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        with self._lock:
            self._entries[key] = (value, expires_at)


class RedisKeyValueStore:
    backend = "redis"

    def __init__(self, redis_url: str, key_prefix: str = "neoai:kv") -> None:
        if redis is None:  # pragma: no cover - runtime dependency gate
            raise KVBackendError("Redis KV backend selected but redis package is not installed")
        self._key_prefix = key_prefix
        try:
            self._client: Any = redis.Redis.from_url(redis_url, decode_responses=True)
        except Exception as exc:  # pragma: no cover - runtime guard
            raise KVBackendError(f"Failed to initialize Redis KV backend: {exc}") from exc

    def _key(self, key: str) -> str:
        return f"{self._key_prefix}:{key}"

    async def get(self, key: str) -> str | None:
        try:
            value = await asyncio.to_thread(self._client.get, self._key(key))
        except Exception as exc:
            raise KVBackendError(f"Redis read failed: {exc}") from exc
        return None if value is None else str(value)

    async def put(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        try:
            await asyncio.to_thread(self._client.set, self._key(key), value, ex=ttl_seconds)
        except Exception as exc:
            raise KVBackendError(f"Redis write failed: {exc}") from exc


def create_kv_store(settings: Settings) -> KeyValueStore:
    backend = settings.kv_backend_normalized
    if backend == "memory":
        return MemoryKeyValueStore()
    if backend == "redis":
        if not settings.kv_redis_url:
            raise KVBackendError("NEOAI_KV_REDIS_URL is required for the redis KV backend")
        return RedisKeyValueStore(settings.kv_redis_url, key_prefix=settings.kv_redis_prefix)
    raise KVBackendError(f"Unsupported KV backend: {settings.kv_backend}")
