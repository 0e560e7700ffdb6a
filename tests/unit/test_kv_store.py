import asyncio

import pytest

from neoai_gateway.config.settings import Settings
from neoai_gateway.storage import kv
from neoai_gateway.storage.kv import (
    KVBackendError,
    MemoryKeyValueStore,
    RedisKeyValueStore,
    create_kv_store,
)


def test_memory_store_expires_entries() -> None:
    now = [100.0]
    store = MemoryKeyValueStore(clock=lambda: now[0])

    async def _run() -> list[str | None]:
        await store.put("cleanup:2025-01-15", "1", ttl_seconds=60)
        await store.put("forever", "x")
        before = await store.get("cleanup:2025-01-15")
        now[0] += 60
        return [before, await store.get("cleanup:2025-01-15"), await store.get("forever")]

    assert asyncio.run(_run()) == ["1", None, "x"]


def test_redis_store_prefixes_keys_and_sets_expiry(monkeypatch: pytest.MonkeyPatch) -> None:
    storage: dict[str, tuple[str, int | None]] = {}

    class _FakeRedisClient:
        def get(self, key: str) -> str | None:
            entry = storage.get(key)
            return entry[0] if entry else None

        def set(self, key: str, value: str, ex: int | None = None) -> bool:
            storage[key] = (value, ex)
            return True

    class _FakeRedisModule:
        class Redis:
            @staticmethod
            def from_url(url: str, decode_responses: bool = False) -> _FakeRedisClient:
                assert url == "redis://cache:6379/0"
                assert decode_responses is True
                return _FakeRedisClient()

    monkeypatch.setattr(kv, "redis", _FakeRedisModule)
    store = RedisKeyValueStore("redis://cache:6379/0", key_prefix="neoai:test")

    async def _run() -> str | None:
        await store.put("cleanup:2025-01-15", "1", ttl_seconds=86_400)
        return await store.get("cleanup:2025-01-15")

    assert asyncio.run(_run()) == "1"
    assert storage == {"neoai:test:cleanup:2025-01-15": ("1", 86_400)}


def test_redis_failures_surface_as_backend_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    class _BrokenClient:
        def get(self, key: str) -> str | None:
            raise ConnectionError("redis down")

    class _FakeRedisModule:
        class Redis:
            @staticmethod
            def from_url(url: str, decode_responses: bool = False) -> _BrokenClient:
                return _BrokenClient()

    monkeypatch.setattr(kv, "redis", _FakeRedisModule)
    store = RedisKeyValueStore("redis://cache:6379/0")

    with pytest.raises(KVBackendError, match="redis down"):
        asyncio.run(store.get("anything"))


def test_create_kv_store_selects_backend() -> None:
    assert isinstance(create_kv_store(Settings(kv_backend=" Memory ")), MemoryKeyValueStore)
    with pytest.raises(KVBackendError, match="NEOAI_KV_REDIS_URL"):
        create_kv_store(Settings(kv_backend="redis", kv_redis_url=None))
    with pytest.raises(KVBackendError, match="Unsupported"):
        create_kv_store(Settings(kv_backend="memcached"))
