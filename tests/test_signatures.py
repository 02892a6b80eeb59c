from __future__ import annotations

import asyncio
from typing import Any

from pool_gateway.signatures import (
    SIGNATURE_KEY_PREFIX,
    InMemorySignatureStore,
    RedisSignatureStore,
    build_signature_store,
)


class FakeRedis:
    def __init__(self) -> None:
        self.values: dict[str, Any] = {}
        self.expiry: dict[str, int] = {}

    async def get(self, key: str) -> Any:
        return self.values.get(key)

    async def set(self, key: str, value: str, ex: int | None = None) -> None:
        self.values[key] = value.encode("utf-8")
        if ex is not None:
            self.expiry[key] = ex

    async def delete(self, key: str) -> None:
        self.values.pop(key, None)


def test_in_memory_store_keeps_latest_signature_per_user() -> None:
    async def run() -> None:
        store = InMemorySignatureStore(ttl_seconds=60)
        await store.put("user-1", "sig-a")
        await store.put("user-1", "sig-b")

        assert await store.get("user-1") == "sig-b"
        assert await store.get("user-2") is None
        await store.clear("user-1")
        assert await store.get("user-1") is None

    asyncio.run(run())


def test_redis_store_prefixes_keys_and_sets_ttl() -> None:
    async def run() -> None:
        redis = FakeRedis()
        store = RedisSignatureStore(redis, ttl_seconds=7200)

        await store.put("user-1", "sig-a")

        assert redis.expiry[SIGNATURE_KEY_PREFIX + "user-1"] == 7200
        assert await store.get("user-1") == "sig-a"
        await store.clear("user-1")
        assert await store.get("user-1") is None

    asyncio.run(run())


def test_build_signature_store_selects_backend() -> None:
    assert isinstance(build_signature_store(ttl_seconds=60), InMemorySignatureStore)
    assert isinstance(
        build_signature_store(ttl_seconds=60, redis_url="redis://localhost:6379/0"),
        RedisSignatureStore,
    )
    assert isinstance(
        build_signature_store(ttl_seconds=60, redis_url="not-a-redis-url"),
        InMemorySignatureStore,
    )
