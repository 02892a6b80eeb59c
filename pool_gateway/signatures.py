from __future__ import annotations

import logging
from typing import Any, Protocol

from redis.asyncio import from_url as redis_from_url

from pool_gateway.runtime.expiring_map import ExpiringMap

SIGNATURE_KEY_PREFIX = "thought_sig:"


class SignatureStore(Protocol):
    async def get(self, user_id: str) -> str | None: ...

    async def put(self, user_id: str, signature: str) -> None: ...

    async def clear(self, user_id: str) -> None: ...


class InMemorySignatureStore:
    def __init__(self, *, ttl_seconds: int, max_users: int = 10_000) -> None:
        self._signatures: ExpiringMap[str, str] = ExpiringMap(
            ttl_seconds=ttl_seconds, max_keys=max_users
        )

    async def get(self, user_id: str) -> str | None:
        return self._signatures.get(user_id)

    async def put(self, user_id: str, signature: str) -> None:
        self._signatures.set(user_id, signature)

    async def clear(self, user_id: str) -> None:
        self._signatures.pop(user_id)


class RedisSignatureStore:
    def __init__(self, redis_client: Any, *, ttl_seconds: int) -> None:
        self._redis = redis_client
        self._ttl_seconds = ttl_seconds

    async def get(self, user_id: str) -> str | None:
        value = await self._redis.get(SIGNATURE_KEY_PREFIX + user_id)
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    async def put(self, user_id: str, signature: str) -> None:
        await self._redis.set(
            SIGNATURE_KEY_PREFIX + user_id, signature, ex=self._ttl_seconds
        )

    async def clear(self, user_id: str) -> None:
        await self._redis.delete(SIGNATURE_KEY_PREFIX + user_id)


def build_signature_store(
    *,
    ttl_seconds: int,
    redis_url: str | None = None,
    logger: logging.Logger | None = None,
) -> SignatureStore:
    if not redis_url:
        return InMemorySignatureStore(ttl_seconds=ttl_seconds)
    try:
        client = redis_from_url(redis_url, decode_responses=False)
    except ValueError as exc:
        if logger is not None:
            logger.warning(
                "signature_store_redis_unavailable reason=%s fallback=in_memory",
                exc,
            )
        return InMemorySignatureStore(ttl_seconds=ttl_seconds)
    return RedisSignatureStore(client, ttl_seconds=ttl_seconds)
