import json
import time
from abc import ABC, abstractmethod
from typing import Optional

import redis.asyncio as aioredis
from fastapi import Request, Response
from fastapi.responses import JSONResponse


IDEMPOTENCY_TTL = 86400  # 24 hours


class IdempotencyCache(ABC):
    @abstractmethod
    async def get(self, key: str) -> str | None:
        ...

    @abstractmethod
    async def put(self, key: str, value: str, ttl_seconds: int) -> None:
        ...


class RedisIdempotencyCache(IdempotencyCache):
    def __init__(self, redis: aioredis.Redis) -> None:
        self._redis = redis

    async def get(self, key: str) -> str | None:
        return await self._redis.get(key)

    async def put(self, key: str, value: str, ttl_seconds: int) -> None:
        await self._redis.setex(key, ttl_seconds, value)


class MemoryIdempotencyCache(IdempotencyCache):
    """Single-process cache for the memory backend."""

    def __init__(self) -> None:
        self._entries: dict[str, tuple[float, str]] = {}

    async def get(self, key: str) -> str | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if expires_at <= time.monotonic():
            del self._entries[key]
            return None
        return value

    async def put(self, key: str, value: str, ttl_seconds: int) -> None:
        self._entries[key] = (time.monotonic() + ttl_seconds, value)


def _cache_key(user_id: str, key: str) -> str:
    return f"idempotency:{user_id}:{key}"


async def check_idempotency(
    request: Request,
    cache: IdempotencyCache,
    user_id: str,
) -> Optional[Response]:
    """
    Returns the stored Response if this user already used the request's
    Idempotency-Key, otherwise None (proceed normally).
    """
    key = request.headers.get("Idempotency-Key")
    if not key:
        return None

    cached = await cache.get(_cache_key(user_id, key))
    if cached:
        data = json.loads(cached)
        return JSONResponse(
            content=data["body"],
            status_code=data["status_code"],
            headers={"X-Idempotency-Replay": "true"},
        )
    return None


async def store_idempotency_result(
    cache: IdempotencyCache, user_id: str, key: str, status_code: int, body: dict
) -> None:
    """Persist the response for the given idempotency key (24h TTL)."""
    await cache.put(
        _cache_key(user_id, key),
        json.dumps({"status_code": status_code, "body": body}),
        IDEMPOTENCY_TTL,
    )
