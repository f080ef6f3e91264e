"""
config/redis_client.py
Async Redis connection plus the three things the API keeps there:
a small JSON cache, the sign-out deny-list, and a fixed-window rate limiter.
The application change channel lives in services/realtime/bridge.py.
"""

import json
from typing import Any, Optional

import redis.asyncio as aioredis

from config.settings import settings

REVOKED_SESSION_KEY = "jwt_revoked:{jti}"

redis_client: Optional[aioredis.Redis] = None


async def init_redis() -> None:
    global redis_client
    redis_client = aioredis.from_url(
        settings.REDIS_URL,
        encoding="utf-8",
        decode_responses=True,
        max_connections=settings.REDIS_MAX_CONNECTIONS,
    )
    await redis_client.ping()


async def close_redis() -> None:
    global redis_client
    if redis_client:
        await redis_client.aclose()
        redis_client = None


def get_redis() -> aioredis.Redis:
    """FastAPI dependency returning the shared client."""
    if not redis_client:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return redis_client


# ── JSON Cache ────────────────────────────────────────────────

class RedisCache:
    """JSON values under plain keys with a TTL. Used for read-mostly listings."""

    def __init__(self, client: aioredis.Redis, ttl: int = settings.REDIS_CACHE_TTL):
        self.client = client
        self.ttl = ttl

    async def get(self, key: str) -> Optional[Any]:
        raw = await self.client.get(key)
        return json.loads(raw) if raw else None

    async def set(self, key: str, value: Any) -> None:
        await self.client.setex(key, self.ttl, json.dumps(value, default=str))

    async def delete(self, key: str) -> None:
        await self.client.delete(key)


# ── Sign-out Deny List ────────────────────────────────────────

class SessionDenyList:
    """
    Revoked session ids (JWT `jti`). An entry lives exactly as long as the
    token it blocks would have, so the set never grows past live sessions.
    """

    def __init__(self, client: aioredis.Redis):
        self.client = client

    async def revoke(self, jti: str, ttl_seconds: int) -> None:
        await self.client.setex(REVOKED_SESSION_KEY.format(jti=jti), max(ttl_seconds, 1), "1")

    async def is_revoked(self, jti: str) -> bool:
        return await self.client.exists(REVOKED_SESSION_KEY.format(jti=jti)) == 1


# ── Rate Limiting ─────────────────────────────────────────────

class RateLimiter:
    """Fixed window counter. `allow()` turns False once a window sees more than `limit` hits."""

    def __init__(self, client: aioredis.Redis, limit: int, window_seconds: int = 60):
        self.client = client
        self.limit = limit
        self.window_seconds = window_seconds

    async def allow(self, key: str) -> bool:
        count = await self.client.incr(key)
        if count == 1:
            await self.client.expire(key, self.window_seconds)
        return count <= self.limit
