"""
config/redis_client.py
Async Redis client for caching, JWT deny-list, rate limiting,
webhook idempotency, and the messaging presence/fan-out backplane.
"""

import json
from typing import Any, Optional
import redis.asyncio as aioredis

from config.settings import settings


# ── Global client (initialized on startup) ───────────────────
redis_client: Optional[aioredis.Redis] = None


async def init_redis() -> None:
    """Initialize the Redis connection pool."""
    global redis_client
    redis_client = aioredis.from_url(
        settings.REDIS_URL,
        encoding="utf-8",
        decode_responses=True,
        max_connections=50,
    )
    await redis_client.ping()


async def close_redis() -> None:
    """Close Redis connection pool."""
    global redis_client
    if redis_client:
        await redis_client.aclose()
        redis_client = None


def get_redis() -> aioredis.Redis:
    """FastAPI dependency to get Redis client."""
    if not redis_client:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return redis_client


# ── Cache Helpers ─────────────────────────────────────────────
class RedisCache:
    """Helper class for common Redis caching patterns."""

    def __init__(self, client: aioredis.Redis):
        self.client = client

    async def get(self, key: str) -> Optional[Any]:
        value = await self.client.get(key)
        if value:
            return json.loads(value)
        return None

    async def set(self, key: str, value: Any, ttl: int = settings.REDIS_CACHE_TTL) -> None:
        await self.client.setex(key, ttl, json.dumps(value, default=str))

    async def delete(self, key: str) -> None:
        await self.client.delete(key)

    async def delete_pattern(self, pattern: str) -> int:
        """Delete all keys matching pattern. Use carefully in production."""
        keys = [key async for key in self.client.scan_iter(match=pattern)]
        if keys:
            return await self.client.delete(*keys)
        return 0

    # ── JWT Deny List ─────────────────────────────────────────
    async def revoke_token(self, jti: str, ttl_seconds: int) -> None:
        """Add JWT ID to deny list until it expires."""
        await self.client.setex(f"jwt_revoked:{jti}", ttl_seconds, "1")

    async def is_token_revoked(self, jti: str) -> bool:
        return await self.client.exists(f"jwt_revoked:{jti}") == 1

    # ── Webhook Idempotency ───────────────────────────────────
    async def mark_event_processed(self, provider: str, event_id: str) -> bool:
        """
        Record a webhook event id with SET NX.
        Returns False if the event was already processed.
        """
        result = await self.client.set(
            f"{provider}_event:{event_id}",
            "processed",
            ex=settings.WEBHOOK_EVENT_TTL,
            nx=True,
        )
        return bool(result)

    async def unmark_event(self, provider: str, event_id: str) -> None:
        await self.delete(f"{provider}_event:{event_id}")

    # ── Rate Limiting ─────────────────────────────────────────
    async def check_rate_limit(self, key: str, limit: int, window_seconds: int = 60) -> bool:
        """
        Fixed window rate limiter.
        Returns True if request is allowed, False if rate limited.
        """
        current_count = await self.client.incr(key)
        if current_count == 1:
            await self.client.expire(key, window_seconds)
        return current_count <= limit
