"""Redis client used to publish membership events."""

from __future__ import annotations

import redis.asyncio as redis
import structlog
from redis.exceptions import RedisError

from app.core.config import get_settings

log = structlog.get_logger()

_client: redis.Redis | None = None


async def get_redis() -> redis.Redis:
    """Get or create the shared Redis client."""
    global _client
    if _client is None:
        _client = redis.from_url(get_settings().redis_url, decode_responses=True)
    return _client


async def ping_redis() -> bool:
    try:
        return bool(await (await get_redis()).ping())
    except (RedisError, OSError) as exc:
        log.warning("redis.unavailable", error=str(exc))
        return False


async def close_redis() -> None:
    """Close the Redis client and its connection pool."""
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None
