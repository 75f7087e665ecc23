"""Redis connection pool and best-effort publishing."""

from __future__ import annotations

import json
import logging
from typing import Any

import redis.asyncio as redis

logger = logging.getLogger(__name__)

_pool: redis.Redis | None = None


async def init_redis(url: str) -> None:
    """Initialize the Redis connection pool."""
    global _pool  # noqa: PLW0603
    _pool = redis.from_url(  # type: ignore[no-untyped-call]
        url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=50,
    )


async def close_redis() -> None:
    """Close the Redis connection pool."""
    global _pool  # noqa: PLW0603
    if _pool:
        await _pool.aclose()
        _pool = None


def get_redis() -> redis.Redis:
    """Get the Redis client."""
    if _pool is None:
        msg = "Redis not initialized. Call init_redis() first."
        raise RuntimeError(msg)
    return _pool


def get_redis_or_none() -> redis.Redis | None:
    """Get the Redis client, or None when running without Redis."""
    return _pool


async def publish(client: Any, channel: str, payload: dict[str, Any]) -> bool:  # noqa: ANN401
    """Publish a JSON payload on a pub/sub channel.

    Broadcasts are advisory: a missing client or a Redis failure is logged
    and reported as False, never raised.
    """
    if client is None:
        return False
    try:
        await client.publish(channel, json.dumps(payload, default=str))
    except Exception:
        logger.warning("Failed to publish on %s", channel, exc_info=True)
        return False
    return True
