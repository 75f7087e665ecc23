"""Shared FastAPI dependencies."""

from collections.abc import AsyncGenerator

from kcr.redis_client import get_redis_or_none as _get_redis_or_none


async def get_redis_dep() -> AsyncGenerator[object | None, None]:
    """Yield the Redis client (or None when Redis is not configured)."""
    yield _get_redis_or_none()
