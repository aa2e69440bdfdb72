"""Redis connection pool for the progress and balance caches."""

import logging

import redis.asyncio as redis

logger = logging.getLogger(__name__)

_pool: redis.Redis | None = None


async def init_redis(url: str, max_connections: int = 50) -> None:
    """Initialize the Redis connection pool (connections are opened lazily)."""
    global _pool  # noqa: PLW0603
    _pool = redis.from_url(  # type: ignore[no-untyped-call]
        url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=max_connections,
    )
    logger.info("Redis pool configured (max_connections=%d)", max_connections)


async def close_redis() -> None:
    """Close the Redis connection pool."""
    global _pool  # noqa: PLW0603
    if _pool:
        await _pool.aclose()
        _pool = None


def get_optional_redis() -> redis.Redis | None:
    """Get the Redis client or ``None``; caching degrades to a no-op without it."""
    return _pool
