"""Shared Redis client factory for cross-worker coordination state."""

from typing import Optional

from redis.asyncio import Redis, from_url

from harvester.config import settings


def create_redis_client(redis_url: Optional[str] = None) -> Redis:
    """Create an async Redis client.

    Args:
        redis_url: Connection URL, defaults to settings.REDIS_URL

    Returns:
        Redis client with string responses and short socket timeouts
    """
    return from_url(
        redis_url or settings.REDIS_URL,
        encoding="utf-8",
        decode_responses=True,
        socket_connect_timeout=5,
        socket_timeout=5,
    )
