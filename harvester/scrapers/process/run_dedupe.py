"""Run-level deduplication of identity keys in Redis.

Each run gets a set at scrape:dedupe:{run_id}. SADD is atomic, so the
first worker to add a key wins no matter which process sees the duplicate.
"""

from typing import Optional

import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError

from harvester.config import settings
from harvester.db.redis import create_redis_client

logger = structlog.get_logger(__name__)

DEDUPE_KEY_PREFIX = "scrape:dedupe:"


def dedupe_key(run_id: str) -> str:
    return f"{DEDUPE_KEY_PREFIX}{run_id}"


class RunDedupeStore:
    """Shared per-run set of seen identity keys.

    Redis failures fail open: a missed duplicate is acceptable, blocking
    legitimate data is not.
    """

    def __init__(self, redis: Optional[Redis] = None, ttl_seconds: Optional[int] = None):
        """Initialize dedupe store.

        Args:
            redis: Redis client; created from settings if omitted
            ttl_seconds: Set expiry, refreshed only when a new key is added
        """
        self._redis = redis
        self._owns_redis = redis is None
        self.ttl_seconds = ttl_seconds or settings.DEDUPE_SET_TTL_SECONDS
        self.logger = logger.bind(component="run_dedupe")

    @property
    def redis(self) -> Redis:
        if self._redis is None:
            self._redis = create_redis_client()
        return self._redis

    async def check_and_add_identity_key(self, run_id: str, identity_key: str) -> bool:
        """Add an identity key to the run's set.

        Args:
            run_id: Scrape run id
            identity_key: Offer identity key

        Returns:
            True if the key was already present (duplicate), False otherwise
            or when Redis is unavailable
        """
        key = dedupe_key(run_id)
        try:
            added = await self.redis.sadd(key, identity_key)
            if added == 1:
                await self.redis.expire(key, self.ttl_seconds)
            return added == 0
        except RedisError as e:
            self.logger.warning(
                "dedupe_check_failed",
                run_id=run_id,
                identity_key=identity_key[:50],
                error=str(e),
            )
            return False

    async def release_identity_key(self, run_id: str, identity_key: str) -> None:
        """Remove a reserved key after its offer failed to persist."""
        try:
            await self.redis.srem(dedupe_key(run_id), identity_key)
        except RedisError as e:
            self.logger.warning(
                "dedupe_release_failed",
                run_id=run_id,
                identity_key=identity_key[:50],
                error=str(e),
            )

    async def cleanup_run_dedupe_set(self, run_id: str) -> None:
        """Delete a run's set once the run is finalized."""
        try:
            await self.redis.delete(dedupe_key(run_id))
        except RedisError as e:
            self.logger.warning("dedupe_cleanup_failed", run_id=run_id, error=str(e))

    async def get_run_dedupe_count(self, run_id: str) -> int:
        """Number of identity keys seen so far in a run (0 on Redis errors)."""
        try:
            return int(await self.redis.scard(dedupe_key(run_id)))
        except RedisError as e:
            self.logger.debug("dedupe_count_failed", run_id=run_id, error=str(e))
            return 0

    async def close(self) -> None:
        if self._redis is not None and self._owns_redis:
            await self._redis.aclose()
            self._redis = None
