"""Redis-backed sliding window rate limiter for per-domain rate limiting.

Limits apply to the registrable domain (eTLD+1), so www.sgammo.com and
cdn.sgammo.com draw from one budget. State lives in Redis so every worker
process shares the same window.
"""

import asyncio
import math
import time
import uuid
from typing import Dict, Optional

import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError

from harvester.config import settings
from harvester.core.exceptions import InvalidUrlError
from harvester.db.redis import create_redis_client
from harvester.scrapers.types import DEFAULT_RATE_LIMIT, RateLimitConfig
from harvester.scrapers.utils.url import get_registrable_domain

logger = structlog.get_logger(__name__)

REDIS_KEY_PREFIX = "scraper:ratelimit:"
KEY_TTL_SECONDS = 3600

# Returns {1, 0} when a slot was taken, {0, retry_after_ms} otherwise.
SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window_ms = tonumber(ARGV[2])
local max_concurrent = tonumber(ARGV[3])
local ttl = tonumber(ARGV[4])
local member = ARGV[5]

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window_ms)

local count = redis.call('ZCARD', key)
if count < max_concurrent then
  redis.call('ZADD', key, now, member)
  redis.call('EXPIRE', key, ttl)
  return {1, 0}
end

local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
if #oldest >= 2 then
  return {0, tonumber(oldest[2]) + window_ms - now}
end
return {0, window_ms}
"""


def load_domain_overrides() -> Dict[str, RateLimitConfig]:
    """Build per-domain configs from settings.RATE_LIMIT_OVERRIDES."""
    return {
        domain: RateLimitConfig(**raw)
        for domain, raw in settings.get_rate_limit_overrides().items()
    }


def window_ms_for(config: RateLimitConfig) -> int:
    """Sliding window length: 0.5 req/s gives a 2000 ms window."""
    return math.ceil(1000 / config.requests_per_second)


class DomainRateLimiter:
    """Per-domain rate limiter coordinated through a Redis sorted set.

    Each acquire() adds a timestamped member to scraper:ratelimit:{domain};
    at most max_concurrent members may sit inside the window at once.
    """

    def __init__(
        self,
        redis: Optional[Redis] = None,
        domain_overrides: Optional[Dict[str, RateLimitConfig]] = None,
    ):
        """Initialize rate limiter.

        Args:
            redis: Redis client; created from settings if omitted
            domain_overrides: Per-domain configs; loaded from settings if omitted
        """
        self._redis = redis
        self._owns_redis = redis is None
        self._overrides: Dict[str, RateLimitConfig] = (
            dict(domain_overrides) if domain_overrides is not None else load_domain_overrides()
        )
        self.logger = logger.bind(component="rate_limiter")

    @property
    def redis(self) -> Redis:
        if self._redis is None:
            self._redis = create_redis_client()
        return self._redis

    @staticmethod
    def _resolve_domain(url_or_domain: str) -> str:
        if "://" in url_or_domain:
            try:
                return get_registrable_domain(url_or_domain)
            except InvalidUrlError:
                return url_or_domain.lower()
        return url_or_domain.lower()

    def get_config(self, domain: str) -> RateLimitConfig:
        """Get the rate limit config for a registrable domain."""
        return self._overrides.get(domain.lower(), DEFAULT_RATE_LIMIT)

    def set_config(self, domain: str, config: RateLimitConfig) -> None:
        """Override the rate limit for a domain (replaces any previous override)."""
        self._overrides[domain.lower()] = config

    async def acquire(self, url_or_domain: str) -> None:
        """Wait until the domain's shared budget allows one more request.

        Args:
            url_or_domain: Full URL or registrable domain

        If Redis is unreachable, waits the domain's min_delay_ms locally and
        returns rather than failing the job.
        """
        domain = self._resolve_domain(url_or_domain)
        config = self.get_config(domain)
        key = f"{REDIS_KEY_PREFIX}{domain}"
        min_delay_ms = config.min_delay_ms

        while True:
            try:
                acquired, retry_after_ms = await self._try_acquire(key, config)
            except RedisError as e:
                self.logger.warning(
                    "rate_limit_redis_unavailable",
                    domain=domain,
                    fallback_delay_ms=min_delay_ms,
                    error=str(e),
                )
                await asyncio.sleep(min_delay_ms / 1000)
                return

            if acquired:
                return

            wait_ms = max(retry_after_ms or min_delay_ms, min_delay_ms)
            self.logger.debug("rate_limit_wait", domain=domain, wait_ms=wait_ms)
            await asyncio.sleep(wait_ms / 1000)

    async def _try_acquire(self, key: str, config: RateLimitConfig):
        now_ms = int(time.time() * 1000)
        result = await self.redis.eval(
            SLIDING_WINDOW_SCRIPT,
            1,
            key,
            str(now_ms),
            str(window_ms_for(config)),
            str(config.max_concurrent),
            str(KEY_TTL_SECONDS),
            f"{now_ms}-{uuid.uuid4().hex[:8]}",
        )
        acquired = int(result[0]) == 1
        retry_after_ms = int(result[1]) if int(result[1]) > 0 else None
        return acquired, retry_after_ms

    async def get_state(self, domain: str) -> dict:
        """Current window occupancy for a domain (debugging/monitoring).

        Returns:
            {"active_requests": int, "oldest_timestamp": int | None}
        """
        domain = domain.lower()
        key = f"{REDIS_KEY_PREFIX}{domain}"
        now_ms = int(time.time() * 1000)
        await self.redis.zremrangebyscore(key, "-inf", now_ms - window_ms_for(self.get_config(domain)))
        count = await self.redis.zcard(key)
        oldest = await self.redis.zrange(key, 0, 0, withscores=True)
        return {
            "active_requests": int(count),
            "oldest_timestamp": int(oldest[0][1]) if oldest else None,
        }

    async def clear(self, domain: str) -> None:
        """Drop all rate limit state for a domain."""
        await self.redis.delete(f"{REDIS_KEY_PREFIX}{domain.lower()}")

    async def close(self) -> None:
        if self._redis is not None and self._owns_redis:
            await self._redis.aclose()
            self._redis = None
