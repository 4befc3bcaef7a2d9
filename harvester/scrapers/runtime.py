"""Wiring of the long-lived scrape components.

The external queue consumer owns one HarvesterRuntime per process: it bounds
its queue by runtime.queue_config, hands each ScrapeUrlJob to runtime.worker
and each completed run id to runtime.finalizer, then closes the runtime on
shutdown.
"""

from dataclasses import dataclass
from typing import Optional

import structlog
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import async_sessionmaker

from harvester.config import settings
from harvester.db.redis import create_redis_client
from harvester.db.session import async_session_factory
from harvester.scrapers.fetch.http_fetcher import HttpFetcher
from harvester.scrapers.fetch.rate_limiter import DomainRateLimiter
from harvester.scrapers.fetch.robots import RobotsPolicy
from harvester.scrapers.process.run_dedupe import RunDedupeStore
from harvester.scrapers.process.validator import OfferValidator
from harvester.scrapers.register_adapters import register_all_adapters
from harvester.scrapers.registry import AdapterRegistry
from harvester.scrapers.run_finalizer import RunFinalizer
from harvester.scrapers.types import DEFAULT_QUEUE_CONFIG, QueueConfig
from harvester.scrapers.worker import ScrapeWorker

logger = structlog.get_logger(__name__)


@dataclass
class HarvesterRuntime:
    worker: ScrapeWorker
    finalizer: RunFinalizer
    fetcher: HttpFetcher
    robots: RobotsPolicy
    redis: Redis
    queue_config: QueueConfig = DEFAULT_QUEUE_CONFIG
    owns_redis: bool = False

    async def close(self) -> None:
        await self.fetcher.close()
        await self.robots.close()
        if self.owns_redis:
            await self.redis.aclose()
        logger.info("harvester_runtime_closed")


def queue_config_from_settings() -> QueueConfig:
    return QueueConfig(
        max_pending_per_adapter=settings.QUEUE_MAX_PENDING_PER_ADAPTER,
        max_pending_total=settings.QUEUE_MAX_PENDING_TOTAL,
        max_age_ms=settings.QUEUE_MAX_AGE_MS,
    )


def create_runtime(
    session_factory: Optional[async_sessionmaker] = None,
    redis: Optional[Redis] = None,
    registry: Optional[AdapterRegistry] = None,
) -> HarvesterRuntime:
    """Build the worker and finalizer around one shared Redis client.

    Args:
        session_factory: Async session factory, the application one if omitted
        redis: Coordination Redis client; created from settings if omitted
        registry: Adapter registry to populate, the global one if omitted

    Returns:
        Runtime whose close() releases HTTP clients and an owned Redis client
    """
    session_factory = session_factory or async_session_factory
    owns_redis = redis is None
    if owns_redis:
        redis = create_redis_client()

    registry = register_all_adapters(registry)
    robots = RobotsPolicy()
    fetcher = HttpFetcher(robots_policy=robots)
    dedupe_store = RunDedupeStore(redis=redis)

    worker = ScrapeWorker(
        session_factory=session_factory,
        fetcher=fetcher,
        rate_limiter=DomainRateLimiter(redis=redis),
        validator=OfferValidator(dedupe_store),
        registry=registry,
    )
    finalizer = RunFinalizer(session_factory, redis=redis, dedupe_store=dedupe_store)

    logger.info("harvester_runtime_created", adapters=[adapter.id for adapter in registry.list()])
    return HarvesterRuntime(
        worker=worker,
        finalizer=finalizer,
        fetcher=fetcher,
        robots=robots,
        redis=redis,
        queue_config=queue_config_from_settings(),
        owns_redis=owns_redis,
    )
