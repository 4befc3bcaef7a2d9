"""Pytest configuration and shared fixtures."""

from datetime import datetime, timezone
from typing import Set

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from harvester.models import Base
from harvester.scrapers.types import (
    Availability,
    CurrencyCode,
    ScrapeAdapterContext,
    ScrapedOffer,
)

FIXED_NOW = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


# ============================================================================
# DATABASE
# ============================================================================

@pytest_asyncio.fixture
async def session_factory():
    """Session factory bound to an in-memory SQLite database."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest_asyncio.fixture
async def test_db(session_factory):
    """Single session on the in-memory database."""
    async with session_factory() as session:
        yield session


# ============================================================================
# REDIS
# ============================================================================

class InMemoryRedisSets:
    """Just enough of the async Redis set API for dedupe tests."""

    def __init__(self):
        self.sets = {}
        self.expiries = {}

    async def sadd(self, key: str, member: str) -> int:
        members: Set[str] = self.sets.setdefault(key, set())
        if member in members:
            return 0
        members.add(member)
        return 1

    async def expire(self, key: str, seconds: int) -> bool:
        self.expiries[key] = seconds
        return True

    async def srem(self, key: str, member: str) -> int:
        members = self.sets.get(key, set())
        if member not in members:
            return 0
        members.discard(member)
        return 1

    async def scard(self, key: str) -> int:
        return len(self.sets.get(key, ()))

    async def delete(self, key: str) -> int:
        self.expiries.pop(key, None)
        return 1 if self.sets.pop(key, None) is not None else 0


@pytest.fixture
def redis_sets():
    return InMemoryRedisSets()


# ============================================================================
# OFFERS
# ============================================================================

@pytest.fixture
def ctx():
    """Adapter context with a fixed observation time."""
    return ScrapeAdapterContext(
        source_id="src-1",
        retailer_id="ret-1",
        run_id="run-1",
        target_id="target-1",
        now=FIXED_NOW,
    )


@pytest.fixture
def make_offer():
    """Build a valid offer, overriding any field by keyword."""

    def _make_offer(**overrides) -> ScrapedOffer:
        fields = dict(
            source_id="src-1",
            retailer_id="ret-1",
            url="https://www.example.com/product/9mm-124gr",
            title="Federal 9mm 124gr FMJ - Box of 50",
            price_cents=1899,
            currency=CurrencyCode.USD,
            availability=Availability.IN_STOCK,
            observed_at=FIXED_NOW,
            identity_key="SKU:FED-9MM-124",
            adapter_version="1.0.0",
        )
        fields.update(overrides)
        return ScrapedOffer(**fields)

    return _make_offer
