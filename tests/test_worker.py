"""Tests for the per-URL scrape worker pipeline."""

import json
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from sqlalchemy import func, select

from harvester.core.exceptions import NotFoundError, ScraperError
from harvester.models import Price, QuarantinedOffer, ScrapeRun, ScrapeTarget
from harvester.scrapers.process.run_dedupe import RunDedupeStore
from harvester.scrapers.process.validator import OfferValidator
from harvester.scrapers.process.writer import ScrapeWriter, WriteResult
from harvester.scrapers.register_adapters import register_all_adapters
from harvester.scrapers.registry import AdapterRegistry
from harvester.scrapers.types import FetchResult, FetchStatus, RetryPolicy, ScrapeUrlJob
from harvester.scrapers.worker import (
    OUTCOME_DROPPED,
    OUTCOME_FETCH_FAILED,
    OUTCOME_OOS_NO_PRICE,
    OUTCOME_QUARANTINED,
    OUTCOME_ROBOTS_BLOCKED,
    OUTCOME_WRITE_FAILED,
    OUTCOME_WRITTEN,
    ScrapeWorker,
)

PRODUCT_URL = "https://www.sgammo.com/product/federal-9mm-124gr"


def product_page(price: str = "18.99", availability: str = "https://schema.org/InStock") -> str:
    offer = {"@type": "Offer", "availability": availability}
    if price is not None:
        offer["price"] = price
    data = {
        "@context": "https://schema.org",
        "@type": "Product",
        "name": "Federal 9mm 124gr FMJ - Box of 50",
        "sku": "FED-9-124",
        "offers": offer,
    }
    return f'<html><head><script type="application/ld+json">{json.dumps(data)}</script></head></html>'


def ok_fetch(html: str) -> FetchResult:
    return FetchResult(status=FetchStatus.OK, duration_ms=5, status_code=200, html=html)


# ============================================================================
# FIXTURES
# ============================================================================

@pytest_asyncio.fixture
async def target(session_factory):
    async with session_factory() as db:
        row = ScrapeTarget(
            source_id="src-1",
            retailer_id="ret-1",
            adapter_id="sgammo",
            url=PRODUCT_URL,
            canonical_url=PRODUCT_URL,
        )
        db.add(row)
        await db.commit()
        return row


@pytest_asyncio.fixture
async def run(session_factory):
    async with session_factory() as db:
        return await ScrapeWriter(db).create_run("sgammo", "src-1", "ret-1")


@pytest.fixture
def fetcher():
    mock = AsyncMock()
    mock.fetch.return_value = ok_fetch(product_page())
    return mock


@pytest.fixture
def rate_limiter():
    return AsyncMock()


@pytest.fixture
def worker(session_factory, fetcher, rate_limiter, redis_sets):
    return ScrapeWorker(
        session_factory=session_factory,
        fetcher=fetcher,
        rate_limiter=rate_limiter,
        validator=OfferValidator(RunDedupeStore(redis=redis_sets)),
        registry=register_all_adapters(AdapterRegistry()),
        retry_policy=RetryPolicy(max_attempts=1, initial_delay_ms=0, max_delay_ms=0),
    )


def make_job(target, run, **overrides) -> ScrapeUrlJob:
    fields = dict(
        target_id=target.id,
        url=PRODUCT_URL,
        source_id="src-1",
        retailer_id="ret-1",
        adapter_id="sgammo",
        run_id=run.id,
    )
    fields.update(overrides)
    return ScrapeUrlJob(**fields)


async def load(session_factory, model, id_):
    async with session_factory() as db:
        return await db.get(model, id_)


async def count(session_factory, model) -> int:
    async with session_factory() as db:
        return (await db.execute(select(func.count()).select_from(model))).scalar_one()


# ============================================================================
# TESTS
# ============================================================================

class TestScrapeWorker:
    """Tests for ScrapeWorker.process_job."""

    async def test_valid_offer_is_written(self, worker, session_factory, target, run, rate_limiter):
        outcome = await worker.process_job(make_job(target, run))

        assert outcome.status == OUTCOME_WRITTEN
        assert outcome.success is True
        assert outcome.price_id is not None
        rate_limiter.acquire.assert_awaited_once_with("sgammo.com")

        stored_run = await load(session_factory, ScrapeRun, run.id)
        assert stored_run.urls_attempted == 1
        assert stored_run.urls_succeeded == 1
        assert stored_run.urls_failed == 0
        assert stored_run.offers_extracted == 1
        assert stored_run.offers_valid == 1

        stored_target = await load(session_factory, ScrapeTarget, target.id)
        assert stored_target.last_status == "SUCCESS"
        assert stored_target.consecutive_failures == 0

        price = await load(session_factory, Price, outcome.price_id)
        assert price.ingestion_run_id == run.id

    async def test_duplicate_in_run_is_dropped(self, worker, session_factory, target, run):
        first = await worker.process_job(make_job(target, run))
        second = await worker.process_job(make_job(target, run))

        assert first.status == OUTCOME_WRITTEN
        assert second.status == OUTCOME_DROPPED
        assert second.reason == "DUPLICATE_WITHIN_RUN"
        assert await count(session_factory, Price) == 1

        stored_run = await load(session_factory, ScrapeRun, run.id)
        assert stored_run.offers_dropped == 1
        assert stored_run.urls_succeeded == 2
        assert stored_run.urls_failed == 0

    async def test_out_of_stock_without_price(self, worker, fetcher, session_factory, target, run):
        fetcher.fetch.return_value = ok_fetch(
            product_page(price=None, availability="https://schema.org/OutOfStock")
        )

        outcome = await worker.process_job(make_job(target, run))

        assert outcome.status == OUTCOME_OOS_NO_PRICE
        assert outcome.success is True

        stored_run = await load(session_factory, ScrapeRun, run.id)
        assert stored_run.urls_failed == 1
        assert stored_run.oos_no_price_count == 1

        stored_target = await load(session_factory, ScrapeTarget, target.id)
        assert stored_target.consecutive_failures == 0

    async def test_zero_price_is_quarantined(self, worker, fetcher, session_factory, target, run):
        fetcher.fetch.return_value = ok_fetch(product_page(price="0.00"))

        outcome = await worker.process_job(make_job(target, run))

        assert outcome.status == OUTCOME_QUARANTINED
        assert outcome.reason == "ZERO_PRICE_EXTRACTED"
        assert await count(session_factory, QuarantinedOffer) == 1
        assert await count(session_factory, Price) == 0

        stored_run = await load(session_factory, ScrapeRun, run.id)
        assert stored_run.offers_quarantined == 1
        assert stored_run.zero_price_count == 1

    async def test_unknown_availability_is_dropped_and_counts_as_failure(
        self, worker, fetcher, session_factory, target, run
    ):
        fetcher.fetch.return_value = ok_fetch(product_page(availability="https://schema.org/Mystery"))

        outcome = await worker.process_job(make_job(target, run))

        assert outcome.status == OUTCOME_DROPPED
        assert outcome.reason == "UNKNOWN_AVAILABILITY"
        assert await count(session_factory, Price) == 0

        stored_run = await load(session_factory, ScrapeRun, run.id)
        assert stored_run.urls_failed == 1
        stored_target = await load(session_factory, ScrapeTarget, target.id)
        assert stored_target.consecutive_failures == 1

    async def test_fifth_consecutive_failure_marks_target_broken(
        self, worker, fetcher, session_factory, target, run
    ):
        fetcher.fetch.return_value = FetchResult(
            status=FetchStatus.ERROR, duration_ms=5, status_code=404, error="HTTP 404"
        )

        outcomes = [await worker.process_job(make_job(target, run)) for _ in range(5)]

        assert all(outcome.status == OUTCOME_FETCH_FAILED for outcome in outcomes)
        assert [outcome.target_broken for outcome in outcomes] == [False, False, False, False, True]

        stored_target = await load(session_factory, ScrapeTarget, target.id)
        assert stored_target.status == "BROKEN"
        assert stored_target.consecutive_failures == 5

        stored_run = await load(session_factory, ScrapeRun, run.id)
        assert stored_run.urls_attempted == 5
        assert stored_run.urls_failed == 5

    async def test_robots_blocked_fetch(self, worker, fetcher, target, run):
        fetcher.fetch.return_value = FetchResult(status=FetchStatus.ROBOTS_BLOCKED, duration_ms=1)

        outcome = await worker.process_job(make_job(target, run))

        assert outcome.status == OUTCOME_ROBOTS_BLOCKED
        assert outcome.reason == "robots_blocked"

    async def test_operator_path_block_skips_fetch(
        self, worker, fetcher, rate_limiter, session_factory, target, run
    ):
        async with session_factory() as db:
            row = await db.get(ScrapeTarget, target.id)
            row.robots_path_blocked = True
            await db.commit()

        outcome = await worker.process_job(make_job(target, run))

        assert outcome.status == OUTCOME_ROBOTS_BLOCKED
        fetcher.fetch.assert_not_awaited()
        rate_limiter.acquire.assert_not_awaited()

    async def test_unknown_adapter_raises(self, worker, target, run):
        with pytest.raises(ScraperError):
            await worker.process_job(make_job(target, run, adapter_id="nope"))

    async def test_missing_target_raises(self, worker, run):
        job = ScrapeUrlJob(
            target_id="00000000-0000-0000-0000-000000000009",
            url=PRODUCT_URL,
            source_id="src-1",
            retailer_id="ret-1",
            adapter_id="sgammo",
            run_id=run.id,
        )
        with pytest.raises(NotFoundError):
            await worker.process_job(job)

    async def test_linked_target_reuses_source_product(self, worker, fetcher, session_factory, target, run):
        first = await worker.process_job(make_job(target, run))

        async with session_factory() as db:
            row = await db.get(ScrapeTarget, target.id)
            row.source_product_id = first.source_product_id
            await db.commit()

        fetcher.fetch.return_value = ok_fetch(product_page(price="17.49"))
        second_run = None
        async with session_factory() as db:
            second_run = await ScrapeWriter(db).create_run("sgammo", "src-1", "ret-1")

        second = await worker.process_job(make_job(target, second_run))

        assert second.status == OUTCOME_WRITTEN
        assert second.source_product_id == first.source_product_id

    async def test_every_fetch_attempt_takes_a_rate_limit_slot(
        self, worker, fetcher, rate_limiter, target, run
    ):
        worker.retry_policy = RetryPolicy(max_attempts=3, initial_delay_ms=0, max_delay_ms=0)
        unavailable = FetchResult(status=FetchStatus.ERROR, duration_ms=5, status_code=503, error="HTTP 503")
        fetcher.fetch.side_effect = [unavailable, unavailable, ok_fetch(product_page())]

        outcome = await worker.process_job(make_job(target, run))

        assert outcome.status == OUTCOME_WRITTEN
        assert fetcher.fetch.await_count == 3
        assert rate_limiter.acquire.await_count == 3
        assert all(call.args == ("sgammo.com",) for call in rate_limiter.acquire.await_args_list)

    async def test_failed_write_can_be_retried_in_same_run(self, worker, session_factory, target, run):
        failed_write = AsyncMock(return_value=WriteResult(success=False, error="transient db error"))
        with patch.object(ScrapeWriter, "write_scrape_offer", failed_write):
            first = await worker.process_job(make_job(target, run))

        assert first.status == OUTCOME_WRITE_FAILED
        assert first.reason == "transient db error"
        assert await count(session_factory, Price) == 0

        second = await worker.process_job(make_job(target, run))

        assert second.status == OUTCOME_WRITTEN
        assert await count(session_factory, Price) == 1

        stored_run = await load(session_factory, ScrapeRun, run.id)
        assert stored_run.urls_failed == 1
        assert stored_run.urls_succeeded == 1
        assert stored_run.offers_dropped == 0

    async def test_failed_quarantine_write_is_not_counted_as_quarantined(
        self, worker, fetcher, session_factory, target, run
    ):
        fetcher.fetch.return_value = ok_fetch(product_page(price="0.00"))
        failed_write = AsyncMock(return_value=WriteResult(success=False, error="transient db error"))

        with patch.object(ScrapeWriter, "write_quarantined_offer", failed_write):
            outcome = await worker.process_job(make_job(target, run))

        assert outcome.status == OUTCOME_WRITE_FAILED
        assert outcome.reason == "transient db error"
        assert await count(session_factory, QuarantinedOffer) == 0

        stored_run = await load(session_factory, ScrapeRun, run.id)
        assert stored_run.offers_quarantined == 0
        assert stored_run.zero_price_count == 1
        assert stored_run.urls_failed == 1
