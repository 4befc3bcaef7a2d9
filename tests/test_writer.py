"""Tests for ScrapeWriter persistence against an in-memory SQLite database."""

from decimal import Decimal

import pytest
from sqlalchemy import func, select
from structlog.testing import capture_logs

from harvester.core.exceptions import NotFoundError
from harvester.models import (
    Price,
    QuarantinedOffer,
    ScrapeRun,
    ScrapeTarget,
    SourceProduct,
    SourceProductIdentifier,
)
from harvester.scrapers.process.writer import INGESTION_RUN_TYPE, ScrapeWriter
from harvester.scrapers.types import (
    Availability,
    QuarantineReason,
    ScrapeJobTrigger,
    ScrapeRunMetrics,
    ScrapeRunStatus,
)


async def count(db, model) -> int:
    return (await db.execute(select(func.count()).select_from(model))).scalar_one()


@pytest.fixture
def sample_target():
    return ScrapeTarget(
        source_id="src-1",
        retailer_id="ret-1",
        adapter_id="sgammo",
        url="https://www.sgammo.com/product/federal-9mm",
        canonical_url="https://www.sgammo.com/product/federal-9mm",
    )


# ============================================================================
# TESTS: OFFER WRITES
# ============================================================================

class TestWriteScrapeOffer:
    """Tests for ScrapeWriter.write_scrape_offer."""

    async def test_creates_product_and_price(self, test_db, make_offer):
        writer = ScrapeWriter(test_db)

        result = await writer.write_scrape_offer(make_offer(), "run-1")

        assert result.success is True
        product = await test_db.get(SourceProduct, result.source_product_id)
        assert product.identity_key == "SKU:FED-9MM-124"
        assert product.title == "Federal 9mm 124gr FMJ - Box of 50"

        price = await test_db.get(Price, result.price_id)
        assert price.price == Decimal("18.99")
        assert price.currency == "USD"
        assert price.in_stock is True
        assert price.ingestion_run_type == INGESTION_RUN_TYPE
        assert price.ingestion_run_id == "run-1"
        assert price.source_product_id == product.id

    async def test_upserts_by_identity_key(self, test_db, make_offer):
        writer = ScrapeWriter(test_db)

        first = await writer.write_scrape_offer(make_offer(), "run-1")
        second = await writer.write_scrape_offer(
            make_offer(title="Federal 9mm 124gr FMJ (new label)", price_cents=1799), "run-2"
        )

        assert second.source_product_id == first.source_product_id
        assert second.price_id != first.price_id
        assert await count(test_db, SourceProduct) == 1
        assert await count(test_db, Price) == 2

        product = await test_db.get(SourceProduct, first.source_product_id)
        assert product.title == "Federal 9mm 124gr FMJ (new label)"

    async def test_concurrent_insert_of_same_product_is_reused(self, test_db, make_offer, monkeypatch):
        writer = ScrapeWriter(test_db)
        existing = await writer.write_scrape_offer(make_offer(), "run-1")

        find_source_product = writer._find_source_product
        lookups = []

        async def miss_once(offer):
            lookups.append(offer.identity_key)
            if len(lookups) == 1:
                return None
            return await find_source_product(offer)

        monkeypatch.setattr(writer, "_find_source_product", miss_once)

        with capture_logs() as logs:
            result = await writer.write_scrape_offer(make_offer(price_cents=1799), "run-2")

        assert result.success is True
        assert result.source_product_id == existing.source_product_id
        assert len(lookups) == 2
        assert "offer_write_conflict_retrying" in [entry["event"] for entry in logs]
        assert await count(test_db, SourceProduct) == 1
        assert await count(test_db, Price) == 2

    async def test_out_of_stock_and_backorder_are_not_in_stock(self, test_db, make_offer):
        writer = ScrapeWriter(test_db)

        oos = await writer.write_scrape_offer(make_offer(availability=Availability.OUT_OF_STOCK), "run-1")
        backorder = await writer.write_scrape_offer(make_offer(availability=Availability.BACKORDER), "run-1")

        assert (await test_db.get(Price, oos.price_id)).in_stock is False
        assert (await test_db.get(Price, backorder.price_id)).in_stock is False

    async def test_unknown_availability_is_refused(self, test_db, make_offer):
        writer = ScrapeWriter(test_db)

        result = await writer.write_scrape_offer(make_offer(availability=Availability.UNKNOWN), "run-1")

        assert result.success is False
        assert "UNKNOWN" in result.error
        assert await count(test_db, SourceProduct) == 0
        assert await count(test_db, Price) == 0

    async def test_linked_product_wins_over_identity_key(self, test_db, make_offer):
        existing = SourceProduct(
            source_id="src-1",
            identity_key="UPC:111",
            title="Federal 9mm 124gr",
            url="https://www.example.com/product/9mm-124gr",
        )
        test_db.add(existing)
        await test_db.commit()
        writer = ScrapeWriter(test_db)

        with capture_logs() as logs:
            result = await writer.write_scrape_offer(
                make_offer(identity_key="UPC:222"),
                "run-1",
                target_id="target-1",
                target_source_product_id=existing.id,
            )

        assert result.success is True
        assert result.source_product_id == existing.id
        await test_db.refresh(existing)
        assert existing.identity_key == "UPC:111"
        assert await count(test_db, SourceProduct) == 1

        warnings = [entry for entry in logs if entry["event"] == "identity_key_mismatch_on_linked_source_product"]
        assert len(warnings) == 1
        assert warnings[0]["log_level"] == "warning"
        assert warnings[0]["existing_identity_key"] == "UPC:111"
        assert warnings[0]["offer_identity_key"] == "UPC:222"

    async def test_missing_linked_product_falls_back_to_upsert(self, test_db, make_offer):
        writer = ScrapeWriter(test_db)
        missing_id = "00000000-0000-0000-0000-000000000001"

        result = await writer.write_scrape_offer(make_offer(), "run-1", target_source_product_id=missing_id)

        assert result.success is True
        assert result.source_product_id != missing_id
        assert await count(test_db, SourceProduct) == 1


class TestIdentifiers:
    """Tests for UPC / SKU identifier rows."""

    async def identifiers(self, db, source_product_id):
        result = await db.execute(
            select(SourceProductIdentifier)
            .where(SourceProductIdentifier.source_product_id == source_product_id)
        )
        return {row.id_type: row for row in result.scalars().all()}

    async def test_upc_is_canonical_over_sku(self, test_db, make_offer):
        writer = ScrapeWriter(test_db)

        result = await writer.write_scrape_offer(
            make_offer(upc="0-29465-06453-5", retailer_sku="fed-9mm "), "run-1"
        )

        rows = await self.identifiers(test_db, result.source_product_id)
        assert rows["UPC"].namespace == ""
        assert rows["UPC"].normalized_value == "029465064535"
        assert rows["UPC"].is_canonical is True
        assert rows["SKU"].namespace == "ret-1"
        assert rows["SKU"].normalized_value == "FED-9MM"
        assert rows["SKU"].is_canonical is False

    async def test_sku_alone_is_canonical(self, test_db, make_offer):
        writer = ScrapeWriter(test_db)

        result = await writer.write_scrape_offer(make_offer(retailer_sku="FED-9"), "run-1")

        rows = await self.identifiers(test_db, result.source_product_id)
        assert set(rows) == {"SKU"}
        assert rows["SKU"].is_canonical is True

    async def test_identifiers_are_not_duplicated(self, test_db, make_offer):
        writer = ScrapeWriter(test_db)
        offer = make_offer(upc="029465064535", retailer_sku="FED-9")

        await writer.write_scrape_offer(offer, "run-1")
        await writer.write_scrape_offer(offer, "run-2")

        assert await count(test_db, SourceProductIdentifier) == 2


class TestQuarantine:
    async def test_quarantine_goes_to_review_table(self, test_db, make_offer):
        writer = ScrapeWriter(test_db)

        result = await writer.write_quarantined_offer(
            make_offer(price_cents=0),
            QuarantineReason.ZERO_PRICE_EXTRACTED,
            "run-1",
            target_id="target-1",
        )

        assert result.success is True
        row = (await test_db.execute(select(QuarantinedOffer))).scalar_one()
        assert row.reason == "ZERO_PRICE_EXTRACTED"
        assert row.reason_message == "Extracted price was zero"
        assert row.status == "PENDING"
        assert row.target_id == "target-1"
        assert row.payload["price_cents"] == 0
        assert row.payload["availability"] == "IN_STOCK"
        assert await count(test_db, Price) == 0


# ============================================================================
# TESTS: TARGETS AND RUNS
# ============================================================================

class TestTargetTracking:
    """Tests for target tracking and the BROKEN transition."""

    async def test_failures_accumulate_and_success_resets(self, test_db, sample_target):
        test_db.add(sample_target)
        await test_db.commit()
        writer = ScrapeWriter(test_db)

        for expected in (1, 2, 3):
            assert await writer.update_target_tracking(sample_target.id, success=False) == expected
        assert sample_target.last_status == "FAILED"

        assert await writer.update_target_tracking(sample_target.id, success=True) == 0
        assert sample_target.last_status == "SUCCESS"
        assert sample_target.last_scraped_at is not None

    async def test_mark_broken(self, test_db, sample_target):
        test_db.add(sample_target)
        await test_db.commit()
        writer = ScrapeWriter(test_db)

        await writer.mark_target_broken(sample_target.id)

        await test_db.refresh(sample_target)
        assert sample_target.status == "BROKEN"

    async def test_missing_target(self, test_db):
        writer = ScrapeWriter(test_db)
        with pytest.raises(NotFoundError):
            await writer.update_target_tracking("00000000-0000-0000-0000-000000000002", success=True)


class TestRuns:
    """Tests for run creation and finalization."""

    async def test_create_run(self, test_db):
        run = await ScrapeWriter(test_db).create_run("sgammo", "src-1", "ret-1", ScrapeJobTrigger.MANUAL)

        assert run.id is not None
        assert run.status == "RUNNING"
        assert run.trigger == "MANUAL"
        assert run.urls_attempted == 0

    async def test_finalize_run_stamps_metrics_and_rates(self, test_db):
        writer = ScrapeWriter(test_db)
        run = await writer.create_run("sgammo", "src-1", "ret-1")
        metrics = ScrapeRunMetrics(
            urls_attempted=25,
            urls_succeeded=12,
            urls_failed=13,
            offers_extracted=12,
            offers_valid=10,
            offers_dropped=2,
        )

        finalized = await writer.finalize_run(run.id, metrics, ScrapeRunStatus.FAILED)

        assert finalized.status == "FAILED"
        assert finalized.completed_at is not None
        assert finalized.duration_ms is not None and finalized.duration_ms >= 0
        assert finalized.urls_failed == 13
        assert finalized.failure_rate == pytest.approx(0.52)
        assert finalized.yield_rate == pytest.approx(0.4)
        assert finalized.drop_rate == pytest.approx(2 / 12)

    async def test_finalize_empty_run_leaves_rates_unset(self, test_db):
        writer = ScrapeWriter(test_db)
        run = await writer.create_run("sgammo", "src-1", "ret-1")

        finalized = await writer.finalize_run(run.id, ScrapeRunMetrics(), ScrapeRunStatus.SUCCESS)

        assert finalized.failure_rate is None
        assert finalized.yield_rate is None
        assert finalized.drop_rate is None

    async def test_finalize_missing_run(self, test_db):
        with pytest.raises(NotFoundError):
            await ScrapeWriter(test_db).finalize_run(
                "00000000-0000-0000-0000-000000000003", ScrapeRunMetrics(), ScrapeRunStatus.SUCCESS
            )
        assert await count(test_db, ScrapeRun) == 0
