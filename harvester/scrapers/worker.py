"""Per-URL scrape job pipeline.

Flow for one job:
1. Admin robots override on the target
2. Rate limit by registrable domain before every fetch attempt (shared across workers)
3. Fetch with retry (robots.txt checked inside the fetcher, fail-closed)
4. Adapter extract -> normalize
5. Run-level validation (dedupe)
6. Write, or quarantine
7. Target tracking and run counters

Per-URL failures never raise out of process_job; only missing adapters or
targets do, since those are caller bugs.
"""

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import structlog
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from harvester.core.exceptions import NotFoundError, ScraperError
from harvester.models.scrape_run import ScrapeRun
from harvester.models.scrape_target import ScrapeTarget
from harvester.scrapers.fetch.http_fetcher import Fetcher
from harvester.scrapers.fetch.rate_limiter import DomainRateLimiter
from harvester.scrapers.process.drift_detector import should_mark_url_broken
from harvester.scrapers.process.validator import OfferValidator, should_count_toward_drift
from harvester.scrapers.process.writer import ScrapeWriter
from harvester.scrapers.registry import AdapterRegistry, get_adapter_registry
from harvester.scrapers.types import (
    ExtractFailure,
    ExtractFailureReason,
    ExtractSuccess,
    FetchStatus,
    NormalizeDrop,
    NormalizeOk,
    NormalizeQuarantine,
    QuarantineReason,
    RetryPolicy,
    ScrapeAdapterContext,
    ScrapeUrlJob,
)
from harvester.scrapers.utils.retry import fetch_with_retry

logger = structlog.get_logger(__name__)

# Job outcome statuses
OUTCOME_WRITTEN = "written"
OUTCOME_DROPPED = "dropped"
OUTCOME_QUARANTINED = "quarantined"
OUTCOME_EXTRACT_FAILED = "extract_failed"
OUTCOME_OOS_NO_PRICE = "oos_no_price"
OUTCOME_FETCH_FAILED = "fetch_failed"
OUTCOME_WRITE_FAILED = "write_failed"
OUTCOME_ROBOTS_BLOCKED = "robots_blocked"


@dataclass(frozen=True)
class JobOutcome:
    """Summary of one processed job, for logs and callers."""

    target_id: str
    status: str
    reason: Optional[str] = None
    source_product_id: Optional[str] = None
    price_id: Optional[str] = None
    target_broken: bool = False
    duration_ms: int = 0

    @property
    def success(self) -> bool:
        return self.status in (OUTCOME_WRITTEN, OUTCOME_OOS_NO_PRICE)


class ScrapeWorker:
    """Processes ScrapeUrlJob messages delivered by the external queue."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        fetcher: Fetcher,
        rate_limiter: DomainRateLimiter,
        validator: OfferValidator,
        registry: Optional[AdapterRegistry] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        """Initialize worker.

        Args:
            session_factory: Async session factory; one session per job
            fetcher: Non-throwing fetcher (robots-aware)
            rate_limiter: Shared per-domain rate limiter
            validator: Run-aware offer validator
            registry: Adapter registry, the global one if omitted
            retry_policy: Fetch retry policy, from settings if omitted
        """
        self.session_factory = session_factory
        self.fetcher = fetcher
        self.rate_limiter = rate_limiter
        self.validator = validator
        self.registry = registry or get_adapter_registry()
        self.retry_policy = retry_policy

    async def process_job(self, job: ScrapeUrlJob) -> JobOutcome:
        """Run one URL job end to end.

        Raises:
            ScraperError: No adapter registered under job.adapter_id
            NotFoundError: The job's target does not exist
        """
        start = time.monotonic()
        job_logger = logger.bind(
            target_id=job.target_id,
            url=job.url,
            run_id=job.run_id,
            adapter_id=job.adapter_id,
        )
        job_logger.info("scrape_job_started", trigger=job.trigger.value)

        adapter = self.registry.get(job.adapter_id)
        if adapter is None:
            job_logger.error("adapter_not_found")
            raise ScraperError(job.adapter_id, "adapter not registered")

        async with self.session_factory() as db:
            target = await db.get(ScrapeTarget, job.target_id)
            if target is None:
                job_logger.error("scrape_target_not_found")
                raise NotFoundError("ScrapeTarget", job.target_id)
            target_source_product_id = target.source_product_id
            robots_path_blocked = target.robots_path_blocked

            writer = ScrapeWriter(db)

            def outcome(status: str, **kwargs) -> JobOutcome:
                return JobOutcome(
                    target_id=job.target_id,
                    status=status,
                    duration_ms=int((time.monotonic() - start) * 1000),
                    **kwargs,
                )

            await self._increment_run_metric(db, job.run_id, "urls_attempted")

            if robots_path_blocked:
                job_logger.info("url_blocked_by_admin_override")
                broken = await self._track(db, writer, job.target_id, success=False)
                await self._increment_run_metric(db, job.run_id, "urls_failed")
                return outcome(OUTCOME_ROBOTS_BLOCKED, target_broken=broken)

            async def acquire_slot() -> None:
                await self.rate_limiter.acquire(adapter.domain)

            # Every attempt, retries included, takes its own rate limiter slot
            fetch_result = await fetch_with_retry(
                self.fetcher,
                job.url,
                self.retry_policy,
                before_attempt=acquire_slot,
            )

            if fetch_result.status != FetchStatus.OK or fetch_result.html is None:
                job_logger.warning(
                    "fetch_failed",
                    status=fetch_result.status.value,
                    status_code=fetch_result.status_code,
                    error=fetch_result.error,
                    duration_ms=fetch_result.duration_ms,
                )
                broken = await self._track(db, writer, job.target_id, success=False)
                await self._increment_run_metric(db, job.run_id, "urls_failed")
                status = (
                    OUTCOME_ROBOTS_BLOCKED
                    if fetch_result.status == FetchStatus.ROBOTS_BLOCKED
                    else OUTCOME_FETCH_FAILED
                )
                return outcome(status, reason=fetch_result.status.value, target_broken=broken)

            ctx = ScrapeAdapterContext(
                source_id=job.source_id,
                retailer_id=job.retailer_id,
                run_id=job.run_id,
                target_id=job.target_id,
                now=datetime.now(timezone.utc),
                logger=job_logger,
            )

            extract_result = adapter.extract(fetch_result.html, job.url, ctx)

            if isinstance(extract_result, ExtractFailure):
                job_logger.info(
                    "extraction_failed",
                    reason=extract_result.reason.value,
                    details=extract_result.details,
                )
                # OOS-with-no-price counts as failed and OOS; drift subtracts it back out
                is_oos = extract_result.reason == ExtractFailureReason.OOS_NO_PRICE
                await self._increment_run_metric(db, job.run_id, "urls_failed")
                if is_oos:
                    await self._increment_run_metric(db, job.run_id, "oos_no_price_count")
                broken = await self._track(db, writer, job.target_id, success=is_oos)
                return outcome(
                    OUTCOME_OOS_NO_PRICE if is_oos else OUTCOME_EXTRACT_FAILED,
                    reason=extract_result.reason.value,
                    target_broken=broken,
                )
            if not isinstance(extract_result, ExtractSuccess):
                raise TypeError(f"Unhandled extract result: {extract_result!r}")

            await self._increment_run_metric(db, job.run_id, "offers_extracted")

            normalize_result = adapter.normalize(extract_result.offer, ctx)
            if isinstance(normalize_result, NormalizeOk):
                normalize_result = await self.validator.validate(normalize_result.offer, job.run_id)

            if isinstance(normalize_result, NormalizeDrop):
                job_logger.info("offer_dropped", reason=normalize_result.reason.value)
                await self._increment_run_metric(db, job.run_id, "offers_dropped")
                counts = should_count_toward_drift(normalize_result.reason)
                if counts:
                    await self._increment_run_metric(db, job.run_id, "urls_failed")
                else:
                    await self._increment_run_metric(db, job.run_id, "urls_succeeded")
                broken = await self._track(db, writer, job.target_id, success=not counts)
                return outcome(
                    OUTCOME_DROPPED,
                    reason=normalize_result.reason.value,
                    target_broken=broken,
                )

            if isinstance(normalize_result, NormalizeQuarantine):
                job_logger.warning("offer_quarantined", reason=normalize_result.reason.value)
                # Zero prices feed drift whether or not the review row lands
                if normalize_result.reason == QuarantineReason.ZERO_PRICE_EXTRACTED:
                    await self._increment_run_metric(db, job.run_id, "zero_price_count")
                quarantine_result = await writer.write_quarantined_offer(
                    normalize_result.offer,
                    normalize_result.reason,
                    job.run_id,
                    target_id=job.target_id,
                )
                broken = await self._track(db, writer, job.target_id, success=False)
                if not quarantine_result.success:
                    job_logger.error("quarantine_write_failed", error=quarantine_result.error)
                    await self._increment_run_metric(db, job.run_id, "urls_failed")
                    return outcome(
                        OUTCOME_WRITE_FAILED,
                        reason=quarantine_result.error,
                        target_broken=broken,
                    )
                await self._increment_run_metric(db, job.run_id, "offers_quarantined")
                return outcome(
                    OUTCOME_QUARANTINED,
                    reason=normalize_result.reason.value,
                    target_broken=broken,
                )

            if not isinstance(normalize_result, NormalizeOk):
                raise TypeError(f"Unhandled normalize result: {normalize_result!r}")

            write_result = await writer.write_scrape_offer(
                normalize_result.offer,
                job.run_id,
                target_id=job.target_id,
                target_source_product_id=target_source_product_id,
            )

            if not write_result.success:
                job_logger.error("offer_write_failed", error=write_result.error)
                await self.validator.release(normalize_result.offer, job.run_id)
                await self._increment_run_metric(db, job.run_id, "urls_failed")
                broken = await self._track(db, writer, job.target_id, success=False)
                return outcome(OUTCOME_WRITE_FAILED, reason=write_result.error, target_broken=broken)

            await self._increment_run_metric(db, job.run_id, "urls_succeeded")
            await self._increment_run_metric(db, job.run_id, "offers_valid")
            await self._track(db, writer, job.target_id, success=True)

            result = outcome(
                OUTCOME_WRITTEN,
                source_product_id=write_result.source_product_id,
                price_id=write_result.price_id,
            )
            job_logger.info(
                "scrape_job_completed",
                source_product_id=result.source_product_id,
                price_id=result.price_id,
                duration_ms=result.duration_ms,
            )
            return result

    async def _track(
        self,
        db: AsyncSession,
        writer: ScrapeWriter,
        target_id: str,
        success: bool,
    ) -> bool:
        """Update target tracking; returns True when the target just went BROKEN."""
        try:
            consecutive_failures = await writer.update_target_tracking(target_id, success)
            if not success and should_mark_url_broken(consecutive_failures):
                await writer.mark_target_broken(target_id)
                return True
        except (SQLAlchemyError, NotFoundError) as e:
            await db.rollback()
            logger.error("target_tracking_failed", target_id=target_id, error=str(e))
        return False

    async def _increment_run_metric(self, db: AsyncSession, run_id: str, field: str) -> None:
        column = getattr(ScrapeRun, field)
        try:
            await db.execute(
                update(ScrapeRun)
                .where(ScrapeRun.id == run_id)
                .values({field: column + 1})
            )
            await db.commit()
        except SQLAlchemyError as e:
            await db.rollback()
            logger.error("run_metric_increment_failed", run_id=run_id, field=field, error=str(e))
