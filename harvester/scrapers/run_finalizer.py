"""Run finalization: status, metrics, drift evaluation and baseline upkeep.

Workers only increment counters on the run row. Once a run's jobs are done,
the finalizer:
1. decides the run status from its counters
2. stamps final metrics and derived rates
3. evaluates drift for the adapter under a per-adapter Redis lock
4. refreshes the adapter's rolling baseline after successful runs
5. deletes the run's dedupe set

Drift counters are read-modify-write, so two runs of the same adapter must
never be evaluated at the same time; the lock serializes them. A run leaves
RUNNING through a conditional update, so it feeds drift at most once.
"""

import asyncio
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, List, Optional

import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError
from sqlalchemy import and_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from harvester.config import settings
from harvester.core.exceptions import NotFoundError
from harvester.db.redis import create_redis_client
from harvester.models.scrape_adapter_status import ScrapeAdapterStatus
from harvester.models.scrape_run import ScrapeRun
from harvester.scrapers.process.drift_detector import (
    MIN_RUNS_FOR_BASELINE,
    MIN_URLS_FOR_DRIFT,
    AutoDisableDecision,
    DriftAlert,
    check_auto_disable,
    check_drift_alert,
    check_zero_price_disable,
    compute_derived_metrics,
    update_baseline,
)
from harvester.scrapers.process.run_dedupe import RunDedupeStore
from harvester.scrapers.process.writer import ScrapeWriter
from harvester.scrapers.types import (
    DerivedMetrics,
    DriftBaseline,
    ScrapeRunMetrics,
    ScrapeRunStatus,
)

logger = structlog.get_logger(__name__)

LOCK_KEY_PREFIX = "scrape:drift:lock:"
LOCK_POLL_INTERVAL_SECONDS = 0.2
STALE_RUN_MINUTES = 30

# Delete the lock only if we still own it
RELEASE_LOCK_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('DEL', KEYS[1])
end
return 0
"""


@dataclass(frozen=True)
class RunFinalization:
    run_id: str
    adapter_id: str
    status: ScrapeRunStatus
    metrics: ScrapeRunMetrics
    derived: DerivedMetrics
    alert: Optional[DriftAlert] = None
    disable_decision: Optional[AutoDisableDecision] = None
    adapter_disabled: bool = False
    baseline: Optional[DriftBaseline] = None


def metrics_from_run(run: ScrapeRun) -> ScrapeRunMetrics:
    return ScrapeRunMetrics(
        urls_attempted=run.urls_attempted or 0,
        urls_succeeded=run.urls_succeeded or 0,
        urls_failed=run.urls_failed or 0,
        offers_extracted=run.offers_extracted or 0,
        offers_valid=run.offers_valid or 0,
        offers_dropped=run.offers_dropped or 0,
        offers_quarantined=run.offers_quarantined or 0,
        zero_price_count=run.zero_price_count or 0,
        oos_no_price_count=run.oos_no_price_count or 0,
    )


def determine_run_status(metrics: ScrapeRunMetrics) -> ScrapeRunStatus:
    """QUARANTINED if quarantined offers outnumber or tie valid ones, FAILED
    above a 50% failure rate, SUCCESS otherwise."""
    if metrics.offers_quarantined > 0 and metrics.offers_quarantined >= metrics.offers_valid:
        return ScrapeRunStatus.QUARANTINED
    if compute_derived_metrics(metrics).failure_rate > 0.5:
        return ScrapeRunStatus.FAILED
    return ScrapeRunStatus.SUCCESS


class RunFinalizer:
    """Finalizes completed runs and owns the per-adapter drift state."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        redis: Optional[Redis] = None,
        dedupe_store: Optional[RunDedupeStore] = None,
        lock_timeout_seconds: Optional[int] = None,
    ):
        """Initialize run finalizer.

        Args:
            session_factory: Async session factory
            redis: Redis client for the drift lock; created from settings if omitted
            dedupe_store: Run dedupe store whose sets get cleaned up
            lock_timeout_seconds: Lock TTL and maximum wait for the lock
        """
        self.session_factory = session_factory
        self._redis = redis
        self._owns_redis = redis is None
        self.dedupe_store = dedupe_store or RunDedupeStore(redis=redis)
        self.lock_timeout_seconds = lock_timeout_seconds or settings.DRIFT_LOCK_TIMEOUT_SECONDS
        self.logger = logger.bind(component="run_finalizer")

    @property
    def redis(self) -> Redis:
        if self._redis is None:
            self._redis = create_redis_client()
        return self._redis

    @asynccontextmanager
    async def adapter_lock(self, adapter_id: str) -> AsyncIterator[bool]:
        """Hold the drift lock for an adapter.

        Waits up to lock_timeout_seconds. Yields True when the lock is held;
        if Redis is down or the wait runs out, yields False and the caller
        proceeds unlocked.
        """
        key = f"{LOCK_KEY_PREFIX}{adapter_id}"
        token = uuid.uuid4().hex
        acquired = False
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.lock_timeout_seconds

        try:
            while True:
                if await self.redis.set(key, token, nx=True, ex=self.lock_timeout_seconds):
                    acquired = True
                    break
                if loop.time() >= deadline:
                    self.logger.warning("drift_lock_timeout", adapter_id=adapter_id)
                    break
                await asyncio.sleep(LOCK_POLL_INTERVAL_SECONDS)
        except RedisError as e:
            self.logger.warning("drift_lock_unavailable", adapter_id=adapter_id, error=str(e))

        try:
            yield acquired
        finally:
            if acquired:
                try:
                    await self.redis.eval(RELEASE_LOCK_SCRIPT, 1, key, token)
                except RedisError as e:
                    self.logger.warning("drift_lock_release_failed", adapter_id=adapter_id, error=str(e))

    async def finalize_run(self, run_id: str) -> Optional[RunFinalization]:
        """Finalize one run.

        Returns:
            The finalization summary, or None if the run was already finalized

        Raises:
            NotFoundError: If the run does not exist
        """
        async with self.session_factory() as db:
            run = await db.get(ScrapeRun, run_id)
            if run is None:
                raise NotFoundError("ScrapeRun", run_id)
            if run.status != ScrapeRunStatus.RUNNING.value:
                self.logger.debug("run_already_finalized", run_id=run_id, status=run.status)
                return None
            adapter_id = run.adapter_id

        async with self.adapter_lock(adapter_id):
            async with self.session_factory() as db:
                finalization = await self._finalize_claimed_run(db, run_id, adapter_id)

        if finalization is None:
            return None
        await self.dedupe_store.cleanup_run_dedupe_set(run_id)
        return finalization

    async def _finalize_claimed_run(
        self,
        db: AsyncSession,
        run_id: str,
        adapter_id: str,
    ) -> Optional[RunFinalization]:
        run = await db.get(ScrapeRun, run_id)
        metrics = metrics_from_run(run)
        status = determine_run_status(metrics)
        derived = compute_derived_metrics(metrics)

        # Only one finalizer may move the run out of RUNNING
        claim = await db.execute(
            update(ScrapeRun)
            .where(and_(
                ScrapeRun.id == run_id,
                ScrapeRun.status == ScrapeRunStatus.RUNNING.value,
            ))
            .values(status=status.value)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        if claim.rowcount != 1:
            self.logger.info("run_already_claimed", run_id=run_id, adapter_id=adapter_id)
            return None

        await ScrapeWriter(db).finalize_run(run_id, metrics, status)

        self.logger.info(
            "run_finalized",
            run_id=run_id,
            adapter_id=adapter_id,
            status=status.value,
            urls_attempted=metrics.urls_attempted,
            failure_rate=round(derived.failure_rate, 4),
            yield_rate=round(derived.yield_rate, 4),
        )

        return await self._evaluate_drift(db, run_id, adapter_id, metrics, status)

    async def _evaluate_drift(
        self,
        db: AsyncSession,
        run_id: str,
        adapter_id: str,
        metrics: ScrapeRunMetrics,
        status: ScrapeRunStatus,
    ) -> RunFinalization:
        now = datetime.now(timezone.utc)
        adapter_status = await db.get(ScrapeAdapterStatus, adapter_id)
        if adapter_status is None:
            adapter_status = ScrapeAdapterStatus(
                adapter_id=adapter_id,
                enabled=True,
                consecutive_failed_batches=0,
                last_run_had_zero_price=False,
                baseline_sample_size=0,
            )
            db.add(adapter_status)

        alert = check_drift_alert(metrics, _baseline_from_status(adapter_status))
        if alert is not None:
            self.logger.warning(
                "drift_alert",
                adapter_id=adapter_id,
                run_id=run_id,
                alert_type=alert.type,
                message=alert.message,
            )

        disabled = False
        decision = check_auto_disable(metrics, adapter_status.consecutive_failed_batches or 0)
        if decision is not None:
            adapter_status.consecutive_failed_batches = decision.consecutive_failed_batches
            if decision.should_disable and adapter_status.enabled:
                self._disable(adapter_status, decision, now)
                disabled = True

        zero_price_decision = check_zero_price_disable(metrics, adapter_status.last_run_had_zero_price)
        if zero_price_decision is not None and zero_price_decision.should_disable:
            if adapter_status.enabled:
                self._disable(adapter_status, zero_price_decision, now)
                disabled = True
            adapter_status.last_run_had_zero_price = True
            decision = zero_price_decision
        elif metrics.urls_attempted >= MIN_URLS_FOR_DRIFT:
            adapter_status.last_run_had_zero_price = metrics.zero_price_count > 0

        baseline = None
        if status == ScrapeRunStatus.SUCCESS and metrics.urls_attempted >= MIN_URLS_FOR_DRIFT:
            recent = await self._recent_run_metrics(db, adapter_id, exclude_run_id=run_id, now=now)
            baseline = update_baseline(_baseline_from_status(adapter_status), metrics, recent)
            adapter_status.baseline_failure_rate = baseline.median_failure_rate
            adapter_status.baseline_yield_rate = baseline.median_yield_rate
            adapter_status.baseline_sample_size = baseline.sample_size
            adapter_status.baseline_updated_at = now

        await db.commit()

        return RunFinalization(
            run_id=run_id,
            adapter_id=adapter_id,
            status=status,
            metrics=metrics,
            derived=compute_derived_metrics(metrics),
            alert=alert,
            disable_decision=decision,
            adapter_disabled=disabled,
            baseline=baseline,
        )

    def _disable(
        self,
        adapter_status: ScrapeAdapterStatus,
        decision: AutoDisableDecision,
        now: datetime,
    ) -> None:
        adapter_status.enabled = False
        adapter_status.disabled_at = now
        adapter_status.disabled_reason = decision.reason
        adapter_status.disabled_message = decision.message
        self.logger.error(
            "adapter_auto_disabled",
            adapter_id=adapter_status.adapter_id,
            reason=decision.reason,
            message=decision.message,
        )

    async def _recent_run_metrics(
        self,
        db: AsyncSession,
        adapter_id: str,
        exclude_run_id: str,
        now: datetime,
    ) -> List[DerivedMetrics]:
        """Derived metrics of the trailing baseline window, newest first.

        Successful runs with at least MIN_URLS_FOR_DRIFT URLs completed within
        BASELINE_WINDOW_DAYS, leaving room for the run being finalized.
        """
        cutoff = now - timedelta(days=settings.BASELINE_WINDOW_DAYS)
        result = await db.execute(
            select(ScrapeRun)
            .where(and_(
                ScrapeRun.adapter_id == adapter_id,
                ScrapeRun.status == ScrapeRunStatus.SUCCESS.value,
                ScrapeRun.completed_at >= cutoff,
                ScrapeRun.urls_attempted >= MIN_URLS_FOR_DRIFT,
                ScrapeRun.id != exclude_run_id,
            ))
            .order_by(ScrapeRun.completed_at.desc())
            .limit(max(settings.BASELINE_WINDOW_RUNS - 1, 0))
        )
        return [compute_derived_metrics(metrics_from_run(run)) for run in result.scalars().all()]

    async def finalize_stale_runs(self, older_than_minutes: int = STALE_RUN_MINUTES) -> List[RunFinalization]:
        """Finalize every RUNNING run started more than older_than_minutes ago.

        One run failing to finalize is logged and does not stop the rest.
        """
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=older_than_minutes)
        async with self.session_factory() as db:
            result = await db.execute(
                select(ScrapeRun.id).where(and_(
                    ScrapeRun.status == ScrapeRunStatus.RUNNING.value,
                    ScrapeRun.started_at < cutoff,
                ))
            )
            run_ids = list(result.scalars().all())

        finalized = []
        for run_id in run_ids:
            try:
                finalization = await self.finalize_run(run_id)
            except Exception as e:
                self.logger.error("run_finalization_failed", run_id=run_id, error=str(e))
                continue
            if finalization is not None:
                finalized.append(finalization)
        return finalized

    async def close(self) -> None:
        if self._redis is not None and self._owns_redis:
            await self._redis.aclose()
            self._redis = None


def _baseline_from_status(adapter_status: ScrapeAdapterStatus) -> Optional[DriftBaseline]:
    if not adapter_status.baseline_sample_size or adapter_status.baseline_failure_rate is None:
        return None
    return DriftBaseline(
        median_failure_rate=adapter_status.baseline_failure_rate,
        median_yield_rate=adapter_status.baseline_yield_rate or 0.0,
        sample_size=adapter_status.baseline_sample_size,
        is_established=adapter_status.baseline_sample_size >= MIN_RUNS_FOR_BASELINE,
    )
