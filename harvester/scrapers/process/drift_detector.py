"""Drift detection and auto-disable decisions.

Thresholds:
- adapter: failure rate > 50% in 2 consecutive batches of >= 20 URLs -> disable
- adapter: zero prices in 2 consecutive batches of >= 20 URLs -> disable
- URL: 5 consecutive failures -> BROKEN
- baseline: established after 3 runs

OOS-with-no-price pages are counted but excluded from the failure rate.
All functions are pure; the run finalizer owns persistence and locking.
"""

from dataclasses import dataclass
from typing import Optional, Sequence

from harvester.scrapers.types import DerivedMetrics, DriftBaseline, ScrapeRunMetrics

MIN_URLS_FOR_DRIFT = 20
FAILURE_RATE_ALERT_THRESHOLD = 0.5
CONSECUTIVE_FAILURES_FOR_DISABLE = 2
URL_FAILURES_FOR_BROKEN = 5
MIN_RUNS_FOR_BASELINE = 3

DRIFT_DETECTED = "DRIFT_DETECTED"
HIGH_FAILURE_RATE = "HIGH_FAILURE_RATE"
ZERO_OFFERS = "ZERO_OFFERS"


@dataclass(frozen=True)
class DriftAlert:
    """Informational alert; never disables anything by itself."""

    type: str  # HIGH_FAILURE_RATE | ZERO_OFFERS
    severity: str
    message: str
    metrics: DerivedMetrics


@dataclass(frozen=True)
class AutoDisableDecision:
    should_disable: bool
    reason: Optional[str]
    message: str
    consecutive_failed_batches: int


def compute_derived_metrics(metrics: ScrapeRunMetrics) -> DerivedMetrics:
    """Failure, drop and yield rates for one batch.

    failure_rate = max(0, urls_failed - oos_no_price_count) / urls_attempted
    drop_rate = offers_dropped / offers_extracted
    yield_rate = offers_valid / urls_attempted

    Zero denominators give a rate of 0.
    """
    adjusted_failed = max(0, metrics.urls_failed - metrics.oos_no_price_count)

    failure_rate = adjusted_failed / metrics.urls_attempted if metrics.urls_attempted > 0 else 0.0
    drop_rate = metrics.offers_dropped / metrics.offers_extracted if metrics.offers_extracted > 0 else 0.0
    yield_rate = metrics.offers_valid / metrics.urls_attempted if metrics.urls_attempted > 0 else 0.0

    return DerivedMetrics(failure_rate=failure_rate, drop_rate=drop_rate, yield_rate=yield_rate)


def check_drift_alert(
    metrics: ScrapeRunMetrics,
    baseline: Optional[DriftBaseline] = None,
) -> Optional[DriftAlert]:
    """Decide whether a batch deserves an alert.

    Returns:
        HIGH_FAILURE_RATE or ZERO_OFFERS alert, or None for small or healthy batches
    """
    if metrics.urls_attempted < MIN_URLS_FOR_DRIFT:
        return None

    derived = compute_derived_metrics(metrics)

    if derived.failure_rate > FAILURE_RATE_ALERT_THRESHOLD:
        return DriftAlert(
            type=HIGH_FAILURE_RATE,
            severity="ALERT",
            message=(
                f"Failure rate {derived.failure_rate * 100:.1f}% exceeds "
                f"threshold {FAILURE_RATE_ALERT_THRESHOLD * 100:.0f}%"
            ),
            metrics=derived,
        )

    if metrics.offers_extracted == 0:
        return DriftAlert(
            type=ZERO_OFFERS,
            severity="ALERT",
            message="No offers extracted from any URL",
            metrics=derived,
        )

    return None


def check_auto_disable(
    metrics: ScrapeRunMetrics,
    consecutive_failed_batches: int,
) -> Optional[AutoDisableDecision]:
    """Advance the consecutive-failed-batch counter for one batch.

    Args:
        metrics: Current batch metrics
        consecutive_failed_batches: Counter value before this batch

    Returns:
        None for batches under MIN_URLS_FOR_DRIFT, otherwise the decision with
        the new counter value (reset to 0 on a healthy batch)
    """
    if metrics.urls_attempted < MIN_URLS_FOR_DRIFT:
        return None

    derived = compute_derived_metrics(metrics)

    if derived.failure_rate > FAILURE_RATE_ALERT_THRESHOLD:
        new_count = consecutive_failed_batches + 1
        if new_count >= CONSECUTIVE_FAILURES_FOR_DISABLE:
            return AutoDisableDecision(
                should_disable=True,
                reason=DRIFT_DETECTED,
                message=(
                    f"{new_count} consecutive batches with failure rate > "
                    f"{FAILURE_RATE_ALERT_THRESHOLD * 100:.0f}%"
                ),
                consecutive_failed_batches=new_count,
            )
        return AutoDisableDecision(
            should_disable=False,
            reason=None,
            message=f"Batch failed ({new_count}/{CONSECUTIVE_FAILURES_FOR_DISABLE} consecutive)",
            consecutive_failed_batches=new_count,
        )

    return AutoDisableDecision(
        should_disable=False,
        reason=None,
        message="Batch succeeded, resetting consecutive failure count",
        consecutive_failed_batches=0,
    )


def check_zero_price_disable(
    metrics: ScrapeRunMetrics,
    previous_zero_price_run: bool,
) -> Optional[AutoDisableDecision]:
    """Disable when this batch and the previous one both saw zero prices.

    Args:
        metrics: Current batch metrics
        previous_zero_price_run: Whether the previous >= 20 URL batch had zero prices
    """
    if metrics.urls_attempted < MIN_URLS_FOR_DRIFT:
        return None

    if metrics.zero_price_count > 0 and previous_zero_price_run:
        return AutoDisableDecision(
            should_disable=True,
            reason=DRIFT_DETECTED,
            message=f"Zero price detected in 2 consecutive runs (>= {MIN_URLS_FOR_DRIFT} URLs)",
            consecutive_failed_batches=2,
        )
    return None


def should_mark_url_broken(consecutive_failures: int) -> bool:
    return consecutive_failures >= URL_FAILURES_FOR_BROKEN


def median(values: Sequence[float]) -> float:
    """Median of a sequence; mean of the middle pair for even lengths, 0 when empty."""
    if not values:
        return 0.0
    ordered = sorted(values)
    mid = len(ordered) // 2
    if len(ordered) % 2 == 0:
        return (ordered[mid - 1] + ordered[mid]) / 2
    return ordered[mid]


def update_baseline(
    current_baseline: Optional[DriftBaseline],
    new_run_metrics: ScrapeRunMetrics,
    recent_runs: Sequence[DerivedMetrics],
) -> DriftBaseline:
    """Recompute the rolling baseline including the new run.

    Args:
        current_baseline: Previous baseline; the result is recomputed from
            recent_runs, not merged into it
        new_run_metrics: Metrics of the run being finalized
        recent_runs: Derived metrics of the trailing window, excluding the new run

    Returns:
        Baseline over recent_runs plus the new run
    """
    all_metrics = list(recent_runs) + [compute_derived_metrics(new_run_metrics)]
    sample_size = len(all_metrics)
    return DriftBaseline(
        median_failure_rate=median([m.failure_rate for m in all_metrics]),
        median_yield_rate=median([m.yield_rate for m in all_metrics]),
        sample_size=sample_size,
        is_established=sample_size >= MIN_RUNS_FOR_BASELINE,
    )
