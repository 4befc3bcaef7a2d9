"""Shared vocabulary for the scraping pipeline.

Offer schema, extract/normalize result types, fetch results, static tuning
configs and run metrics. Every other scraper module depends on this one.

All prices are integer cents. Conversion to Decimal happens only when the
writer persists a price row.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Tuple, Union

import structlog


class CurrencyCode(str, Enum):
    """Supported currencies (USD only for now)."""

    USD = "USD"


class Availability(str, Enum):
    """Stock availability derived from explicit page signals.

    UNKNOWN is dropped by the validator and must never reach persistence.
    """

    IN_STOCK = "IN_STOCK"
    OUT_OF_STOCK = "OUT_OF_STOCK"
    BACKORDER = "BACKORDER"
    UNKNOWN = "UNKNOWN"


class ExtractFailureReason(str, Enum):
    SELECTOR_NOT_FOUND = "SELECTOR_NOT_FOUND"
    PRICE_NOT_FOUND = "PRICE_NOT_FOUND"
    TITLE_NOT_FOUND = "TITLE_NOT_FOUND"
    PAGE_STRUCTURE_CHANGED = "PAGE_STRUCTURE_CHANGED"
    BLOCKED_PAGE = "BLOCKED_PAGE"
    EMPTY_PAGE = "EMPTY_PAGE"
    OOS_NO_PRICE = "OOS_NO_PRICE"  # expected, not drift


class DropReason(str, Enum):
    """Reasons an offer is discarded without being written."""

    MISSING_REQUIRED_FIELD = "MISSING_REQUIRED_FIELD"
    INVALID_PRICE = "INVALID_PRICE"
    INVALID_URL = "INVALID_URL"
    DUPLICATE_WITHIN_RUN = "DUPLICATE_WITHIN_RUN"
    BLOCKED_BY_ROBOTS_TXT = "BLOCKED_BY_ROBOTS_TXT"
    OOS_NO_PRICE = "OOS_NO_PRICE"
    UNKNOWN_AVAILABILITY = "UNKNOWN_AVAILABILITY"


class QuarantineReason(str, Enum):
    """Reasons an offer goes to the review table instead of the price stream."""

    VALIDATION_FAILED = "VALIDATION_FAILED"
    DRIFT_DETECTED = "DRIFT_DETECTED"
    SELECTOR_FAILURE = "SELECTOR_FAILURE"
    NORMALIZATION_FAILED = "NORMALIZATION_FAILED"
    ZERO_PRICE_EXTRACTED = "ZERO_PRICE_EXTRACTED"
    AMBIGUOUS_PRICE = "AMBIGUOUS_PRICE"


class FetchStatus(str, Enum):
    OK = "ok"
    ERROR = "error"
    BLOCKED = "blocked"
    TIMEOUT = "timeout"
    TOO_LARGE = "too_large"
    ROBOTS_BLOCKED = "robots_blocked"


class ScrapeJobTrigger(str, Enum):
    SCHEDULED = "SCHEDULED"
    MANUAL = "MANUAL"
    RETRY = "RETRY"
    RECHECK = "RECHECK"


class ScrapeRunStatus(str, Enum):
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    QUARANTINED = "QUARANTINED"


class ScrapeTargetStatus(str, Enum):
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    BROKEN = "BROKEN"  # terminal until manually reset
    STALE = "STALE"


# ============================================================================
# Offer contract
# ============================================================================


@dataclass
class ScrapedOffer:
    """Canonical adapter output for one product page.

    The required fields are typed as present, but an adapter bug can still
    leave them None or empty; the validator drops such offers with
    MISSING_REQUIRED_FIELD.
    """

    source_id: str
    retailer_id: str
    url: str  # canonical
    title: str
    price_cents: int  # single-unit price
    currency: CurrencyCode
    availability: Availability
    observed_at: datetime  # set by the adapter, never server time
    identity_key: str  # {idType}:{idValue}
    adapter_version: str

    retailer_sku: Optional[str] = None
    retailer_product_id: Optional[str] = None
    upc: Optional[str] = None
    brand: Optional[str] = None
    caliber: Optional[str] = None
    grain_weight: Optional[float] = None
    round_count: Optional[int] = None
    case_material: Optional[str] = None
    bullet_type: Optional[str] = None
    load_type: Optional[str] = None
    shell_length: Optional[str] = None
    cost_per_round_cents: Optional[int] = None
    shipping_cents: Optional[int] = None
    tax_included: Optional[bool] = None
    image_url: Optional[str] = None

    def to_dict(self) -> dict:
        """JSON-safe representation for quarantine payloads and logs."""
        data: dict = {}
        for name in self.__dataclass_fields__:
            value = getattr(self, name)
            if isinstance(value, Enum):
                value = value.value
            elif isinstance(value, datetime):
                value = value.isoformat()
            data[name] = value
        return data


REQUIRED_OFFER_FIELDS: Tuple[str, ...] = (
    "source_id",
    "retailer_id",
    "url",
    "title",
    "price_cents",
    "currency",
    "availability",
    "observed_at",
    "identity_key",
    "adapter_version",
)


# ============================================================================
# Result types
#
# ExtractResult and NormalizeResult are closed unions. Callers dispatch with
# isinstance() over every member and raise TypeError for anything else.
# ============================================================================


@dataclass(frozen=True)
class ExtractSuccess:
    offer: ScrapedOffer
    ok: bool = field(default=True, init=False)


@dataclass(frozen=True)
class ExtractFailure:
    reason: ExtractFailureReason
    details: Optional[str] = None
    ok: bool = field(default=False, init=False)


ExtractResult = Union[ExtractSuccess, ExtractFailure]


@dataclass(frozen=True)
class NormalizeOk:
    offer: ScrapedOffer
    status: str = field(default="ok", init=False)


@dataclass(frozen=True)
class NormalizeDrop:
    reason: DropReason
    offer: ScrapedOffer
    status: str = field(default="drop", init=False)


@dataclass(frozen=True)
class NormalizeQuarantine:
    reason: QuarantineReason
    offer: ScrapedOffer
    status: str = field(default="quarantine", init=False)


NormalizeResult = Union[NormalizeOk, NormalizeDrop, NormalizeQuarantine]


# ============================================================================
# Fetching
# ============================================================================


DEFAULT_FETCH_HEADERS = {
    "User-Agent": "IronScout/1.0 (+https://ironscout.ai/bot; bot@ironscout.ai)",
    "Accept": "text/html,application/xhtml+xml",
    "Accept-Language": "en-US,en;q=0.9",
}


@dataclass(frozen=True)
class FetchOptions:
    timeout_ms: int = 30_000
    max_size_bytes: int = 10 * 1024 * 1024
    headers: Optional[dict] = None


@dataclass(frozen=True)
class FetchResult:
    status: FetchStatus
    duration_ms: int
    status_code: Optional[int] = None
    html: Optional[str] = None
    content_hash: Optional[str] = None
    error: Optional[str] = None


# ============================================================================
# Static tuning values
# ============================================================================


@dataclass(frozen=True)
class RateLimitConfig:
    requests_per_second: float = 0.5
    min_delay_ms: int = 2_000
    max_concurrent: int = 1


DEFAULT_RATE_LIMIT = RateLimitConfig()


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    initial_delay_ms: int = 1_000
    max_delay_ms: int = 30_000
    backoff_multiplier: float = 2.0
    retryable_status_codes: Tuple[int, ...] = (429, 500, 502, 503, 504)


DEFAULT_RETRY_POLICY = RetryPolicy()


@dataclass(frozen=True)
class QueueConfig:
    max_pending_per_adapter: int = 1_000
    max_pending_total: int = 10_000
    max_age_ms: int = 24 * 60 * 60 * 1000


DEFAULT_QUEUE_CONFIG = QueueConfig()


# ============================================================================
# Jobs and adapter context
# ============================================================================


@dataclass(frozen=True)
class ScrapeUrlJob:
    """One URL job as delivered by the external queue."""

    target_id: str
    url: str
    source_id: str
    retailer_id: str
    adapter_id: str
    run_id: str
    priority: int = 0
    trigger: ScrapeJobTrigger = ScrapeJobTrigger.SCHEDULED


@dataclass
class ScrapeAdapterContext:
    source_id: str
    retailer_id: str
    run_id: str
    target_id: str
    now: datetime
    logger: Any = field(default_factory=lambda: structlog.get_logger("harvester.adapter"))


# ============================================================================
# Drift metrics
# ============================================================================


@dataclass
class ScrapeRunMetrics:
    urls_attempted: int = 0
    urls_succeeded: int = 0
    urls_failed: int = 0
    offers_extracted: int = 0
    offers_valid: int = 0
    offers_dropped: int = 0
    offers_quarantined: int = 0
    zero_price_count: int = 0
    oos_no_price_count: int = 0


@dataclass(frozen=True)
class DerivedMetrics:
    failure_rate: float
    drop_rate: float
    yield_rate: float


@dataclass(frozen=True)
class DriftBaseline:
    median_failure_rate: float
    median_yield_rate: float
    sample_size: int
    is_established: bool


def map_availability_to_in_stock(availability: Availability) -> bool:
    """Map availability onto the price row's in_stock flag.

    BACKORDER counts as not purchasable.

    Raises:
        ValueError: For UNKNOWN, which the validator should have dropped
    """
    if availability == Availability.IN_STOCK:
        return True
    if availability in (Availability.OUT_OF_STOCK, Availability.BACKORDER):
        return False
    raise ValueError("UNKNOWN availability must be dropped before the price write")
