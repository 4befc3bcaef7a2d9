"""Fail-closed offer validation.

Check order:
1. missing required field -> drop MISSING_REQUIRED_FIELD
2. UNKNOWN availability -> drop UNKNOWN_AVAILABILITY
3. zero price -> quarantine ZERO_PRICE_EXTRACTED
4. non-integer, < 1 or > 99_999_999 cents -> drop INVALID_PRICE
5. bad URL -> drop INVALID_URL
6. identity key already seen in the run -> drop DUPLICATE_WITHIN_RUN
"""

from dataclasses import fields
from datetime import datetime, timezone
from typing import Optional, Set

import structlog

from harvester.scrapers.process.run_dedupe import RunDedupeStore
from harvester.scrapers.types import (
    REQUIRED_OFFER_FIELDS,
    Availability,
    CurrencyCode,
    DropReason,
    NormalizeDrop,
    NormalizeOk,
    NormalizeQuarantine,
    NormalizeResult,
    QuarantineReason,
    ScrapedOffer,
)
from harvester.scrapers.utils.url import is_valid_url

logger = structlog.get_logger(__name__)

MAX_PRICE_CENTS = 99_999_999  # $999,999.99


DROP_REASON_MESSAGES = {
    DropReason.MISSING_REQUIRED_FIELD: "Required field was missing",
    DropReason.INVALID_PRICE: "Price was invalid (negative, non-integer, or out of range)",
    DropReason.INVALID_URL: "URL was invalid",
    DropReason.DUPLICATE_WITHIN_RUN: "Duplicate offer within same run",
    DropReason.BLOCKED_BY_ROBOTS_TXT: "URL blocked by robots.txt",
    DropReason.OOS_NO_PRICE: "Out of stock page with no price displayed",
    DropReason.UNKNOWN_AVAILABILITY: "Could not determine availability from page",
}

QUARANTINE_REASON_MESSAGES = {
    QuarantineReason.VALIDATION_FAILED: "Offer failed validation",
    QuarantineReason.DRIFT_DETECTED: "Offer flagged during drift detection",
    QuarantineReason.SELECTOR_FAILURE: "CSS selector failed to extract expected data",
    QuarantineReason.NORMALIZATION_FAILED: "Offer normalization failed",
    QuarantineReason.ZERO_PRICE_EXTRACTED: "Extracted price was zero",
    QuarantineReason.AMBIGUOUS_PRICE: "Multiple prices detected, could not determine correct one",
}


def find_missing_required_field(offer: ScrapedOffer) -> Optional[str]:
    """Return the first required field that is None or empty, if any."""
    for name in REQUIRED_OFFER_FIELDS:
        value = getattr(offer, name, None)
        if value is None or value == "":
            return name
    return None


def is_valid_price(price_cents) -> bool:
    """Positive integer cents no greater than MAX_PRICE_CENTS."""
    if isinstance(price_cents, bool) or not isinstance(price_cents, int):
        return False
    return 1 <= price_cents <= MAX_PRICE_CENTS


def validate_offer(
    offer: ScrapedOffer,
    seen_identity_keys: Optional[Set[str]] = None,
) -> NormalizeResult:
    """Classify an offer as ok, drop or quarantine.

    Args:
        offer: Offer produced by an adapter
        seen_identity_keys: Identity keys already accepted in this run
            (in-process variant of the run dedupe check)

    Returns:
        NormalizeOk, NormalizeDrop or NormalizeQuarantine
    """
    if find_missing_required_field(offer) is not None:
        return NormalizeDrop(reason=DropReason.MISSING_REQUIRED_FIELD, offer=offer)

    if offer.availability == Availability.UNKNOWN:
        return NormalizeDrop(reason=DropReason.UNKNOWN_AVAILABILITY, offer=offer)

    if offer.price_cents == 0 and not isinstance(offer.price_cents, bool):
        return NormalizeQuarantine(reason=QuarantineReason.ZERO_PRICE_EXTRACTED, offer=offer)

    if not is_valid_price(offer.price_cents):
        return NormalizeDrop(reason=DropReason.INVALID_PRICE, offer=offer)

    if not is_valid_url(offer.url):
        return NormalizeDrop(reason=DropReason.INVALID_URL, offer=offer)

    if seen_identity_keys is not None and offer.identity_key in seen_identity_keys:
        return NormalizeDrop(reason=DropReason.DUPLICATE_WITHIN_RUN, offer=offer)

    return NormalizeOk(offer=offer)


def create_drop_from_extract_failure(reason: str, partial: Optional[dict] = None) -> NormalizeDrop:
    """Turn an extraction failure into a drop result for tracking.

    OOS_NO_PRICE and BLOCKED_BY_ROBOTS_TXT keep their reason; everything
    else becomes MISSING_REQUIRED_FIELD.

    Args:
        reason: Extract failure reason (enum value or string)
        partial: Whatever offer fields are known (snake_case names)
    """
    reason_value = getattr(reason, "value", reason)
    if reason_value == DropReason.OOS_NO_PRICE.value:
        drop_reason = DropReason.OOS_NO_PRICE
    elif reason_value == DropReason.BLOCKED_BY_ROBOTS_TXT.value:
        drop_reason = DropReason.BLOCKED_BY_ROBOTS_TXT
    else:
        drop_reason = DropReason.MISSING_REQUIRED_FIELD

    partial = partial or {}
    offer = ScrapedOffer(
        source_id=partial.get("source_id", ""),
        retailer_id=partial.get("retailer_id", ""),
        url=partial.get("url", ""),
        title=partial.get("title", ""),
        price_cents=partial.get("price_cents", 0),
        currency=partial.get("currency", CurrencyCode.USD),
        availability=partial.get("availability", Availability.UNKNOWN),
        observed_at=partial.get("observed_at") or datetime.now(timezone.utc),
        identity_key=partial.get("identity_key", ""),
        adapter_version=partial.get("adapter_version", ""),
    )
    known = {f.name for f in fields(ScrapedOffer)}
    for name, value in partial.items():
        if name in known and name not in REQUIRED_OFFER_FIELDS:
            setattr(offer, name, value)
    return NormalizeDrop(reason=drop_reason, offer=offer)


def should_count_toward_drift(reason: DropReason) -> bool:
    """OOS-with-no-price and in-run duplicates are not drift signals."""
    return reason not in (DropReason.OOS_NO_PRICE, DropReason.DUPLICATE_WITHIN_RUN)


def drop_reason_to_message(reason: DropReason) -> str:
    return DROP_REASON_MESSAGES[DropReason(reason)]


def quarantine_reason_to_message(reason: QuarantineReason) -> str:
    return QUARANTINE_REASON_MESSAGES[QuarantineReason(reason)]


class OfferValidator:
    """Run-aware validator: the pure checks plus the shared run dedupe set.

    Only offers that pass every other check reserve their identity key, so a
    dropped or quarantined offer never shadows a later valid duplicate.
    """

    def __init__(self, dedupe_store: RunDedupeStore):
        self.dedupe_store = dedupe_store

    async def validate(self, offer: ScrapedOffer, run_id: str) -> NormalizeResult:
        result = validate_offer(offer)
        if not isinstance(result, NormalizeOk):
            return result

        if await self.dedupe_store.check_and_add_identity_key(run_id, offer.identity_key):
            logger.debug(
                "offer_duplicate_within_run",
                run_id=run_id,
                identity_key=offer.identity_key[:50],
            )
            return NormalizeDrop(reason=DropReason.DUPLICATE_WITHIN_RUN, offer=offer)

        return result

    async def release(self, offer: ScrapedOffer, run_id: str) -> None:
        """Give back the identity key of an offer that was not written."""
        await self.dedupe_store.release_identity_key(run_id, offer.identity_key)
