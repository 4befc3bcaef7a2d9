"""Tests for offer validation and run-level dedupe."""

from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from structlog.testing import capture_logs

from harvester.scrapers.process.run_dedupe import RunDedupeStore, dedupe_key
from harvester.scrapers.process.validator import (
    MAX_PRICE_CENTS,
    OfferValidator,
    create_drop_from_extract_failure,
    drop_reason_to_message,
    quarantine_reason_to_message,
    should_count_toward_drift,
    validate_offer,
)
from harvester.scrapers.types import (
    Availability,
    DropReason,
    ExtractFailureReason,
    NormalizeDrop,
    NormalizeOk,
    NormalizeQuarantine,
    QuarantineReason,
)


# ============================================================================
# TESTS: PURE VALIDATION
# ============================================================================

class TestValidateOffer:
    """Tests for validate_offer."""

    def test_valid_offer_passes(self, make_offer):
        result = validate_offer(make_offer())
        assert isinstance(result, NormalizeOk)
        assert result.status == "ok"

    @pytest.mark.parametrize("field", ["title", "identity_key", "url", "adapter_version"])
    def test_empty_required_field_drops(self, make_offer, field):
        result = validate_offer(make_offer(**{field: ""}))
        assert isinstance(result, NormalizeDrop)
        assert result.reason == DropReason.MISSING_REQUIRED_FIELD

    def test_none_required_field_drops(self, make_offer):
        result = validate_offer(make_offer(observed_at=None))
        assert result.reason == DropReason.MISSING_REQUIRED_FIELD

    def test_unknown_availability_drops(self, make_offer):
        result = validate_offer(make_offer(availability=Availability.UNKNOWN))
        assert isinstance(result, NormalizeDrop)
        assert result.reason == DropReason.UNKNOWN_AVAILABILITY

    def test_unknown_availability_wins_over_zero_price(self, make_offer):
        result = validate_offer(make_offer(availability=Availability.UNKNOWN, price_cents=0))
        assert result.reason == DropReason.UNKNOWN_AVAILABILITY

    @pytest.mark.parametrize(
        "availability",
        [Availability.IN_STOCK, Availability.OUT_OF_STOCK, Availability.BACKORDER],
    )
    def test_zero_price_quarantines(self, make_offer, availability):
        result = validate_offer(make_offer(price_cents=0, availability=availability))
        assert isinstance(result, NormalizeQuarantine)
        assert result.reason == QuarantineReason.ZERO_PRICE_EXTRACTED
        assert result.status == "quarantine"

    @pytest.mark.parametrize("price", [100_000_000, -1, 19.99, True])
    def test_invalid_price_drops(self, make_offer, price):
        result = validate_offer(make_offer(price_cents=price))
        assert isinstance(result, NormalizeDrop)
        assert result.reason == DropReason.INVALID_PRICE

    def test_price_cap_is_inclusive(self, make_offer):
        assert isinstance(validate_offer(make_offer(price_cents=MAX_PRICE_CENTS)), NormalizeOk)
        assert isinstance(validate_offer(make_offer(price_cents=1)), NormalizeOk)

    @pytest.mark.parametrize("url", ["ftp://example.com/p", "example.com/p", "/relative"])
    def test_invalid_url_drops(self, make_offer, url):
        result = validate_offer(make_offer(url=url))
        assert result.reason == DropReason.INVALID_URL

    def test_seen_identity_key_drops(self, make_offer):
        offer = make_offer()
        result = validate_offer(offer, seen_identity_keys={offer.identity_key})
        assert result.reason == DropReason.DUPLICATE_WITHIN_RUN
        assert isinstance(validate_offer(offer, seen_identity_keys={"SKU:OTHER"}), NormalizeOk)


class TestValidatorHelpers:
    """Tests for drop conversion, drift accounting and messages."""

    def test_oos_extract_failure_keeps_reason(self):
        drop = create_drop_from_extract_failure(ExtractFailureReason.OOS_NO_PRICE)
        assert drop.reason == DropReason.OOS_NO_PRICE
        assert drop.offer.availability == Availability.UNKNOWN

    def test_robots_failure_keeps_reason(self):
        drop = create_drop_from_extract_failure("BLOCKED_BY_ROBOTS_TXT")
        assert drop.reason == DropReason.BLOCKED_BY_ROBOTS_TXT

    def test_other_failures_become_missing_field(self):
        drop = create_drop_from_extract_failure(
            ExtractFailureReason.PRICE_NOT_FOUND,
            partial={"url": "https://example.com/p", "title": "Thing", "retailer_sku": "ABC"},
        )
        assert drop.reason == DropReason.MISSING_REQUIRED_FIELD
        assert drop.offer.url == "https://example.com/p"
        assert drop.offer.title == "Thing"
        assert drop.offer.retailer_sku == "ABC"

    def test_drift_accounting(self):
        assert should_count_toward_drift(DropReason.OOS_NO_PRICE) is False
        assert should_count_toward_drift(DropReason.DUPLICATE_WITHIN_RUN) is False
        assert should_count_toward_drift(DropReason.INVALID_PRICE) is True
        assert should_count_toward_drift(DropReason.UNKNOWN_AVAILABILITY) is True

    def test_every_reason_has_a_message(self):
        for reason in DropReason:
            assert drop_reason_to_message(reason)
        for reason in QuarantineReason:
            assert quarantine_reason_to_message(reason)
        assert quarantine_reason_to_message("ZERO_PRICE_EXTRACTED") == "Extracted price was zero"


# ============================================================================
# TESTS: RUN DEDUPE
# ============================================================================

class TestRunDedupeStore:
    """Tests for RunDedupeStore against a mocked Redis client."""

    async def test_first_sighting_is_not_duplicate(self):
        redis = AsyncMock()
        redis.sadd.return_value = 1
        store = RunDedupeStore(redis=redis, ttl_seconds=600)

        assert await store.check_and_add_identity_key("run-1", "SKU:A") is False
        redis.sadd.assert_awaited_once_with(dedupe_key("run-1"), "SKU:A")
        redis.expire.assert_awaited_once_with(dedupe_key("run-1"), 600)

    async def test_repeat_sighting_is_duplicate(self):
        redis = AsyncMock()
        redis.sadd.return_value = 0
        store = RunDedupeStore(redis=redis)

        assert await store.check_and_add_identity_key("run-1", "SKU:A") is True
        redis.expire.assert_not_awaited()

    async def test_redis_failure_fails_open(self):
        redis = AsyncMock()
        redis.sadd.side_effect = RedisConnectionError("down")
        store = RunDedupeStore(redis=redis)

        assert await store.check_and_add_identity_key("run-1", "SKU:A") is False

    async def test_count_and_cleanup(self, redis_sets):
        store = RunDedupeStore(redis=redis_sets)
        await store.check_and_add_identity_key("run-1", "SKU:A")
        await store.check_and_add_identity_key("run-1", "SKU:B")
        await store.check_and_add_identity_key("run-1", "SKU:A")

        assert await store.get_run_dedupe_count("run-1") == 2

        await store.cleanup_run_dedupe_set("run-1")
        assert await store.get_run_dedupe_count("run-1") == 0

    async def test_release_removes_reserved_key(self):
        redis = AsyncMock()
        store = RunDedupeStore(redis=redis)

        await store.release_identity_key("run-1", "SKU:A")

        redis.srem.assert_awaited_once_with("scrape:dedupe:run-1", "SKU:A")

    async def test_release_on_redis_failure_is_logged(self):
        redis = AsyncMock()
        redis.srem.side_effect = RedisConnectionError("down")
        with capture_logs() as logs:
            store = RunDedupeStore(redis=redis)
            await store.release_identity_key("run-1", "SKU:A")

        assert logs[-1]["event"] == "dedupe_release_failed"

    async def test_count_on_redis_failure_is_zero(self):
        redis = AsyncMock()
        redis.scard.side_effect = RedisConnectionError("down")
        store = RunDedupeStore(redis=redis)

        assert await store.get_run_dedupe_count("run-1") == 0

    async def test_close_leaves_injected_client_open(self):
        redis = AsyncMock()
        store = RunDedupeStore(redis=redis)
        await store.close()
        redis.aclose.assert_not_awaited()


# ============================================================================
# TESTS: RUN-AWARE VALIDATOR
# ============================================================================

class TestOfferValidator:
    """Tests for OfferValidator."""

    async def test_second_occurrence_in_run_is_dropped(self, make_offer, redis_sets):
        validator = OfferValidator(RunDedupeStore(redis=redis_sets))

        first = await validator.validate(make_offer(), "run-1")
        second = await validator.validate(make_offer(), "run-1")

        assert isinstance(first, NormalizeOk)
        assert isinstance(second, NormalizeDrop)
        assert second.reason == DropReason.DUPLICATE_WITHIN_RUN

    async def test_same_key_in_different_runs_is_kept(self, make_offer, redis_sets):
        validator = OfferValidator(RunDedupeStore(redis=redis_sets))

        assert isinstance(await validator.validate(make_offer(), "run-1"), NormalizeOk)
        assert isinstance(await validator.validate(make_offer(), "run-2"), NormalizeOk)

    async def test_rejected_offer_does_not_reserve_key(self, make_offer, redis_sets):
        validator = OfferValidator(RunDedupeStore(redis=redis_sets))

        rejected = await validator.validate(make_offer(availability=Availability.UNKNOWN), "run-1")
        accepted = await validator.validate(make_offer(), "run-1")

        assert rejected.reason == DropReason.UNKNOWN_AVAILABILITY
        assert isinstance(accepted, NormalizeOk)

    async def test_zero_price_quarantines_before_dedupe(self, make_offer, redis_sets):
        validator = OfferValidator(RunDedupeStore(redis=redis_sets))

        result = await validator.validate(make_offer(price_cents=0), "run-1")

        assert isinstance(result, NormalizeQuarantine)
        assert await redis_sets.scard(dedupe_key("run-1")) == 0

    async def test_released_key_can_be_accepted_again(self, make_offer, redis_sets):
        validator = OfferValidator(RunDedupeStore(redis=redis_sets))

        first = await validator.validate(make_offer(), "run-1")
        await validator.release(first.offer, "run-1")
        second = await validator.validate(make_offer(), "run-1")

        assert isinstance(second, NormalizeOk)
        assert await redis_sets.scard(dedupe_key("run-1")) == 1
