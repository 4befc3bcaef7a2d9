"""Persistence of validated scrape offers.

Writes to:
1. source_products (upsert by source_id + identity_key)
2. source_product_identifiers (UPC, SKU)
3. prices (append with provenance)

Quarantined offers go to quarantined_offers instead of the price stream.
Prices are integer cents everywhere else and become Decimal only here.
"""

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Tuple

import structlog
from sqlalchemy import and_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from harvester.core.exceptions import NotFoundError
from harvester.models.price import Price
from harvester.models.quarantined_offer import QuarantinedOffer
from harvester.models.scrape_run import ScrapeRun
from harvester.models.scrape_target import ScrapeTarget
from harvester.models.source_product import SourceProduct
from harvester.models.source_product_identifier import SourceProductIdentifier
from harvester.scrapers.process.drift_detector import compute_derived_metrics
from harvester.scrapers.process.validator import quarantine_reason_to_message
from harvester.scrapers.types import (
    QuarantineReason,
    ScrapeJobTrigger,
    ScrapedOffer,
    ScrapeRunMetrics,
    ScrapeRunStatus,
    ScrapeTargetStatus,
    map_availability_to_in_stock,
)
from harvester.scrapers.utils.normalizer import PriceNormalizer

logger = structlog.get_logger(__name__)

INGESTION_RUN_TYPE = "SCRAPE"

_NON_DIGITS = re.compile(r"[^0-9]")


@dataclass(frozen=True)
class WriteResult:
    success: bool
    source_product_id: Optional[str] = None
    price_id: Optional[str] = None
    error: Optional[str] = None


class ScrapeWriter:
    """Writes offers, target tracking and run metrics.

    Every public write method commits its own unit of work. Offer writes
    never raise: failures roll back and come back as WriteResult.
    """

    def __init__(self, db: AsyncSession):
        """Initialize writer.

        Args:
            db: Async database session
        """
        self.db = db
        self.logger = logger.bind(component="scrape_writer")

    # ------------------------------------------------------------------
    # Offers
    # ------------------------------------------------------------------

    async def write_scrape_offer(
        self,
        offer: ScrapedOffer,
        run_id: str,
        target_id: Optional[str] = None,
        target_source_product_id: Optional[str] = None,
    ) -> WriteResult:
        """Write one validated offer.

        Args:
            offer: Offer that passed validation
            run_id: Scrape run id, stamped on the price row
            target_id: Scrape target the offer came from (logging only)
            target_source_product_id: Explicit source product link on the target

        Returns:
            WriteResult with the source product and price ids, or the error
        """
        try:
            try:
                source_product_id, price_id = await self._write_offer_rows(
                    offer, run_id, target_id, target_source_product_id
                )
            except IntegrityError as e:
                # Lost an insert race on a unique key; the second pass selects the winner's row
                await self.db.rollback()
                self.logger.info(
                    "offer_write_conflict_retrying",
                    identity_key=offer.identity_key,
                    error=str(e),
                )
                source_product_id, price_id = await self._write_offer_rows(
                    offer, run_id, target_id, target_source_product_id
                )
        except (SQLAlchemyError, ValueError) as e:
            await self.db.rollback()
            self.logger.error(
                "offer_write_failed",
                identity_key=offer.identity_key,
                url=offer.url,
                error=str(e),
            )
            return WriteResult(success=False, error=str(e))

        self.logger.debug(
            "offer_written",
            source_product_id=source_product_id,
            price_id=price_id,
            identity_key=offer.identity_key,
            price_cents=offer.price_cents,
        )
        return WriteResult(success=True, source_product_id=source_product_id, price_id=price_id)

    async def _write_offer_rows(
        self,
        offer: ScrapedOffer,
        run_id: str,
        target_id: Optional[str],
        target_source_product_id: Optional[str],
    ) -> Tuple[str, str]:
        source_product_id = await self._resolve_source_product(
            offer, target_id, target_source_product_id
        )
        await self._write_identifiers(source_product_id, offer)
        price_id = await self._write_price(source_product_id, offer, run_id)
        await self.db.commit()
        return source_product_id, price_id

    async def _resolve_source_product(
        self,
        offer: ScrapedOffer,
        target_id: Optional[str],
        target_source_product_id: Optional[str],
    ) -> str:
        """Pick the source product for an offer.

        An explicit link on the target wins, even if its identity key no
        longer matches the offer; the stored key is never rewritten. Without
        a link (or when the linked row is gone) upsert by identity key.
        """
        if target_source_product_id:
            existing = await self.db.get(SourceProduct, target_source_product_id)

            if existing is None:
                self.logger.warning(
                    "linked_source_product_missing",
                    target_id=target_id,
                    source_product_id=target_source_product_id,
                )
                return await self._upsert_by_identity_key(offer)

            if existing.identity_key != offer.identity_key:
                self.logger.warning(
                    "identity_key_mismatch_on_linked_source_product",
                    target_id=target_id,
                    source_product_id=target_source_product_id,
                    existing_identity_key=existing.identity_key,
                    offer_identity_key=offer.identity_key,
                )

            return existing.id

        return await self._upsert_by_identity_key(offer)

    async def _find_source_product(self, offer: ScrapedOffer) -> Optional[SourceProduct]:
        result = await self.db.execute(
            select(SourceProduct).where(and_(
                SourceProduct.source_id == offer.source_id,
                SourceProduct.identity_key == offer.identity_key,
            ))
        )
        return result.scalar_one_or_none()

    async def _upsert_by_identity_key(self, offer: ScrapedOffer) -> str:
        source_product = await self._find_source_product(offer)
        brand_norm = offer.brand.lower().strip() if offer.brand else None

        if source_product:
            # Mutable display fields only
            source_product.title = offer.title
            source_product.url = offer.url
            source_product.normalized_url = offer.url
            source_product.brand = offer.brand
            source_product.brand_norm = brand_norm
            source_product.caliber = offer.caliber
            source_product.grain_weight = offer.grain_weight
            source_product.round_count = offer.round_count
            source_product.image_url = offer.image_url
        else:
            source_product = SourceProduct(
                source_id=offer.source_id,
                identity_key=offer.identity_key,
                title=offer.title,
                url=offer.url,
                normalized_url=offer.url,
                brand=offer.brand,
                brand_norm=brand_norm,
                caliber=offer.caliber,
                grain_weight=offer.grain_weight,
                round_count=offer.round_count,
                image_url=offer.image_url,
            )
            self.db.add(source_product)

        await self.db.flush()
        return source_product.id

    async def _write_identifiers(self, source_product_id: str, offer: ScrapedOffer) -> None:
        if offer.upc:
            await self._upsert_identifier(
                source_product_id,
                id_type="UPC",
                id_value=offer.upc,
                namespace="",
                normalized_value=_NON_DIGITS.sub("", offer.upc),
                is_canonical=True,
            )

        if offer.retailer_sku:
            await self._upsert_identifier(
                source_product_id,
                id_type="SKU",
                id_value=offer.retailer_sku,
                namespace=offer.retailer_id,
                normalized_value=offer.retailer_sku.upper().strip(),
                is_canonical=not offer.upc,
            )

    async def _upsert_identifier(
        self,
        source_product_id: str,
        id_type: str,
        id_value: str,
        namespace: str,
        normalized_value: str,
        is_canonical: bool,
    ) -> None:
        result = await self.db.execute(
            select(SourceProductIdentifier).where(and_(
                SourceProductIdentifier.source_product_id == source_product_id,
                SourceProductIdentifier.id_type == id_type,
                SourceProductIdentifier.id_value == id_value,
                SourceProductIdentifier.namespace == namespace,
            ))
        )
        identifier = result.scalar_one_or_none()

        if identifier:
            identifier.normalized_value = normalized_value
        else:
            self.db.add(SourceProductIdentifier(
                source_product_id=source_product_id,
                id_type=id_type,
                id_value=id_value,
                namespace=namespace,
                normalized_value=normalized_value,
                is_canonical=is_canonical,
            ))
        await self.db.flush()

    async def _write_price(self, source_product_id: str, offer: ScrapedOffer, run_id: str) -> str:
        price = Price(
            retailer_id=offer.retailer_id,
            source_id=offer.source_id,
            source_product_id=source_product_id,
            price=PriceNormalizer.cents_to_decimal(offer.price_cents),
            currency=offer.currency.value,
            url=offer.url,
            in_stock=map_availability_to_in_stock(offer.availability),
            observed_at=offer.observed_at,
            shipping_cost=(
                PriceNormalizer.cents_to_decimal(offer.shipping_cents)
                if offer.shipping_cents is not None
                else None
            ),
            ingestion_run_type=INGESTION_RUN_TYPE,
            ingestion_run_id=run_id,
        )
        self.db.add(price)
        await self.db.flush()
        return price.id

    async def write_quarantined_offer(
        self,
        offer: ScrapedOffer,
        reason: QuarantineReason,
        run_id: str,
        target_id: Optional[str] = None,
    ) -> WriteResult:
        """Store a quarantined offer for review. Never touches prices."""
        try:
            row = QuarantinedOffer(
                run_id=run_id,
                target_id=target_id,
                source_id=offer.source_id,
                retailer_id=offer.retailer_id,
                identity_key=offer.identity_key or None,
                url=offer.url or None,
                reason=QuarantineReason(reason).value,
                reason_message=quarantine_reason_to_message(reason),
                adapter_version=offer.adapter_version or None,
                payload=offer.to_dict(),
            )
            self.db.add(row)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            self.logger.error(
                "quarantine_write_failed",
                run_id=run_id,
                reason=getattr(reason, "value", reason),
                error=str(e),
            )
            return WriteResult(success=False, error=str(e))

        self.logger.info(
            "offer_quarantined",
            run_id=run_id,
            target_id=target_id,
            reason=row.reason,
            identity_key=offer.identity_key,
        )
        return WriteResult(success=True)

    # ------------------------------------------------------------------
    # Targets and runs
    # ------------------------------------------------------------------

    async def create_run(
        self,
        adapter_id: str,
        source_id: str,
        retailer_id: str,
        trigger: ScrapeJobTrigger = ScrapeJobTrigger.SCHEDULED,
    ) -> ScrapeRun:
        """Open a RUNNING run with zeroed counters."""
        run = ScrapeRun(
            adapter_id=adapter_id,
            source_id=source_id,
            retailer_id=retailer_id,
            trigger=ScrapeJobTrigger(trigger).value,
            status=ScrapeRunStatus.RUNNING.value,
            started_at=datetime.now(timezone.utc),
        )
        self.db.add(run)
        await self.db.commit()
        self.logger.info("run_created", run_id=run.id, adapter_id=adapter_id, source_id=source_id)
        return run

    async def _get_target(self, target_id: str) -> ScrapeTarget:
        target = await self.db.get(ScrapeTarget, target_id)
        if target is None:
            raise NotFoundError("ScrapeTarget", target_id)
        return target

    async def update_target_tracking(self, target_id: str, success: bool) -> int:
        """Record the outcome of one attempt on a target.

        Returns:
            consecutive_failures after the update
        """
        target = await self._get_target(target_id)
        target.last_scraped_at = datetime.now(timezone.utc)
        if success:
            target.last_status = "SUCCESS"
            target.consecutive_failures = 0
        else:
            target.last_status = "FAILED"
            target.consecutive_failures = (target.consecutive_failures or 0) + 1
        await self.db.commit()
        return target.consecutive_failures

    async def mark_target_broken(self, target_id: str) -> None:
        """Move a target to BROKEN; only an operator brings it back."""
        target = await self._get_target(target_id)
        target.status = ScrapeTargetStatus.BROKEN.value
        await self.db.commit()
        self.logger.warning(
            "target_marked_broken",
            target_id=target_id,
            consecutive_failures=target.consecutive_failures,
        )

    async def finalize_run(
        self,
        run_id: str,
        metrics: ScrapeRunMetrics,
        status: ScrapeRunStatus,
    ) -> ScrapeRun:
        """Stamp final metrics, derived rates and status onto a run.

        Raises:
            NotFoundError: If the run does not exist
        """
        run = await self.db.get(ScrapeRun, run_id)
        if run is None:
            raise NotFoundError("ScrapeRun", run_id)

        completed_at = datetime.now(timezone.utc)
        started_at = run.started_at
        if started_at is not None and started_at.tzinfo is None:
            started_at = started_at.replace(tzinfo=timezone.utc)

        derived = compute_derived_metrics(metrics)

        run.status = ScrapeRunStatus(status).value
        run.completed_at = completed_at
        run.duration_ms = (
            int((completed_at - started_at).total_seconds() * 1000) if started_at else None
        )
        run.urls_attempted = metrics.urls_attempted
        run.urls_succeeded = metrics.urls_succeeded
        run.urls_failed = metrics.urls_failed
        run.offers_extracted = metrics.offers_extracted
        run.offers_valid = metrics.offers_valid
        run.offers_dropped = metrics.offers_dropped
        run.offers_quarantined = metrics.offers_quarantined
        run.zero_price_count = metrics.zero_price_count
        run.oos_no_price_count = metrics.oos_no_price_count
        run.failure_rate = derived.failure_rate if metrics.urls_attempted > 0 else None
        run.yield_rate = derived.yield_rate if metrics.urls_attempted > 0 else None
        run.drop_rate = derived.drop_rate if metrics.offers_extracted > 0 else None

        await self.db.commit()
        return run
