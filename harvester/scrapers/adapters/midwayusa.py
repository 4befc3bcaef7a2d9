"""MidwayUSA adapter.

Price and availability render client-side, so this adapter reads only the
JSON-LD Product object, which MidwayUSA wraps in a root array.
"""

from harvester.scrapers.base import (
    ScrapeAdapter,
    canonical_or_raw,
    clean_text,
    find_json_ld_product,
    first_image,
    make_soup,
    map_schema_availability,
    missing_price_failure,
    parse_price_cents,
    resolve_brand,
)
from harvester.scrapers.types import (
    CurrencyCode,
    ExtractFailure,
    ExtractFailureReason,
    ExtractResult,
    ExtractSuccess,
    ScrapeAdapterContext,
    ScrapedOffer,
)
from harvester.scrapers.utils.normalizer import parse_grain_weight, parse_round_count
from harvester.scrapers.utils.url import generate_identity_key


class MidwayUSAAdapter(ScrapeAdapter):
    """Scrape adapter for midwayusa.com product pages."""

    id = "midwayusa"
    version = "1.0.0"
    domain = "midwayusa.com"
    requires_js_rendering = False

    def extract(self, html: str, url: str, ctx: ScrapeAdapterContext) -> ExtractResult:
        if not html or not html.strip():
            return ExtractFailure(reason=ExtractFailureReason.EMPTY_PAGE)

        product = find_json_ld_product(make_soup(html))
        if product is None:
            return ExtractFailure(
                reason=ExtractFailureReason.PAGE_STRUCTURE_CHANGED,
                details="No JSON-LD Product found",
            )

        title = clean_text(product.get("name"))
        if not title:
            return ExtractFailure(reason=ExtractFailureReason.TITLE_NOT_FOUND)

        offers = product.get("offers")
        if isinstance(offers, list):
            offers = offers[0] if offers else None
        offers = offers if isinstance(offers, dict) else {}

        availability = map_schema_availability(offers.get("availability"))
        price_cents = parse_price_cents(offers.get("price"))
        if price_cents is None:
            return missing_price_failure(availability)

        canonical_url = canonical_or_raw(url)
        retailer_sku = clean_text(product.get("sku"))
        retailer_product_id = clean_text(product.get("inProductGroupWithID"))

        return ExtractSuccess(offer=ScrapedOffer(
            source_id=ctx.source_id,
            retailer_id=ctx.retailer_id,
            url=canonical_url,
            title=title,
            price_cents=price_cents,
            currency=CurrencyCode.USD,
            availability=availability,
            observed_at=ctx.now,
            identity_key=generate_identity_key(retailer_product_id, retailer_sku, canonical_url),
            adapter_version=self.version,
            retailer_sku=retailer_sku,
            retailer_product_id=retailer_product_id,
            # MidwayUSA publishes the UPC in mpn
            upc=clean_text(product.get("mpn")),
            brand=resolve_brand(product.get("brand")),
            grain_weight=parse_grain_weight(title),
            round_count=parse_round_count(title),
            image_url=first_image(product.get("image")),
        ))
