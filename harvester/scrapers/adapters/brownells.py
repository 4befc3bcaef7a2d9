"""Brownells adapter.

Product pages carry one JSON-LD Product with an offer per variant. A
?sku= query parameter selects the variant; without it the first offer wins.
"""

from typing import List, Optional
from urllib.parse import parse_qs, urlsplit

from bs4 import BeautifulSoup

from harvester.scrapers.base import (
    ScrapeAdapter,
    as_list,
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
    Availability,
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


SELECTORS = {
    "title": "h1",
    "in_stock": "[data-stock-status='in-stock'], .in-stock",
    "out_of_stock": "[data-stock-status='out-of-stock'], .out-of-stock",
    "backorder": "[data-stock-status='backorder'], .backorder",
}


def get_sku_param(url: str) -> Optional[str]:
    try:
        values = parse_qs(urlsplit(url).query).get("sku")
    except ValueError:
        return None
    return clean_text(values[0]) if values else None


def select_offer(offers: List[dict], url: str) -> Optional[dict]:
    """The offer matching ?sku=, else the first offer."""
    offers = [offer for offer in offers if isinstance(offer, dict)]
    if not offers:
        return None
    sku_param = get_sku_param(url)
    if sku_param:
        for offer in offers:
            if clean_text(offer.get("sku")) == sku_param:
                return offer
    return offers[0]


def offer_price_cents(offer: Optional[dict]) -> Optional[int]:
    if not offer:
        return None
    cents = parse_price_cents(offer.get("price"))
    if cents is not None:
        return cents
    for spec in as_list(offer.get("priceSpecification")):
        if not isinstance(spec, dict):
            continue
        for key in ("price", "minPrice", "maxPrice"):
            cents = parse_price_cents(spec.get(key))
            if cents is not None:
                return cents
    return None


def _dom_availability(soup: BeautifulSoup) -> Availability:
    if soup.select_one(SELECTORS["in_stock"]):
        return Availability.IN_STOCK
    if soup.select_one(SELECTORS["out_of_stock"]):
        return Availability.OUT_OF_STOCK
    if soup.select_one(SELECTORS["backorder"]):
        return Availability.BACKORDER
    return Availability.UNKNOWN


class BrownellsAdapter(ScrapeAdapter):
    """Scrape adapter for brownells.com product pages."""

    id = "brownells"
    version = "1.0.0"
    domain = "brownells.com"
    requires_js_rendering = False

    def extract(self, html: str, url: str, ctx: ScrapeAdapterContext) -> ExtractResult:
        if not html or not html.strip():
            return ExtractFailure(reason=ExtractFailureReason.EMPTY_PAGE)

        soup = make_soup(html)
        product = find_json_ld_product(soup)
        if product is None:
            return ExtractFailure(
                reason=ExtractFailureReason.PAGE_STRUCTURE_CHANGED,
                details="No JSON-LD Product object found",
            )

        title = clean_text(product.get("name"))
        if not title:
            heading = soup.select_one(SELECTORS["title"])
            title = clean_text(heading.get_text(" ", strip=True)) if heading else None
        if not title:
            return ExtractFailure(reason=ExtractFailureReason.TITLE_NOT_FOUND)

        selected = select_offer(as_list(product.get("offers")), url)
        availability = map_schema_availability(selected.get("availability") if selected else None)
        if availability == Availability.UNKNOWN:
            availability = _dom_availability(soup)

        price_cents = offer_price_cents(selected)
        if price_cents is None:
            return missing_price_failure(
                availability, details="Selected offer did not contain a usable price"
            )

        canonical_url = canonical_or_raw(url)
        sku_param = get_sku_param(url)
        retailer_sku = (clean_text(selected.get("sku")) if selected else None) or clean_text(product.get("sku"))

        return ExtractSuccess(offer=ScrapedOffer(
            source_id=ctx.source_id,
            retailer_id=ctx.retailer_id,
            url=canonical_url,
            title=title,
            price_cents=price_cents,
            currency=CurrencyCode.USD,
            availability=availability,
            observed_at=ctx.now,
            identity_key=generate_identity_key(sku_param, retailer_sku, canonical_url),
            adapter_version=self.version,
            retailer_sku=retailer_sku,
            retailer_product_id=sku_param,
            brand=resolve_brand(product.get("brand")),
            grain_weight=parse_grain_weight(title),
            round_count=parse_round_count(title),
            image_url=first_image(product.get("image")),
        ))
