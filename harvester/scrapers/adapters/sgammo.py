"""SGAmmo adapter.

SGAmmo runs WooCommerce. Extraction order:
1. JSON-LD Product (WooCommerce usually wraps it in @graph)
2. DOM selectors for whatever JSON-LD left missing
"""

from typing import List, Optional

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
    "title": "h1.product_title, .product_title",
    "price": ".summary .price ins .woocommerce-Price-amount, .summary .price .woocommerce-Price-amount, p.price .amount",
    "in_stock": ".stock.in-stock",
    "out_of_stock": ".stock.out-of-stock",
    "stock": ".stock",
    "sku": ".sku",
    "image": ".woocommerce-product-gallery__image img, .wp-post-image",
}


def _offer_price_cents(offers: List[dict]) -> Optional[int]:
    for offer in offers:
        if not isinstance(offer, dict):
            continue
        cents = parse_price_cents(offer.get("price"))
        if cents is not None:
            return cents
        for spec in as_list(offer.get("priceSpecification")):
            if isinstance(spec, dict):
                cents = parse_price_cents(spec.get("price"))
                if cents is not None:
                    return cents
    return None


def _offer_availability(offers: List[dict]) -> Optional[str]:
    for offer in offers:
        if isinstance(offer, dict) and offer.get("availability"):
            return offer["availability"]
    return None


def _dom_availability(soup: BeautifulSoup) -> Availability:
    if soup.select_one(SELECTORS["in_stock"]):
        return Availability.IN_STOCK
    if soup.select_one(SELECTORS["out_of_stock"]):
        return Availability.OUT_OF_STOCK

    stock = soup.select_one(SELECTORS["stock"])
    stock_text = stock.get_text(" ", strip=True).lower() if stock else ""
    if "out of stock" in stock_text:
        return Availability.OUT_OF_STOCK
    if "in stock" in stock_text:
        return Availability.IN_STOCK
    return Availability.UNKNOWN


def _dom_text(soup: BeautifulSoup, selector: str) -> Optional[str]:
    elem = soup.select_one(selector)
    return clean_text(elem.get_text(" ", strip=True)) if elem else None


class SGAmmoAdapter(ScrapeAdapter):
    """Scrape adapter for sgammo.com product pages."""

    id = "sgammo"
    version = "1.0.0"
    domain = "sgammo.com"
    requires_js_rendering = False

    def extract(self, html: str, url: str, ctx: ScrapeAdapterContext) -> ExtractResult:
        if not html or not html.strip():
            return ExtractFailure(reason=ExtractFailureReason.EMPTY_PAGE)

        soup = make_soup(html)

        title = None
        price_cents = None
        availability = Availability.UNKNOWN
        sku = None
        image_url = None

        product = find_json_ld_product(soup)
        if product:
            offers = as_list(product.get("offers"))
            title = clean_text(product.get("name"))
            price_cents = _offer_price_cents(offers)
            availability = map_schema_availability(_offer_availability(offers))
            sku = clean_text(product.get("sku"))
            image_url = first_image(product.get("image"))

            ctx.logger.debug(
                "extracted_from_json_ld",
                has_title=bool(title),
                has_price=price_cents is not None,
                availability=availability.value,
                has_sku=bool(sku),
            )

        # DOM fallback for anything JSON-LD did not provide
        if not title:
            title = _dom_text(soup, SELECTORS["title"])
        if price_cents is None:
            price_cents = parse_price_cents(_dom_text(soup, SELECTORS["price"]))
        if availability == Availability.UNKNOWN:
            availability = _dom_availability(soup)
        if not sku:
            sku = _dom_text(soup, SELECTORS["sku"])
        if not image_url:
            img = soup.select_one(SELECTORS["image"])
            image_url = clean_text(img.get("src")) if img else None

        if not title:
            return ExtractFailure(reason=ExtractFailureReason.TITLE_NOT_FOUND)

        if price_cents is None:
            return missing_price_failure(availability)

        # UNKNOWN availability passes through; validation drops it and it counts toward drift
        canonical_url = canonical_or_raw(url)

        return ExtractSuccess(offer=ScrapedOffer(
            source_id=ctx.source_id,
            retailer_id=ctx.retailer_id,
            url=canonical_url,
            title=title,
            price_cents=price_cents,
            currency=CurrencyCode.USD,
            availability=availability,
            observed_at=ctx.now,
            identity_key=generate_identity_key(None, sku, canonical_url),
            adapter_version=self.version,
            retailer_sku=sku,
            grain_weight=parse_grain_weight(title),
            round_count=parse_round_count(title),
            image_url=image_url,
        ))
