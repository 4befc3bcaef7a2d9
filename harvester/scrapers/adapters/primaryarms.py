"""Primary Arms adapter.

Primary Arms serves product data from a NetSuite items endpoint
(/api/items?...&url=<product path>). The adapter expects that JSON body,
not the HTML shell. Ammo attributes come from a JSON blob embedded in the
item record.
"""

import json
from typing import Dict, Optional, Sequence
from urllib.parse import parse_qs, urlsplit

from harvester.scrapers.base import (
    ScrapeAdapter,
    canonical_or_raw,
    clean_text,
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


BASE_URL = "https://www.primaryarms.com"

ATTRIBUTE_LABELS = {
    "caliber": ("Caliber", "Cartridge", "Gauge"),
    "bullet_weight": ("Bullet Weight", "Grain Weight", "Projectile Weight"),
    "case_material": ("Case Material", "Casing"),
    "bullet_type": ("Bullet Type", "Projectile Type"),
    "brand": ("Brand", "Manufacturer"),
    "load_type": ("Load Type", "Shot Size"),
    "shell_length": ("Shell Length", "Chamber Length"),
}


def parse_response(raw: str) -> Optional[dict]:
    """Decode the items payload; HTML or malformed bodies give None."""
    trimmed = (raw or "").strip()
    if not trimmed or trimmed.startswith("<"):
        return None
    try:
        parsed = json.loads(trimmed)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def resolve_availability(item: dict) -> Availability:
    if item.get("isinstock") is True:
        return Availability.IN_STOCK
    if item.get("isbackorderable") is True:
        return Availability.BACKORDER
    if item.get("isinstock") is False:
        return Availability.OUT_OF_STOCK
    if item.get("ispurchasable") is True:
        return Availability.IN_STOCK
    if item.get("ispurchasable") is False:
        return Availability.OUT_OF_STOCK
    return Availability.UNKNOWN


def parse_attributes(raw: Optional[str]) -> Dict[str, str]:
    """Lowercased attribute label -> value from the embedded attribute JSON."""
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return {}
    if not isinstance(parsed, dict) or not isinstance(parsed.get("attributes"), list):
        return {}

    attributes = {}
    for entry in parsed["attributes"]:
        if not isinstance(entry, dict):
            continue
        key = clean_text(entry.get("attribute"))
        value = clean_text(entry.get("value"))
        if key and value:
            attributes[key.lower()] = value
    return attributes


def get_attribute(attributes: Dict[str, str], labels: Sequence[str]) -> Optional[str]:
    for label in labels:
        value = attributes.get(label.lower())
        if value:
            return value
    return None


def derive_url_component(item_url_component: Optional[str], request_url: str) -> Optional[str]:
    """Product path from the item, else from the request's url= parameter."""
    if item_url_component:
        return item_url_component
    try:
        values = parse_qs(urlsplit(request_url).query).get("url")
    except ValueError:
        return None
    if not values:
        return None
    return clean_text(values[0].lstrip("/"))


def build_product_url(url_component: Optional[str], fallback_url: str) -> str:
    if not url_component:
        return fallback_url
    if url_component.startswith(("http://", "https://")):
        return url_component
    return f"{BASE_URL}/{url_component.lstrip('/')}"


class PrimaryArmsAdapter(ScrapeAdapter):
    """Scrape adapter for the primaryarms.com items API."""

    id = "primaryarms"
    version = "1.0.0"
    domain = "primaryarms.com"
    requires_js_rendering = False

    def extract(self, html: str, url: str, ctx: ScrapeAdapterContext) -> ExtractResult:
        payload = parse_response(html)
        if payload is None:
            return ExtractFailure(
                reason=ExtractFailureReason.PAGE_STRUCTURE_CHANGED,
                details="Expected JSON payload",
            )

        code = payload.get("code")
        if code and code != 200:
            return ExtractFailure(
                reason=ExtractFailureReason.PAGE_STRUCTURE_CHANGED,
                details=f"API code {code}",
            )

        items = payload.get("items") or []
        item = items[0] if isinstance(items, list) and items else None
        if not isinstance(item, dict):
            return ExtractFailure(reason=ExtractFailureReason.EMPTY_PAGE)

        title = (
            clean_text(item.get("pagetitle"))
            or clean_text(item.get("displayname"))
            or clean_text(item.get("itemid"))
        )
        if not title:
            return ExtractFailure(reason=ExtractFailureReason.TITLE_NOT_FOUND)

        availability = resolve_availability(item)

        raw_price = item.get("onlinecustomerprice")
        if raw_price is None:
            price_detail = item.get("onlinecustomerprice_detail")
            if isinstance(price_detail, dict):
                raw_price = price_detail.get("onlinecustomerprice")
        price_cents = parse_price_cents(raw_price)
        if price_cents is None:
            return missing_price_failure(availability)

        url_component = derive_url_component(clean_text(item.get("urlcomponent")), url)
        if not url_component:
            ctx.logger.warning(
                "primaryarms_missing_urlcomponent",
                target_id=ctx.target_id,
                url=url,
            )
        canonical_url = canonical_or_raw(build_product_url(url_component, url))

        internal_id = item.get("internalid")
        retailer_product_id = clean_text(internal_id) if internal_id is not None else None
        retailer_sku = clean_text(item.get("itemid"))

        attributes = parse_attributes(item.get("custitem_test_for_website"))
        bullet_weight = get_attribute(attributes, ATTRIBUTE_LABELS["bullet_weight"])
        grain_weight = parse_grain_weight(bullet_weight)
        if grain_weight is None:
            grain_weight = parse_grain_weight(title)
        brand = (
            clean_text(item.get("custitem_brand"))
            or clean_text(item.get("manufacturer"))
            or get_attribute(attributes, ATTRIBUTE_LABELS["brand"])
        )

        image_url = None
        images = item.get("itemimages_detail")
        image_entries = images.get("urls") if isinstance(images, dict) else None
        for entry in image_entries if isinstance(image_entries, list) else []:
            if isinstance(entry, dict) and clean_text(entry.get("url")):
                image_url = clean_text(entry.get("url"))
                break

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
            upc=clean_text(item.get("upccode")),
            brand=brand,
            caliber=get_attribute(attributes, ATTRIBUTE_LABELS["caliber"]),
            grain_weight=grain_weight,
            round_count=parse_round_count(title),
            case_material=get_attribute(attributes, ATTRIBUTE_LABELS["case_material"]),
            bullet_type=get_attribute(attributes, ATTRIBUTE_LABELS["bullet_type"]),
            load_type=get_attribute(attributes, ATTRIBUTE_LABELS["load_type"]),
            shell_length=get_attribute(attributes, ATTRIBUTE_LABELS["shell_length"]),
            image_url=image_url,
        ))
