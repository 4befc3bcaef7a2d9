"""Base scrape adapter interface.

All retailer adapters inherit from ScrapeAdapter and implement extract().
extract() and normalize() are pure: no network, no clock reads, no shared
state. Same html, url and context always give the same result.
"""

import json
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Any, Iterator, List, Optional

import structlog
from bs4 import BeautifulSoup

from harvester.core.exceptions import InvalidUrlError
from harvester.scrapers.process.validator import validate_offer
from harvester.scrapers.types import (
    Availability,
    ExtractFailure,
    ExtractFailureReason,
    ExtractResult,
    NormalizeResult,
    ScrapeAdapterContext,
    ScrapedOffer,
)
from harvester.scrapers.utils.normalizer import PriceNormalizer, cost_per_round_cents
from harvester.scrapers.utils.url import canonicalize_url

JSON_LD_SELECTOR = 'script[type="application/ld+json"]'

# schema.org availability, compared on the last path segment, lowercased
SCHEMA_IN_STOCK = ("instock", "limitedavailability", "onlineonly", "instoreonly")
SCHEMA_OUT_OF_STOCK = ("outofstock", "discontinued", "soldout")
SCHEMA_BACKORDER = ("backorder", "preorder", "presale")


class ScrapeAdapter(ABC):
    """Abstract base class for retailer adapters.

    Subclasses set id, version, domain and requires_js_rendering as class
    attributes. version must be bumped whenever extraction logic changes,
    since it is stamped on every offer.
    """

    id: str = ""  # e.g. "sgammo"
    version: str = ""  # semver
    domain: str = ""  # registrable domain, e.g. "sgammo.com"
    requires_js_rendering: bool = False

    def __init__(self):
        self.logger = structlog.get_logger(adapter=self.id)

    @abstractmethod
    def extract(self, html: str, url: str, ctx: ScrapeAdapterContext) -> ExtractResult:
        """Extract one offer from a fetched page.

        Must return ExtractFailure(OOS_NO_PRICE) when the page shows out of
        stock with no price, never a missing value.

        Args:
            html: Page body (or JSON body for API-backed adapters)
            url: URL the body was fetched from
            ctx: Job context (ids, observation time, logger)

        Returns:
            ExtractSuccess or ExtractFailure
        """

    def normalize(self, offer: ScrapedOffer, ctx: ScrapeAdapterContext) -> NormalizeResult:
        """Derive computed fields and classify the offer.

        The default derives cost per round from price and round count, then
        runs the standard validation.
        """
        if offer.cost_per_round_cents is None and offer.round_count:
            offer = replace(
                offer,
                cost_per_round_cents=cost_per_round_cents(offer.price_cents, offer.round_count),
            )
        return validate_offer(offer)

    def __repr__(self) -> str:
        return f"<{type(self).__name__}(id='{self.id}', version='{self.version}', domain='{self.domain}')>"


# ============================================================================
# Shared extraction helpers
# ============================================================================


def make_soup(html: str) -> BeautifulSoup:
    return BeautifulSoup(html, "html.parser")


def as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    return list(value) if isinstance(value, list) else [value]


def is_type_match(value: Any, target: str) -> bool:
    """JSON-LD @type check; @type may be a string or a list."""
    target = target.lower()
    return any(str(item).lower() == target for item in as_list(value))


def iter_json_ld_nodes(soup: BeautifulSoup) -> Iterator[dict]:
    """Yield every JSON-LD object on the page, flattening root arrays and @graph.

    Malformed blocks are skipped.
    """
    for script in soup.select(JSON_LD_SELECTOR):
        raw = script.get_text().strip()
        if not raw:
            continue
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            continue

        queue = as_list(parsed)
        while queue:
            node = queue.pop(0)
            if not isinstance(node, dict):
                continue
            yield node
            graph = node.get("@graph")
            if isinstance(graph, list):
                queue.extend(graph)


def find_json_ld_product(soup: BeautifulSoup) -> Optional[dict]:
    """First JSON-LD node typed Product, or None."""
    for node in iter_json_ld_nodes(soup):
        if is_type_match(node.get("@type"), "Product"):
            return node
    return None


def map_schema_availability(value: Optional[str]) -> Availability:
    """Map a schema.org availability URL or name onto Availability."""
    if not value:
        return Availability.UNKNOWN
    name = str(value).rstrip("/").rsplit("/", 1)[-1].strip().lower()
    if name in SCHEMA_IN_STOCK:
        return Availability.IN_STOCK
    if name in SCHEMA_OUT_OF_STOCK:
        return Availability.OUT_OF_STOCK
    if name in SCHEMA_BACKORDER:
        return Availability.BACKORDER
    return Availability.UNKNOWN


def parse_price_cents(value: Any) -> Optional[int]:
    """Parse a displayed price into cents.

    An explicit zero comes back as 0 so validation can quarantine it;
    unparseable or negative values come back as None.
    """
    return PriceNormalizer.to_cents(value, allow_zero=True)


def clean_text(value: Any) -> Optional[str]:
    """Stripped string, or None for missing or blank values."""
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def first_image(value: Any) -> Optional[str]:
    """JSON-LD image may be a string, a list, or an ImageObject."""
    for item in as_list(value):
        if isinstance(item, dict):
            item = item.get("url")
        text = clean_text(item)
        if text:
            return text
    return None


def resolve_brand(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        return clean_text(value.get("name"))
    return clean_text(value)


def missing_price_failure(availability: Availability, details: Optional[str] = None) -> ExtractFailure:
    """Out-of-stock pages without a price are expected; anything else is a failure."""
    if availability == Availability.OUT_OF_STOCK:
        return ExtractFailure(reason=ExtractFailureReason.OOS_NO_PRICE)
    return ExtractFailure(reason=ExtractFailureReason.PRICE_NOT_FOUND, details=details)


def canonical_or_raw(url: str) -> str:
    """Canonical form of url; an uncanonicalizable url is returned as-is so
    validation drops the offer with INVALID_URL."""
    try:
        return canonicalize_url(url)
    except InvalidUrlError:
        return url
