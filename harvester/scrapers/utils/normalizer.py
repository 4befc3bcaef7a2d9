"""Data normalization utilities for price parsing and ammo attributes."""

import re
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Optional

import structlog

logger = structlog.get_logger(__name__)


GRAIN_PATTERN = re.compile(r"(\d+(?:\.\d+)?)\s*(?:gr|grain)\b", re.IGNORECASE)
ROUND_COUNT_PATTERNS = (
    re.compile(r"(?:box|case|bag|pack)\s+of\s+(\d+)", re.IGNORECASE),
    re.compile(r"(\d+)\s*(?:rounds|round|rds|rd|ct)\b", re.IGNORECASE),
)

_PRICE_PATTERN = re.compile(r"^(\d+(?:\.\d{1,2})?)$")


class PriceNormalizer:
    """Price parsing into integer cents."""

    @staticmethod
    def clean_price_string(raw: Any) -> Optional[Decimal]:
        """Parse a price value and extract its numeric amount.

        Handles formats like:
        - "$32.95" -> 32.95
        - "$1,234.56" -> 1234.56
        - 19.99 -> 19.99

        Args:
            raw: Raw price string or number

        Returns:
            Decimal amount, or None if the value is not a single plain price
        """
        if raw is None or isinstance(raw, bool):
            return None

        cleaned = str(raw).replace("$", "").replace(",", "").strip()
        if not _PRICE_PATTERN.match(cleaned):
            return None

        try:
            return Decimal(cleaned)
        except InvalidOperation:
            return None

    @staticmethod
    def to_cents(raw: Any, allow_zero: bool = False) -> Optional[int]:
        """Convert a raw price to integer cents.

        Args:
            raw: Raw price string or number
            allow_zero: Return 0 for an explicit zero price instead of None

        Returns:
            Cents, or None when unparseable, negative, or zero without allow_zero
        """
        amount = PriceNormalizer.clean_price_string(raw)
        if amount is None or amount < 0 or (amount == 0 and not allow_zero):
            return None
        return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    @staticmethod
    def cents_to_decimal(cents: int) -> Decimal:
        """Convert integer cents to a two-place Decimal for the price table."""
        return (Decimal(cents) / Decimal(100)).quantize(Decimal("0.01"))


def parse_grain_weight(text: Optional[str]) -> Optional[float]:
    """Find a grain weight like "124gr" or "55 grain" in free text."""
    if not text:
        return None
    match = GRAIN_PATTERN.search(text)
    if not match:
        return None
    return float(match.group(1))


def parse_round_count(text: Optional[str]) -> Optional[int]:
    """Find a pack size like "Box of 50" or "1000 Rounds" in free text."""
    if not text:
        return None
    for pattern in ROUND_COUNT_PATTERNS:
        match = pattern.search(text)
        if match:
            count = int(match.group(1))
            if count > 0:
                return count
    return None


def cost_per_round_cents(price_cents: Optional[int], round_count: Optional[int]) -> Optional[int]:
    """Derive cost per round in cents, rounded half up.

    Returns:
        None unless both a positive price and a positive round count are known
    """
    if not price_cents or not round_count or price_cents <= 0 or round_count <= 0:
        return None
    per_round = (Decimal(price_cents) / Decimal(round_count)).quantize(
        Decimal("1"), rounding=ROUND_HALF_UP
    )
    return int(per_round)
