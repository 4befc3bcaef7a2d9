"""Scraper utilities for URL canonicalization, identity keys and price parsing."""

from .normalizer import (
    PriceNormalizer,
    cost_per_round_cents,
    parse_grain_weight,
    parse_round_count,
)
from .url import (
    canonicalize_url,
    generate_identity_key,
    get_registrable_domain,
    hash_url,
    is_valid_url,
    parse_identity_key,
)


__all__ = [
    # Normalization
    "PriceNormalizer",
    "cost_per_round_cents",
    "parse_grain_weight",
    "parse_round_count",
    # URLs and identity keys
    "canonicalize_url",
    "generate_identity_key",
    "get_registrable_domain",
    "hash_url",
    "is_valid_url",
    "parse_identity_key",
]
