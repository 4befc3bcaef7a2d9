"""URL canonicalization and identity key helpers.

Canonical form:
- https scheme (http is upgraded)
- lowercase hostname
- tracking params removed (utm_*, fbclid, gclid, ref, source, campaign)
- empty query params removed, remaining params sorted by name
- fragment removed
- trailing slash removed except for the root path
"""

import hashlib
from typing import Optional, Tuple
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import tldextract

from harvester.core.exceptions import InvalidIdentityKeyError, InvalidUrlError

TRACKING_PARAMS = frozenset(
    {
        "utm_source",
        "utm_medium",
        "utm_campaign",
        "utm_term",
        "utm_content",
        "fbclid",
        "gclid",
        "ref",
        "source",
        "campaign",
    }
)

IDENTITY_KEY_TYPES = ("PID", "SKU", "URL")
MAX_IDENTITY_VALUE_LENGTH = 255

# Bundled Public Suffix List snapshot only; no network access at runtime.
_tld_extract = tldextract.TLDExtract(suffix_list_urls=())


def canonicalize_url(url: str) -> str:
    """Canonicalize a product URL for deduplication and hashing.

    Args:
        url: Absolute http(s) URL

    Returns:
        Canonical URL string

    Raises:
        InvalidUrlError: If the URL has no scheme or host
    """
    try:
        parts = urlsplit(url.strip())
        hostname = parts.hostname
        port = parts.port
    except (AttributeError, ValueError) as e:
        raise InvalidUrlError(str(url)) from e

    if not parts.scheme or not hostname:
        raise InvalidUrlError(url)

    netloc = hostname.lower()
    if port and port != 443:
        netloc = f"{netloc}:{port}"

    params = [
        (key, value)
        for key, value in parse_qsl(parts.query, keep_blank_values=True)
        if key not in TRACKING_PARAMS and not key.startswith("utm_") and value != ""
    ]
    # sort() is stable, so repeated keys keep their relative order
    params.sort(key=lambda kv: kv[0])

    path = parts.path or "/"
    if path != "/" and path.endswith("/"):
        path = path[:-1]

    return urlunsplit(("https", netloc, path, urlencode(params), ""))


def is_valid_url(url: str) -> bool:
    """Check that a URL parses and uses http or https."""
    if not url or not isinstance(url, str):
        return False
    try:
        parts = urlsplit(url)
        return parts.scheme in ("http", "https") and bool(parts.hostname)
    except ValueError:
        return False


def get_registrable_domain(url: str) -> str:
    """Return the registrable domain (eTLD+1) of a URL.

    www.sgammo.com and cdn.sgammo.com both map to sgammo.com, so they share
    one rate-limit budget. Falls back to the hostname for IPs and hosts
    without a public suffix.

    Raises:
        InvalidUrlError: If the URL has no host
    """
    try:
        hostname = urlsplit(url).hostname
    except ValueError as e:
        raise InvalidUrlError(url) from e
    if not hostname:
        raise InvalidUrlError(url)

    hostname = hostname.lower()
    ext = _tld_extract(hostname)
    if ext.domain and ext.suffix:
        return f"{ext.domain}.{ext.suffix}"
    return hostname


def hash_url(url: str) -> str:
    """First 16 hex chars of the SHA-256 of a (canonical) URL."""
    return hashlib.sha256(url.encode("utf-8")).hexdigest()[:16]


def generate_identity_key(
    retailer_product_id: Optional[str],
    retailer_sku: Optional[str],
    canonical_url: str,
) -> str:
    """Build a source-scoped identity key.

    Priority: retailer product id, then retailer SKU, then URL hash.

    Returns:
        Identity key in {idType}:{idValue} form
    """
    if retailer_product_id and retailer_product_id.strip():
        return f"PID:{retailer_product_id.strip()}"
    if retailer_sku and retailer_sku.strip():
        return f"SKU:{retailer_sku.strip()}"
    return f"URL:{hash_url(canonical_url)}"


def parse_identity_key(identity_key: str) -> Tuple[str, str]:
    """Split an identity key into (id_type, id_value).

    Raises:
        InvalidIdentityKeyError: On a missing separator, unknown type, empty
            value, a value containing ':' or a value over 255 characters
    """
    id_type, sep, id_value = identity_key.partition(":")
    if not sep:
        raise InvalidIdentityKeyError("missing colon separator")
    if id_type not in IDENTITY_KEY_TYPES:
        raise InvalidIdentityKeyError(f"unknown type {id_type!r}")
    if not id_value:
        raise InvalidIdentityKeyError("empty value")
    if ":" in id_value:
        raise InvalidIdentityKeyError("value cannot contain ':'")
    if len(id_value) > MAX_IDENTITY_VALUE_LENGTH:
        raise InvalidIdentityKeyError(f"value exceeds {MAX_IDENTITY_VALUE_LENGTH} characters")
    return id_type, id_value
