"""Tests for URL canonicalization and identity keys."""

import pytest

from harvester.core.exceptions import InvalidIdentityKeyError, InvalidUrlError
from harvester.scrapers.utils.url import (
    canonicalize_url,
    generate_identity_key,
    get_registrable_domain,
    hash_url,
    is_valid_url,
    parse_identity_key,
)


# ============================================================================
# TESTS: CANONICALIZATION
# ============================================================================

class TestCanonicalizeUrl:
    """Tests for canonicalize_url."""

    def test_upgrades_scheme_and_lowercases_host(self):
        assert canonicalize_url("http://WWW.SGAmmo.com/Product/9mm") == "https://www.sgammo.com/Product/9mm"

    def test_strips_tracking_and_empty_params_and_sorts(self):
        url = "https://example.com/p?utm_source=mail&b=2&fbclid=x&a=1&empty=&ref=home&gclid=y"
        assert canonicalize_url(url) == "https://example.com/p?a=1&b=2"

    def test_drops_fragment_and_trailing_slash(self):
        assert canonicalize_url("https://example.com/p/123/#reviews") == "https://example.com/p/123"

    def test_keeps_root_slash(self):
        assert canonicalize_url("https://example.com/") == "https://example.com/"
        assert canonicalize_url("https://example.com") == "https://example.com/"

    def test_keeps_non_default_port(self):
        assert canonicalize_url("https://example.com:8443/p") == "https://example.com:8443/p"
        assert canonicalize_url("https://example.com:443/p") == "https://example.com/p"

    def test_is_idempotent(self):
        once = canonicalize_url("http://Example.com/p/?z=1&a=2&utm_campaign=x")
        assert canonicalize_url(once) == once

    @pytest.mark.parametrize("url", ["not a url", "/relative/path", ""])
    def test_rejects_unparseable(self, url):
        with pytest.raises(InvalidUrlError):
            canonicalize_url(url)


class TestUrlHelpers:
    """Tests for validity, registrable domain and hashing."""

    def test_is_valid_url(self):
        assert is_valid_url("https://example.com/p") is True
        assert is_valid_url("http://example.com") is True
        assert is_valid_url("ftp://example.com/file") is False
        assert is_valid_url("example.com/p") is False
        assert is_valid_url("") is False
        assert is_valid_url(None) is False

    @pytest.mark.parametrize(
        "url,expected",
        [
            ("https://www.sgammo.com/product/1", "sgammo.com"),
            ("https://cdn.sgammo.com/img.png", "sgammo.com"),
            ("https://shop.example.co.uk/p", "example.co.uk"),
            ("http://127.0.0.1:8000/p", "127.0.0.1"),
        ],
    )
    def test_registrable_domain(self, url, expected):
        assert get_registrable_domain(url) == expected

    def test_registrable_domain_requires_host(self):
        with pytest.raises(InvalidUrlError):
            get_registrable_domain("/no/host")

    def test_hash_url_is_short_stable_hex(self):
        digest = hash_url("https://example.com/p")
        assert len(digest) == 16
        assert digest == hash_url("https://example.com/p")
        assert digest != hash_url("https://example.com/q")
        int(digest, 16)


# ============================================================================
# TESTS: IDENTITY KEYS
# ============================================================================

class TestIdentityKey:
    """Tests for identity key generation and parsing."""

    def test_prefers_product_id(self):
        assert generate_identity_key("12345", "SKU-1", "https://example.com/p") == "PID:12345"

    def test_falls_back_to_sku(self):
        assert generate_identity_key(None, " SKU-1 ", "https://example.com/p") == "SKU:SKU-1"
        assert generate_identity_key("   ", "SKU-1", "https://example.com/p") == "SKU:SKU-1"

    def test_falls_back_to_url_hash(self):
        url = "https://example.com/p"
        assert generate_identity_key(None, None, url) == f"URL:{hash_url(url)}"

    def test_parse_round_trip(self):
        assert parse_identity_key("SKU:ABC-123") == ("SKU", "ABC-123")
        assert parse_identity_key("PID:" + "x" * 255) == ("PID", "x" * 255)

    @pytest.mark.parametrize(
        "key",
        ["SKU-ABC", "UPC:0123", "SKU:", "PID:a:b", "PID:" + "x" * 256],
    )
    def test_parse_rejects_malformed(self, key):
        with pytest.raises(InvalidIdentityKeyError):
            parse_identity_key(key)
