"""HTTP fetcher built on httpx.

Enforces a hard timeout and a maximum body size, flags captcha/block pages,
and reports every failure as a FetchResult. It never retries; callers wrap
it with fetch_with_retry() when a RetryPolicy applies.
"""

import asyncio
import hashlib
import time
from typing import Optional, Protocol

import httpx
import structlog

from harvester.config import settings
from harvester.scrapers.types import (
    DEFAULT_FETCH_HEADERS,
    FetchOptions,
    FetchResult,
    FetchStatus,
)

logger = structlog.get_logger(__name__)


BLOCK_INDICATORS = (
    "captcha",
    "recaptcha",
    "hcaptcha",
    "challenge-form",
    "challenge-running",
    "cf-browser-verification",
    "please verify you are a human",
    "access denied",
    "blocked",
    "bot detection",
    "rate limit",
)


class Fetcher(Protocol):
    """Anything that turns a URL into a FetchResult without raising."""

    async def fetch(self, url: str, options: Optional[FetchOptions] = None) -> FetchResult:
        ...


class RobotsChecker(Protocol):
    async def is_allowed(self, url: str) -> bool:
        ...


class _BodyTooLarge(Exception):
    pass


def looks_like_blocked_page(html: str) -> bool:
    """Heuristic check for captcha / access-denied pages."""
    lower_html = html.lower()
    return any(indicator in lower_html for indicator in BLOCK_INDICATORS)


def content_hash(html: str) -> str:
    """First 32 hex chars of the SHA-256 of the page body."""
    return hashlib.sha256(html.encode("utf-8")).hexdigest()[:32]


def default_fetch_options() -> FetchOptions:
    return FetchOptions(
        timeout_ms=settings.FETCH_TIMEOUT_MS,
        max_size_bytes=settings.FETCH_MAX_SIZE_BYTES,
    )


class HttpFetcher:
    """Plain HTTP GET fetcher (no JS rendering)."""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        robots_policy: Optional[RobotsChecker] = None,
        default_options: Optional[FetchOptions] = None,
    ):
        """Initialize fetcher.

        Args:
            client: Shared httpx client; one is created on first use if omitted
            robots_policy: Optional robots check run before every request
            default_options: Timeout / size defaults, taken from settings if omitted
        """
        self._client = client
        self._owns_client = client is None
        self.robots_policy = robots_policy
        self.default_options = default_options or default_fetch_options()
        self.headers = {**DEFAULT_FETCH_HEADERS, "User-Agent": settings.FETCH_USER_AGENT}
        self.logger = logger.bind(component="http_fetcher")

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(follow_redirects=True)
        return self._client

    async def fetch(self, url: str, options: Optional[FetchOptions] = None) -> FetchResult:
        """Fetch a URL and return its HTML.

        Args:
            url: Absolute URL to fetch
            options: Per-call overrides for timeout, size limit and headers

        Returns:
            FetchResult; never raises
        """
        opts = options or self.default_options
        started = time.monotonic()

        def elapsed_ms() -> int:
            return int((time.monotonic() - started) * 1000)

        if self.robots_policy is not None and not await self.robots_policy.is_allowed(url):
            return FetchResult(
                status=FetchStatus.ROBOTS_BLOCKED,
                duration_ms=elapsed_ms(),
                error="URL disallowed by robots.txt",
            )

        headers = {**self.headers, **(opts.headers or {})}
        timeout_s = opts.timeout_ms / 1000

        try:
            status_code, html = await asyncio.wait_for(
                self._fetch_once(url, headers, timeout_s, opts.max_size_bytes),
                timeout=timeout_s,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            self.logger.info("fetch_timeout", url=url, timeout_ms=opts.timeout_ms)
            return FetchResult(
                status=FetchStatus.TIMEOUT,
                duration_ms=elapsed_ms(),
                error=f"Request timed out after {opts.timeout_ms}ms",
            )
        except _BodyTooLarge as e:
            self.logger.info("fetch_too_large", url=url, detail=str(e))
            return FetchResult(
                status=FetchStatus.TOO_LARGE,
                status_code=e.args[1] if len(e.args) > 1 else None,
                duration_ms=elapsed_ms(),
                error=e.args[0],
            )
        except httpx.HTTPError as e:
            self.logger.warning("fetch_failed", url=url, error=str(e))
            return FetchResult(
                status=FetchStatus.ERROR,
                duration_ms=elapsed_ms(),
                error=str(e) or type(e).__name__,
            )
        except Exception as e:
            self.logger.error("fetch_unexpected_error", url=url, error=str(e), exc_info=True)
            return FetchResult(
                status=FetchStatus.ERROR,
                duration_ms=elapsed_ms(),
                error=str(e) or type(e).__name__,
            )

        if status_code in (403, 503) and looks_like_blocked_page(html):
            self.logger.warning("fetch_blocked", url=url, status_code=status_code)
            return FetchResult(
                status=FetchStatus.BLOCKED,
                status_code=status_code,
                duration_ms=elapsed_ms(),
                error="Request blocked (captcha or access denied)",
            )

        if not 200 <= status_code < 300:
            return FetchResult(
                status=FetchStatus.ERROR,
                status_code=status_code,
                duration_ms=elapsed_ms(),
                error=f"HTTP {status_code}",
            )

        return FetchResult(
            status=FetchStatus.OK,
            status_code=status_code,
            html=html,
            content_hash=content_hash(html),
            duration_ms=elapsed_ms(),
        )

    async def _fetch_once(self, url: str, headers: dict, timeout_s: float, max_bytes: int):
        """Single GET with streamed, size-bounded body read.

        Returns:
            (status_code, decoded body)
        """
        client = self._get_client()
        async with client.stream("GET", url, headers=headers, timeout=timeout_s) as response:
            is_success = 200 <= response.status_code < 300
            content_length = response.headers.get("content-length")
            if is_success and content_length and content_length.isdigit() and int(content_length) > max_bytes:
                raise _BodyTooLarge(f"Response too large: {content_length} bytes", response.status_code)

            chunks = []
            total = 0
            async for chunk in response.aiter_bytes():
                total += len(chunk)
                if total > max_bytes:
                    raise _BodyTooLarge("Response exceeded size limit", response.status_code)
                chunks.append(chunk)

            raw = b"".join(chunks)
            encoding = response.charset_encoding or "utf-8"
            try:
                html = raw.decode(encoding, errors="replace")
            except LookupError:
                html = raw.decode("utf-8", errors="replace")
            return response.status_code, html

    async def close(self) -> None:
        """Close the underlying client if this fetcher created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
