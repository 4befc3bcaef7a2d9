"""robots.txt policy with per-process caching.

Rules:
- Disallow rules for our agent and for `*` are both honored
- Crawl-delay is clamped to [1, 60] seconds, 2 seconds when unspecified
- robots.txt missing (404) means everything is allowed
- robots.txt unreachable after retries means the domain is blocked (fail-closed)
- Parsed rules are cached for 24 hours
"""

import time
from dataclasses import dataclass
from typing import Dict, Optional
from urllib import robotparser
from urllib.parse import urlsplit

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_incrementing,
)

from harvester.config import settings
from harvester.core.exceptions import InvalidUrlError
from harvester.scrapers.utils.url import get_registrable_domain

logger = structlog.get_logger(__name__)

DEFAULT_CRAWL_DELAY = 2.0
MIN_CRAWL_DELAY = 1.0
MAX_CRAWL_DELAY = 60.0


class _RobotsUnavailable(Exception):
    """Non-404 error status while fetching robots.txt."""


@dataclass
class RobotsRules:
    parser: Optional[robotparser.RobotFileParser]
    fetch_succeeded: bool
    cached_at: float


class RobotsPolicy:
    """Fail-closed robots.txt checker keyed by registrable domain."""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        user_agent_name: Optional[str] = None,
        cache_ttl_seconds: Optional[int] = None,
        fetch_retries: Optional[int] = None,
        fetch_timeout_ms: Optional[int] = None,
        retry_backoff_seconds: float = 1.0,
    ):
        """Initialize robots policy.

        Args:
            client: Shared httpx client; one is created on first use if omitted
            user_agent_name: Agent token matched against User-agent groups
            cache_ttl_seconds: How long parsed rules stay cached
            fetch_retries: Attempts before giving up and blocking the domain
            fetch_timeout_ms: Per-attempt timeout
            retry_backoff_seconds: Wait after attempt N is N times this value
        """
        self._client = client
        self._owns_client = client is None
        self.user_agent_name = user_agent_name or settings.ROBOTS_USER_AGENT_NAME
        self.cache_ttl_seconds = cache_ttl_seconds if cache_ttl_seconds is not None else settings.ROBOTS_CACHE_TTL_SECONDS
        self.fetch_retries = fetch_retries or settings.ROBOTS_FETCH_RETRIES
        self.fetch_timeout_ms = fetch_timeout_ms or settings.ROBOTS_FETCH_TIMEOUT_MS
        self.retry_backoff_seconds = retry_backoff_seconds
        self._cache: Dict[str, RobotsRules] = {}
        self.logger = logger.bind(component="robots_policy")

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(follow_redirects=True)
        return self._client

    async def is_allowed(self, url: str) -> bool:
        """Check whether a URL may be fetched.

        Returns:
            False if disallowed, if robots.txt is unavailable, or if the URL
            cannot be parsed
        """
        try:
            domain = get_registrable_domain(url)
        except InvalidUrlError:
            return False

        rules = await self._get_rules(domain)
        if not rules.fetch_succeeded:
            return False
        if rules.parser is None:
            return True

        parts = urlsplit(url)
        path = parts.path or "/"
        if parts.query:
            path = f"{path}?{parts.query}"

        return rules.parser.can_fetch(self.user_agent_name, path) and rules.parser.can_fetch("*", path)

    async def get_crawl_delay(self, domain: str) -> Optional[float]:
        """Crawl delay in seconds for a registrable domain.

        Returns:
            Clamped Crawl-delay, the 2 s default when none is declared, or
            None when robots.txt could not be fetched (the domain is blocked)
        """
        rules = await self._get_rules(domain.lower())
        if not rules.fetch_succeeded:
            return None
        if rules.parser is None:
            return DEFAULT_CRAWL_DELAY

        delay = rules.parser.crawl_delay(self.user_agent_name)
        if delay is None:
            delay = rules.parser.crawl_delay("*")
        if delay is None:
            return DEFAULT_CRAWL_DELAY
        return max(MIN_CRAWL_DELAY, min(MAX_CRAWL_DELAY, float(delay)))

    def clear_cache(self) -> None:
        self._cache.clear()

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _get_rules(self, domain: str) -> RobotsRules:
        cached = self._cache.get(domain)
        if cached and time.monotonic() - cached.cached_at < self.cache_ttl_seconds:
            return cached

        rules = await self._fetch_rules(domain)
        self._cache[domain] = rules
        return rules

    async def _fetch_rules(self, domain: str) -> RobotsRules:
        robots_url = f"https://{domain}/robots.txt"
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.fetch_retries),
            wait=wait_incrementing(start=self.retry_backoff_seconds, increment=self.retry_backoff_seconds),
            retry=retry_if_exception_type((httpx.HTTPError, _RobotsUnavailable)),
        )

        try:
            text = await retrying(self._fetch_text, robots_url)
        except RetryError as e:
            last = e.last_attempt.exception()
            self.logger.warning(
                "robots_unavailable_blocking_domain",
                domain=domain,
                attempts=self.fetch_retries,
                error=str(last),
            )
            return RobotsRules(parser=None, fetch_succeeded=False, cached_at=time.monotonic())

        if text is None:
            self.logger.info("robots_not_found_allow_all", domain=domain)
            return RobotsRules(parser=None, fetch_succeeded=True, cached_at=time.monotonic())

        parser = robotparser.RobotFileParser()
        parser.set_url(robots_url)
        parser.parse(text.splitlines())
        self.logger.debug("robots_parsed", domain=domain)
        return RobotsRules(parser=parser, fetch_succeeded=True, cached_at=time.monotonic())

    async def _fetch_text(self, robots_url: str) -> Optional[str]:
        """Fetch robots.txt once.

        Returns:
            Body text, or None on 404

        Raises:
            _RobotsUnavailable: On any other non-2xx status
            httpx.HTTPError: On network errors and timeouts
        """
        response = await self._get_client().get(
            robots_url,
            headers={"User-Agent": settings.FETCH_USER_AGENT},
            timeout=self.fetch_timeout_ms / 1000,
        )
        if response.status_code == 404:
            return None
        if not response.is_success:
            raise _RobotsUnavailable(f"HTTP {response.status_code}")
        return response.text
