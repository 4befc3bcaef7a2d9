"""Retry utilities with exponential backoff for URL fetches."""

import logging
from typing import Awaitable, Callable, Optional

import structlog
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_result,
    stop_after_attempt,
    wait_exponential,
)

from harvester.config import settings
from harvester.scrapers.fetch.http_fetcher import Fetcher
from harvester.scrapers.types import FetchOptions, FetchResult, FetchStatus, RetryPolicy


logger = structlog.get_logger(__name__)


def retry_policy_from_settings() -> RetryPolicy:
    return RetryPolicy(
        max_attempts=settings.RETRY_MAX_ATTEMPTS,
        initial_delay_ms=settings.RETRY_INITIAL_DELAY_MS,
        max_delay_ms=settings.RETRY_MAX_DELAY_MS,
    )


def is_retryable(result: FetchResult, policy: RetryPolicy) -> bool:
    """Whether a fetch outcome is worth another attempt.

    Retryable: timeouts, errors without a status code (network failures)
    and errors whose status code is in the policy's retryable set.
    """
    if result.status == FetchStatus.TIMEOUT:
        return True
    if result.status == FetchStatus.ERROR:
        return result.status_code is None or result.status_code in policy.retryable_status_codes
    return False


def _return_last_result(retry_state) -> FetchResult:
    return retry_state.outcome.result()


async def fetch_with_retry(
    fetcher: Fetcher,
    url: str,
    policy: Optional[RetryPolicy] = None,
    options: Optional[FetchOptions] = None,
    before_attempt: Optional[Callable[[], Awaitable[None]]] = None,
) -> FetchResult:
    """Fetch a URL, retrying transient failures per the retry policy.

    Delay before attempt n+1 is initial_delay * multiplier**(n-1), capped at
    max_delay.

    Args:
        fetcher: Non-throwing fetcher
        url: URL to fetch
        policy: Retry policy, from settings if omitted
        options: Fetch options passed through to every attempt
        before_attempt: Awaited before every attempt, e.g. a rate limiter slot

    Returns:
        The first non-retryable result, or the last result once attempts run out
    """
    policy = policy or retry_policy_from_settings()
    retrying = AsyncRetrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=wait_exponential(
            multiplier=policy.initial_delay_ms / 1000,
            max=policy.max_delay_ms / 1000,
            exp_base=policy.backoff_multiplier,
        ),
        retry=retry_if_result(lambda result: is_retryable(result, policy)),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        retry_error_callback=_return_last_result,
    )

    async def attempt() -> FetchResult:
        if before_attempt is not None:
            await before_attempt()
        return await fetcher.fetch(url, options)

    return await retrying(attempt)
