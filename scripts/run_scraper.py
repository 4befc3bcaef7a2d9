"""Dry-run a scrape adapter against one URL.

Fetches the page (or reads a saved copy), runs extract and normalize, and
prints the outcome as JSON. Nothing is written to the database and no run
dedupe state is touched.

Usage:
    python scripts/run_scraper.py --adapter sgammo --url https://www.sgammo.com/product/...
    python scripts/run_scraper.py --adapter brownells --url "https://www.brownells.com/...?sku=123" --html-file page.html
    python scripts/run_scraper.py --adapter primaryarms --url "https://www.primaryarms.com/api/items?url=..." --no-robots
"""

import argparse
import asyncio
import json
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

# Add the project root to path so the harvester package imports without an install
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import structlog

from harvester.logging_config import configure_logging
from harvester.scrapers.fetch.http_fetcher import HttpFetcher
from harvester.scrapers.fetch.robots import RobotsPolicy
from harvester.scrapers.register_adapters import register_all_adapters
from harvester.scrapers.types import (
    ExtractFailure,
    ExtractSuccess,
    FetchStatus,
    NormalizeDrop,
    NormalizeOk,
    NormalizeQuarantine,
    ScrapeAdapterContext,
)
from harvester.scrapers.utils.retry import fetch_with_retry

logger = structlog.get_logger(__name__)

DRY_RUN_ID = "dry-run"


async def load_body(url: str, html_file: Optional[str], use_robots: bool) -> dict:
    """Get the page body from disk or over HTTP.

    Returns:
        {"status": ..., "html": ... } plus fetch diagnostics
    """
    if html_file:
        return {
            "status": FetchStatus.OK.value,
            "source": "file",
            "path": html_file,
            "html": Path(html_file).read_text(encoding="utf-8"),
        }

    robots_policy = RobotsPolicy() if use_robots else None
    fetcher = HttpFetcher(robots_policy=robots_policy)
    try:
        result = await fetch_with_retry(fetcher, url)
    finally:
        await fetcher.close()
        if robots_policy is not None:
            await robots_policy.close()

    return {
        "status": result.status.value,
        "source": "http",
        "status_code": result.status_code,
        "duration_ms": result.duration_ms,
        "content_hash": result.content_hash,
        "error": result.error,
        "html": result.html,
    }


async def run_scraper(adapter_id: str, url: str, html_file: Optional[str] = None, use_robots: bool = True) -> int:
    """Run one adapter against one URL and print the result.

    Returns:
        Process exit code: 0 when the offer would be written, 1 otherwise
    """
    registry = register_all_adapters()
    adapter = registry.get(adapter_id)
    if adapter is None:
        logger.error("adapter_not_found", adapter_id=adapter_id, available=[a.id for a in registry.list()])
        return 2

    report = {"adapter": adapter_id, "adapter_version": adapter.version, "url": url}

    fetched = await load_body(url, html_file, use_robots)
    html = fetched.pop("html")
    report["fetch"] = fetched
    if fetched["status"] != FetchStatus.OK.value or html is None:
        print(json.dumps(report, indent=2))
        return 1

    ctx = ScrapeAdapterContext(
        source_id=DRY_RUN_ID,
        retailer_id=adapter_id,
        run_id=DRY_RUN_ID,
        target_id=DRY_RUN_ID,
        now=datetime.now(timezone.utc),
        logger=logger.bind(adapter_id=adapter_id, url=url),
    )

    extract_result = adapter.extract(html, url, ctx)
    if isinstance(extract_result, ExtractFailure):
        report["extract"] = {
            "ok": False,
            "reason": extract_result.reason.value,
            "details": extract_result.details,
        }
        print(json.dumps(report, indent=2))
        return 1
    if not isinstance(extract_result, ExtractSuccess):
        raise TypeError(f"Unhandled extract result: {extract_result!r}")

    report["extract"] = {"ok": True}

    normalize_result = adapter.normalize(extract_result.offer, ctx)
    if isinstance(normalize_result, NormalizeOk):
        report["normalize"] = {"status": normalize_result.status}
    elif isinstance(normalize_result, (NormalizeDrop, NormalizeQuarantine)):
        report["normalize"] = {
            "status": normalize_result.status,
            "reason": normalize_result.reason.value,
        }
    else:
        raise TypeError(f"Unhandled normalize result: {normalize_result!r}")

    report["offer"] = normalize_result.offer.to_dict()
    print(json.dumps(report, indent=2, default=str))
    return 0 if isinstance(normalize_result, NormalizeOk) else 1


def main():
    """Parse arguments and run the adapter."""
    parser = argparse.ArgumentParser(
        description="Dry-run a scrape adapter against a single product URL",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/run_scraper.py --adapter sgammo --url https://www.sgammo.com/product/example
  python scripts/run_scraper.py --adapter midwayusa --url https://www.midwayusa.com/product/1 --html-file page.html
        """,
    )

    parser.add_argument(
        "--adapter",
        required=True,
        help="Adapter id (sgammo, brownells, midwayusa, primaryarms)",
    )

    parser.add_argument(
        "--url",
        required=True,
        help="Product URL the page belongs to",
    )

    parser.add_argument(
        "--html-file",
        help="Read the page body from this file instead of fetching it",
    )

    parser.add_argument(
        "--no-robots",
        action="store_true",
        help="Skip the robots.txt check when fetching",
    )

    parser.add_argument(
        "--log-level",
        default=None,
        help="Log level override (default: settings.LOG_LEVEL)",
    )

    args = parser.parse_args()

    configure_logging(level=args.log_level, stream=sys.stderr)
    sys.exit(asyncio.run(run_scraper(args.adapter, args.url, args.html_file, not args.no_robots)))


if __name__ == "__main__":
    main()
