"""Surgical scraping pipeline for curated retailer product pages.

This package provides:
- Contract types shared by every stage (types)
- The ScrapeAdapter base class and the explicit adapter registry
- Fetching, rate limiting and robots.txt policy (fetch)
- Validation, run dedupe, drift detection and persistence (process)
- The per-URL worker and the run finalizer
"""

from .base import ScrapeAdapter
from .registry import AdapterRegistry, adapter_registry, get_adapter_registry

__all__ = [
    # Base class
    "ScrapeAdapter",
    # Registry
    "AdapterRegistry",
    "adapter_registry",
    "get_adapter_registry",
]
