"""Registry of scrape adapters, keyed by adapter id.

Adapters are registered by explicit calls at startup (see
register_adapters.py); there is no module scanning or dynamic loading.
"""

from typing import Dict, List, Optional

import structlog

from harvester.core.exceptions import AdapterRegistrationError
from harvester.scrapers.base import ScrapeAdapter

logger = structlog.get_logger(__name__)


class AdapterRegistry:
    """Explicit adapter registry; duplicate ids are rejected, never replaced."""

    def __init__(self):
        self._adapters: Dict[str, ScrapeAdapter] = {}

    def register(self, adapter: ScrapeAdapter) -> None:
        """Register an adapter instance.

        Args:
            adapter: Adapter with id, version and domain set

        Raises:
            AdapterRegistrationError: On a duplicate id or missing metadata
        """
        if not isinstance(adapter, ScrapeAdapter):
            raise AdapterRegistrationError(repr(adapter), "must inherit from ScrapeAdapter")
        if not adapter.id or not adapter.version or not adapter.domain:
            raise AdapterRegistrationError(adapter.id or "<unnamed>", "id, version and domain are required")
        if adapter.id in self._adapters:
            raise AdapterRegistrationError(adapter.id, "an adapter with this id is already registered")

        self._adapters[adapter.id] = adapter
        logger.info(
            "adapter_registered",
            adapter_id=adapter.id,
            version=adapter.version,
            domain=adapter.domain,
        )

    def get(self, adapter_id: str) -> Optional[ScrapeAdapter]:
        return self._adapters.get(adapter_id)

    def list(self) -> List[ScrapeAdapter]:
        return list(self._adapters.values())

    def has_adapter_for_domain(self, domain: str) -> bool:
        """Check whether any adapter serves a domain (subdomains included)."""
        domain = domain.lower().strip()
        if domain.startswith("www."):
            domain = domain[4:]
        return any(
            domain == adapter.domain or domain.endswith(f".{adapter.domain}")
            for adapter in self._adapters.values()
        )

    def clear(self) -> None:
        """Remove every adapter (tests only)."""
        self._adapters.clear()


# Global registry instance
adapter_registry = AdapterRegistry()


def get_adapter_registry() -> AdapterRegistry:
    """Get the global adapter registry instance.

    Returns:
        AdapterRegistry instance
    """
    return adapter_registry
