"""Register all scrape adapters with the registry.

Call register_all_adapters() once during process startup.
"""

import structlog

from harvester.scrapers.adapters import (
    BrownellsAdapter,
    MidwayUSAAdapter,
    PrimaryArmsAdapter,
    SGAmmoAdapter,
)
from harvester.scrapers.registry import AdapterRegistry, get_adapter_registry

logger = structlog.get_logger(__name__)


def register_all_adapters(registry: AdapterRegistry = None) -> AdapterRegistry:
    """Register every known adapter.

    Safe to call more than once: adapters already present are skipped.

    Args:
        registry: Target registry, the global one if omitted

    Returns:
        The registry that was populated
    """
    registry = registry or get_adapter_registry()

    adapters = [
        SGAmmoAdapter(),
        BrownellsAdapter(),
        MidwayUSAAdapter(),
        PrimaryArmsAdapter(),
    ]

    for adapter in adapters:
        if registry.get(adapter.id) is not None:
            continue
        registry.register(adapter)

    logger.info(
        "all_adapters_registered",
        count=len(registry.list()),
        adapters=[adapter.id for adapter in registry.list()],
    )
    return registry
