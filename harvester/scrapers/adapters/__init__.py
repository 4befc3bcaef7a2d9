"""Retailer-specific adapter implementations.

Each adapter module implements a class that inherits from ScrapeAdapter.
"""

from .sgammo import SGAmmoAdapter
from .brownells import BrownellsAdapter
from .midwayusa import MidwayUSAAdapter
from .primaryarms import PrimaryArmsAdapter

__all__ = [
    "SGAmmoAdapter",
    "BrownellsAdapter",
    "MidwayUSAAdapter",
    "PrimaryArmsAdapter",
]
