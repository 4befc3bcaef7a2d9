"""SQLAlchemy models for the harvester.

All models are imported here so Base.metadata sees every table.
"""

from harvester.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin
from harvester.models.source_product import SourceProduct
from harvester.models.source_product_identifier import SourceProductIdentifier
from harvester.models.price import Price
from harvester.models.quarantined_offer import QuarantinedOffer
from harvester.models.scrape_target import ScrapeTarget
from harvester.models.scrape_run import ScrapeRun
from harvester.models.scrape_adapter_status import ScrapeAdapterStatus

__all__ = [
    "Base",
    "TimestampMixin",
    "UUIDPrimaryKeyMixin",
    "SourceProduct",
    "SourceProductIdentifier",
    "Price",
    "QuarantinedOffer",
    "ScrapeTarget",
    "ScrapeRun",
    "ScrapeAdapterStatus",
]
