"""Price observations with ingestion provenance."""

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Numeric, String, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from harvester.models.base import Base, UUIDPrimaryKeyMixin, utcnow

if TYPE_CHECKING:
    from harvester.models.source_product import SourceProduct


class Price(UUIDPrimaryKeyMixin, Base):
    """One observed price for a source product.

    Rows are append-only. ingestion_run_type / ingestion_run_id record which
    pipeline run produced the observation.
    """

    __tablename__ = "prices"

    retailer_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    source_id: Mapped[str] = mapped_column(String(100), nullable=False)
    source_product_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False),
        ForeignKey("source_products.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    # Price data
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(5), nullable=False, default="USD")
    url: Mapped[str] = mapped_column(String(2000), nullable=False)
    in_stock: Mapped[bool] = mapped_column(Boolean, nullable=False)
    shipping_cost: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    observed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        comment="When the adapter observed the price"
    )

    # Provenance
    ingestion_run_type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        comment="'SCRAPE', 'AFFILIATE_FEED', ..."
    )
    ingestion_run_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False
    )

    __table_args__ = (
        Index("idx_prices_source_product_observed", "source_product_id", "observed_at"),
    )

    # Relationships
    source_product: Mapped["SourceProduct"] = relationship(back_populates="prices")

    def __repr__(self) -> str:
        return f"<Price(id={self.id}, source_product_id={self.source_product_id}, price={self.price}, observed_at={self.observed_at})>"
