"""Source-side product record, one per (source, identity key)."""

from typing import TYPE_CHECKING, List, Optional

from sqlalchemy import Float, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from harvester.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin

if TYPE_CHECKING:
    from harvester.models.price import Price
    from harvester.models.source_product_identifier import SourceProductIdentifier


class SourceProduct(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Product as seen on one retailer source.

    identity_key is fixed once set; only display fields are refreshed by
    later scrapes.
    """

    __tablename__ = "source_products"

    source_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    identity_key: Mapped[str] = mapped_column(
        String(300),
        nullable=False,
        comment="Source-scoped identity: PID:..., SKU:... or URL:<hash>"
    )

    # Mutable display fields
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    url: Mapped[str] = mapped_column(String(2000), nullable=False)
    normalized_url: Mapped[Optional[str]] = mapped_column(String(2000), nullable=True)
    brand: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    brand_norm: Mapped[Optional[str]] = mapped_column(String(200), nullable=True, index=True)
    caliber: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    grain_weight: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    round_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    image_url: Mapped[Optional[str]] = mapped_column(String(2000), nullable=True)

    __table_args__ = (
        UniqueConstraint("source_id", "identity_key", name="uq_source_products_source_identity_key"),
    )

    # Relationships
    identifiers: Mapped[List["SourceProductIdentifier"]] = relationship(
        back_populates="source_product", cascade="all, delete-orphan"
    )
    prices: Mapped[List["Price"]] = relationship(back_populates="source_product")

    def __repr__(self) -> str:
        return f"<SourceProduct(id={self.id}, source_id={self.source_id}, identity_key='{self.identity_key}')>"
