"""External identifiers (UPC, SKU) attached to a source product."""

from typing import TYPE_CHECKING

from sqlalchemy import Boolean, ForeignKey, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from harvester.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin

if TYPE_CHECKING:
    from harvester.models.source_product import SourceProduct


class SourceProductIdentifier(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Identifier row used by the downstream product resolver.

    A UPC is canonical whenever present; a retailer SKU is canonical only
    when the offer carried no UPC.
    """

    __tablename__ = "source_product_identifiers"

    source_product_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False),
        ForeignKey("source_products.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    id_type: Mapped[str] = mapped_column(String(20), nullable=False, comment="'UPC' or 'SKU'")
    id_value: Mapped[str] = mapped_column(String(255), nullable=False)
    namespace: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        default="",
        comment="'' for global ids (UPC), retailer id for SKUs"
    )
    normalized_value: Mapped[str] = mapped_column(String(255), nullable=False)
    is_canonical: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    __table_args__ = (
        UniqueConstraint(
            "source_product_id", "id_type", "id_value", "namespace",
            name="uq_source_product_identifiers_value",
        ),
    )

    # Relationships
    source_product: Mapped["SourceProduct"] = relationship(back_populates="identifiers")

    def __repr__(self) -> str:
        return f"<SourceProductIdentifier(id_type='{self.id_type}', id_value='{self.id_value}', canonical={self.is_canonical})>"
