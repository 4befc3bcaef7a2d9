"""Review table for offers held back from the live price stream."""

from typing import Optional

from sqlalchemy import JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from harvester.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin


class QuarantinedOffer(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Offer that was structurally valid but suspicious (e.g. zero price).

    The full offer is kept as a JSON payload so a reviewer can replay it.
    """

    __tablename__ = "quarantined_offers"

    run_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    target_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    source_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    retailer_id: Mapped[str] = mapped_column(String(100), nullable=False)
    identity_key: Mapped[Optional[str]] = mapped_column(String(300), nullable=True)
    url: Mapped[Optional[str]] = mapped_column(String(2000), nullable=True)

    reason: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        index=True,
        comment="QuarantineReason value, e.g. 'ZERO_PRICE_EXTRACTED'"
    )
    reason_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    adapter_version: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    payload: Mapped[dict] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
        comment="Offer as extracted, for review"
    )

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="PENDING",
        comment="Review status: 'PENDING', 'RELEASED', 'REJECTED'"
    )

    def __repr__(self) -> str:
        return f"<QuarantinedOffer(id={self.id}, run_id={self.run_id}, reason='{self.reason}')>"
