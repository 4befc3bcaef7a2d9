"""Curated product-page URLs to scrape."""

from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from harvester.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin


class ScrapeTarget(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """One target URL and its tracking state.

    consecutive_failures drives the BROKEN transition; BROKEN is terminal
    until an operator resets the target.
    """

    __tablename__ = "scrape_targets"

    source_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    retailer_id: Mapped[str] = mapped_column(String(100), nullable=False)
    adapter_id: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    url: Mapped[str] = mapped_column(String(2000), nullable=False)
    canonical_url: Mapped[str] = mapped_column(String(2000), nullable=False)

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="ACTIVE",
        index=True,
        comment="'ACTIVE', 'PAUSED', 'BROKEN' or 'STALE'"
    )
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Tracking
    last_scraped_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_status: Mapped[Optional[str]] = mapped_column(
        String(20),
        nullable=True,
        comment="'SUCCESS' or 'FAILED' for the last attempt"
    )
    consecutive_failures: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Explicit link for price-refresh targets
    source_product_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    robots_path_blocked: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        comment="Operator override: never fetch this path"
    )

    __table_args__ = (
        UniqueConstraint("source_id", "canonical_url", name="uq_scrape_targets_source_canonical_url"),
    )

    def __repr__(self) -> str:
        return f"<ScrapeTarget(id={self.id}, adapter_id='{self.adapter_id}', status='{self.status}')>"
