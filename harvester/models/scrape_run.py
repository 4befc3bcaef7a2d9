"""Scrape run tracking and metrics."""

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Float, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from harvester.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin, utcnow


class ScrapeRun(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """One batch of URL jobs for an adapter.

    Counters are incremented by workers while the run is RUNNING; the run
    finalizer stamps status, duration and derived rates exactly once. Rows
    with status SUCCESS form the trailing window for the drift baseline.
    """

    __tablename__ = "scrape_runs"

    adapter_id: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    source_id: Mapped[str] = mapped_column(String(100), nullable=False)
    retailer_id: Mapped[str] = mapped_column(String(100), nullable=False)
    trigger: Mapped[str] = mapped_column(String(20), nullable=False, default="SCHEDULED")

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="RUNNING",
        index=True,
        comment="'RUNNING', 'SUCCESS', 'FAILED' or 'QUARANTINED'"
    )

    # Timing
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Counters
    urls_attempted: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    urls_succeeded: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    urls_failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    offers_extracted: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    offers_valid: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    offers_dropped: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    offers_quarantined: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    zero_price_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    oos_no_price_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Derived rates, set at finalization
    failure_rate: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    yield_rate: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    drop_rate: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    __table_args__ = (
        Index("idx_scrape_runs_adapter_status_completed", "adapter_id", "status", "completed_at"),
    )

    def __repr__(self) -> str:
        return f"<ScrapeRun(id={self.id}, adapter_id='{self.adapter_id}', status='{self.status}')>"
