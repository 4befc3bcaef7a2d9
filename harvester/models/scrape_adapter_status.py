"""Per-adapter health state: enabled flag, drift counters and baseline."""

from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, Float, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from harvester.models.base import Base, TimestampMixin


class ScrapeAdapterStatus(TimestampMixin, Base):
    """Health row keyed by adapter id.

    Only the run finalizer writes the drift fields, under a per-adapter lock.
    """

    __tablename__ = "scrape_adapter_status"

    adapter_id: Mapped[str] = mapped_column(String(50), primary_key=True)

    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    disabled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    disabled_reason: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    disabled_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    consecutive_failed_batches: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_run_had_zero_price: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Rolling baseline
    baseline_failure_rate: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    baseline_yield_rate: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    baseline_sample_size: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    baseline_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<ScrapeAdapterStatus(adapter_id='{self.adapter_id}', enabled={self.enabled})>"
