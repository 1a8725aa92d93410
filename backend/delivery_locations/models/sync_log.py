from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, Float, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from delivery_locations.models.base import Base


class CitiesRegionsSyncLog(Base):
    """Write-once audit row, one per finished (or failed) sync run."""

    __tablename__ = "cities_regions_sync_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    progress_id: Mapped[Optional[str]] = mapped_column(String(36), index=True)
    delivery_partner: Mapped[str] = mapped_column(String(64), nullable=False)
    triggered_by: Mapped[Optional[str]] = mapped_column(String(64))
    started_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    ended_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    cities_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    regions_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    sync_duration_seconds: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
