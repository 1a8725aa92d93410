"""Live progress record of a background cities/regions sync."""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from delivery_locations.models.base import Base


class SyncStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


OPEN_STATUSES = (SyncStatus.PENDING.value, SyncStatus.IN_PROGRESS.value)


class BackgroundSyncProgress(Base):
    """One row per sync run; written by the run, polled by any number of readers."""

    __tablename__ = "background_sync_progress"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    sync_type: Mapped[str] = mapped_column(String(32), nullable=False, default="cities_regions")
    delivery_partner: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    triggered_by: Mapped[Optional[str]] = mapped_column(String(64))
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=SyncStatus.PENDING.value, index=True
    )
    total_cities: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completed_cities: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_regions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completed_regions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    current_city_name: Mapped[Optional[str]] = mapped_column(String(255))
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    started_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )
