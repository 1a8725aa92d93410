"""Address texts the resolver has already mapped to a city (and maybe a region)."""

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Float, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from delivery_locations.models.base import Base

# longest normalised text that can be learned; keeps the unique index within MySQL's key limit
MAX_PATTERN_LENGTH = 500


class LocationLearningPattern(Base):
    __tablename__ = "location_learning_patterns"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    pattern_text: Mapped[str] = mapped_column(String(MAX_PATTERN_LENGTH), nullable=False)
    normalized_pattern: Mapped[str] = mapped_column(
        String(MAX_PATTERN_LENGTH), nullable=False, unique=True
    )
    resolved_city_id: Mapped[int] = mapped_column(
        ForeignKey("cities_master.id", ondelete="CASCADE"), nullable=False, index=True
    )
    resolved_region_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("regions_master.id", ondelete="SET NULL")
    )
    confidence: Mapped[float] = mapped_column(Float, nullable=False)
    usage_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1, index=True)
    success_rate: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    last_used_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
