"""Canonical cities and their per-partner external identifiers."""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from delivery_locations.models.base import Base


class CityMaster(Base):
    """ORM model for the ``cities_master`` table (partner-agnostic cities)."""

    __tablename__ = "cities_master"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    name_ar: Mapped[Optional[str]] = mapped_column(String(255))
    name_en: Mapped[Optional[str]] = mapped_column(String(255))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    mappings: Mapped[List["CityDeliveryMapping"]] = relationship(
        back_populates="city", lazy="selectin", cascade="all, delete-orphan"
    )

    @property
    def partner_ids(self) -> dict[str, str]:
        return {m.delivery_partner: m.external_id for m in self.mappings if m.is_active}


class CityDeliveryMapping(Base):
    """One partner's external id for a canonical city."""

    __tablename__ = "city_delivery_mappings"
    __table_args__ = (
        UniqueConstraint("city_id", "delivery_partner", name="uq_city_mapping_partner"),
        UniqueConstraint("delivery_partner", "external_id", name="uq_city_mapping_external"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    city_id: Mapped[int] = mapped_column(
        ForeignKey("cities_master.id", ondelete="CASCADE"), nullable=False, index=True
    )
    delivery_partner: Mapped[str] = mapped_column(String(64), nullable=False)
    external_id: Mapped[str] = mapped_column(String(64), nullable=False)
    external_name: Mapped[Optional[str]] = mapped_column(String(255))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    city: Mapped[CityMaster] = relationship(back_populates="mappings")
