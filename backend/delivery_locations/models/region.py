"""Canonical regions (always inside one city) and their partner identifiers."""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from delivery_locations.models.base import Base


class RegionMaster(Base):
    """ORM model for the ``regions_master`` table."""

    __tablename__ = "regions_master"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    city_id: Mapped[int] = mapped_column(
        ForeignKey("cities_master.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    name_ar: Mapped[Optional[str]] = mapped_column(String(255))
    name_en: Mapped[Optional[str]] = mapped_column(String(255))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    mappings: Mapped[List["RegionDeliveryMapping"]] = relationship(
        back_populates="region", lazy="selectin", cascade="all, delete-orphan"
    )

    @property
    def partner_ids(self) -> dict[str, str]:
        return {m.delivery_partner: m.external_id for m in self.mappings if m.is_active}


class RegionDeliveryMapping(Base):
    __tablename__ = "region_delivery_mappings"
    __table_args__ = (
        UniqueConstraint("region_id", "delivery_partner", name="uq_region_mapping_partner"),
        UniqueConstraint("delivery_partner", "external_id", name="uq_region_mapping_external"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    region_id: Mapped[int] = mapped_column(
        ForeignKey("regions_master.id", ondelete="CASCADE"), nullable=False, index=True
    )
    delivery_partner: Mapped[str] = mapped_column(String(64), nullable=False)
    external_id: Mapped[str] = mapped_column(String(64), nullable=False)
    external_name: Mapped[Optional[str]] = mapped_column(String(255))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    region: Mapped[RegionMaster] = relationship(back_populates="mappings")
