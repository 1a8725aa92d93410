from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class SyncTriggerRequest(BaseModel):
    """Body of ``POST /locations/sync``; the partner token is required."""

    token: Optional[str] = None
    delivery_partner: Optional[str] = None
    user_id: Optional[str] = None
    wait: bool = False


class SyncTriggerResponse(BaseModel):
    success: bool = True
    progress_id: str
    sync_type: str = "background"
    message: str
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    cities_count: Optional[int] = None
    regions_count: Optional[int] = None
    duration_seconds: Optional[float] = None


class SyncProgressOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    sync_type: str
    delivery_partner: str
    triggered_by: Optional[str] = None
    status: str
    total_cities: int
    completed_cities: int
    total_regions: int
    completed_regions: int
    current_city_name: Optional[str] = None
    error_message: Optional[str] = None
    started_at: datetime
    completed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class SyncCancelOut(BaseModel):
    progress_id: str
    cancel_requested: bool


class SyncLogOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    progress_id: Optional[str] = None
    delivery_partner: str
    triggered_by: Optional[str] = None
    started_at: datetime
    ended_at: datetime
    cities_count: int
    regions_count: int
    success: bool
    error_message: Optional[str] = None
    sync_duration_seconds: float
