from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class CityOut(BaseModel):
    """Canonical city as served to clients and held by the location cache."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    name_ar: Optional[str] = None
    name_en: Optional[str] = None
    is_active: bool = True
    partner_ids: Dict[str, str] = Field(default_factory=dict)


class RegionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    city_id: int
    name: str
    name_ar: Optional[str] = None
    name_en: Optional[str] = None
    is_active: bool = True
    partner_ids: Dict[str, str] = Field(default_factory=dict)


class CityAliasOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    city_id: int
    alias_name: str
    normalized_name: str
    confidence_score: float


class RegionAliasOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    region_id: int
    alias_name: str
    normalized_name: str
    confidence_score: float


class AliasCreate(BaseModel):
    alias_name: str = Field(min_length=1, max_length=255)
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)


class AliasesOut(BaseModel):
    cities: List[CityAliasOut] = Field(default_factory=list)
    regions: List[RegionAliasOut] = Field(default_factory=list)


class LearnedPatternOut(BaseModel):
    """A learned address text joined with the names it resolves to."""

    id: int
    normalized_pattern: str
    city_id: int
    city_name: str
    region_id: Optional[int] = None
    region_name: Optional[str] = None
    confidence: float
    usage_count: int = 1


class ResolveLocationRequest(BaseModel):
    location_text: str = Field(default="", max_length=1000)


class LocationSuggestion(BaseModel):
    city: str
    region: Optional[str] = None
    confidence: float = Field(ge=0.0, le=1.0)


class LocationResolution(BaseModel):
    """Best-guess (city, region) for a free-text address."""

    city_id: Optional[int] = None
    region_id: Optional[int] = None
    city_name: Optional[str] = None
    region_name: Optional[str] = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    suggestions: List[LocationSuggestion] = Field(default_factory=list)
    raw_input: str
    used_learning: bool = False
