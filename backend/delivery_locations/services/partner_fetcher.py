"""Retrieve a partner's authoritative city and region lists."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Protocol, Union

from loguru import logger

from delivery_locations.core.errors import InvalidResponseShape

ExternalId = Union[int, str]

CITIES_ENDPOINT = "citys"
REGIONS_ENDPOINT = "regions"


class PartnerTransport(Protocol):
    partner: str

    async def invoke(
        self,
        endpoint: str,
        method: str,
        token: str,
        payload: Optional[dict] = None,
        query_params: Optional[dict] = None,
    ) -> Any: ...


@dataclass(slots=True)
class PartnerCity:
    id: ExternalId
    name: str
    name_ar: Optional[str] = None
    name_en: Optional[str] = None


@dataclass(slots=True)
class PartnerRegion:
    id: ExternalId
    city_id: ExternalId
    name: str
    name_ar: Optional[str] = None
    name_en: Optional[str] = None


def unwrap_response(raw: Any) -> list:
    """Resolve ``list | {"data": list}`` into the list, or raise InvalidResponseShape."""
    if isinstance(raw, list):
        return raw
    if isinstance(raw, dict) and isinstance(raw.get("data"), list):
        return raw["data"]
    shape = type(raw).__name__
    if isinstance(raw, dict):
        shape = f"object with keys {sorted(raw.keys())}"
    raise InvalidResponseShape(f"Unexpected partner response shape: {shape}")


def coerce_external_id(value: Any) -> ExternalId:
    """Partner ids arrive as ints or numeric strings; keep anything else verbatim."""
    if isinstance(value, bool):
        return str(value)
    if isinstance(value, int):
        return value
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return value


def _item_name(item: dict, *keys: str) -> Optional[str]:
    for key in keys:
        value = item.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


class PartnerLocationFetcher:
    def __init__(self, transport: PartnerTransport):
        self.transport = transport

    @property
    def partner(self) -> str:
        return self.transport.partner

    async def aclose(self) -> None:
        close = getattr(self.transport, "aclose", None)
        if close is not None:
            await close()

    async def fetch_cities(self, token: str) -> list[PartnerCity]:
        """Fetch every city; any failure propagates and aborts the sync."""
        raw = await self.transport.invoke(CITIES_ENDPOINT, "GET", token)
        items = unwrap_response(raw)

        cities: list[PartnerCity] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            name = _item_name(item, "name", "city_name")
            if item.get("id") in (None, "") or not name:
                logger.bind(partner=self.partner, item=item).warning("partner_city_skipped")
                continue
            cities.append(
                PartnerCity(
                    id=coerce_external_id(item["id"]),
                    name=name,
                    name_ar=_item_name(item, "name_ar") or name,
                    name_en=_item_name(item, "name_en"),
                )
            )
        logger.bind(partner=self.partner, count=len(cities)).info("partner_cities_fetched")
        return cities

    async def fetch_regions(self, token: str, city_id: ExternalId) -> list[PartnerRegion]:
        """Fetch one city's regions; errors are logged and yield an empty list."""
        try:
            raw = await self.transport.invoke(
                REGIONS_ENDPOINT, "GET", token, query_params={"city_id": city_id}
            )
            items = unwrap_response(raw)
        except Exception as exc:
            logger.bind(partner=self.partner, city_id=city_id, error=str(exc)).error(
                "partner_regions_fetch_failed"
            )
            return []

        regions: list[PartnerRegion] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            name = _item_name(item, "name", "region_name")
            if item.get("id") in (None, "") or not name:
                continue
            regions.append(
                PartnerRegion(
                    id=coerce_external_id(item["id"]),
                    city_id=city_id,
                    name=name,
                    name_ar=_item_name(item, "name_ar") or name,
                    name_en=_item_name(item, "name_en"),
                )
            )
        return regions
