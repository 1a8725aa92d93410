"""In-process view of the location store for request-time lookups.

One instance lives on ``app.state`` for the lifetime of the application:
``init()`` on startup, ``invalidate()`` after a sync completes and
``teardown()`` on shutdown.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import TYPE_CHECKING, Optional, Union

import anyio
from loguru import logger

from delivery_locations.core.config import settings
from delivery_locations.schemas.location import CityAliasOut, CityOut, RegionAliasOut, RegionOut
from delivery_locations.services.location_store import LocationStore

if TYPE_CHECKING:
    from delivery_locations.services.sync_orchestrator import SyncOrchestrator


class LocationCache:
    def __init__(
        self,
        store: LocationStore,
        orchestrator: Optional["SyncOrchestrator"] = None,
        *,
        page_size: Optional[int] = None,
        page_delay: Optional[float] = None,
    ):
        self.store = store
        self.orchestrator = orchestrator
        self.page_size = max(1, page_size or settings.LOCATION_CACHE_PAGE_SIZE)
        self.page_delay = settings.LOCATION_CACHE_PAGE_DELAY_SEC if page_delay is None else page_delay

        self._cities: list[CityOut] = []
        self._regions: list[RegionOut] = []
        self._aliases: list[CityAliasOut] = []
        self._region_aliases: list[RegionAliasOut] = []
        self._load_lock = asyncio.Lock()
        self.is_loading = False
        self.is_loaded = False
        self.loaded_at: Optional[datetime] = None
        self.pages_loaded = 0

    @property
    def cities(self) -> list[CityOut]:
        return list(self._cities)

    @property
    def regions(self) -> list[RegionOut]:
        return list(self._regions)

    @property
    def aliases(self) -> list[CityAliasOut]:
        return list(self._aliases)

    @property
    def region_aliases(self) -> list[RegionAliasOut]:
        return list(self._region_aliases)

    async def init(self) -> None:
        """Load cities, regions and both alias lists once; concurrent callers wait for the same load."""
        if self.is_loaded:
            return
        async with self._load_lock:
            if self.is_loaded:
                return
            await self._load()

    async def reload(self) -> None:
        async with self._load_lock:
            await self._load()

    async def _load(self) -> None:
        self.is_loading = True
        started = datetime.utcnow()
        try:
            cities = await self.store.list_active_cities()
            regions, pages = await self._load_regions()
            aliases = await self.store.list_city_aliases()
            region_aliases = await self.store.list_region_aliases()
        finally:
            self.is_loading = False

        self._cities = cities
        self._regions = regions
        self._aliases = aliases
        self._region_aliases = region_aliases
        self.pages_loaded = pages
        self.loaded_at = datetime.utcnow()
        self.is_loaded = True
        logger.bind(
            cities=len(cities),
            regions=len(regions),
            aliases=len(aliases),
            region_aliases=len(region_aliases),
            pages=pages,
            duration_seconds=round((self.loaded_at - started).total_seconds(), 3),
        ).info("location_cache_loaded")

    async def _load_regions(self) -> tuple[list[RegionOut], int]:
        regions: list[RegionOut] = []
        offset = 0
        pages = 0
        while True:
            page = await self.store.list_active_regions(limit=self.page_size, offset=offset)
            pages += 1
            regions.extend(page)
            if len(page) < self.page_size:
                break
            offset += self.page_size
            await anyio.sleep(self.page_delay)
        return regions, pages

    def get_city_by_partner_id(
        self, partner_city_id: Union[int, str], partner: Optional[str] = None
    ) -> Optional[CityOut]:
        partner = partner or settings.DEFAULT_DELIVERY_PARTNER
        wanted = str(partner_city_id)
        for city in self._cities:
            if city.partner_ids.get(partner) == wanted:
                return city
        return None

    def get_regions_by_city(
        self, partner_city_id: Union[int, str], partner: Optional[str] = None
    ) -> list[RegionOut]:
        """Regions of the city a partner knows as ``partner_city_id`` (linear scan)."""
        city = self.get_city_by_partner_id(partner_city_id, partner)
        if city is None:
            return []
        return [region for region in self._regions if region.city_id == city.id]

    def get_regions_for_city_id(self, city_id: int) -> list[RegionOut]:
        return [region for region in self._regions if region.city_id == city_id]

    async def trigger_sync(
        self, partner: str, token: Optional[str], triggered_by: Optional[str] = None
    ) -> str:
        """Start a background sync and hand back its progress id without waiting."""
        if self.orchestrator is None:
            raise RuntimeError("LocationCache has no sync orchestrator attached")
        return await self.orchestrator.launch(partner, token, triggered_by)

    async def invalidate(self, partner: Optional[str] = None) -> None:
        logger.bind(partner=partner).info("location_cache_invalidated")
        await self.reload()

    def add_alias(self, alias: CityAliasOut) -> None:
        self._aliases = [a for a in self._aliases if a.alias_name != alias.alias_name]
        self._aliases.append(alias)

    def add_region_alias(self, alias: RegionAliasOut) -> None:
        self._region_aliases = [
            a
            for a in self._region_aliases
            if (a.region_id, a.alias_name) != (alias.region_id, alias.alias_name)
        ]
        self._region_aliases.append(alias)

    def teardown(self) -> None:
        self._cities = []
        self._regions = []
        self._aliases = []
        self._region_aliases = []
        self.is_loaded = False
        self.is_loading = False
        self.loaded_at = None
        self.pages_loaded = 0
