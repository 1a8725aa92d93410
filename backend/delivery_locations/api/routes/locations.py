from fastapi import APIRouter, Depends, Query, Request

from delivery_locations.core.deps import (
    get_location_cache,
    get_location_resolver,
    get_location_store,
)
from delivery_locations.core.rate_limit import limiter, resolve_rate
from delivery_locations.schemas.location import (
    AliasCreate,
    AliasesOut,
    CityAliasOut,
    CityOut,
    LearnedPatternOut,
    LocationResolution,
    RegionAliasOut,
    RegionOut,
    ResolveLocationRequest,
)
from delivery_locations.services.location_cache import LocationCache
from delivery_locations.services.location_resolver import LEARNED_PROMPT_EXAMPLES, LocationResolver
from delivery_locations.services.location_store import LocationStore

router = APIRouter(prefix="/locations", tags=["locations"])


@router.get("/cities", response_model=list[CityOut])
async def list_cities(cache: LocationCache = Depends(get_location_cache)):
    await cache.init()
    return cache.cities


@router.get("/regions", response_model=list[RegionOut])
async def list_regions(
    city_id: int = Query(..., ge=1),
    cache: LocationCache = Depends(get_location_cache),
):
    await cache.init()
    return cache.get_regions_for_city_id(city_id)


@router.get(
    "/partners/{partner}/cities/{external_city_id}/regions",
    response_model=list[RegionOut],
)
async def list_partner_city_regions(
    partner: str,
    external_city_id: str,
    cache: LocationCache = Depends(get_location_cache),
):
    """Regions for a city as the delivery partner identifies it (order forms use this)."""
    await cache.init()
    return cache.get_regions_by_city(external_city_id, partner)


@router.get("/aliases", response_model=AliasesOut)
async def list_aliases(store: LocationStore = Depends(get_location_store)):
    return AliasesOut(
        cities=await store.list_city_aliases(),
        regions=await store.list_region_aliases(),
    )


@router.post("/cities/{city_id}/aliases", response_model=CityAliasOut)
async def add_city_alias(
    city_id: int,
    payload: AliasCreate,
    store: LocationStore = Depends(get_location_store),
    cache: LocationCache = Depends(get_location_cache),
):
    """Teach the resolver another spelling of a city."""
    alias = await store.add_city_alias(city_id, payload.alias_name, payload.confidence)
    cache.add_alias(alias)
    return alias


@router.post("/regions/{region_id}/aliases", response_model=RegionAliasOut)
async def add_region_alias(
    region_id: int,
    payload: AliasCreate,
    store: LocationStore = Depends(get_location_store),
    cache: LocationCache = Depends(get_location_cache),
):
    alias = await store.add_region_alias(region_id, payload.alias_name, payload.confidence)
    cache.add_region_alias(alias)
    return alias


@router.get("/learning-patterns", response_model=list[LearnedPatternOut])
async def list_learning_patterns(
    limit: int = Query(LEARNED_PROMPT_EXAMPLES, ge=1, le=1000),
    store: LocationStore = Depends(get_location_store),
):
    """Most used learned resolutions, as shown to the model."""
    return await store.top_learning_patterns(limit)


@router.post("/resolve", response_model=LocationResolution)
@limiter.limit(resolve_rate)
async def resolve_location(
    request: Request,
    payload: ResolveLocationRequest,
    resolver: LocationResolver = Depends(get_location_resolver),
):
    return await resolver.resolve(payload.location_text)
