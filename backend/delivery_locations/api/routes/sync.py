from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from loguru import logger

from delivery_locations.core.config import settings
from delivery_locations.core.deps import (
    get_location_cache,
    get_location_store,
    get_sync_orchestrator,
)
from delivery_locations.core.errors import LocationServiceError, SyncProgressNotFound
from delivery_locations.core.rate_limit import limiter, sync_rate
from delivery_locations.models.sync_progress import SyncStatus
from delivery_locations.schemas.sync import (
    SyncCancelOut,
    SyncLogOut,
    SyncProgressOut,
    SyncTriggerRequest,
    SyncTriggerResponse,
)
from delivery_locations.services.location_cache import LocationCache
from delivery_locations.services.location_store import LocationStore
from delivery_locations.services.sync_orchestrator import SyncOrchestrator

router = APIRouter(prefix="/locations", tags=["location-sync"])


@router.post("/sync", response_model=SyncTriggerResponse)
@limiter.limit(sync_rate)
async def trigger_sync(
    request: Request,
    payload: SyncTriggerRequest,
    cache: LocationCache = Depends(get_location_cache),
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
):
    """Refresh a partner's cities and regions.

    By default the run continues in the background and the response carries
    the ``progress_id`` to poll. With ``wait=true`` the request blocks until
    the run finishes and a failed run answers 500.
    """
    partner = payload.delivery_partner or settings.DEFAULT_DELIVERY_PARTNER

    if not payload.wait:
        progress_id = await cache.trigger_sync(partner, payload.token, payload.user_id)
        return SyncTriggerResponse(
            progress_id=progress_id,
            message=f"Location sync for {partner} started in the background",
        )

    progress_id = await orchestrator.start(partner, payload.token, payload.user_id)
    try:
        result = await orchestrator.run(progress_id, partner, payload.token, payload.user_id)
    except LocationServiceError:
        raise
    except Exception as exc:
        logger.bind(partner=partner, progress_id=progress_id).exception("sync_request_failed")
        raise LocationServiceError(str(exc) or exc.__class__.__name__) from exc

    completed = result.status == SyncStatus.COMPLETED
    return SyncTriggerResponse(
        success=completed,
        progress_id=progress_id,
        sync_type="foreground",
        message=(
            f"Synced {result.cities_count} cities and {result.regions_count} regions"
            if completed
            else f"Location sync ended as {result.status.value}"
        ),
        cities_count=result.cities_count,
        regions_count=result.regions_count,
        duration_seconds=result.duration_seconds,
    )


@router.get("/sync/{progress_id}", response_model=SyncProgressOut)
async def get_sync_progress(
    progress_id: str, store: LocationStore = Depends(get_location_store)
):
    progress = await store.get_progress(progress_id)
    if progress is None:
        raise SyncProgressNotFound(f"Sync progress {progress_id} not found")
    return progress


@router.post("/sync/{progress_id}/cancel", response_model=SyncCancelOut)
async def cancel_sync(
    progress_id: str,
    store: LocationStore = Depends(get_location_store),
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
):
    if await store.get_progress(progress_id) is None:
        raise SyncProgressNotFound(f"Sync progress {progress_id} not found")
    return SyncCancelOut(progress_id=progress_id, cancel_requested=orchestrator.cancel(progress_id))


@router.get("/sync-logs", response_model=list[SyncLogOut])
async def list_sync_logs(
    limit: int = Query(20, ge=1, le=200),
    partner: Optional[str] = None,
    store: LocationStore = Depends(get_location_store),
):
    return await store.list_sync_logs(limit=limit, partner=partner)


@router.get("/sync-logs/last", response_model=Optional[SyncLogOut])
async def last_sync_log(
    partner: Optional[str] = None, store: LocationStore = Depends(get_location_store)
):
    return await store.last_sync_log(partner)
