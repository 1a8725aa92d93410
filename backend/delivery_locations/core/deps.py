"""FastAPI dependencies that hand out the application-level services."""

from fastapi import Request

from delivery_locations.services.location_cache import LocationCache
from delivery_locations.services.location_resolver import LocationResolver
from delivery_locations.services.location_store import LocationStore
from delivery_locations.services.sync_orchestrator import SyncOrchestrator


def get_location_store(request: Request) -> LocationStore:
    return request.app.state.location_store


def get_location_cache(request: Request) -> LocationCache:
    return request.app.state.location_cache


def get_sync_orchestrator(request: Request) -> SyncOrchestrator:
    return request.app.state.sync_orchestrator


def get_location_resolver(request: Request) -> LocationResolver:
    return request.app.state.location_resolver
