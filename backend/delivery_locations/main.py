"""Application entry point for the delivery locations API service."""

from typing import Optional

from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from loguru import logger
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from delivery_locations.api.routes.locations import router as locations_router
from delivery_locations.api.routes.sync import router as sync_router
from delivery_locations.core.cache import close_redis_client, get_redis_client
from delivery_locations.core.config import settings
from delivery_locations.core.db import SessionLocal, get_session
from delivery_locations.core.errors import register_exception_handlers
from delivery_locations.core.logging import setup_logging
from delivery_locations.core.middleware import BodySizeLimitMiddleware, RequestContextLogMiddleware
from delivery_locations.core.rate_limit import init_rate_limiter
from delivery_locations.services.ai_client import GeminiClient
from delivery_locations.services.location_cache import LocationCache
from delivery_locations.services.location_resolver import LocationResolver
from delivery_locations.services.location_store import LocationStore
from delivery_locations.services.sync_orchestrator import (
    FetcherFactory,
    SyncOrchestrator,
    default_fetcher_factory,
)

setup_logging()

app = FastAPI(title=settings.APP_NAME, debug=settings.DEBUG)

init_rate_limiter(app)
register_exception_handlers(app)

app.add_middleware(RequestContextLogMiddleware)


def _cors_origins() -> list[str]:
    if settings.ENV == "prod":
        if not settings.CORS_ALLOWED_ORIGINS:
            raise RuntimeError("CORS_ALLOWED_ORIGINS must be configured for prod")
        return settings.CORS_ALLOWED_ORIGINS
    return settings.CORS_ALLOWED_ORIGINS or ["http://localhost:5173"]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
)

app.add_middleware(BodySizeLimitMiddleware)
app.add_middleware(GZipMiddleware, minimum_size=1000)


def configure_services(
    target: FastAPI,
    session_factory: async_sessionmaker[AsyncSession],
    *,
    fetcher_factory: FetcherFactory = default_fetcher_factory,
    ai_client: Optional[GeminiClient] = None,
) -> None:
    """Build the store, orchestrator, cache and resolver and hang them on ``app.state``."""
    store = LocationStore(session_factory)
    orchestrator = SyncOrchestrator(store, fetcher_factory)
    cache = LocationCache(store, orchestrator)
    resolver = LocationResolver(cache, store, ai_client)

    orchestrator.add_completion_hook(cache.invalidate)
    orchestrator.add_completion_hook(resolver.forget)

    target.state.location_store = store
    target.state.sync_orchestrator = orchestrator
    target.state.location_cache = cache
    target.state.location_resolver = resolver
    target.state.ai_client = ai_client


@app.on_event("startup")
async def startup_event():
    """Wire services, connect Redis and warm the location cache."""
    configure_services(
        app, SessionLocal, ai_client=GeminiClient() if settings.ai_enabled else None
    )
    await get_redis_client()
    try:
        await app.state.location_cache.init()
    except SQLAlchemyError as exc:
        # the cache loads lazily on first use if the database is late
        logger.bind(error=str(exc)).warning("location_cache_warmup_failed")


@app.on_event("shutdown")
async def shutdown_event():
    await app.state.sync_orchestrator.shutdown()
    app.state.location_cache.teardown()
    if app.state.ai_client is not None:
        await app.state.ai_client.aclose()
    await close_redis_client()


@app.get("/api/healthz", tags=["system"], summary="Liveness probe")
def healthz() -> dict[str, str]:
    """Simple liveness probe that load balancers and monitors can call."""

    return {"status": "ok"}


@app.get("/api/readyz", tags=["system"], summary="Readiness probe")
async def readyz(session: AsyncSession = Depends(get_session)):
    try:
        await session.execute(text("SELECT 1"))
        return {"ready": True}
    except SQLAlchemyError:
        raise HTTPException(status_code=503, detail="Database not reachable")


app.include_router(locations_router, prefix="/api")
app.include_router(sync_router, prefix="/api")
