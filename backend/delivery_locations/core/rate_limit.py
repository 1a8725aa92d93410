"""Rate limiting for the resolve and sync-trigger endpoints (SlowAPI)."""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

from delivery_locations.core.config import settings

limiter = Limiter(key_func=get_remote_address, enabled=settings.ENV != "test")


def resolve_rate() -> str:
    return settings.RESOLVE_RATE


def sync_rate() -> str:
    return settings.SYNC_RATE


def init_rate_limiter(app: FastAPI) -> None:
    """Attach the rate limiter and its 429 handler to the FastAPI app."""

    app.state.limiter = limiter
    app.add_middleware(SlowAPIMiddleware)

    async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded):
        return JSONResponse(
            status_code=429,
            content={"error": "Too many requests", "limit": str(exc.detail)},
            headers={"Retry-After": "60"},
        )

    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
