"""Request-scoped middleware: request ids, access logs and body size limits."""

from __future__ import annotations

import re
import time
import uuid

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from loguru import logger
from starlette.middleware.base import BaseHTTPMiddleware

from delivery_locations.core.config import settings
from delivery_locations.core.logging import request_id_ctx_var

_SAFE_REQUEST_ID = re.compile(r"^[A-Za-z0-9._-]{1,64}$")


def _request_id(request: Request) -> str:
    incoming = request.headers.get("X-Request-ID", "")
    return incoming if _SAFE_REQUEST_ID.match(incoming) else uuid.uuid4().hex


class RequestContextLogMiddleware(BaseHTTPMiddleware):
    """One ``request_completed`` line per request, echoed ``X-Request-ID``."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        request_id = _request_id(request)
        request.state.request_id = request_id
        token = request_id_ctx_var.set(request_id)
        started = time.perf_counter()
        response: Response | None = None
        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            logger.bind(
                method=request.method,
                path=request.url.path,
                status=response.status_code if response is not None else 500,
                client=request.client.host if request.client else None,
                duration_ms=round((time.perf_counter() - started) * 1000, 2),
            ).info("request_completed")
            request_id_ctx_var.reset(token)


class BodySizeLimitMiddleware(BaseHTTPMiddleware):
    """Answer 413 when the declared body exceeds ``MAX_UPLOAD_BYTES``."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        declared = request.headers.get("content-length", "")
        if declared.isdigit() and int(declared) > settings.MAX_UPLOAD_BYTES:
            logger.bind(path=request.url.path, content_length=int(declared)).warning(
                "request_body_too_large"
            )
            return JSONResponse(
                status_code=413,
                content={"error": f"Request body exceeds {settings.MAX_UPLOAD_BYTES} bytes"},
            )
        return await call_next(request)
