"""Domain exceptions and their translation into HTTP responses."""

from __future__ import annotations

from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from loguru import logger
from sqlalchemy.exc import SQLAlchemyError


class LocationServiceError(Exception):
    """Base class for errors raised by the delivery locations service."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def payload(self) -> dict[str, Any]:
        return {"error": str(self)}


class PartnerRequestError(LocationServiceError):
    """The partner proxy could not complete a request (transport, auth, HTTP status)."""

    def __init__(self, message: str, *, status_code: int | None = None, endpoint: str | None = None):
        super().__init__(message)
        self.upstream_status = status_code
        self.endpoint = endpoint


class InvalidResponseShape(LocationServiceError):
    """A partner payload was neither a list nor a ``{"data": [...]}`` envelope."""


class AIRequestError(LocationServiceError):
    """The text-generation service returned an error or could not be reached."""


class UnparsableAIResponse(LocationServiceError):
    """The model answered, but not with the JSON document the resolver expects."""


class LocationInputError(LocationServiceError):
    status_code = status.HTTP_400_BAD_REQUEST


class UnknownPartner(LocationServiceError):
    status_code = status.HTTP_400_BAD_REQUEST


class SyncProgressNotFound(LocationServiceError):
    status_code = status.HTTP_404_NOT_FOUND


class LocationNotFound(LocationServiceError):
    """A city or region id does not exist in the store."""

    status_code = status.HTTP_404_NOT_FOUND


class SyncAlreadyRunning(LocationServiceError):
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, partner: str, progress_id: str):
        super().__init__(f"A location sync for {partner} is already running")
        self.partner = partner
        self.progress_id = progress_id

    def payload(self) -> dict[str, Any]:
        return {"error": str(self), "progress_id": self.progress_id}


class SyncCancelled(LocationServiceError):
    """Raised inside a run when its cancellation signal has been set."""


def register_exception_handlers(app: FastAPI) -> None:
    """Map domain errors onto JSON responses with an ``error`` field."""

    async def location_error_handler(request: Request, exc: LocationServiceError):
        if exc.status_code >= 500:
            logger.bind(path=str(request.url.path), error=str(exc)).error("request_failed")
        return JSONResponse(status_code=exc.status_code, content=exc.payload())

    async def store_error_handler(request: Request, exc: SQLAlchemyError):
        logger.bind(path=str(request.url.path), error=str(exc)).error("location_store_failed")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Location store is unavailable"},
        )

    app.add_exception_handler(LocationServiceError, location_error_handler)
    app.add_exception_handler(SQLAlchemyError, store_error_handler)
