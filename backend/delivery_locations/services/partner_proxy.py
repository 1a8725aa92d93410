"""Authenticated transport to delivery-partner merchant APIs."""

from __future__ import annotations

import asyncio
from typing import Any, Mapping, Optional

import httpx
from loguru import logger

from delivery_locations.core.config import settings
from delivery_locations.core.errors import PartnerRequestError, UnknownPartner


class PartnerProxy:
    """Send ``endpoint`` requests to one partner, owning auth and retries.

    The token travels in the ``auth-token`` header. Transport failures are
    retried with a linearly growing delay; HTTP error statuses and non-JSON
    bodies are not retried.
    """

    def __init__(
        self,
        partner: str,
        *,
        base_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
    ):
        base_url = base_url or settings.PARTNER_API_URLS.get(partner)
        if not base_url:
            raise UnknownPartner(f"No API URL configured for delivery partner '{partner}'")
        self.partner = partner
        self.base_url = base_url.rstrip("/")
        self._client = client
        self._owns_client = client is None
        self.retries = max(1, retries if retries is not None else settings.PARTNER_REQUEST_RETRIES)
        self.retry_delay = retry_delay if retry_delay is not None else settings.PARTNER_RETRY_BASE_DELAY

    async def __aenter__(self) -> "PartnerProxy":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=settings.PARTNER_REQUEST_TIMEOUT_SEC)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def invoke(
        self,
        endpoint: str,
        method: str,
        token: str,
        payload: Optional[Mapping[str, Any]] = None,
        query_params: Optional[Mapping[str, Any]] = None,
    ) -> Any:
        if not token:
            raise PartnerRequestError("Partner token is required", endpoint=endpoint)

        method = method.upper()
        params = dict(query_params or {})
        data = None
        if method == "GET" and payload:
            params.update(payload)
        elif payload:
            # merchant APIs take form fields on writes
            data = dict(payload)

        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        headers = {"Accept": "application/json", "auth-token": token}
        client = self._get_client()

        response: httpx.Response | None = None
        last_error: Exception | None = None
        for attempt in range(1, self.retries + 1):
            try:
                response = await client.request(method, url, params=params, data=data, headers=headers)
                break
            except httpx.TransportError as exc:
                last_error = exc
                logger.bind(
                    partner=self.partner, endpoint=endpoint, attempt=attempt, error=str(exc)
                ).warning("partner_request_retry")
                if attempt < self.retries:
                    await asyncio.sleep(self.retry_delay * attempt)

        if response is None:
            raise PartnerRequestError(
                f"Failed to reach {self.partner} API after {self.retries} attempts: {last_error}",
                endpoint=endpoint,
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise PartnerRequestError(
                f"Invalid JSON response from {self.partner} endpoint '{endpoint}'",
                status_code=response.status_code,
                endpoint=endpoint,
            ) from exc

        if response.is_error:
            detail = body.get("msg") if isinstance(body, dict) else None
            raise PartnerRequestError(
                f"{self.partner} endpoint '{endpoint}' returned {response.status_code}"
                + (f": {detail}" if detail else ""),
                status_code=response.status_code,
                endpoint=endpoint,
            )
        # merchant APIs report business errors as 200 with status=false
        if isinstance(body, dict) and body.get("status") is False:
            raise PartnerRequestError(
                f"{self.partner} endpoint '{endpoint}' rejected the request: "
                f"{body.get('msg') or body.get('errNum') or 'unknown error'}",
                status_code=response.status_code,
                endpoint=endpoint,
            )
        return body
