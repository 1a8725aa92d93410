"""Gemini text generation over REST, in JSON mode."""

from __future__ import annotations

from typing import Optional

import httpx
from loguru import logger
from pydantic import BaseModel, Field, ValidationError, field_validator

from delivery_locations.core.config import settings
from delivery_locations.core.errors import AIRequestError, UnparsableAIResponse


def _clamp_unit(value) -> float:
    try:
        value = float(value)
    except (TypeError, ValueError):
        return 0.0
    return min(max(value, 0.0), 1.0)


class AISuggestion(BaseModel):
    city: str
    region: Optional[str] = None
    confidence: float = 0.0

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp(cls, value):
        return _clamp_unit(value)


class AILocationAnswer(BaseModel):
    """The JSON document the model is asked to return."""

    city: Optional[str] = None
    region: Optional[str] = None
    confidence: float = 0.0
    suggestions: list[AISuggestion] = Field(default_factory=list)

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp(cls, value):
        return _clamp_unit(value)

    @field_validator("city", "region", mode="before")
    @classmethod
    def _blank_to_none(cls, value):
        if isinstance(value, str):
            return value.strip() or None
        return value


def parse_ai_location(text: str) -> AILocationAnswer:
    """Validate a model reply against ``AILocationAnswer``; no free-text scraping."""
    try:
        return AILocationAnswer.model_validate_json(text)
    except ValidationError as exc:
        raise UnparsableAIResponse(
            f"Model reply is not a valid location document ({exc.error_count()} errors)"
        ) from exc


class GeminiClient:
    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        base_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        temperature: Optional[float] = None,
        max_output_tokens: Optional[int] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.GEMINI_API_KEY
        self.base_url = (base_url or settings.GEMINI_API_BASE).rstrip("/")
        self.temperature = settings.AI_TEMPERATURE if temperature is None else temperature
        self.max_output_tokens = max_output_tokens or settings.AI_MAX_OUTPUT_TOKENS
        self._client = client
        self._owns_client = client is None

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=settings.AI_TIMEOUT_SEC)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def generate(self, prompt: str, model: str) -> str:
        """Return the model's text reply, or raise AIRequestError."""
        if not self.api_key:
            raise AIRequestError("GEMINI_API_KEY is not configured")

        body = {
            "contents": [{"parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": self.temperature,
                "maxOutputTokens": self.max_output_tokens,
                "responseMimeType": "application/json",
            },
        }
        url = f"{self.base_url}/models/{model}:generateContent"
        try:
            response = await self._get_client().post(
                url, json=body, headers={"x-goog-api-key": self.api_key}
            )
        except httpx.HTTPError as exc:
            raise AIRequestError(f"{model}: request failed: {exc}") from exc

        if response.is_error:
            raise AIRequestError(f"{model}: HTTP {response.status_code}")
        try:
            payload = response.json()
            parts = payload["candidates"][0]["content"]["parts"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise AIRequestError(f"{model}: response has no candidates") from exc

        text = "".join(part.get("text", "") for part in parts if isinstance(part, dict))
        if not text.strip():
            raise AIRequestError(f"{model}: empty reply")
        logger.bind(model=model, chars=len(text)).debug("ai_reply_received")
        return text
