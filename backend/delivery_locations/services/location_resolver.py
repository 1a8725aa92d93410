"""Turn free-text delivery addresses into canonical (city, region) pairs.

Stages run in order and the first confident one wins:

1. learned patterns: texts resolved before, kept in ``location_learning_patterns``
   with a Redis read-through layer (``core.cache``);
2. direct token match against cached city names, city aliases, and the
   matched city's regions and region aliases;
3. Gemini in JSON mode, trying each configured model in turn, with the
   model's names reconciled back to cached rows so ids are never free text;
4. whatever the direct match found, possibly nothing.

Direct matches and confident AI answers are saved back as learned patterns,
and the most used patterns are shown to the model as worked examples.

Only empty or phone-number-like input is an error. An unrecognised address
comes back as ``city_id=None, region_id=None, confidence=0``.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError

from delivery_locations.core.cache import (
    clear_cache_pattern,
    generate_cache_key,
    get_cache,
    set_cache,
)
from delivery_locations.core.config import settings
from delivery_locations.core.errors import (
    AIRequestError,
    LocationInputError,
    LocationNotFound,
    UnparsableAIResponse,
)
from delivery_locations.models.learning_pattern import MAX_PATTERN_LENGTH
from delivery_locations.schemas.location import (
    CityOut,
    LearnedPatternOut,
    LocationResolution,
    LocationSuggestion,
    RegionOut,
)
from delivery_locations.services.ai_client import AILocationAnswer, GeminiClient, parse_ai_location
from delivery_locations.services.location_cache import LocationCache
from delivery_locations.services.location_store import LocationStore, normalize_name

# Confidence policy. A city hit and a region hit each add their share, so a
# full direct match scores 1.0 and a city-only match 0.5.
CITY_MATCH_CONFIDENCE = 0.5
REGION_MATCH_CONFIDENCE = 0.5
DIRECT_MATCH_THRESHOLD = 0.5

RECALL_MIN_CONFIDENCE = 0.85
LEARN_MIN_CONFIDENCE = 0.7
MAX_SUGGESTIONS = 3
MAX_MODEL_ATTEMPTS = 3
REGION_PROMPT_SAMPLE = 50
LEARNED_PROMPT_EXAMPLES = 100

MEMO_PREFIX = "location_resolution"

_SEPARATORS = re.compile(r"[-,،\s]+")
_PHONE_LIKE = re.compile(r"^[\d\s+()-]{7,}$")


def normalize_text(text: str) -> str:
    return " ".join(text.replace(",", " ").replace("،", " ").strip().lower().split())


def tokenize(text: str) -> list[str]:
    """Lowercase tokens split on dashes, commas (Latin and Arabic) and whitespace."""
    return [token for token in _SEPARATORS.split(text.strip().lower()) if len(token) >= 2]


def _names_match(names: Iterable[Optional[str]], token: str) -> bool:
    for name in names:
        if not name:
            continue
        name = name.lower()
        if name == token or token in name or name in token:
            return True
    return False


@dataclass(slots=True)
class DirectMatch:
    city: Optional[CityOut] = None
    region: Optional[RegionOut] = None
    confidence: float = 0.0

    def to_resolution(self, raw_input: str) -> LocationResolution:
        return LocationResolution(
            city_id=self.city.id if self.city else None,
            region_id=self.region.id if self.region else None,
            city_name=self.city.name if self.city else None,
            region_name=self.region.name if self.region else None,
            confidence=min(self.confidence, 1.0),
            suggestions=[],
            raw_input=raw_input,
        )


class LocationResolver:
    def __init__(
        self,
        cache: LocationCache,
        store: LocationStore,
        ai_client: Optional[GeminiClient] = None,
        *,
        models: Optional[Sequence[str]] = None,
    ):
        self.cache = cache
        self.store = store
        self.ai_client = ai_client
        self.models = list(models if models is not None else settings.GEMINI_MODELS)[:MAX_MODEL_ATTEMPTS]

    async def resolve(self, text: Optional[str]) -> LocationResolution:
        raw = text or ""
        stripped = raw.strip()
        if not stripped:
            raise LocationInputError("location_text must not be empty")
        if _PHONE_LIKE.match(stripped):
            raise LocationInputError("location_text looks like a phone number, not an address")

        normalized = normalize_text(raw)
        learned = await self.recall(normalized)
        if learned is not None:
            logger.bind(city_id=learned.city_id, usage_count=learned.usage_count).info(
                "location_resolved_from_learning"
            )
            return LocationResolution(
                city_id=learned.city_id,
                region_id=learned.region_id,
                city_name=learned.city_name,
                region_name=learned.region_name,
                confidence=learned.confidence,
                raw_input=raw,
                used_learning=True,
            )

        await self.cache.init()
        direct = self.direct_match(tokenize(normalized))
        if direct.confidence >= DIRECT_MATCH_THRESHOLD:
            logger.bind(city_id=direct.city.id, confidence=direct.confidence).info(
                "location_resolved_directly"
            )
            result = direct.to_resolution(raw)
            await self._learn_pattern(normalized, result)
            return result

        if self.ai_client is not None and self.ai_client.configured and self.models:
            answer = await self._ask_models(raw)
            if answer is not None:
                return await self._reconcile(raw, normalized, answer)

        logger.bind(tokens=len(tokenize(normalized))).info("location_unresolved")
        return direct.to_resolution(raw)

    # ------------------------------------------------------------------
    # learned patterns
    # ------------------------------------------------------------------

    async def recall(self, normalized: str) -> Optional[LearnedPatternOut]:
        """Confident learned resolution for ``normalized`` text; every hit counts as a use."""
        if len(normalized) > MAX_PATTERN_LENGTH:
            return None
        memo_key = generate_cache_key(MEMO_PREFIX, normalized)
        cached = await get_cache(memo_key)
        if cached:
            pattern = LearnedPatternOut.model_validate(cached)
        else:
            pattern = await self.store.find_learning_pattern(normalized, RECALL_MIN_CONFIDENCE)
            if pattern is None:
                return None
            await set_cache(memo_key, pattern.model_dump(), settings.RESOLUTION_CACHE_TTL_SEC)
        try:
            await self.store.touch_learning_pattern(pattern.id)
        except SQLAlchemyError as exc:
            logger.bind(pattern_id=pattern.id, error=str(exc)).warning("learning_pattern_not_touched")
        return pattern

    async def _learn_pattern(self, normalized: str, result: LocationResolution) -> None:
        if result.city_id is None or len(normalized) > MAX_PATTERN_LENGTH:
            return
        try:
            await self.store.save_learning_pattern(
                result.raw_input.strip(),
                normalized,
                result.city_id,
                result.region_id,
                result.confidence,
            )
        except SQLAlchemyError as exc:
            logger.bind(city_id=result.city_id, error=str(exc)).warning("learning_pattern_not_saved")
            return
        logger.bind(city_id=result.city_id, confidence=result.confidence).info(
            "learning_pattern_saved"
        )

    async def forget(self, partner: Optional[str] = None) -> int:
        """Drop the Redis copies of learned patterns; wired to run after every completed sync.

        The patterns themselves stay in the store, where lookups skip any whose
        city was deactivated by the sync.
        """
        cleared = await clear_cache_pattern(f"{MEMO_PREFIX}:*")
        logger.bind(partner=partner, cleared=cleared).info("location_memo_cleared")
        return cleared

    # ------------------------------------------------------------------
    # direct match
    # ------------------------------------------------------------------

    def direct_match(self, tokens: Sequence[str]) -> DirectMatch:
        found = self._match_city(tokens)
        if found is None:
            return DirectMatch()
        city, city_token = found
        match = DirectMatch(city=city, confidence=CITY_MATCH_CONFIDENCE)
        region = self._match_region(
            [token for index, token in enumerate(tokens) if index != city_token], city.id
        )
        if region is not None:
            match.region = region
            match.confidence += REGION_MATCH_CONFIDENCE
        return match

    def _match_city(self, tokens: Sequence[str]) -> Optional[tuple[CityOut, int]]:
        cities = self.cache.cities
        aliases = self.cache.aliases
        by_id = {city.id: city for city in cities}
        for index, token in enumerate(tokens):
            for city in cities:
                if _names_match((city.name, city.name_ar, city.name_en), token):
                    return city, index
            folded = normalize_name(token)
            for alias in aliases:
                if alias.normalized_name == folded and alias.city_id in by_id:
                    return by_id[alias.city_id], index
        return None

    def _match_region(self, tokens: Sequence[str], city_id: int) -> Optional[RegionOut]:
        regions = self.cache.get_regions_for_city_id(city_id)
        by_id = {region.id: region for region in regions}
        aliases = [alias for alias in self.cache.region_aliases if alias.region_id in by_id]
        for token in tokens:
            for region in regions:
                if _names_match((region.name, region.name_ar, region.name_en), token):
                    return region
            folded = normalize_name(token)
            for alias in aliases:
                if alias.normalized_name == folded:
                    return by_id[alias.region_id]
        return None

    # ------------------------------------------------------------------
    # AI fallback
    # ------------------------------------------------------------------

    def build_prompt(self, raw: str, examples: Sequence[LearnedPatternOut] = ()) -> str:
        city_names = [city.name for city in self.cache.cities]
        region_names = [region.name for region in self.cache.regions[:REGION_PROMPT_SAMPLE]]
        learned = "\n".join(
            f'"{example.normalized_pattern}" -> {example.city_name}'
            + (f" - {example.region_name}" if example.region_name else "")
            for example in examples
        )
        return (
            "You extract Iraqi delivery addresses.\n"
            f"Known cities: {json.dumps(city_names, ensure_ascii=False)}\n"
            f"Sample regions: {json.dumps(region_names, ensure_ascii=False)}\n"
            + (f"Previously resolved addresses:\n{learned}\n" if learned else "")
            + f"Address: {raw}\n\n"
            "Identify the city and the region, correcting spelling mistakes, and "
            f"propose up to {MAX_SUGGESTIONS} alternative cities. Answer with JSON only:\n"
            '{"city": "name", "region": "name or null", "confidence": 0.95, '
            '"suggestions": [{"city": "name", "region": "name or null", "confidence": 0.8}]}'
        )

    async def _ask_models(self, raw: str) -> Optional[AILocationAnswer]:
        try:
            examples = await self.store.top_learning_patterns(LEARNED_PROMPT_EXAMPLES)
        except SQLAlchemyError as exc:
            logger.bind(error=str(exc)).warning("learned_examples_unavailable")
            examples = []
        prompt = self.build_prompt(raw, examples)
        for model in self.models:
            try:
                reply = await self.ai_client.generate(prompt, model)
                answer = parse_ai_location(reply)
            except (AIRequestError, UnparsableAIResponse) as exc:
                logger.bind(model=model, error=str(exc)).warning("ai_model_failed")
                continue
            logger.bind(model=model, city=answer.city, confidence=answer.confidence).info(
                "ai_location_answer"
            )
            return answer
        logger.bind(models=self.models).warning("ai_models_exhausted")
        return None

    def _reconcile_names(
        self, city_name: Optional[str], region_name: Optional[str]
    ) -> tuple[Optional[CityOut], Optional[RegionOut]]:
        if not city_name:
            return None, None
        found = self._match_city([city_name.lower()]) or self._match_city(tokenize(city_name))
        if found is None:
            return None, None
        city = found[0]
        region = None
        if region_name:
            region = self._match_region([region_name.lower()], city.id) or self._match_region(
                tokenize(region_name), city.id
            )
        return city, region

    async def _reconcile(
        self, raw: str, normalized: str, answer: AILocationAnswer
    ) -> LocationResolution:
        suggestions: list[LocationSuggestion] = []
        for suggestion in answer.suggestions[:MAX_SUGGESTIONS]:
            city, region = self._reconcile_names(suggestion.city, suggestion.region)
            if city is None:
                continue
            suggestions.append(
                LocationSuggestion(
                    city=city.name,
                    region=region.name if region else None,
                    confidence=suggestion.confidence,
                )
            )

        city, region = self._reconcile_names(answer.city, answer.region)
        if city is None:
            logger.bind(ai_city=answer.city).info("ai_city_not_reconciled")
            return LocationResolution(raw_input=raw, suggestions=suggestions)

        # a store-backed city never reports zero confidence
        confidence = answer.confidence or CITY_MATCH_CONFIDENCE
        result = LocationResolution(
            city_id=city.id,
            region_id=region.id if region else None,
            city_name=city.name,
            region_name=region.name if region else None,
            confidence=confidence,
            suggestions=suggestions,
            raw_input=raw,
        )
        if confidence >= LEARN_MIN_CONFIDENCE:
            await self._learn_pattern(normalized, result)
            await self._learn_alias(city, answer.city, confidence)
        return result

    async def _learn_alias(self, city: CityOut, spelling: str, confidence: float) -> None:
        known = {name.lower() for name in (city.name, city.name_ar, city.name_en) if name}
        if spelling.lower() in known:
            return
        try:
            alias = await self.store.add_city_alias(city.id, spelling, confidence)
        except (SQLAlchemyError, LocationNotFound) as exc:
            logger.bind(city_id=city.id, alias=spelling, error=str(exc)).warning("city_alias_not_saved")
            return
        self.cache.add_alias(alias)
        logger.bind(city_id=city.id, alias=spelling).info("city_alias_learned")
