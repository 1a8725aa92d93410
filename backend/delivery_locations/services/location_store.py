"""Durable cache of canonical cities/regions and their partner mappings.

Canonical rows (``cities_master``/``regions_master``) are partner-agnostic.
Each partner's view of a location lives in a mapping row keyed by
``(entity_id, delivery_partner)``, so several partners can be synced into the
same canonical city without id collisions.

Every write is an idempotent select-then-update-or-insert committed in its own
transaction; a failing row is rolled back without touching its neighbours.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Awaitable, Callable, Iterable, Optional, Sequence, TypeVar

from loguru import logger
from sqlalchemy import and_, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from delivery_locations.core.audit import log_sync_run
from delivery_locations.core.db_retry import with_db_retry
from delivery_locations.core.errors import LocationNotFound
from delivery_locations.models.city import CityDeliveryMapping, CityMaster
from delivery_locations.models.city_alias import CityAlias
from delivery_locations.models.learning_pattern import MAX_PATTERN_LENGTH, LocationLearningPattern
from delivery_locations.models.region import RegionDeliveryMapping, RegionMaster
from delivery_locations.models.region_alias import RegionAlias
from delivery_locations.models.sync_log import CitiesRegionsSyncLog
from delivery_locations.models.sync_progress import (
    OPEN_STATUSES,
    BackgroundSyncProgress,
    SyncStatus,
)
from delivery_locations.schemas.location import (
    CityAliasOut,
    CityOut,
    LearnedPatternOut,
    RegionAliasOut,
    RegionOut,
)
from delivery_locations.services.partner_fetcher import PartnerCity, PartnerRegion

T = TypeVar("T")

PROGRESS_COUNTERS = {"total_cities", "completed_cities", "total_regions", "completed_regions"}


def _utcnow() -> datetime:
    return datetime.utcnow()


# hamza-carrying alef forms and ta marbuta are written interchangeably in addresses
_ARABIC_FOLDS = str.maketrans({"أ": "ا", "إ": "ا", "آ": "ا", "ة": "ه"})


def normalize_name(value: str) -> str:
    """Key used to compare alias spellings: lowercased, single-spaced, Arabic letters folded."""
    return " ".join(value.strip().lower().split()).translate(_ARABIC_FOLDS)


class LocationStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def _write(self, session: AsyncSession, operation: Callable[[], Awaitable[T]]) -> T:
        async def _txn() -> T:
            try:
                result = await operation()
                await session.commit()
                return result
            except BaseException:
                await session.rollback()
                raise

        return await with_db_retry(session, _txn)

    # ------------------------------------------------------------------
    # cities / regions
    # ------------------------------------------------------------------

    async def upsert_city(
        self, city: PartnerCity, partner: str, external_id: Optional[object] = None
    ) -> int:
        """Insert or update one city and its mapping; returns the canonical id."""
        external = str(external_id if external_id is not None else city.id)
        async with self._session_factory() as session:
            return await self._write(
                session, lambda: self._upsert_city(session, city, partner, external)
            )

    async def upsert_cities(
        self, cities: Iterable[PartnerCity], partner: str
    ) -> dict[str, int]:
        """Upsert many cities, skipping rows that fail.

        Returns ``{external_id: canonical_id}`` for the rows that were stored.
        """
        stored: dict[str, int] = {}
        async with self._session_factory() as session:
            for city in cities:
                external = str(city.id)
                try:
                    stored[external] = await self._write(
                        session,
                        lambda: self._upsert_city(session, city, partner, external),
                    )
                except (SQLAlchemyError, ValueError) as exc:
                    logger.bind(partner=partner, city=city.name, error=str(exc)).error(
                        "city_upsert_failed"
                    )
        return stored

    async def _upsert_city(
        self, session: AsyncSession, city: PartnerCity, partner: str, external_id: str
    ) -> int:
        mapping = (
            await session.execute(
                select(CityDeliveryMapping).where(
                    CityDeliveryMapping.delivery_partner == partner,
                    CityDeliveryMapping.external_id == external_id,
                )
            )
        ).scalar_one_or_none()

        row: Optional[CityMaster] = None
        if mapping is not None:
            row = await session.get(CityMaster, mapping.city_id)
        if row is None:
            already_mapped = select(CityDeliveryMapping.city_id).where(
                CityDeliveryMapping.delivery_partner == partner
            )
            row = (
                await session.execute(
                    select(CityMaster)
                    .where(
                        func.lower(CityMaster.name) == city.name.lower(),
                        CityMaster.id.not_in(already_mapped),
                    )
                    .order_by(CityMaster.id)
                    .limit(1)
                )
            ).scalar_one_or_none()

        if row is None:
            row = CityMaster(
                name=city.name,
                name_ar=city.name_ar or city.name,
                name_en=city.name_en,
                is_active=True,
            )
            session.add(row)
            await session.flush()
        else:
            row.name = city.name
            row.name_ar = city.name_ar or city.name
            if city.name_en:
                row.name_en = city.name_en
            row.is_active = True
            row.updated_at = _utcnow()

        if mapping is None or mapping.city_id != row.id:
            mapping = (
                await session.execute(
                    select(CityDeliveryMapping).where(
                        CityDeliveryMapping.city_id == row.id,
                        CityDeliveryMapping.delivery_partner == partner,
                    )
                )
            ).scalar_one_or_none()
        if mapping is None:
            session.add(
                CityDeliveryMapping(
                    city_id=row.id,
                    delivery_partner=partner,
                    external_id=external_id,
                    external_name=city.name,
                    is_active=True,
                )
            )
        else:
            mapping.external_id = external_id
            mapping.external_name = city.name
            mapping.is_active = True
            mapping.updated_at = _utcnow()
        return row.id

    async def upsert_region(
        self,
        region: PartnerRegion,
        partner: str,
        city_id: int,
        external_id: Optional[object] = None,
    ) -> int:
        external = str(external_id if external_id is not None else region.id)
        async with self._session_factory() as session:
            return await self._write(
                session, lambda: self._upsert_region(session, region, partner, city_id, external)
            )

    async def upsert_regions(
        self, regions: Sequence[PartnerRegion], partner: str, city_id: int
    ) -> int:
        """Upsert one batch of a city's regions; returns how many were stored."""
        stored = 0
        async with self._session_factory() as session:
            for region in regions:
                external = str(region.id)
                try:
                    await self._write(
                        session,
                        lambda: self._upsert_region(session, region, partner, city_id, external),
                    )
                    stored += 1
                except (SQLAlchemyError, ValueError) as exc:
                    logger.bind(
                        partner=partner, city_id=city_id, region=region.name, error=str(exc)
                    ).error("region_upsert_failed")
        return stored

    async def _upsert_region(
        self,
        session: AsyncSession,
        region: PartnerRegion,
        partner: str,
        city_id: int,
        external_id: str,
    ) -> int:
        if await session.get(CityMaster, city_id) is None:
            raise ValueError(f"Region '{region.name}' references unknown city {city_id}")

        mapping = (
            await session.execute(
                select(RegionDeliveryMapping).where(
                    RegionDeliveryMapping.delivery_partner == partner,
                    RegionDeliveryMapping.external_id == external_id,
                )
            )
        ).scalar_one_or_none()

        row: Optional[RegionMaster] = None
        if mapping is not None:
            row = await session.get(RegionMaster, mapping.region_id)
        if row is None:
            already_mapped = select(RegionDeliveryMapping.region_id).where(
                RegionDeliveryMapping.delivery_partner == partner
            )
            row = (
                await session.execute(
                    select(RegionMaster)
                    .where(
                        RegionMaster.city_id == city_id,
                        func.lower(RegionMaster.name) == region.name.lower(),
                        RegionMaster.id.not_in(already_mapped),
                    )
                    .order_by(RegionMaster.id)
                    .limit(1)
                )
            ).scalar_one_or_none()

        if row is None:
            row = RegionMaster(
                city_id=city_id,
                name=region.name,
                name_ar=region.name_ar or region.name,
                name_en=region.name_en,
                is_active=True,
            )
            session.add(row)
            await session.flush()
        else:
            row.city_id = city_id
            row.name = region.name
            row.name_ar = region.name_ar or region.name
            if region.name_en:
                row.name_en = region.name_en
            row.is_active = True
            row.updated_at = _utcnow()

        if mapping is None or mapping.region_id != row.id:
            mapping = (
                await session.execute(
                    select(RegionDeliveryMapping).where(
                        RegionDeliveryMapping.region_id == row.id,
                        RegionDeliveryMapping.delivery_partner == partner,
                    )
                )
            ).scalar_one_or_none()
        if mapping is None:
            session.add(
                RegionDeliveryMapping(
                    region_id=row.id,
                    delivery_partner=partner,
                    external_id=external_id,
                    external_name=region.name,
                    is_active=True,
                )
            )
        else:
            mapping.external_id = external_id
            mapping.external_name = region.name
            mapping.is_active = True
            mapping.updated_at = _utcnow()
        return row.id

    async def list_active_cities(self) -> list[CityOut]:
        async with self._session_factory() as session:
            rows = (
                await session.execute(
                    select(CityMaster)
                    .where(CityMaster.is_active.is_(True))
                    .order_by(CityMaster.name, CityMaster.id)
                )
            ).scalars().all()
            return [CityOut.model_validate(row) for row in rows]

    async def get_city(self, city_id: int) -> Optional[CityOut]:
        async with self._session_factory() as session:
            row = await session.get(CityMaster, city_id)
            return CityOut.model_validate(row) if row is not None else None

    async def list_active_regions(
        self, limit: Optional[int] = None, offset: int = 0
    ) -> list[RegionOut]:
        """Active regions ordered by name; pass limit/offset to page through them."""
        stmt = (
            select(RegionMaster)
            .where(RegionMaster.is_active.is_(True))
            .order_by(RegionMaster.name, RegionMaster.id)
        )
        if limit is not None:
            stmt = stmt.limit(limit).offset(offset)
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [RegionOut.model_validate(row) for row in rows]

    async def list_regions_by_city(self, city_id: int) -> list[RegionOut]:
        async with self._session_factory() as session:
            rows = (
                await session.execute(
                    select(RegionMaster)
                    .where(RegionMaster.city_id == city_id, RegionMaster.is_active.is_(True))
                    .order_by(RegionMaster.name, RegionMaster.id)
                )
            ).scalars().all()
            return [RegionOut.model_validate(row) for row in rows]

    async def count_rows(self) -> dict[str, int]:
        """Row counts per location table (used by operators and tests)."""
        counts: dict[str, int] = {}
        async with self._session_factory() as session:
            for label, model in (
                ("cities", CityMaster),
                ("city_mappings", CityDeliveryMapping),
                ("regions", RegionMaster),
                ("region_mappings", RegionDeliveryMapping),
            ):
                counts[label] = (
                    await session.execute(select(func.count()).select_from(model))
                ).scalar_one()
        return counts

    # ------------------------------------------------------------------
    # deactivation of entries a partner no longer returns
    # ------------------------------------------------------------------

    async def deactivate_missing_cities(self, partner: str, seen_external_ids: set[str]) -> int:
        """Deactivate the partner's city mappings that were not in the refresh.

        A canonical city goes inactive (with its regions) once none of its
        mappings is active. Returns the number of mappings deactivated.
        """
        async with self._session_factory() as session:

            async def _op() -> int:
                now = _utcnow()
                result = await session.execute(
                    update(CityDeliveryMapping)
                    .where(
                        CityDeliveryMapping.delivery_partner == partner,
                        CityDeliveryMapping.is_active.is_(True),
                        CityDeliveryMapping.external_id.not_in(sorted(seen_external_ids)),
                    )
                    .values(is_active=False, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                partner_cities = select(CityDeliveryMapping.city_id).where(
                    CityDeliveryMapping.delivery_partner == partner
                )
                still_mapped = select(CityDeliveryMapping.city_id).where(
                    CityDeliveryMapping.is_active.is_(True)
                )
                orphaned = (
                    await session.execute(
                        select(CityMaster.id).where(
                            CityMaster.is_active.is_(True),
                            CityMaster.id.in_(partner_cities),
                            CityMaster.id.not_in(still_mapped),
                        )
                    )
                ).scalars().all()
                if orphaned:
                    await session.execute(
                        update(CityMaster)
                        .where(CityMaster.id.in_(orphaned))
                        .values(is_active=False, updated_at=now)
                        .execution_options(synchronize_session=False)
                    )
                    await session.execute(
                        update(RegionMaster)
                        .where(RegionMaster.city_id.in_(orphaned))
                        .values(is_active=False, updated_at=now)
                        .execution_options(synchronize_session=False)
                    )
                return result.rowcount or 0

            return await self._write(session, _op)

    async def deactivate_missing_regions(
        self, partner: str, city_id: int, seen_external_ids: set[str]
    ) -> int:
        async with self._session_factory() as session:

            async def _op() -> int:
                now = _utcnow()
                city_regions = select(RegionMaster.id).where(RegionMaster.city_id == city_id)
                result = await session.execute(
                    update(RegionDeliveryMapping)
                    .where(
                        RegionDeliveryMapping.delivery_partner == partner,
                        RegionDeliveryMapping.is_active.is_(True),
                        RegionDeliveryMapping.region_id.in_(city_regions),
                        RegionDeliveryMapping.external_id.not_in(sorted(seen_external_ids)),
                    )
                    .values(is_active=False, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                still_mapped = select(RegionDeliveryMapping.region_id).where(
                    RegionDeliveryMapping.is_active.is_(True)
                )
                await session.execute(
                    update(RegionMaster)
                    .where(
                        RegionMaster.city_id == city_id,
                        RegionMaster.is_active.is_(True),
                        RegionMaster.id.not_in(still_mapped),
                    )
                    .values(is_active=False, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                return result.rowcount or 0

            return await self._write(session, _op)

    # ------------------------------------------------------------------
    # aliases
    # ------------------------------------------------------------------

    async def list_city_aliases(self) -> list[CityAliasOut]:
        async with self._session_factory() as session:
            rows = (
                await session.execute(select(CityAlias).order_by(CityAlias.alias_name))
            ).scalars().all()
            return [CityAliasOut.model_validate(row) for row in rows]

    async def add_city_alias(
        self, city_id: int, alias_name: str, confidence: float
    ) -> CityAliasOut:
        """Insert or refresh an alias; ``alias_name`` is the idempotency key."""
        alias_name = alias_name.strip()
        async with self._session_factory() as session:

            async def _op() -> CityAliasOut:
                if await session.get(CityMaster, city_id) is None:
                    raise LocationNotFound(f"City {city_id} not found")
                row = (
                    await session.execute(
                        select(CityAlias).where(CityAlias.alias_name == alias_name)
                    )
                ).scalar_one_or_none()
                if row is None:
                    row = CityAlias(
                        city_id=city_id,
                        alias_name=alias_name,
                        normalized_name=normalize_name(alias_name),
                        confidence_score=confidence,
                    )
                    session.add(row)
                else:
                    row.city_id = city_id
                    row.normalized_name = normalize_name(alias_name)
                    row.confidence_score = confidence
                await session.flush()
                return CityAliasOut.model_validate(row)

            return await self._write(session, _op)

    async def list_region_aliases(self) -> list[RegionAliasOut]:
        async with self._session_factory() as session:
            rows = (
                await session.execute(
                    select(RegionAlias).order_by(RegionAlias.region_id, RegionAlias.alias_name)
                )
            ).scalars().all()
            return [RegionAliasOut.model_validate(row) for row in rows]

    async def add_region_alias(
        self, region_id: int, alias_name: str, confidence: float = 1.0
    ) -> RegionAliasOut:
        """Insert or refresh a region alias keyed by ``(region_id, alias_name)``."""
        alias_name = alias_name.strip()
        async with self._session_factory() as session:

            async def _op() -> RegionAliasOut:
                if await session.get(RegionMaster, region_id) is None:
                    raise LocationNotFound(f"Region {region_id} not found")
                row = (
                    await session.execute(
                        select(RegionAlias).where(
                            RegionAlias.region_id == region_id,
                            RegionAlias.alias_name == alias_name,
                        )
                    )
                ).scalar_one_or_none()
                if row is None:
                    row = RegionAlias(
                        region_id=region_id,
                        alias_name=alias_name,
                        normalized_name=normalize_name(alias_name),
                        confidence_score=confidence,
                    )
                    session.add(row)
                else:
                    row.confidence_score = confidence
                await session.flush()
                return RegionAliasOut.model_validate(row)

            return await self._write(session, _op)

    # ------------------------------------------------------------------
    # learned resolutions
    # ------------------------------------------------------------------

    @staticmethod
    def _pattern_query():
        # a pattern only counts while its city is active; an inactive region is dropped from it
        return (
            select(LocationLearningPattern, CityMaster.name, RegionMaster.name)
            .join(CityMaster, CityMaster.id == LocationLearningPattern.resolved_city_id)
            .outerjoin(
                RegionMaster,
                and_(
                    RegionMaster.id == LocationLearningPattern.resolved_region_id,
                    RegionMaster.is_active.is_(True),
                ),
            )
            .where(CityMaster.is_active.is_(True))
        )

    @staticmethod
    def _pattern_out(
        pattern: LocationLearningPattern, city_name: str, region_name: Optional[str]
    ) -> LearnedPatternOut:
        return LearnedPatternOut(
            id=pattern.id,
            normalized_pattern=pattern.normalized_pattern,
            city_id=pattern.resolved_city_id,
            city_name=city_name,
            region_id=pattern.resolved_region_id if region_name is not None else None,
            region_name=region_name,
            confidence=pattern.confidence,
            usage_count=pattern.usage_count,
        )

    async def find_learning_pattern(
        self, normalized: str, min_confidence: float
    ) -> Optional[LearnedPatternOut]:
        stmt = self._pattern_query().where(
            LocationLearningPattern.normalized_pattern == normalized,
            LocationLearningPattern.confidence >= min_confidence,
        )
        async with self._session_factory() as session:
            row = (await session.execute(stmt)).first()
        return self._pattern_out(*row) if row is not None else None

    async def top_learning_patterns(self, limit: int = 100) -> list[LearnedPatternOut]:
        """Most used patterns first; these are the examples shown to the model."""
        stmt = (
            self._pattern_query()
            .order_by(
                LocationLearningPattern.usage_count.desc(),
                LocationLearningPattern.last_used_at.desc(),
            )
            .limit(limit)
        )
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).all()
        return [self._pattern_out(*row) for row in rows]

    async def save_learning_pattern(
        self,
        pattern_text: str,
        normalized: str,
        city_id: int,
        region_id: Optional[int],
        confidence: float,
    ) -> int:
        """Insert or refresh the resolution for ``normalized``; returns the pattern id.

        Re-learning an existing pattern replaces its resolution and counts as a use.
        """
        async with self._session_factory() as session:

            async def _op() -> int:
                now = _utcnow()
                row = (
                    await session.execute(
                        select(LocationLearningPattern).where(
                            LocationLearningPattern.normalized_pattern == normalized
                        )
                    )
                ).scalar_one_or_none()
                if row is None:
                    row = LocationLearningPattern(
                        pattern_text=pattern_text[:MAX_PATTERN_LENGTH],
                        normalized_pattern=normalized,
                        resolved_city_id=city_id,
                        resolved_region_id=region_id,
                        confidence=confidence,
                        usage_count=1,
                        success_rate=1.0,
                        last_used_at=now,
                    )
                    session.add(row)
                else:
                    row.resolved_city_id = city_id
                    row.resolved_region_id = region_id
                    row.confidence = confidence
                    row.usage_count = row.usage_count + 1
                    row.last_used_at = now
                await session.flush()
                return row.id

            return await self._write(session, _op)

    async def touch_learning_pattern(self, pattern_id: int) -> bool:
        """Record one more use of a pattern (atomic increment)."""
        async with self._session_factory() as session:

            async def _op() -> bool:
                result = await session.execute(
                    update(LocationLearningPattern)
                    .where(LocationLearningPattern.id == pattern_id)
                    .values(
                        usage_count=LocationLearningPattern.usage_count + 1,
                        last_used_at=_utcnow(),
                    )
                    .execution_options(synchronize_session=False)
                )
                return bool(result.rowcount)

            return await self._write(session, _op)

    # ------------------------------------------------------------------
    # sync progress and audit log
    # ------------------------------------------------------------------

    async def create_progress(
        self, partner: str, triggered_by: Optional[str], sync_type: str = "cities_regions"
    ) -> BackgroundSyncProgress:
        async with self._session_factory() as session:

            async def _op() -> BackgroundSyncProgress:
                row = BackgroundSyncProgress(
                    sync_type=sync_type,
                    delivery_partner=partner,
                    triggered_by=triggered_by,
                    status=SyncStatus.IN_PROGRESS.value,
                    started_at=_utcnow(),
                )
                session.add(row)
                await session.flush()
                return row

            return await self._write(session, _op)

    async def get_progress(self, progress_id: str) -> Optional[BackgroundSyncProgress]:
        async with self._session_factory() as session:
            return await session.get(BackgroundSyncProgress, progress_id)

    async def find_running_progress(self, partner: str) -> Optional[BackgroundSyncProgress]:
        async with self._session_factory() as session:
            return (
                await session.execute(
                    select(BackgroundSyncProgress)
                    .where(
                        BackgroundSyncProgress.delivery_partner == partner,
                        BackgroundSyncProgress.status.in_(OPEN_STATUSES),
                    )
                    .order_by(BackgroundSyncProgress.started_at.desc())
                    .limit(1)
                )
            ).scalar_one_or_none()

    async def fail_stale_progress(self, partner: str, older_than: timedelta) -> int:
        """Close open runs that stopped reporting; returns how many were failed."""
        cutoff = _utcnow() - older_than
        async with self._session_factory() as session:

            async def _op() -> int:
                result = await session.execute(
                    update(BackgroundSyncProgress)
                    .where(
                        BackgroundSyncProgress.delivery_partner == partner,
                        BackgroundSyncProgress.status.in_(OPEN_STATUSES),
                        BackgroundSyncProgress.updated_at < cutoff,
                    )
                    .values(
                        status=SyncStatus.FAILED.value,
                        error_message="Sync stopped reporting progress",
                        completed_at=_utcnow(),
                        updated_at=_utcnow(),
                    )
                    .execution_options(synchronize_session=False)
                )
                return result.rowcount or 0

            return await self._write(session, _op)

    async def update_progress(self, progress_id: str, **values: object) -> bool:
        """Set fields on an open progress row; closed rows are left untouched."""
        return await self._update_open_progress(progress_id, values)

    async def increment_progress(self, progress_id: str, **deltas: int) -> bool:
        """Atomically add to progress counters (``col = col + n``)."""
        unknown = set(deltas) - PROGRESS_COUNTERS
        if unknown:
            raise ValueError(f"Unknown progress counters: {sorted(unknown)}")
        values = {
            name: getattr(BackgroundSyncProgress, name) + delta
            for name, delta in deltas.items()
            if delta
        }
        if not values:
            return True
        return await self._update_open_progress(progress_id, values)

    async def _update_open_progress(self, progress_id: str, values: dict) -> bool:
        values = {**values, "updated_at": _utcnow()}
        async with self._session_factory() as session:

            async def _op() -> bool:
                result = await session.execute(
                    update(BackgroundSyncProgress)
                    .where(
                        BackgroundSyncProgress.id == progress_id,
                        BackgroundSyncProgress.status.in_(OPEN_STATUSES),
                    )
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                return bool(result.rowcount)

            return await self._write(session, _op)

    async def finish_progress(
        self, progress_id: str, status: SyncStatus, error_message: Optional[str] = None
    ) -> bool:
        """Move an open run to a terminal status; a closed run is never reopened."""
        now = _utcnow()
        return await self._update_open_progress(
            progress_id,
            {"status": status.value, "completed_at": now, "error_message": error_message},
        )

    async def append_sync_log(
        self,
        *,
        progress_id: Optional[str],
        partner: str,
        triggered_by: Optional[str],
        started_at: datetime,
        ended_at: datetime,
        cities_count: int,
        regions_count: int,
        success: bool,
        error_message: Optional[str] = None,
    ) -> None:
        async with self._session_factory() as session:
            await self._write(
                session,
                lambda: log_sync_run(
                    session,
                    progress_id=progress_id,
                    partner=partner,
                    triggered_by=triggered_by,
                    started_at=started_at,
                    ended_at=ended_at,
                    cities_count=cities_count,
                    regions_count=regions_count,
                    success=success,
                    error_message=error_message,
                ),
            )

    async def list_sync_logs(
        self, limit: int = 20, partner: Optional[str] = None
    ) -> list[CitiesRegionsSyncLog]:
        stmt = select(CitiesRegionsSyncLog).order_by(
            CitiesRegionsSyncLog.ended_at.desc(), CitiesRegionsSyncLog.id.desc()
        )
        if partner:
            stmt = stmt.where(CitiesRegionsSyncLog.delivery_partner == partner)
        async with self._session_factory() as session:
            return list((await session.execute(stmt.limit(limit))).scalars().all())

    async def last_sync_log(self, partner: Optional[str] = None) -> Optional[CitiesRegionsSyncLog]:
        logs = await self.list_sync_logs(limit=1, partner=partner)
        return logs[0] if logs else None
