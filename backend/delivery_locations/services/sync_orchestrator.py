"""Background refresh of a partner's cities and regions into the location store.

A run is tracked by one ``background_sync_progress`` row. The row is created
before the run starts, its counters are advanced with atomic increments after
each committed batch, and it is closed exactly once as completed, failed or
cancelled. Each closed run also appends a ``cities_regions_sync_log`` row.

Ordering rules that polling clients rely on:

* a city's regions are added to ``total_regions`` as soon as they are fetched,
  before any of them is counted in ``completed_regions``;
* ``completed_regions`` grows only after the batch it counts has committed;
* ``completed_cities`` grows only after all of the city's batches are done.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Iterable, Optional

import anyio
from loguru import logger
from sqlalchemy.exc import SQLAlchemyError

from delivery_locations.core.config import settings
from delivery_locations.core.errors import (
    LocationInputError,
    SyncAlreadyRunning,
    SyncCancelled,
    UnknownPartner,
)
from delivery_locations.core.logging import progress_context
from delivery_locations.models.sync_progress import SyncStatus
from delivery_locations.services.location_store import LocationStore
from delivery_locations.services.partner_fetcher import PartnerCity, PartnerLocationFetcher
from delivery_locations.services.partner_proxy import PartnerProxy

FetcherFactory = Callable[[str], PartnerLocationFetcher]
CompletionHook = Callable[[str], Awaitable[None]]


def _utcnow() -> datetime:
    return datetime.utcnow()


def default_fetcher_factory(partner: str) -> PartnerLocationFetcher:
    return PartnerLocationFetcher(PartnerProxy(partner))


@dataclass(slots=True)
class SyncResult:
    progress_id: str
    partner: str
    status: SyncStatus
    cities_count: int = 0
    regions_count: int = 0
    duration_seconds: float = 0.0
    deactivated_cities: int = 0
    deactivated_regions: int = 0


@dataclass(slots=True)
class _Tally:
    cities: int = 0
    regions: int = 0
    deactivated_cities: int = 0
    deactivated_regions: int = 0


@dataclass(slots=True)
class _RunHandle:
    task: asyncio.Task
    cancel_event: anyio.Event = field(default_factory=anyio.Event)


class SyncOrchestrator:
    def __init__(
        self,
        store: LocationStore,
        fetcher_factory: FetcherFactory = default_fetcher_factory,
        *,
        partners: Optional[Iterable[str]] = None,
        region_batch_size: Optional[int] = None,
        city_concurrency: Optional[int] = None,
        deactivate_missing: Optional[bool] = None,
        stale_after: Optional[timedelta] = None,
    ):
        self.store = store
        self._fetcher_factory = fetcher_factory
        self.partners = set(partners if partners is not None else settings.PARTNER_API_URLS)
        self.region_batch_size = max(1, region_batch_size or settings.SYNC_REGION_BATCH_SIZE)
        self.city_concurrency = max(1, city_concurrency or settings.SYNC_CITY_CONCURRENCY)
        self.deactivate_missing = (
            settings.SYNC_DEACTIVATE_MISSING if deactivate_missing is None else deactivate_missing
        )
        self.stale_after = stale_after or timedelta(minutes=settings.SYNC_STALE_AFTER_MINUTES)
        self._completion_hooks: list[CompletionHook] = []
        self._runs: dict[str, _RunHandle] = {}
        self._start_lock = asyncio.Lock()

    def add_completion_hook(self, hook: CompletionHook) -> None:
        """Register a coroutine called with the partner name after a completed run."""
        self._completion_hooks.append(hook)

    def is_running(self, progress_id: str) -> bool:
        return progress_id in self._runs

    async def start(self, partner: str, token: Optional[str], triggered_by: Optional[str] = None) -> str:
        """Validate the request and open a progress record; returns its id."""
        if not token or not token.strip():
            raise LocationInputError("Partner access token is required")
        if partner not in self.partners:
            raise UnknownPartner(f"Unknown delivery partner '{partner}'")

        async with self._start_lock:
            running = await self.store.find_running_progress(partner)
            if running is not None:
                stale = (
                    running.id not in self._runs
                    and running.updated_at < _utcnow() - self.stale_after
                )
                if not stale:
                    raise SyncAlreadyRunning(partner, running.id)
                failed = await self.store.fail_stale_progress(partner, self.stale_after)
                logger.bind(partner=partner, stale_runs=failed).warning("sync_stale_runs_failed")
            progress = await self.store.create_progress(partner, triggered_by)

        logger.bind(partner=partner, progress_id=progress.id, triggered_by=triggered_by).info(
            "sync_started"
        )
        return progress.id

    async def launch(self, partner: str, token: Optional[str], triggered_by: Optional[str] = None) -> str:
        """Start a run in the background and return its progress id immediately."""
        progress_id = await self.start(partner, token, triggered_by)
        cancel_event = anyio.Event()
        task = asyncio.create_task(
            self._run_in_background(progress_id, partner, token, triggered_by, cancel_event),
            name=f"location-sync-{progress_id}",
        )
        self._runs[progress_id] = _RunHandle(task=task, cancel_event=cancel_event)
        task.add_done_callback(lambda _task: self._runs.pop(progress_id, None))
        return progress_id

    async def _run_in_background(
        self,
        progress_id: str,
        partner: str,
        token: str,
        triggered_by: Optional[str],
        cancel_event: anyio.Event,
    ) -> None:
        try:
            await self.run(progress_id, partner, token, triggered_by, cancel_event=cancel_event)
        except Exception as exc:
            # already recorded on the progress row and in the sync log
            logger.bind(partner=partner, progress_id=progress_id, error=str(exc)).error(
                "background_sync_failed"
            )

    def cancel(self, progress_id: str) -> bool:
        """Ask a background run to stop before its next city."""
        handle = self._runs.get(progress_id)
        if handle is None:
            return False
        handle.cancel_event.set()
        logger.bind(progress_id=progress_id).info("sync_cancel_requested")
        return True

    async def shutdown(self) -> None:
        handles = list(self._runs.values())
        for handle in handles:
            handle.cancel_event.set()
            handle.task.cancel()
        if handles:
            await asyncio.gather(*(h.task for h in handles), return_exceptions=True)
        self._runs.clear()

    async def run(
        self,
        progress_id: str,
        partner: str,
        token: str,
        triggered_by: Optional[str] = None,
        *,
        cancel_event: Optional[anyio.Event] = None,
    ) -> SyncResult:
        """Perform a full refresh for ``partner`` against an open progress record.

        Raises whatever aborted the run after recording it as failed.
        """
        with progress_context(progress_id):
            return await self._run(progress_id, partner, token, triggered_by, cancel_event)

    async def _run(
        self,
        progress_id: str,
        partner: str,
        token: str,
        triggered_by: Optional[str],
        cancel_event: Optional[anyio.Event],
    ) -> SyncResult:
        started_at = _utcnow()
        clock = time.perf_counter()
        fetcher = self._fetcher_factory(partner)
        tally = _Tally()

        try:
            cities = _unique_cities(await fetcher.fetch_cities(token), partner)
            await self.store.update_progress(progress_id, total_cities=len(cities))

            stored = await self.store.upsert_cities(cities, partner)
            tally.cities = len(stored)
            skipped = sum(1 for city in cities if str(city.id) not in stored)
            if skipped:
                # cities that could not be stored have no regions to process
                await self.store.increment_progress(progress_id, completed_cities=skipped)
            work = [(city, stored[str(city.id)]) for city in cities if str(city.id) in stored]
            logger.bind(partner=partner, cities=tally.cities, skipped=skipped).info(
                "sync_cities_stored"
            )

            if self.city_concurrency == 1:
                for city, city_id in work:
                    self._check_cancelled(cancel_event)
                    await self._sync_city(fetcher, progress_id, partner, token, city, city_id, tally)
            else:
                await self._sync_cities_concurrently(
                    fetcher, progress_id, partner, token, work, tally, cancel_event
                )
            self._check_cancelled(cancel_event)

            if self.deactivate_missing and cities:
                tally.deactivated_cities = await self.store.deactivate_missing_cities(
                    partner, {str(city.id) for city in cities}
                )

            await self.store.finish_progress(progress_id, SyncStatus.COMPLETED)
            ended_at = _utcnow()
            await self.store.append_sync_log(
                progress_id=progress_id,
                partner=partner,
                triggered_by=triggered_by,
                started_at=started_at,
                ended_at=ended_at,
                cities_count=tally.cities,
                regions_count=tally.regions,
                success=True,
            )
            result = self._result(progress_id, partner, SyncStatus.COMPLETED, tally, clock)
            logger.bind(
                partner=partner,
                cities=result.cities_count,
                regions=result.regions_count,
                deactivated_cities=result.deactivated_cities,
                deactivated_regions=result.deactivated_regions,
                duration_seconds=result.duration_seconds,
            ).info("sync_completed")
            await self._notify_completed(partner)
            return result

        except SyncCancelled:
            await self._close_unsuccessful(
                progress_id, partner, triggered_by, started_at, tally,
                SyncStatus.CANCELLED, "Cancelled by request",
            )
            logger.bind(partner=partner, cities=tally.cities, regions=tally.regions).warning(
                "sync_cancelled"
            )
            return self._result(progress_id, partner, SyncStatus.CANCELLED, tally, clock)

        except anyio.get_cancelled_exc_class():
            with anyio.CancelScope(shield=True):
                await self._close_unsuccessful(
                    progress_id, partner, triggered_by, started_at, tally,
                    SyncStatus.CANCELLED, "Sync task was cancelled",
                )
            raise

        except Exception as exc:
            error = _root_cause(exc)
            message = str(error) or error.__class__.__name__
            logger.bind(partner=partner, error=message).error("sync_failed")
            await self._close_unsuccessful(
                progress_id, partner, triggered_by, started_at, tally, SyncStatus.FAILED, message
            )
            if error is exc:
                raise
            raise error from exc

        finally:
            await fetcher.aclose()

    async def _sync_city(
        self,
        fetcher: PartnerLocationFetcher,
        progress_id: str,
        partner: str,
        token: str,
        city: PartnerCity,
        city_id: int,
        tally: _Tally,
    ) -> None:
        await self.store.update_progress(progress_id, current_city_name=city.name)
        regions = await fetcher.fetch_regions(token, city.id)
        if regions:
            await self.store.increment_progress(progress_id, total_regions=len(regions))

        stored = 0
        for offset in range(0, len(regions), self.region_batch_size):
            batch = regions[offset : offset + self.region_batch_size]
            stored += await self.store.upsert_regions(batch, partner, city_id)
            await self.store.increment_progress(progress_id, completed_regions=len(batch))

        # an empty list may mean a failed fetch, so only a non-empty refresh deactivates
        if regions and self.deactivate_missing:
            tally.deactivated_regions += await self.store.deactivate_missing_regions(
                partner, city_id, {str(region.id) for region in regions}
            )

        await self.store.increment_progress(progress_id, completed_cities=1)
        tally.regions += stored
        logger.bind(partner=partner, city=city.name, regions=stored).info("sync_city_processed")

    async def _sync_cities_concurrently(
        self,
        fetcher: PartnerLocationFetcher,
        progress_id: str,
        partner: str,
        token: str,
        work: list[tuple[PartnerCity, int]],
        tally: _Tally,
        cancel_event: Optional[anyio.Event],
    ) -> None:
        limiter = anyio.CapacityLimiter(self.city_concurrency)

        async def worker(city: PartnerCity, city_id: int) -> None:
            async with limiter:
                if cancel_event is not None and cancel_event.is_set():
                    return
                await self._sync_city(fetcher, progress_id, partner, token, city, city_id, tally)

        async with anyio.create_task_group() as tg:
            for city, city_id in work:
                tg.start_soon(worker, city, city_id)

    @staticmethod
    def _check_cancelled(cancel_event: Optional[anyio.Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise SyncCancelled("Sync cancelled")

    async def _close_unsuccessful(
        self,
        progress_id: str,
        partner: str,
        triggered_by: Optional[str],
        started_at: datetime,
        tally: _Tally,
        status: SyncStatus,
        message: str,
    ) -> None:
        try:
            await self.store.finish_progress(progress_id, status, message)
            await self.store.append_sync_log(
                progress_id=progress_id,
                partner=partner,
                triggered_by=triggered_by,
                started_at=started_at,
                ended_at=_utcnow(),
                cities_count=tally.cities,
                regions_count=tally.regions,
                success=False,
                error_message=message,
            )
        except SQLAlchemyError as exc:
            logger.bind(partner=partner, status=status.value, error=str(exc)).error(
                "sync_status_not_recorded"
            )

    async def _notify_completed(self, partner: str) -> None:
        for hook in self._completion_hooks:
            try:
                await hook(partner)
            except Exception as exc:
                logger.bind(partner=partner, hook=getattr(hook, "__qualname__", repr(hook)), error=str(exc)).error(
                    "sync_completion_hook_failed"
                )

    @staticmethod
    def _result(
        progress_id: str, partner: str, status: SyncStatus, tally: _Tally, clock: float
    ) -> SyncResult:
        return SyncResult(
            progress_id=progress_id,
            partner=partner,
            status=status,
            cities_count=tally.cities,
            regions_count=tally.regions,
            duration_seconds=round(time.perf_counter() - clock, 3),
            deactivated_cities=tally.deactivated_cities,
            deactivated_regions=tally.deactivated_regions,
        )


def _root_cause(exc: Exception) -> Exception:
    """Unwrap single-member exception groups raised by the worker task group."""
    while isinstance(exc, ExceptionGroup) and len(exc.exceptions) == 1:
        exc = exc.exceptions[0]
    return exc


def _unique_cities(cities: list[PartnerCity], partner: str) -> list[PartnerCity]:
    """Keep the first city per external id; partners occasionally repeat a row."""
    seen: set[str] = set()
    unique: list[PartnerCity] = []
    for city in cities:
        key = str(city.id)
        if key in seen:
            logger.bind(partner=partner, external_id=key, city=city.name).warning(
                "sync_duplicate_city_dropped"
            )
            continue
        seen.add(key)
        unique.append(city)
    return unique
