from datetime import timedelta

import anyio
import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from delivery_locations.core.errors import (
    InvalidResponseShape,
    LocationInputError,
    SyncAlreadyRunning,
    UnknownPartner,
)
from delivery_locations.models import Base
from delivery_locations.models.sync_progress import SyncStatus
from delivery_locations.services.location_store import LocationStore
from delivery_locations.services.sync_orchestrator import SyncOrchestrator

from fakes import BAGHDAD_CITIES, BAGHDAD_REGIONS, FakePartnerTransport, fetcher_factory_for


def make_orchestrator(store, transport, **kwargs):
    kwargs.setdefault("partners", {"alwaseet", "modon"})
    return SyncOrchestrator(store, fetcher_factory_for(transport), **kwargs)


async def run_sync(orchestrator, partner="alwaseet", token="tok"):
    progress_id = await orchestrator.start(partner, token, "user-1")
    return await orchestrator.run(progress_id, partner, token, "user-1")


@pytest.mark.anyio
async def test_full_sync_populates_store_and_progress(store):
    transport = FakePartnerTransport(BAGHDAD_CITIES, BAGHDAD_REGIONS)
    orchestrator = make_orchestrator(store, transport)

    result = await run_sync(orchestrator)

    assert result.status == SyncStatus.COMPLETED
    assert result.cities_count == 3
    assert result.regions_count == 6
    assert transport.closed

    progress = await store.get_progress(result.progress_id)
    assert progress.status == "completed"
    assert progress.total_cities == progress.completed_cities == 3
    assert progress.total_regions == progress.completed_regions == 6
    assert progress.completed_at is not None

    log = await store.last_sync_log("alwaseet")
    assert log.success
    assert log.progress_id == result.progress_id
    assert (log.cities_count, log.regions_count) == (3, 6)
    assert log.triggered_by == "user-1"


@pytest.mark.anyio
async def test_sync_twice_creates_no_duplicates(store):
    orchestrator = make_orchestrator(store, FakePartnerTransport(BAGHDAD_CITIES, BAGHDAD_REGIONS))

    await run_sync(orchestrator)
    before = await store.count_rows()
    await run_sync(orchestrator)
    after = await store.count_rows()

    assert before == after == {"cities": 3, "city_mappings": 3, "regions": 6, "region_mappings": 6}


@pytest.mark.anyio
async def test_repeated_partner_city_is_counted_once(store):
    cities = [
        {"id": 1, "city_name": "بغداد"},
        {"id": "1", "city_name": "بغداد"},
        {"id": 3, "city_name": "أربيل"},
        {"id": 3, "city_name": "أربيل"},
    ]
    transport = FakePartnerTransport(cities, BAGHDAD_REGIONS)

    result = await run_sync(make_orchestrator(store, transport))

    assert result.status == SyncStatus.COMPLETED
    assert result.cities_count == 2
    progress = await store.get_progress(result.progress_id)
    assert progress.total_cities == progress.completed_cities == 2
    assert progress.total_regions == progress.completed_regions == 4
    assert [call for call in transport.calls if call[0] == "regions"] == [
        ("regions", {"city_id": 1}),
        ("regions", {"city_id": 3}),
    ]


@pytest.mark.anyio
async def test_one_failing_region_fetch_does_not_abort_sync(store):
    transport = FakePartnerTransport(BAGHDAD_CITIES, BAGHDAD_REGIONS, failing_cities={2})
    result = await run_sync(make_orchestrator(store, transport))

    assert result.status == SyncStatus.COMPLETED
    progress = await store.get_progress(result.progress_id)
    assert progress.completed_cities == 3
    assert progress.total_regions == progress.completed_regions == 4

    cities = {city.name: city.id for city in await store.list_active_cities()}
    assert len(await store.list_regions_by_city(cities["بغداد"])) == 3
    assert len(await store.list_regions_by_city(cities["أربيل"])) == 1
    assert await store.list_regions_by_city(cities["البصرة"]) == []


@pytest.mark.anyio
async def test_city_fetch_failure_marks_run_failed_and_reraises(store):
    transport = FakePartnerTransport({"msg": "service unavailable"})
    orchestrator = make_orchestrator(store, transport)
    progress_id = await orchestrator.start("alwaseet", "tok", "user-1")

    with pytest.raises(InvalidResponseShape):
        await orchestrator.run(progress_id, "alwaseet", "tok", "user-1")

    progress = await store.get_progress(progress_id)
    assert progress.status == "failed"
    assert "Unexpected partner response shape" in progress.error_message
    log = await store.last_sync_log("alwaseet")
    assert not log.success
    assert log.error_message == progress.error_message
    assert transport.closed


@pytest.mark.anyio
async def test_completed_regions_never_decrease_and_reach_total(store):
    regions = {1: [{"id": 1000 + i, "region_name": f"حي {i}"} for i in range(7)]}
    transport = FakePartnerTransport([{"id": 1, "city_name": "بغداد"}], regions)
    orchestrator = make_orchestrator(store, transport, region_batch_size=3)

    observed = []
    original_increment = store.increment_progress

    async def recording_increment(progress_id, **deltas):
        updated = await original_increment(progress_id, **deltas)
        row = await store.get_progress(progress_id)
        assert row.completed_regions <= row.total_regions
        observed.append(row.completed_regions)
        return updated

    store.increment_progress = recording_increment
    result = await run_sync(orchestrator)

    assert observed == sorted(observed)
    assert observed[-1] == 7
    progress = await store.get_progress(result.progress_id)
    assert progress.completed_regions == progress.total_regions == 7


@pytest.fixture
async def file_store(tmp_path):
    # concurrent workers need one connection per session
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'locations.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield LocationStore(async_sessionmaker(bind=engine, expire_on_commit=False))
    await engine.dispose()


@pytest.mark.anyio
async def test_concurrent_city_workers_produce_same_totals(file_store):
    store = file_store
    transport = FakePartnerTransport(BAGHDAD_CITIES, BAGHDAD_REGIONS)
    result = await run_sync(make_orchestrator(store, transport, city_concurrency=3))

    progress = await store.get_progress(result.progress_id)
    assert progress.completed_cities == 3
    assert progress.completed_regions == progress.total_regions == 6


@pytest.mark.anyio
async def test_start_validates_token_and_partner(store):
    orchestrator = make_orchestrator(store, FakePartnerTransport([]))

    with pytest.raises(LocationInputError):
        await orchestrator.start("alwaseet", "  ", None)
    with pytest.raises(UnknownPartner):
        await orchestrator.start("unknown-partner", "tok", None)
    assert await store.find_running_progress("alwaseet") is None


@pytest.mark.anyio
async def test_second_sync_for_same_partner_is_rejected(store):
    orchestrator = make_orchestrator(store, FakePartnerTransport(BAGHDAD_CITIES, BAGHDAD_REGIONS))
    running_id = await orchestrator.start("alwaseet", "tok", None)

    with pytest.raises(SyncAlreadyRunning) as excinfo:
        await orchestrator.start("alwaseet", "tok", None)
    assert excinfo.value.progress_id == running_id

    # other partners are independent
    assert await orchestrator.start("modon", "tok", None) != running_id


@pytest.mark.anyio
async def test_stale_open_run_is_replaced(store):
    orchestrator = make_orchestrator(
        store, FakePartnerTransport([]), stale_after=timedelta(seconds=-1)
    )
    abandoned = await store.create_progress("alwaseet", None)

    new_id = await orchestrator.start("alwaseet", "tok", None)

    assert new_id != abandoned.id
    assert (await store.get_progress(abandoned.id)).status == "failed"


@pytest.mark.anyio
async def test_cancellation_between_cities(store):
    transport = FakePartnerTransport(BAGHDAD_CITIES, BAGHDAD_REGIONS)
    orchestrator = make_orchestrator(store, transport)
    cancel_event = anyio.Event()

    original_upsert = store.upsert_regions

    async def cancel_after_first_city(regions, partner, city_id):
        stored = await original_upsert(regions, partner, city_id)
        cancel_event.set()
        return stored

    store.upsert_regions = cancel_after_first_city
    progress_id = await orchestrator.start("alwaseet", "tok", None)
    result = await orchestrator.run(progress_id, "alwaseet", "tok", None, cancel_event=cancel_event)

    assert result.status == SyncStatus.CANCELLED
    progress = await store.get_progress(progress_id)
    assert progress.status == "cancelled"
    assert progress.completed_cities == 1
    log = await store.last_sync_log("alwaseet")
    assert not log.success


@pytest.mark.anyio
async def test_missing_entries_are_deactivated_after_refresh(store):
    transport = FakePartnerTransport(BAGHDAD_CITIES, BAGHDAD_REGIONS)
    orchestrator = make_orchestrator(store, transport)
    await run_sync(orchestrator)

    transport.cities = BAGHDAD_CITIES[:2]
    transport.regions_by_city = {**BAGHDAD_REGIONS, 1: BAGHDAD_REGIONS[1][:2]}
    result = await run_sync(orchestrator)

    assert result.deactivated_cities == 1
    assert result.deactivated_regions == 1
    assert {city.name for city in await store.list_active_cities()} == {"بغداد", "البصرة"}


@pytest.mark.anyio
async def test_completion_hooks_run_after_success(store):
    orchestrator = make_orchestrator(store, FakePartnerTransport(BAGHDAD_CITIES, BAGHDAD_REGIONS))
    notified = []

    async def hook(partner):
        notified.append(partner)

    async def broken_hook(partner):
        raise RuntimeError("cache offline")

    orchestrator.add_completion_hook(broken_hook)
    orchestrator.add_completion_hook(hook)
    result = await run_sync(orchestrator)

    assert result.status == SyncStatus.COMPLETED
    assert notified == ["alwaseet"]


@pytest.mark.anyio
async def test_launch_runs_in_background(store):
    orchestrator = make_orchestrator(store, FakePartnerTransport(BAGHDAD_CITIES, BAGHDAD_REGIONS))

    progress_id = await orchestrator.launch("alwaseet", "tok", "user-1")
    with anyio.fail_after(5):
        while orchestrator.is_running(progress_id):
            await anyio.sleep(0.01)

    progress = await store.get_progress(progress_id)
    assert progress.status == "completed"
    assert orchestrator.cancel(progress_id) is False
    await orchestrator.shutdown()
