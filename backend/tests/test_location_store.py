from datetime import timedelta

import pytest

from delivery_locations.core.errors import LocationNotFound
from delivery_locations.models.sync_progress import SyncStatus
from delivery_locations.services.partner_fetcher import PartnerCity, PartnerRegion


@pytest.mark.anyio
async def test_upsert_city_is_idempotent(store):
    city = PartnerCity(id=1, name="بغداد")

    first = await store.upsert_city(city, "alwaseet")
    second = await store.upsert_city(PartnerCity(id=1, name="بغداد", name_en="Baghdad"), "alwaseet")

    assert first == second
    counts = await store.count_rows()
    assert counts["cities"] == 1
    assert counts["city_mappings"] == 1
    stored = await store.get_city(first)
    assert stored.name_en == "Baghdad"
    assert stored.partner_ids == {"alwaseet": "1"}


@pytest.mark.anyio
async def test_partners_share_canonical_city_by_name(store):
    alwaseet_id = await store.upsert_city(PartnerCity(id=1, name="بغداد"), "alwaseet")
    modon_id = await store.upsert_city(PartnerCity(id=88, name="بغداد"), "modon")

    assert alwaseet_id == modon_id
    city = await store.get_city(alwaseet_id)
    assert city.partner_ids == {"alwaseet": "1", "modon": "88"}
    assert (await store.count_rows())["city_mappings"] == 2


@pytest.mark.anyio
async def test_same_external_id_from_two_partners_does_not_collide(store):
    baghdad = await store.upsert_city(PartnerCity(id=1, name="بغداد"), "alwaseet")
    basra = await store.upsert_city(PartnerCity(id=1, name="البصرة"), "modon")

    assert baghdad != basra
    assert (await store.get_city(baghdad)).name == "بغداد"
    assert (await store.get_city(basra)).name == "البصرة"


@pytest.mark.anyio
async def test_upsert_regions_requires_known_city(store):
    city_id = await store.upsert_city(PartnerCity(id=1, name="بغداد"), "alwaseet")
    regions = [
        PartnerRegion(id=101, city_id=1, name="الكرادة"),
        PartnerRegion(id=102, city_id=1, name="المنصور"),
    ]

    assert await store.upsert_regions(regions, "alwaseet", city_id) == 2
    assert await store.upsert_regions(regions, "alwaseet", city_id) == 2
    assert await store.upsert_regions(regions, "alwaseet", 999) == 0

    counts = await store.count_rows()
    assert counts["regions"] == 2
    assert counts["region_mappings"] == 2
    assert [r.name for r in await store.list_regions_by_city(city_id)] == ["الكرادة", "المنصور"]


@pytest.mark.anyio
async def test_upsert_cities_reports_stored_ids(store):
    stored = await store.upsert_cities(
        [PartnerCity(id=1, name="بغداد"), PartnerCity(id="2", name="البصرة")], "alwaseet"
    )
    assert set(stored) == {"1", "2"}
    assert len(set(stored.values())) == 2


@pytest.mark.anyio
async def test_list_active_regions_pages(store):
    city_id = await store.upsert_city(PartnerCity(id=1, name="بغداد"), "alwaseet")
    await store.upsert_regions(
        [PartnerRegion(id=i, city_id=1, name=f"region {i:03d}") for i in range(25)],
        "alwaseet",
        city_id,
    )

    page_one = await store.list_active_regions(limit=10, offset=0)
    page_three = await store.list_active_regions(limit=10, offset=20)

    assert [r.name for r in page_one][:2] == ["region 000", "region 001"]
    assert len(page_three) == 5
    assert len(await store.list_active_regions()) == 25


@pytest.mark.anyio
async def test_deactivate_missing_cities_and_regions(store):
    baghdad = await store.upsert_city(PartnerCity(id=1, name="بغداد"), "alwaseet")
    basra = await store.upsert_city(PartnerCity(id=2, name="البصرة"), "alwaseet")
    await store.upsert_regions(
        [PartnerRegion(id=101, city_id=1, name="الكرادة"), PartnerRegion(id=102, city_id=1, name="المنصور")],
        "alwaseet",
        baghdad,
    )
    await store.upsert_regions([PartnerRegion(id=201, city_id=2, name="العشار")], "alwaseet", basra)

    assert await store.deactivate_missing_regions("alwaseet", baghdad, {"101"}) == 1
    assert [r.name for r in await store.list_regions_by_city(baghdad)] == ["الكرادة"]

    assert await store.deactivate_missing_cities("alwaseet", {"1"}) == 1
    assert [c.id for c in await store.list_active_cities()] == [baghdad]
    assert await store.list_regions_by_city(basra) == []


@pytest.mark.anyio
async def test_city_kept_active_while_another_partner_maps_it(store):
    city_id = await store.upsert_city(PartnerCity(id=1, name="بغداد"), "alwaseet")
    await store.upsert_city(PartnerCity(id=50, name="بغداد"), "modon")

    await store.deactivate_missing_cities("alwaseet", set())

    city = await store.get_city(city_id)
    assert city.is_active
    assert city.partner_ids == {"modon": "50"}


@pytest.mark.anyio
async def test_add_city_alias_is_idempotent(store):
    city_id = await store.upsert_city(PartnerCity(id=1, name="بغداد"), "alwaseet")

    await store.add_city_alias(city_id, "Baghdad", 0.8)
    alias = await store.add_city_alias(city_id, "Baghdad", 0.9)

    aliases = await store.list_city_aliases()
    assert len(aliases) == 1
    assert alias.normalized_name == "baghdad"
    assert aliases[0].confidence_score == 0.9


@pytest.mark.anyio
async def test_alias_for_unknown_location_is_rejected(store):
    with pytest.raises(LocationNotFound):
        await store.add_city_alias(404, "Nowhere", 0.9)
    with pytest.raises(LocationNotFound):
        await store.add_region_alias(404, "Nowhere")
    assert await store.list_city_aliases() == []


@pytest.mark.anyio
async def test_region_alias_is_idempotent_and_folded(store):
    city_id = await store.upsert_city(PartnerCity(id=5, name="السماوة"), "alwaseet")
    await store.upsert_regions([PartnerRegion(id=501, city_id=5, name="مركز المدينة")], "alwaseet", city_id)
    region = (await store.list_regions_by_city(city_id))[0]

    await store.add_region_alias(region.id, "المركز", 0.8)
    alias = await store.add_region_alias(region.id, " المركز ", 0.95)
    await store.add_region_alias(region.id, "مدينة السماوة")

    aliases = await store.list_region_aliases()
    assert [a.alias_name for a in aliases] == ["المركز", "مدينة السماوة"]
    assert alias.confidence_score == 0.95
    assert aliases[1].normalized_name == "مدينه السماوه"


@pytest.mark.anyio
async def test_learning_pattern_save_find_and_touch(store):
    city_id = await store.upsert_city(PartnerCity(id=1, name="بغداد"), "alwaseet")
    await store.upsert_regions([PartnerRegion(id=101, city_id=1, name="الكرادة")], "alwaseet", city_id)
    region_id = (await store.list_regions_by_city(city_id))[0].id

    pattern_id = await store.save_learning_pattern("Baghdad Karrada", "baghdad karrada", city_id, region_id, 0.9)
    assert await store.save_learning_pattern("baghdad  karrada", "baghdad karrada", city_id, region_id, 0.95) == pattern_id
    assert await store.touch_learning_pattern(pattern_id)
    assert not await store.touch_learning_pattern(pattern_id + 1)

    found = await store.find_learning_pattern("baghdad karrada", 0.85)
    assert (found.city_name, found.region_name) == ("بغداد", "الكرادة")
    assert found.confidence == 0.95
    assert found.usage_count == 3
    assert await store.find_learning_pattern("baghdad karrada", 0.99) is None
    assert await store.find_learning_pattern("basra", 0.0) is None


@pytest.mark.anyio
async def test_learning_patterns_follow_location_activity(store):
    baghdad = await store.upsert_city(PartnerCity(id=1, name="بغداد"), "alwaseet")
    basra = await store.upsert_city(PartnerCity(id=2, name="البصرة"), "alwaseet")
    await store.upsert_regions([PartnerRegion(id=101, city_id=1, name="الكرادة")], "alwaseet", baghdad)
    karrada = (await store.list_regions_by_city(baghdad))[0].id

    await store.save_learning_pattern("karrada", "karrada", baghdad, karrada, 1.0)
    busy = await store.save_learning_pattern("basra", "basra", basra, None, 0.9)
    await store.touch_learning_pattern(busy)

    assert [p.normalized_pattern for p in await store.top_learning_patterns()] == ["basra", "karrada"]
    assert [p.normalized_pattern for p in await store.top_learning_patterns(limit=1)] == ["basra"]

    await store.deactivate_missing_regions("alwaseet", baghdad, set())
    await store.deactivate_missing_cities("alwaseet", {"1"})

    kept = await store.top_learning_patterns()
    assert [p.normalized_pattern for p in kept] == ["karrada"]
    assert (kept[0].region_id, kept[0].region_name) == (None, None)
    assert await store.find_learning_pattern("basra", 0.0) is None


@pytest.mark.anyio
async def test_progress_counters_and_terminal_status(store):
    progress = await store.create_progress("alwaseet", "user-1")
    assert progress.status == SyncStatus.IN_PROGRESS.value

    await store.update_progress(progress.id, total_cities=3)
    await store.increment_progress(progress.id, completed_cities=1, total_regions=4)
    await store.increment_progress(progress.id, completed_cities=1)
    assert await store.finish_progress(progress.id, SyncStatus.COMPLETED)

    # closed rows are never reopened or advanced
    assert not await store.finish_progress(progress.id, SyncStatus.FAILED, "late failure")
    assert not await store.increment_progress(progress.id, completed_cities=1)

    row = await store.get_progress(progress.id)
    assert row.status == "completed"
    assert row.total_cities == 3
    assert row.completed_cities == 2
    assert row.total_regions == 4
    assert row.error_message is None
    assert row.completed_at is not None


@pytest.mark.anyio
async def test_increment_progress_rejects_unknown_counters(store):
    progress = await store.create_progress("alwaseet", None)
    with pytest.raises(ValueError):
        await store.increment_progress(progress.id, status=1)


@pytest.mark.anyio
async def test_running_and_stale_progress(store):
    progress = await store.create_progress("alwaseet", None)

    assert (await store.find_running_progress("alwaseet")).id == progress.id
    assert await store.find_running_progress("modon") is None
    assert await store.fail_stale_progress("alwaseet", timedelta(hours=1)) == 0
    assert await store.fail_stale_progress("alwaseet", timedelta(seconds=-1)) == 1
    assert await store.find_running_progress("alwaseet") is None


@pytest.mark.anyio
async def test_upsert_region_keeps_one_row_per_partner_mapping(store):
    city_id = await store.upsert_city(PartnerCity(id=1, name="بغداد"), "alwaseet")
    await store.upsert_city(PartnerCity(id=9, name="بغداد"), "modon")

    first = await store.upsert_region(PartnerRegion(id=101, city_id=1, name="الكرادة"), "alwaseet", city_id)
    again = await store.upsert_region(PartnerRegion(id=101, city_id=1, name="الكرادة"), "alwaseet", city_id)
    shared = await store.upsert_region(
        PartnerRegion(id=5001, city_id=9, name="الكرادة"), "modon", city_id, external_id="5001"
    )

    assert first == again == shared
    counts = await store.count_rows()
    assert counts["regions"] == 1
    assert counts["region_mappings"] == 2


@pytest.mark.anyio
async def test_upsert_region_for_unknown_city_raises(store):
    with pytest.raises(ValueError):
        await store.upsert_region(PartnerRegion(id=1, city_id=1, name="الكرادة"), "alwaseet", 42)
