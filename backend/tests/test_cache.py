import pytest

from delivery_locations.core.cache import (
    clear_cache_pattern,
    delete_cache,
    generate_cache_key,
    get_cache,
    set_cache,
)


def test_generate_cache_key_hashes_long_values():
    assert generate_cache_key("location_resolution", "baghdad karrada") == (
        "location_resolution:baghdad karrada"
    )
    long_key = generate_cache_key("location_resolution", "x" * 500)
    assert long_key.startswith("location_resolution:")
    assert len(long_key) == len("location_resolution:") + 64


@pytest.mark.anyio
async def test_memory_fallback_set_get_delete():
    await set_cache("location_resolution:a", {"city_id": 1}, ttl=60)

    assert await get_cache("location_resolution:a") == {"city_id": 1}
    assert await delete_cache("location_resolution:a")
    assert await get_cache("location_resolution:a") is None
    assert not await delete_cache("location_resolution:a")


@pytest.mark.anyio
async def test_clear_cache_pattern_only_touches_matching_keys():
    await set_cache("location_resolution:a", 1, ttl=60)
    await set_cache("location_resolution:b", 2, ttl=60)
    await set_cache("other:a", 3, ttl=60)

    assert await clear_cache_pattern("location_resolution:*") == 2
    assert await get_cache("other:a") == 3
