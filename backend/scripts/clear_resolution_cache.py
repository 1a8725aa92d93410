"""Script to clear the Redis copies of learned location resolutions."""

import asyncio
import sys
import pathlib

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))

from delivery_locations.core.cache import clear_cache_pattern, close_redis_client
from delivery_locations.services.location_resolver import MEMO_PREFIX


async def clear_cache():
    count = await clear_cache_pattern(f"{MEMO_PREFIX}:*")
    await close_redis_client()
    print(f"Cleared {count} resolution cache entries")


if __name__ == "__main__":
    asyncio.run(clear_cache())
