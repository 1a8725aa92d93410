import asyncio
import sys
import pathlib

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))

from sqlalchemy import text

from delivery_locations.core.cache import close_redis_client, get_redis_client
from delivery_locations.core.config import settings
from delivery_locations.core.db import SessionLocal


async def main():
    print("ENV:", settings.ENV)
    print("DB_POOL_SIZE:", settings.DB_POOL_SIZE)
    print("DB_RETRY_ATTEMPTS:", settings.DB_RETRY_ATTEMPTS)
    print("PARTNERS:", ", ".join(sorted(settings.PARTNER_API_URLS)))
    print("SYNC_REGION_BATCH_SIZE:", settings.SYNC_REGION_BATCH_SIZE)
    print("SYNC_CITY_CONCURRENCY:", settings.SYNC_CITY_CONCURRENCY)
    print("AI enabled:", settings.ai_enabled, "models:", settings.GEMINI_MODELS)
    print("Redis:", "connected" if await get_redis_client() else "memory fallback")
    await close_redis_client()
    async with SessionLocal() as s:
        r = await s.execute(text("SELECT COUNT(*) FROM cities_master"))
        print("cities_master rows:", r.scalar())


if __name__ == "__main__":
    asyncio.run(main())
