"""Run a full cities/regions sync from the command line and wait for it.

Usage: python scripts/sync_locations.py <partner-token> [partner] [user_id]
"""

import asyncio
import sys
import pathlib

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))

from delivery_locations.core.cache import clear_cache_pattern, close_redis_client
from delivery_locations.core.config import settings
from delivery_locations.core.db import SessionLocal
from delivery_locations.core.logging import setup_logging
from delivery_locations.services.location_resolver import MEMO_PREFIX
from delivery_locations.services.location_store import LocationStore
from delivery_locations.services.sync_orchestrator import SyncOrchestrator


async def main(token: str, partner: str, user_id: str | None) -> int:
    store = LocationStore(SessionLocal)
    orchestrator = SyncOrchestrator(store)

    async def _clear_memo(_partner: str) -> None:
        await clear_cache_pattern(f"{MEMO_PREFIX}:*")

    orchestrator.add_completion_hook(_clear_memo)

    progress_id = await orchestrator.start(partner, token, user_id or "cli")
    print(f"Sync {progress_id} started for {partner}")
    try:
        result = await orchestrator.run(progress_id, partner, token, user_id or "cli")
    finally:
        await close_redis_client()

    print(
        f"{result.status.value}: {result.cities_count} cities, {result.regions_count} regions "
        f"in {result.duration_seconds}s "
        f"({result.deactivated_cities} city / {result.deactivated_regions} region mappings deactivated)"
    )
    return 0 if result.status.value == "completed" else 1


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print(__doc__)
        sys.exit(2)
    setup_logging()
    args = sys.argv[1:]
    sys.exit(
        asyncio.run(
            main(
                args[0],
                args[1] if len(args) > 1 else settings.DEFAULT_DELIVERY_PARTNER,
                args[2] if len(args) > 2 else None,
            )
        )
    )
