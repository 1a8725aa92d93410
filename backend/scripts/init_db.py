"""Create the location tables if they do not exist yet."""

import asyncio
import sys
import pathlib

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))

from delivery_locations.core.db import engine
from delivery_locations.models import Base


async def main():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    await engine.dispose()
    print("Location tables are in place:", ", ".join(sorted(Base.metadata.tables)))


if __name__ == "__main__":
    asyncio.run(main())
