import os
import sys
from pathlib import Path

import pytest

# Settings are read at import time; keep tests off Redis, Gemini and the rate limiter
os.environ["ENV"] = "test"
os.environ["REDIS_ENABLED"] = "false"
os.environ["GEMINI_API_KEY"] = ""

# Add the backend directory so `delivery_locations` imports resolve during tests
BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.append(str(BACKEND_DIR))

TESTS_DIR = Path(__file__).resolve().parent
if str(TESTS_DIR) not in sys.path:
    sys.path.insert(0, str(TESTS_DIR))

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from delivery_locations.core.cache import reset_memory_cache  # noqa: E402
from delivery_locations.models import Base  # noqa: E402
from delivery_locations.services.location_store import LocationStore  # noqa: E402


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def _clean_memory_cache():
    reset_memory_cache()
    yield
    reset_memory_cache()


@pytest.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(bind=engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def store(session_factory):
    return LocationStore(session_factory)
