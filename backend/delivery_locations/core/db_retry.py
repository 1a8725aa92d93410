"""Retry store transactions that lost a lock race.

Sync runs write cities and regions in batches while API requests read and
learn aliases, so MySQL can pick one of them as a deadlock victim. Those
errors are safe to replay once the session has been rolled back.
"""

from __future__ import annotations

import random
from typing import Awaitable, Callable, Optional, TypeVar

import anyio
from loguru import logger
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from delivery_locations.core.config import settings

T = TypeVar("T")

# lock wait timeout, deadlock, NOWAIT lock failure
TRANSIENT_MYSQL_CODES = frozenset({1205, 1213, 3572})
# serialization_failure, deadlock_detected
TRANSIENT_SQLSTATES = frozenset({"40001", "40P01"})
TRANSIENT_MESSAGES = ("deadlock", "lock wait timeout", "database is locked")


def _driver_code(orig: BaseException) -> Optional[int]:
    if not orig.args:
        return None
    try:
        return int(orig.args[0])
    except (TypeError, ValueError):
        return None


def is_transient_db_error(exc: BaseException) -> bool:
    """True when ``exc`` is a lock conflict that a replay may get past."""
    if not isinstance(exc, DBAPIError):
        return False
    orig = exc.orig
    if orig is None:
        return False
    if _driver_code(orig) in TRANSIENT_MYSQL_CODES:
        return True
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in TRANSIENT_SQLSTATES:
        return True
    message = str(orig).lower()
    return any(marker in message for marker in TRANSIENT_MESSAGES)


def backoff_delay(attempt: int, base_delay: float, jitter: float) -> float:
    """Exponential delay before retry number ``attempt`` (1-based)."""
    return base_delay * 2 ** (attempt - 1) + (random.uniform(0, jitter) if jitter > 0 else 0.0)


async def with_db_retry(
    session: AsyncSession,
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: Optional[int] = None,
    base_delay: Optional[float] = None,
    jitter: Optional[float] = None,
) -> T:
    """Await ``operation`` and replay it after a rollback on transient lock errors.

    Anything else propagates untouched, as does the last transient error once
    ``attempts`` are used up.
    """
    attempts = max(1, attempts or settings.DB_RETRY_ATTEMPTS)
    base_delay = settings.DB_RETRY_BASE_DELAY if base_delay is None else base_delay
    jitter = settings.DB_RETRY_JITTER if jitter is None else jitter

    attempt = 1
    while True:
        try:
            return await operation()
        except DBAPIError as exc:
            if not is_transient_db_error(exc):
                raise
            await session.rollback()
            if attempt >= attempts:
                logger.bind(attempts=attempts, error=str(exc.orig)).error("db_retry_exhausted")
                raise
            delay = backoff_delay(attempt, base_delay, jitter)
            logger.bind(
                attempt=attempt, max_attempts=attempts, sleep=delay, error=str(exc.orig)
            ).warning("db_retry_deadlock")
            await anyio.sleep(delay)
            attempt += 1
