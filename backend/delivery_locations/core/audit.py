"""Sync audit logging utilities."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from loguru import logger
from sqlalchemy import insert
from sqlalchemy.ext.asyncio import AsyncSession

from delivery_locations.models.sync_log import CitiesRegionsSyncLog


async def log_sync_run(
    session: AsyncSession,
    *,
    progress_id: Optional[str],
    partner: str,
    triggered_by: Optional[str],
    started_at: datetime,
    ended_at: datetime,
    cities_count: int,
    regions_count: int,
    success: bool,
    error_message: Optional[str] = None,
) -> None:
    """Append the immutable audit row for one finished run to ``session``.

    The caller owns the transaction. Rows are never updated afterwards.
    """
    duration = max((ended_at - started_at).total_seconds(), 0.0)
    payload = {
        "progress_id": progress_id,
        "delivery_partner": partner,
        "triggered_by": triggered_by,
        "started_at": started_at,
        "ended_at": ended_at,
        "cities_count": cities_count,
        "regions_count": regions_count,
        "success": success,
        "error_message": error_message,
        "sync_duration_seconds": round(duration, 3),
    }
    await session.execute(insert(CitiesRegionsSyncLog).values(**payload))
    logger.bind(
        partner=partner,
        success=success,
        cities=cities_count,
        regions=regions_count,
        duration_seconds=payload["sync_duration_seconds"],
    ).info("sync_run_logged")
