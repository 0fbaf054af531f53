"""
Legacy per-window capacity counters and the booking saga.

The external allocation cannot be locked from here, so booking is a manual
saga: create the allocation tentatively, reserve local capacity in one
transaction, and delete the allocation again if (and only if) the
reservation fails.
"""

import logging
from typing import Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from booking_engine.db.models import TenantConfig, WindowCapacity
from booking_engine.db.repository import (
    ensure_window_capacity,
    get_window_capacity,
    upsert_job_window_booking,
)

logger = logging.getLogger(__name__)


class CapacityConflict(Exception):
    """No capacity left in the window at reservation time."""


def configured_capacity(config: TenantConfig, window: str) -> int:
    return config.morning_capacity if window == "morning" else config.afternoon_capacity


def remaining_capacity(row: WindowCapacity | None, config: TenantConfig, window: str) -> int:
    booked = row.booked_count if row else 0
    maximum = row.max_capacity if row else configured_capacity(config, window)
    return maximum - booked - config.emergency_reserve


async def has_capacity(
    session: AsyncSession, config: TenantConfig, date: str, window: str
) -> bool:
    row = await get_window_capacity(session, config.tenant_id, date, window)
    return remaining_capacity(row, config, window) > 0


async def reserve_window_capacity(
    session_factory: async_sessionmaker[AsyncSession],
    config: TenantConfig,
    *,
    job_id: str,
    date: str,
    window: str,
    allocation_id: str,
) -> None:
    """Re-check, increment booked_count and link the job, all in one transaction."""
    async with session_factory() as session:
        async with session.begin():
            # Lock target exists even for the first booking of a window
            await ensure_window_capacity(
                session,
                config.tenant_id,
                date,
                window,
                max_capacity=configured_capacity(config, window),
            )
            row = await get_window_capacity(
                session, config.tenant_id, date, window, for_update=True
            )
            if remaining_capacity(row, config, window) <= 0:
                raise CapacityConflict(f"{config.tenant_id} {date} {window} is full")
            row.booked_count += 1
            await upsert_job_window_booking(
                session,
                job_id=job_id,
                tenant_id=config.tenant_id,
                date=date,
                window=window,
                allocation_id=allocation_id,
            )


async def reserve_or_compensate(
    reserve: Callable[[], Awaitable[None]],
    compensate: Callable[[], Awaitable[None]],
) -> None:
    """
    Second phase of the booking saga. Any reservation failure runs the
    compensation and is re-raised as CapacityConflict.
    """
    try:
        await reserve()
    except Exception as e:
        try:
            await compensate()
        except Exception:
            logger.exception("Compensation failed after capacity reservation error")
        if isinstance(e, CapacityConflict):
            raise
        raise CapacityConflict(str(e)) from e
