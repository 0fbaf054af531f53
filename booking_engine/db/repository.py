from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from booking_engine.db.models import (
    AllocationWindowMap,
    JobWindowBooking,
    OverrunMonitorState,
    OverrunSmsEvent,
    TenantConfig,
    ToolRun,
    WindowCapacity,
    utcnow,
)


# ======================================================
# TOOL RUN LEDGER
# ======================================================

async def get_tool_run(
    session: AsyncSession, tenant_id: str, endpoint: str, call_id: str
) -> ToolRun | None:
    stmt = select(ToolRun).where(
        ToolRun.tenant_id == tenant_id,
        ToolRun.endpoint == endpoint,
        ToolRun.call_id == call_id,
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_tool_run_by_id(session: AsyncSession, run_id: str) -> ToolRun | None:
    result = await session.execute(select(ToolRun).where(ToolRun.id == run_id))
    return result.scalar_one_or_none()


async def try_create_tool_run(
    session: AsyncSession, tenant_id: str, endpoint: str, call_id: str
) -> ToolRun | None:
    """
    Atomically insert a STARTED run.
    Returns None if the identity already exists (race or replay).
    """
    run = ToolRun(tenant_id=tenant_id, endpoint=endpoint, call_id=call_id, status="STARTED")
    try:
        session.add(run)
        await session.flush()
        return run
    except IntegrityError:
        await session.rollback()
        return None


async def reopen_failed_tool_run(session: AsyncSession, run_id: str) -> bool:
    """FAILED -> STARTED. Only one concurrent caller sees True."""
    stmt = (
        update(ToolRun)
        .where(ToolRun.id == run_id, ToolRun.status == "FAILED")
        .values(status="STARTED", error_code=None, result_json=None, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    await session.flush()
    return result.rowcount == 1


async def update_tool_run(
    session: AsyncSession,
    run_id: str,
    *,
    status: str,
    result_json: str | None,
    error_code: str | None,
) -> None:
    stmt = (
        update(ToolRun)
        .where(ToolRun.id == run_id)
        .values(status=status, result_json=result_json, error_code=error_code, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    await session.execute(stmt)
    await session.flush()


def _tool_run_filters(stmt, tenant_id: str | None, status: str | None, endpoint: str | None):
    if tenant_id:
        stmt = stmt.where(ToolRun.tenant_id == tenant_id)
    if status:
        stmt = stmt.where(ToolRun.status == status.upper())
    if endpoint:
        stmt = stmt.where(ToolRun.endpoint == endpoint)
    return stmt


async def list_tool_runs(
    session: AsyncSession,
    tenant_id: str | None = None,
    status: str | None = None,
    endpoint: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[ToolRun]:
    stmt = select(ToolRun).order_by(ToolRun.created_at.desc()).limit(limit).offset(offset)
    stmt = _tool_run_filters(stmt, tenant_id, status, endpoint)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def count_tool_runs(
    session: AsyncSession,
    tenant_id: str | None = None,
    status: str | None = None,
    endpoint: str | None = None,
) -> int:
    stmt = _tool_run_filters(select(func.count()).select_from(ToolRun), tenant_id, status, endpoint)
    result = await session.execute(stmt)
    return result.scalar() or 0


# ======================================================
# TENANT CONFIG
# ======================================================

async def get_or_create_tenant_config(
    session: AsyncSession, tenant_id: str, **defaults: Any
) -> TenantConfig:
    existing = await session.get(TenantConfig, tenant_id)
    if existing:
        return existing
    config = TenantConfig(tenant_id=tenant_id, **defaults)
    try:
        session.add(config)
        await session.flush()
        return config
    except IntegrityError:
        # Lost race with another first request for this tenant
        await session.rollback()
        result = await session.execute(select(TenantConfig).where(TenantConfig.tenant_id == tenant_id))
        return result.scalar_one()


# ======================================================
# LEGACY WINDOW CAPACITY
# ======================================================

async def get_window_capacity(
    session: AsyncSession,
    tenant_id: str,
    date: str,
    window: str,
    *,
    for_update: bool = False,
) -> WindowCapacity | None:
    stmt = select(WindowCapacity).where(
        WindowCapacity.tenant_id == tenant_id,
        WindowCapacity.date == date,
        WindowCapacity.window == window,
    )
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def ensure_window_capacity(
    session: AsyncSession,
    tenant_id: str,
    date: str,
    window: str,
    *,
    max_capacity: int,
) -> None:
    """Insert the counter row if missing; a concurrent insert of the same row is a no-op."""
    dialect = postgresql if session.get_bind().dialect.name == "postgresql" else sqlite
    stmt = (
        dialect.insert(WindowCapacity)
        .values(tenant_id=tenant_id, date=date, window=window, max_capacity=max_capacity, booked_count=0)
        .on_conflict_do_nothing(index_elements=["tenant_id", "date", "window"])
    )
    await session.execute(stmt)


async def upsert_job_window_booking(
    session: AsyncSession,
    *,
    job_id: str,
    tenant_id: str,
    date: str,
    window: str,
    allocation_id: str,
) -> JobWindowBooking:
    booking = await session.get(JobWindowBooking, job_id)
    if booking is None:
        booking = JobWindowBooking(job_id=job_id, tenant_id=tenant_id)
        session.add(booking)
    booking.date = date
    booking.window = window
    booking.allocation_id = allocation_id
    booking.status = "confirmed"
    await session.flush()
    return booking


# ======================================================
# ALLOCATION WINDOW MAP
# ======================================================

async def get_window_map(session: AsyncSession, tenant_id: str) -> AllocationWindowMap | None:
    return await session.get(AllocationWindowMap, tenant_id)


async def upsert_window_map(
    session: AsyncSession,
    tenant_id: str,
    *,
    morning_window_id: str | None,
    afternoon_window_id: str | None,
    raw_windows: list | None,
) -> AllocationWindowMap:
    row = await session.get(AllocationWindowMap, tenant_id)
    if row is None:
        row = AllocationWindowMap(tenant_id=tenant_id)
        session.add(row)
    row.morning_window_id = morning_window_id
    row.afternoon_window_id = afternoon_window_id
    row.raw_windows_json = raw_windows
    row.updated_at = utcnow()
    await session.flush()
    return row


# ======================================================
# OVERRUN MONITOR
# ======================================================

async def get_overrun_state(session: AsyncSession, allocation_id: str) -> OverrunMonitorState | None:
    return await session.get(OverrunMonitorState, allocation_id)


async def upsert_overrun_state(
    session: AsyncSession,
    allocation_id: str,
    *,
    tenant_id: str,
    job_id: str | None = None,
    staff_id: str | None = None,
    allocation_date: str | None = None,
    **values: Any,
) -> OverrunMonitorState:
    """Create the state row on first sight, then apply the given timestamp/delay values."""
    state = await session.get(OverrunMonitorState, allocation_id)
    if state is None:
        state = OverrunMonitorState(
            allocation_id=allocation_id,
            tenant_id=tenant_id,
            job_id=job_id,
            staff_id=staff_id,
            allocation_date=allocation_date,
        )
        session.add(state)
    for key, value in values.items():
        setattr(state, key, value)
    await session.flush()
    return state


async def list_detected_overrun_states(
    session: AsyncSession, tenant_id: str
) -> list[OverrunMonitorState]:
    stmt = select(OverrunMonitorState).where(
        OverrunMonitorState.tenant_id == tenant_id,
        OverrunMonitorState.overrun_detected_at.is_not(None),
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def try_claim_sms_event(
    session: AsyncSession,
    *,
    source_allocation_id: str,
    target_job_id: str,
    sms_type: str,
    sent_at: datetime,
    target_allocation_id: str | None = None,
) -> bool:
    """
    Atomically insert the claim row.
    Returns False if the (source, target, type) triple is already claimed.
    """
    try:
        session.add(
            OverrunSmsEvent(
                source_allocation_id=source_allocation_id,
                target_allocation_id=target_allocation_id,
                target_job_id=target_job_id,
                sms_type=sms_type,
                sent_at=sent_at,
            )
        )
        await session.flush()
        return True
    except IntegrityError:
        await session.rollback()
        return False


async def release_sms_event(
    session: AsyncSession, *, source_allocation_id: str, target_job_id: str, sms_type: str
) -> None:
    """Delete a claim after a failed send, so a later run may retry."""
    await session.execute(
        delete(OverrunSmsEvent).where(
            OverrunSmsEvent.source_allocation_id == source_allocation_id,
            OverrunSmsEvent.target_job_id == target_job_id,
            OverrunSmsEvent.sms_type == sms_type,
        )
    )
    await session.flush()
