"""
Idempotency ledger.

One tool_run row per (tenant_id, endpoint, call_id). The unique constraint is
the only concurrency guard:

    STARTED -> SUCCEEDED            terminal, replayed verbatim on every retry
    STARTED -> FAILED -> STARTED    a retry re-runs the business logic

A caller that finds someone else's STARTED row waits for the owner's result.
If the owner finishes, its result is replayed (or its FAILED row reopened);
if the row goes stale the owner is assumed dead and the row is taken over.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from booking_engine.config import settings
from booking_engine.db.models import ToolRun, utcnow
from booking_engine.db.repository import (
    get_tool_run,
    get_tool_run_by_id,
    reopen_failed_tool_run,
    try_create_tool_run,
    update_tool_run,
)

logger = logging.getLogger(__name__)


@dataclass
class LedgerEntry:
    run_id: str
    status: str
    claimed: bool = False
    replayed: bool = False
    replay_result: Any = None
    updated_at: datetime | None = None


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything we store is UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def parse_result(raw: str | None) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return raw


class IdempotencyLedger:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        wait_seconds: float | None = None,
        poll_seconds: float | None = None,
        stale_seconds: float | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self.wait_seconds = settings.idempotency_wait_seconds if wait_seconds is None else wait_seconds
        self.poll_seconds = settings.idempotency_poll_seconds if poll_seconds is None else poll_seconds
        self.stale_seconds = settings.idempotency_stale_seconds if stale_seconds is None else stale_seconds
        self._clock = clock

    async def _resolve(self, session: AsyncSession, run: ToolRun) -> LedgerEntry:
        if run.status == "SUCCEEDED":
            return LedgerEntry(
                run_id=run.id,
                status=run.status,
                replayed=True,
                replay_result=parse_result(run.result_json),
            )
        if run.status == "FAILED":
            won = await reopen_failed_tool_run(session, run.id)
            return LedgerEntry(run_id=run.id, status="STARTED", claimed=won, updated_at=self._clock())
        return LedgerEntry(run_id=run.id, status=run.status, updated_at=_as_utc(run.updated_at))

    async def get_or_start(self, tenant_id: str, endpoint: str, call_id: str) -> LedgerEntry:
        """
        Insert a STARTED row, or report what an existing row means for this caller.

        claimed=True  -> caller owns the run and must finish it.
        replayed=True -> caller returns replay_result and performs no side effects.
        neither       -> another caller owns a STARTED row.
        """
        async with self._session_factory() as session:
            run = await try_create_tool_run(session, tenant_id, endpoint, call_id)
            if run is not None:
                await session.commit()
                return LedgerEntry(run_id=run.id, status="STARTED", claimed=True, updated_at=run.updated_at)

            existing = await get_tool_run(session, tenant_id, endpoint, call_id)
            if existing is None:
                raise RuntimeError(f"tool_run {tenant_id}/{endpoint}/{call_id} vanished after conflict")
            entry = await self._resolve(session, existing)
            await session.commit()
            return entry

    async def wait_for_result(self, entry: LedgerEntry) -> LedgerEntry:
        """Poll another caller's STARTED row until it settles or wait_seconds elapse."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.wait_seconds
        while loop.time() < deadline:
            await asyncio.sleep(self.poll_seconds)
            async with self._session_factory() as session:
                run = await get_tool_run_by_id(session, entry.run_id)
                if run is None:
                    raise RuntimeError(f"tool_run {entry.run_id} vanished while waiting")
                entry = await self._resolve(session, run)
                await session.commit()
            if entry.claimed or entry.replayed:
                return entry
        return entry

    async def take_over_if_stale(self, entry: LedgerEntry) -> LedgerEntry:
        """Claim a STARTED row whose owner has not touched it for stale_seconds."""
        cutoff = self._clock() - timedelta(seconds=self.stale_seconds)
        if entry.updated_at is None or entry.updated_at > cutoff:
            return entry
        async with self._session_factory() as session:
            result = await session.execute(
                update(ToolRun)
                .where(
                    ToolRun.id == entry.run_id,
                    ToolRun.status == "STARTED",
                    ToolRun.updated_at < cutoff,
                )
                .values(updated_at=self._clock())
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        if result.rowcount == 1:
            logger.warning("Taking over stale tool_run run_id=%s", entry.run_id)
            return LedgerEntry(run_id=entry.run_id, status="STARTED", claimed=True)
        return entry

    async def acquire(self, tenant_id: str, endpoint: str, call_id: str) -> LedgerEntry:
        """get_or_start, then wait out (or take over) a concurrent owner."""
        entry = await self.get_or_start(tenant_id, endpoint, call_id)
        if entry.claimed or entry.replayed:
            return entry
        entry = await self.wait_for_result(entry)
        if entry.claimed or entry.replayed:
            return entry
        return await self.take_over_if_stale(entry)

    async def finish_success(self, run_id: str, payload: Any) -> None:
        serialized = None if payload is None else json.dumps(payload, default=str)
        async with self._session_factory() as session:
            await update_tool_run(
                session, run_id, status="SUCCEEDED", result_json=serialized, error_code=None
            )
            await session.commit()

    async def finish_failure(self, run_id: str, error_code: str) -> None:
        async with self._session_factory() as session:
            await update_tool_run(
                session, run_id, status="FAILED", result_json=None, error_code=error_code
            )
            await session.commit()
