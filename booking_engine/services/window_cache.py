"""
Allocation window map cache.

Maps a tenant to its ServiceM8 morning/afternoon allocation window ids. The
data is derived from the Directory, so it is never a source of truth:
concurrent refreshes are harmless (last writer wins) and a stale entry is
corrected by the next refresh.

Backends:
- MemoryWindowMapCache: per-process dict with a TTL. Single-instance deployments.
- DatabaseWindowMapCache: the allocation_window_map table, shared by all
  instances. Entries never expire; they are replaced on refresh (for example
  when ServiceM8 rejects a window id with a 422).
"""

import time
from dataclasses import dataclass
from typing import Callable, Protocol

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from booking_engine.config import settings
from booking_engine.db.repository import get_window_map, upsert_window_map


@dataclass(frozen=True)
class WindowMap:
    morning_window_id: str | None = None
    afternoon_window_id: str | None = None

    def for_window(self, window: str) -> str | None:
        return self.morning_window_id if window == "morning" else self.afternoon_window_id


class WindowMapCache(Protocol):
    async def get(self, tenant_id: str) -> WindowMap | None: ...

    async def put(self, tenant_id: str, window_map: WindowMap, raw_windows: list | None = None) -> None: ...


class MemoryWindowMapCache:
    def __init__(self, ttl_seconds: float | None = None, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.window_map_ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[float, WindowMap]] = {}

    async def get(self, tenant_id: str) -> WindowMap | None:
        entry = self._entries.get(tenant_id)
        if entry is None:
            return None
        stored_at, window_map = entry
        if self.ttl_seconds > 0 and self._clock() - stored_at > self.ttl_seconds:
            self._entries.pop(tenant_id, None)
            return None
        return window_map

    async def put(self, tenant_id: str, window_map: WindowMap, raw_windows: list | None = None) -> None:
        self._entries[tenant_id] = (self._clock(), window_map)


class DatabaseWindowMapCache:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get(self, tenant_id: str) -> WindowMap | None:
        async with self._session_factory() as session:
            row = await get_window_map(session, tenant_id)
            await session.commit()
        if row is None:
            return None
        return WindowMap(row.morning_window_id, row.afternoon_window_id)

    async def put(self, tenant_id: str, window_map: WindowMap, raw_windows: list | None = None) -> None:
        async with self._session_factory() as session:
            try:
                await upsert_window_map(
                    session,
                    tenant_id,
                    morning_window_id=window_map.morning_window_id,
                    afternoon_window_id=window_map.afternoon_window_id,
                    raw_windows=raw_windows,
                )
                await session.commit()
            except IntegrityError:
                # A concurrent refresh inserted the row first; its data is equivalent.
                await session.rollback()


def build_window_map_cache(session_factory: async_sessionmaker[AsyncSession]) -> WindowMapCache:
    if settings.window_map_cache.lower() == "memory":
        return MemoryWindowMapCache()
    return DatabaseWindowMapCache(session_factory)
