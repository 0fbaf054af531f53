"""
Shared fixtures: a throwaway SQLite database per test, an in-memory ServiceM8
directory, a recording SMS sender and a fixed business clock.
"""

from datetime import datetime, timezone
from typing import Any, Callable

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from booking_engine.config import Settings
from booking_engine.db.models import Base
from booking_engine.services.servicem8 import DirectoryError, DirectoryResponse

# Monday 2026-03-02 09:00 in Brisbane (UTC+10, no DST)
MONDAY_9AM = datetime(2026, 3, 1, 23, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'booking.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
    await engine.dispose()


class FakeDirectory:
    """
    In-memory Directory keyed by "METHOD /path".

    A value may be raw data (wrapped in a 200 response), a DirectoryResponse,
    a DirectoryError (raised) or an async callable taking the request body.
    Queued values are consumed first; unknown paths raise a 404.
    """

    def __init__(self):
        self.responses: dict[str, Any] = {}
        self.queued: dict[str, list[Any]] = {}
        self.calls: list[tuple[str, str, Any]] = []

    def set(self, method: str, path: str, value: Any) -> None:
        self.responses[f"{method} {path}"] = value

    def queue(self, method: str, path: str, *values: Any) -> None:
        self.queued.setdefault(f"{method} {path}", []).extend(values)

    def requests(self, method: str, path: str | None = None) -> list[tuple[str, str, Any]]:
        return [c for c in self.calls if c[0] == method and (path is None or c[1] == path)]

    async def _handle(self, method: str, path: str, body: Any = None) -> DirectoryResponse:
        self.calls.append((method, path, body))
        key = f"{method} {path}"
        if self.queued.get(key):
            value = self.queued[key].pop(0)
        elif key in self.responses:
            value = self.responses[key]
        else:
            raise DirectoryError(404, {"message": "not found"}, method, path)

        if callable(value):
            value = await value(body)
        if isinstance(value, DirectoryError):
            raise value
        if isinstance(value, DirectoryResponse):
            return value
        return DirectoryResponse(status=200, data=value)

    async def get(self, path: str) -> DirectoryResponse:
        return await self._handle("GET", path)

    async def post(self, path: str, body: dict[str, Any]) -> DirectoryResponse:
        return await self._handle("POST", path, body)

    async def put(self, path: str, body: dict[str, Any]) -> DirectoryResponse:
        return await self._handle("PUT", path, body)

    async def delete(self, path: str) -> DirectoryResponse:
        return await self._handle("DELETE", path)


class RecordingSmsSender:
    def __init__(self, fail_with: Exception | None = None):
        self.sent: list[dict[str, Any]] = []
        self.fail_with = fail_with

    async def send_sms(
        self, tenant_id: str, to_mobile: str, message: str, related_job_id: str | None = None
    ) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append(
            {"tenant_id": tenant_id, "to": to_mobile, "message": message, "job_id": related_job_id}
        )


def fixed_clock(moment: datetime) -> Callable[[], datetime]:
    return lambda: moment


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "scheduling_v2": False,
        "default_staff_id": None,
        "default_queue_id": None,
        "idempotency_wait_seconds": 0.05,
        "idempotency_poll_seconds": 0.01,
        "idempotency_stale_seconds": 120,
        "overrun_protection_enabled": True,
        "dispatcher_mobile": None,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def directory() -> FakeDirectory:
    return FakeDirectory()


@pytest.fixture
def sms() -> RecordingSmsSender:
    return RecordingSmsSender()

