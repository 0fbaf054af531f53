"""
End-to-end tests for BookingOrchestrator against an in-memory ServiceM8 and a
SQLite ledger.

The business clock is fixed at Monday 2026-03-02 09:00 Brisbane; bookings
default to Tuesday morning.
"""

import json

import pytest
from conftest import MONDAY_9AM, FakeDirectory, RecordingSmsSender, fixed_clock, make_settings
from sqlalchemy import select

from booking_engine.db.models import JobWindowBooking, TenantConfig, ToolRun, WindowCapacity
from booking_engine.schemas.booking import BookingRequest
from booking_engine.services.booking import BookingOrchestrator
from booking_engine.services.idempotency import IdempotencyLedger
from booking_engine.services.notifications import SmsSendError
from booking_engine.services.ops_events import DebugRing
from booking_engine.services.servicem8 import DirectoryError, DirectoryResponse
from booking_engine.services.window_cache import MemoryWindowMapCache

CREATED = DirectoryResponse(status=200, data={"errorCode": 0}, record_id="alloc-1")


def make_request(**overrides) -> BookingRequest:
    values = {
        "request_id": "req-1",
        "tenant_id": "tenant-1",
        "call_id": "call-1",
        "job_id": "job-1",
        "date": "2026-03-03",
        "window": "morning",
        "allocation_window_id": "win-am",
    }
    values.update(overrides)
    return BookingRequest(**values)


def healthy_directory() -> FakeDirectory:
    directory = FakeDirectory()
    directory.set("GET", "/staff.json", [{"uuid": "staff-1", "active": "1"}])
    directory.set("POST", "/joballocation.json", CREATED)
    directory.set("GET", "/joballocation.json?job_uuid=job-1", [{"uuid": "alloc-1"}])
    directory.set("GET", "/joballocation/alloc-1.json", {"uuid": "alloc-1"})
    directory.set("DELETE", "/joballocation/alloc-1.json", {"errorCode": 0})
    directory.set(
        "GET",
        "/allocationwindow.json",
        [{"uuid": "win-am", "name": "Morning"}, {"uuid": "win-pm", "name": "Afternoon"}],
    )
    return directory


@pytest.fixture
def ring() -> DebugRing:
    return DebugRing(10)


@pytest.fixture
def build(session_factory, sms, ring):
    def _build(directory: FakeDirectory, clock=MONDAY_9AM, sms_sender=None, **settings_overrides):
        app_settings = make_settings(**settings_overrides)
        return BookingOrchestrator(
            session_factory=session_factory,
            directory=directory,
            window_cache=MemoryWindowMapCache(),
            sms_sender=sms_sender or sms,
            ledger=IdempotencyLedger(session_factory, wait_seconds=0.05, poll_seconds=0.01),
            error_ring=ring,
            clock=fixed_clock(clock),
            app_settings=app_settings,
        )

    return _build


async def seed_capacity(session_factory, *, max_capacity: int, booked: int, reserve: int = 2) -> None:
    async with session_factory() as session:
        session.add(
            TenantConfig(
                tenant_id="tenant-1",
                business_name="Acme Plumbing",
                timezone="Australia/Brisbane",
                emergency_reserve=reserve,
            )
        )
        session.add(
            WindowCapacity(
                tenant_id="tenant-1",
                date="2026-03-03",
                window="morning",
                max_capacity=max_capacity,
                booked_count=booked,
            )
        )
        await session.commit()


async def booked_count(session_factory) -> int:
    async with session_factory() as session:
        result = await session.execute(select(WindowCapacity.booked_count))
        return result.scalar_one()


async def tool_run_status(session_factory) -> tuple[str, str | None]:
    async with session_factory() as session:
        run = (await session.execute(select(ToolRun))).scalar_one()
        return run.status, run.error_code


class TestLegacyBooking:
    async def test_books_and_records_capacity(self, build, session_factory) -> None:
        directory = healthy_directory()
        result = await build(directory).book_window(make_request())

        assert result == {
            "ok": True,
            "allocation_id": "alloc-1",
            "date": "2026-03-03",
            "window": "morning",
            "label": "Tue morning (8–12pm)",
        }
        (_, _, body), = directory.requests("POST", "/joballocation.json")
        assert body == {
            "job_uuid": "job-1",
            "allocation_window_uuid": "win-am",
            "allocation_date": "2026-03-03",
            "start_date": "2026-03-03",
            "start_time": "08:00",
            "end_time": "12:00",
            "staff_uuid": "staff-1",
        }
        assert await booked_count(session_factory) == 1
        async with session_factory() as session:
            link = await session.get(JobWindowBooking, "job-1")
        assert link.allocation_id == "alloc-1"
        assert await tool_run_status(session_factory) == ("SUCCEEDED", None)

    async def test_afternoon_uses_afternoon_times(self, build) -> None:
        directory = healthy_directory()
        await build(directory).book_window(make_request(window="arvo", allocation_window_id="win-pm"))
        (_, _, body), = directory.requests("POST", "/joballocation.json")
        assert (body["start_time"], body["end_time"]) == ("13:00", "16:00")

    async def test_replay_returns_identical_result_without_side_effects(self, build, sms) -> None:
        directory = healthy_directory()
        orchestrator = build(directory)
        request = make_request(sms={"to_mobile": "0412345678", "message": "See you Tuesday"})

        first = await orchestrator.book_window(request)
        calls_after_first = len(directory.calls)
        second = await orchestrator.book_window(request)

        assert json.dumps(second) == json.dumps(first)
        assert len(directory.calls) == calls_after_first
        assert len(sms.sent) == 1

    async def test_configured_staff_preferred_when_active(self, build) -> None:
        directory = healthy_directory()
        directory.set("GET", "/staff.json", [{"uuid": "staff-1"}, {"uuid": "staff-2"}])
        await build(directory, default_staff_id="staff-2").book_window(make_request())
        (_, _, body), = directory.requests("POST", "/joballocation.json")
        assert body["staff_uuid"] == "staff-2"

    async def test_queue_is_sent_when_no_staff(self, build) -> None:
        directory = healthy_directory()
        directory.set("GET", "/staff.json", [])
        directory.set("GET", "/job/job-1.json", {"uuid": "job-1", "queue_uuid": "queue-7"})
        await build(directory).book_window(make_request())
        (_, _, body), = directory.requests("POST", "/joballocation.json")
        assert body["queue_uuid"] == "queue-7"
        assert "staff_uuid" not in body

    async def test_queue_falls_back_to_queue_list(self, build) -> None:
        directory = healthy_directory()
        directory.set("GET", "/staff.json", [])
        directory.set(
            "GET",
            "/jobqueue.json",
            [
                {"uuid": "q-inactive", "active": "0"},
                {"uuid": "q-assign", "active": "1", "requires_assignment": "1"},
                {"uuid": "q-open", "active": "1", "requires_assignment": "0"},
            ],
        )
        await build(directory).book_window(make_request())
        (_, _, body), = directory.requests("POST", "/joballocation.json")
        assert body["queue_uuid"] == "q-open"


class TestGates:
    async def test_past_window_makes_no_directory_calls(self, build, session_factory, ring) -> None:
        directory = healthy_directory()
        result = await build(directory).book_window(make_request(date="2026-03-01"))

        assert result["ok"] is False
        assert result["error_code"] == "PAST_WINDOW"
        assert directory.calls == []
        assert await tool_run_status(session_factory) == ("FAILED", "PAST_WINDOW")
        assert ring.snapshot()[-1]["error_code"] == "PAST_WINDOW"

    async def test_today_morning_still_open_at_nine(self, build) -> None:
        result = await build(healthy_directory()).book_window(make_request(date="2026-03-02"))
        assert result["ok"] is True
        assert result["label"] == "Today morning (8–12pm)"

    async def test_no_capacity_precheck(self, build, session_factory) -> None:
        await seed_capacity(session_factory, max_capacity=4, booked=2, reserve=2)
        directory = healthy_directory()
        result = await build(directory).book_window(make_request())

        assert result == {"ok": False, "error_code": "NO_CAPACITY", "message": "No capacity available"}
        assert directory.requests("POST") == []

    async def test_missing_allocation_window(self, build) -> None:
        directory = healthy_directory()
        directory.set("GET", "/allocationwindow.json", [{"uuid": "w-x", "name": "Evening"}])
        result = await build(directory).book_window(make_request(allocation_window_id=None))
        assert result["error_code"] == "MISSING_ALLOCATION_WINDOW"
        assert directory.requests("POST") == []


class TestVerification:
    async def test_empty_list_fails_verification(self, build, session_factory) -> None:
        directory = healthy_directory()
        directory.set("GET", "/joballocation.json?job_uuid=job-1", [])
        result = await build(directory).book_window(make_request())

        assert result["error_code"] == "ALLOCATION_VERIFY_FAILED"
        assert result["debug_ref"] == "req-1"
        assert await tool_run_status(session_factory) == ("FAILED", "ALLOCATION_VERIFY_FAILED")

    async def test_direct_fetch_failure_fails_verification(self, build, ring) -> None:
        directory = healthy_directory()
        directory.set("GET", "/joballocation/alloc-1.json", DirectoryError(404, {"message": "gone"}))
        result = await build(directory).book_window(make_request())

        assert result["error_code"] == "ALLOCATION_VERIFY_FAILED"
        assert result["external_status"] == 404
        assert result["external_body"] == {"message": "gone"}
        assert len(ring) == 1

    async def test_list_request_error_fails_verification(self, build) -> None:
        directory = healthy_directory()
        directory.set("GET", "/joballocation.json?job_uuid=job-1", DirectoryError(500, None))
        result = await build(directory).book_window(make_request())
        assert result["error_code"] == "ALLOCATION_VERIFY_FAILED"

    async def test_failed_call_is_rerun_on_retry(self, build) -> None:
        directory = healthy_directory()
        directory.set("GET", "/joballocation.json?job_uuid=job-1", [])
        orchestrator = build(directory)
        assert (await orchestrator.book_window(make_request()))["ok"] is False

        directory.set("GET", "/joballocation.json?job_uuid=job-1", [{"uuid": "alloc-1"}])
        retried = await orchestrator.book_window(make_request())
        assert retried["ok"] is True
        assert len(directory.requests("POST", "/joballocation.json")) == 2

    async def test_missing_record_id(self, build) -> None:
        directory = healthy_directory()
        directory.set("POST", "/joballocation.json", DirectoryResponse(status=200, data={"errorCode": 0}))
        result = await build(directory).book_window(make_request())
        assert result["error_code"] == "ALLOCATION_MISSING_UUID"

    async def test_record_id_from_body(self, build) -> None:
        directory = healthy_directory()
        directory.set("POST", "/joballocation.json", {"uuid": "alloc-1"})
        result = await build(directory).book_window(make_request())
        assert result["allocation_id"] == "alloc-1"


class TestCapacitySaga:
    async def test_conflict_deletes_allocation(self, build, session_factory) -> None:
        await seed_capacity(session_factory, max_capacity=3, booked=0, reserve=2)
        directory = healthy_directory()

        async def create_while_someone_else_books(body):
            # Another booking takes the last slot between pre-check and commit
            async with session_factory() as session:
                row = (await session.execute(select(WindowCapacity))).scalar_one()
                row.booked_count = 1
                await session.commit()
            return CREATED

        directory.set("POST", "/joballocation.json", create_while_someone_else_books)
        result = await build(directory).book_window(make_request())

        assert result["error_code"] == "NO_CAPACITY"
        assert directory.requests("DELETE", "/joballocation/alloc-1.json")
        assert await booked_count(session_factory) == 1
        async with session_factory() as session:
            assert await session.get(JobWindowBooking, "job-1") is None

    async def test_no_compensation_on_success(self, build, session_factory) -> None:
        await seed_capacity(session_factory, max_capacity=3, booked=0, reserve=2)
        directory = healthy_directory()
        result = await build(directory).book_window(make_request())
        assert result["ok"] is True
        assert directory.requests("DELETE") == []
        assert await booked_count(session_factory) == 1

    async def test_record_booking_off_skips_counters(self, build, session_factory) -> None:
        result = await build(healthy_directory()).book_window(make_request(record_booking=False))
        assert result["ok"] is True
        async with session_factory() as session:
            assert (await session.execute(select(WindowCapacity))).first() is None


class TestRetryLadder:
    async def test_unauthorized_is_classified(self, build) -> None:
        directory = healthy_directory()
        directory.set("POST", "/joballocation.json", DirectoryError(401, {"message": "bad token"}))
        result = await build(directory).book_window(make_request())

        assert result["error_code"] == "SERVICEM8_UNAUTH"
        assert result["external_status"] == 401
        assert result["debug_ref"] == "req-1"
        assert len(directory.requests("POST")) == 1

    async def test_422_refreshes_stale_window(self, build) -> None:
        directory = healthy_directory()
        directory.queue("POST", "/joballocation.json", DirectoryError(422, {"message": "window"}))
        result = await build(directory).book_window(make_request(allocation_window_id="win-stale"))

        assert result["ok"] is True
        posts = directory.requests("POST", "/joballocation.json")
        assert [p[2]["allocation_window_uuid"] for p in posts] == ["win-stale", "win-am"]

    async def test_persistent_422_is_validation_error(self, build) -> None:
        directory = healthy_directory()
        directory.set("POST", "/joballocation.json", DirectoryError(422, {}))
        result = await build(directory).book_window(make_request())
        assert result["error_code"] == "SERVICEM8_VALIDATION_ERROR"
        assert len(directory.requests("POST")) == 2


class TestCapacityEngineMode:
    def engine_directory(self) -> FakeDirectory:
        directory = healthy_directory()
        directory.set("GET", "/staff.json", [{"uuid": "s1", "active": "1"}, {"uuid": "s2"}])
        directory.set(
            "GET",
            "/joballocation.json?allocation_date=2026-03-03",
            [
                {
                    "uuid": "a0",
                    "staff_uuid": "s1",
                    "allocation_date": "2026-03-03 00:00:00",
                    "allocation_window_uuid": "win-am",
                    "start_time": "08:00:00",
                    "end_time": "10:00:00",
                }
            ],
        )
        return directory

    async def test_engine_selects_least_loaded_staff(self, build, session_factory) -> None:
        directory = self.engine_directory()
        result = await build(directory, scheduling_v2=True).book_window(make_request(allocation_window_id=None))

        assert result["ok"] is True
        (_, _, body), = directory.requests("POST", "/joballocation.json")
        assert body["staff_uuid"] == "s2"
        assert (body["start_time"], body["end_time"]) == ("08:00", "10:24")
        assert body["status"] == "scheduled"
        assert "queue_uuid" not in body
        async with session_factory() as session:
            assert (await session.execute(select(WindowCapacity))).first() is None

    async def test_400_retries_without_status(self, build) -> None:
        directory = self.engine_directory()
        directory.queue("POST", "/joballocation.json", DirectoryError(400, {"message": "status"}))
        result = await build(directory, scheduling_v2=True).book_window(make_request())

        assert result["ok"] is True
        posts = directory.requests("POST", "/joballocation.json")
        assert [("status" in p[2]) for p in posts] == [True, False]

    async def test_no_active_staff(self, build) -> None:
        directory = self.engine_directory()
        directory.set("GET", "/staff.json", [{"uuid": "s1", "active": "0"}])
        result = await build(directory, scheduling_v2=True).book_window(make_request())
        assert result == {"ok": False, "error_code": "NO_CAPACITY", "message": "No active staff available"}

    async def test_full_window(self, build) -> None:
        directory = self.engine_directory()
        directory.set("GET", "/staff.json", [{"uuid": "s1"}])
        result = await build(directory, scheduling_v2=True).book_window(make_request())
        # s1 has 120 minutes booked; 144 more does not fit a 240 minute morning
        assert result["error_code"] == "NO_CAPACITY"
        assert directory.requests("POST") == []


class TestSms:
    async def test_sms_sent_to_normalized_mobile(self, build, sms) -> None:
        request = make_request(sms={"to_mobile": "0412 345 678", "message": "Booked!"})
        result = await build(healthy_directory()).book_window(request)

        assert result["sms_sent"] is True
        assert "sms_error" not in result
        assert sms.sent == [
            {"tenant_id": "tenant-1", "to": "+61412345678", "message": "Booked!", "job_id": "job-1"}
        ]

    async def test_send_failure_does_not_fail_booking(self, build) -> None:
        failing = RecordingSmsSender(fail_with=SmsSendError(500, "boom"))
        request = make_request(sms={"to_mobile": "0412345678", "message": "Booked!"})
        result = await build(healthy_directory(), sms_sender=failing).book_window(request)

        assert result["ok"] is True
        assert result["sms_sent"] is False
        assert result["sms_error"] == "ServiceM8 SMS failed (500)"

    async def test_unexpected_sender_error_keeps_booking(self, build, session_factory) -> None:
        failing = RecordingSmsSender(fail_with=RuntimeError("socket closed"))
        request = make_request(sms={"to_mobile": "0412345678", "message": "Booked!"})
        directory = healthy_directory()
        result = await build(directory, sms_sender=failing).book_window(request)

        assert result["ok"] is True
        assert result["sms_sent"] is False
        assert result["sms_error"] == "ServiceM8 SMS failed"
        assert await booked_count(session_factory) == 1
        assert await tool_run_status(session_factory) == ("SUCCEEDED", None)

        replay = await build(directory, sms_sender=failing).book_window(request)
        assert replay == result
        assert len(directory.requests("POST", "/joballocation.json")) == 1

    async def test_invalid_mobile(self, build, sms) -> None:
        request = make_request(sms={"to_mobile": "12345", "message": "Booked!"})
        result = await build(healthy_directory()).book_window(request)

        assert result["ok"] is True
        assert result["sms_sent"] is False
        assert result["sms_error"] == "Invalid mobile number"
        assert sms.sent == []


class TestConcurrency:
    async def test_in_progress_call_is_not_recorded(self, build, session_factory) -> None:
        ledger = IdempotencyLedger(session_factory)
        await ledger.get_or_start("tenant-1", "book-window", "call-1")
        directory = healthy_directory()

        result = await build(directory).book_window(make_request())

        assert result["error_code"] == "REQUEST_IN_PROGRESS"
        assert directory.calls == []
        assert await tool_run_status(session_factory) == ("STARTED", None)

    async def test_unexpected_exception_is_internal_error(self, build, session_factory) -> None:
        directory = healthy_directory()

        async def explode(body):
            raise RuntimeError("bug")

        directory.set("POST", "/joballocation.json", explode)
        result = await build(directory).book_window(make_request())

        assert result["error_code"] == "INTERNAL_ERROR"
        assert await tool_run_status(session_factory) == ("FAILED", "INTERNAL_ERROR")
