"""
Booking orchestrator: book one job into a morning/afternoon window.

    ledger -> capacity pre-check -> past-window -> window id -> staff/slot
    -> queue -> allocation create (retry ladder) -> verify -> capacity saga
    -> optional SMS -> ledger finish

Every outcome is a plain dict (see schemas.booking). Failures are recorded in
the ledger before they are returned, so a retry with the same call_id re-runs
the business logic; successes are replayed verbatim.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable
from urllib.parse import quote

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from booking_engine.config import Settings, settings
from booking_engine.db.models import TenantConfig, utcnow
from booking_engine.db.repository import get_or_create_tenant_config
from booking_engine.schemas.booking import BookingRequest, failure_payload, success_payload
from booking_engine.services.allocation_retry import (
    AllocationCreateFailed,
    AttemptState,
    classify_directory_error,
    create_with_retry,
    default_retry_rules,
)
from booking_engine.services.business_time import format_window_label, is_past_window
from booking_engine.services.capacity_engine import run_capacity_engine
from booking_engine.services.directory_adapter import DirectoryAdapter
from booking_engine.services.field_map import is_active, pick
from booking_engine.services.idempotency import IdempotencyLedger
from booking_engine.services.notifications import SmsSender, SmsSendError, normalize_mobile
from booking_engine.services.ops_events import DebugRing, log_ops_event
from booking_engine.services.servicem8 import Directory, DirectoryError, DirectoryResponse, as_record_list
from booking_engine.services.window_cache import WindowMapCache
from booking_engine.services.window_capacity import (
    CapacityConflict,
    has_capacity,
    reserve_or_compensate,
    reserve_window_capacity,
)

logger = logging.getLogger(__name__)

ENDPOINT = "book-window"

LEGACY_TIMES = {
    "morning": ("08:00", "12:00"),
    "afternoon": ("13:00", "16:00"),
}


class BookingFailed(Exception):
    """Short-circuits the booking sequence with a classified failure."""

    def __init__(
        self,
        error_code: str,
        message: str,
        *,
        external_status: int | None = None,
        external_body: Any = None,
        with_debug_ref: bool = True,
    ):
        self.error_code = error_code
        self.message = message
        self.external_status = external_status
        self.external_body = external_body
        self.with_debug_ref = with_debug_ref
        super().__init__(f"{error_code}: {message}")

    @classmethod
    def from_directory_error(cls, err: DirectoryError) -> "BookingFailed":
        code, message = classify_directory_error(err.status)
        return cls(code, message, external_status=err.status, external_body=err.body)


@dataclass
class SlotPlan:
    staff_id: str | None
    start_time: str
    end_time: str
    window_id: str


class BookingOrchestrator:
    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        directory: Directory,
        window_cache: WindowMapCache,
        sms_sender: SmsSender | None = None,
        ledger: IdempotencyLedger | None = None,
        error_ring: DebugRing | None = None,
        clock: Callable[[], datetime] = utcnow,
        app_settings: Settings = settings,
    ):
        self.session_factory = session_factory
        self.directory = directory
        self.window_cache = window_cache
        self.sms_sender = sms_sender
        self.ledger = ledger or IdempotencyLedger(session_factory)
        self.error_ring = error_ring if error_ring is not None else DebugRing(app_settings.debug_ring_size)
        self.clock = clock
        self.settings = app_settings

    # ======================================================
    # ENTRY POINT
    # ======================================================

    async def book_window(self, request: BookingRequest) -> dict[str, Any]:
        entry = await self.ledger.acquire(request.tenant_id, ENDPOINT, request.call_id)
        if entry.replayed:
            logger.info(
                "Booking replayed request_id=%s tenant_id=%s call_id=%s",
                request.request_id,
                request.tenant_id,
                request.call_id,
            )
            return entry.replay_result
        if not entry.claimed:
            # Another caller still owns this call_id; nothing is recorded for us.
            return failure_payload(
                error_code="REQUEST_IN_PROGRESS",
                message="A booking with this call_id is still in progress",
                debug_ref=request.request_id,
            )

        logger.info(
            "Booking start request_id=%s tenant_id=%s call_id=%s job_id=%s date=%s window=%s",
            request.request_id,
            request.tenant_id,
            request.call_id,
            request.job_id,
            request.date,
            request.window,
        )
        try:
            payload = await self._book(request)
        except BookingFailed as failure:
            return await self._fail(entry.run_id, request, failure)
        except DirectoryError as e:
            return await self._fail(entry.run_id, request, BookingFailed.from_directory_error(e))
        except Exception:
            logger.exception("Booking crashed request_id=%s", request.request_id)
            return await self._fail(
                entry.run_id,
                request,
                BookingFailed("INTERNAL_ERROR", "Unexpected error while booking"),
            )

        await self.ledger.finish_success(entry.run_id, payload)
        log_ops_event(
            logger,
            "BOOKING_ALLOCATION_CREATED",
            request_id=request.request_id,
            endpoint=ENDPOINT,
            tenant_id=request.tenant_id,
            job_id=request.job_id,
            allocation_id=payload["allocation_id"],
            date=request.date,
            window=request.window,
        )
        return payload

    async def _fail(self, run_id: str, request: BookingRequest, failure: BookingFailed) -> dict[str, Any]:
        await self.ledger.finish_failure(run_id, failure.error_code)
        self.error_ring.push(
            {
                "request_id": request.request_id,
                "endpoint": ENDPOINT,
                "tenant_id": request.tenant_id,
                "call_id": request.call_id,
                "job_id": request.job_id,
                "date": request.date,
                "window": request.window,
                "error_code": failure.error_code,
                "message": failure.message,
                "external_status": failure.external_status,
                "external_body": failure.external_body,
            }
        )
        log_ops_event(
            logger,
            "BOOKING_FAILED",
            request_id=request.request_id,
            endpoint=ENDPOINT,
            tenant_id=request.tenant_id,
            job_id=request.job_id,
            reason=failure.error_code,
        )
        return failure_payload(
            error_code=failure.error_code,
            message=failure.message,
            debug_ref=request.request_id if failure.with_debug_ref else None,
            external_status=failure.external_status,
            external_body=failure.external_body,
        )

    # ======================================================
    # SEQUENCE
    # ======================================================

    async def _book(self, request: BookingRequest) -> dict[str, Any]:
        now = self.clock()
        engine_mode = self.settings.scheduling_v2
        legacy_capacity = request.record_booking and not engine_mode
        adapter = DirectoryAdapter(self.directory, self.window_cache, request.tenant_id)

        # ── 1. Tenant config + legacy capacity pre-check ──
        async with self.session_factory() as session:
            config = await get_or_create_tenant_config(
                session,
                request.tenant_id,
                business_name=self.settings.business_name,
                timezone=self.settings.business_tz,
            )
            await session.commit()
            if legacy_capacity and not await has_capacity(session, config, request.date, request.window):
                raise BookingFailed("NO_CAPACITY", "No capacity available", with_debug_ref=False)

        # ── 2. Past window ──
        if is_past_window(request.date, request.window, config.timezone, config.cutoff_today_afternoon, now):
            raise BookingFailed("PAST_WINDOW", "Requested booking is in the past", with_debug_ref=False)

        # ── 3. Allocation window ──
        window_id = await adapter.resolve_window_id(request.window, request.allocation_window_id)
        logger.info(
            "Booking allocation window resolved request_id=%s window=%s allocation_window_id=%s",
            request.request_id,
            request.window,
            window_id,
        )
        if not window_id:
            raise BookingFailed(
                "MISSING_ALLOCATION_WINDOW", "Allocation window not configured", with_debug_ref=False
            )

        # ── 4. Staff and slot ──
        if engine_mode:
            plan = await self._plan_with_engine(request, adapter, window_id)
        else:
            start, end = LEGACY_TIMES[request.window]
            plan = SlotPlan(
                staff_id=await self._resolve_legacy_staff(request, adapter),
                start_time=start,
                end_time=end,
                window_id=window_id,
            )

        # ── 5. Queue (only sent when no staff is assigned) ──
        queue_id = None
        if not engine_mode and not plan.staff_id:
            queue_id = await self._resolve_queue(request)

        # ── 6. Create allocation ──
        allocation_id = await self._create_allocation(request, adapter, plan, queue_id, engine_mode)

        # ── 7. Verify by read-back ──
        await self._verify_allocation(request, allocation_id)

        # ── 8. Legacy capacity commit (saga) ──
        if legacy_capacity:
            await self._commit_capacity(request, config, allocation_id)

        # ── 9. Optional SMS ──
        sms_sent, sms_error = await self._send_confirmation(request)

        return success_payload(
            allocation_id=allocation_id,
            date=request.date,
            window=request.window,
            label=format_window_label(request.date, request.window, config.timezone, now),
            sms_sent=sms_sent,
            sms_error=sms_error,
        )

    # ======================================================
    # STEPS
    # ======================================================

    async def _plan_with_engine(
        self, request: BookingRequest, adapter: DirectoryAdapter, window_id: str
    ) -> SlotPlan:
        inputs = await adapter.load_scheduling_inputs(request.date)
        if not inputs.staff:
            raise BookingFailed("NO_CAPACITY", "No active staff available", with_debug_ref=False)

        decision = run_capacity_engine(
            staff=inputs.staff,
            allocations=inputs.allocations,
            window=request.window,
            job_duration_minutes=self.settings.scheduling_v2_default_duration_minutes,
            max_jobs_per_window=self.settings.scheduling_v2_max_jobs_per_window,
            buffer_ratio=self.settings.scheduling_v2_buffer_ratio,
        )
        if decision.window_full or not decision.selected_staff_id:
            raise BookingFailed("NO_CAPACITY", "No capacity available", with_debug_ref=False)

        logger.info(
            "Capacity engine selected staff request_id=%s staff_id=%s start=%s end=%s usage=%s",
            request.request_id,
            decision.selected_staff_id,
            decision.start_time,
            decision.end_time,
            [(u.staff_id, u.jobs_count, u.used_minutes) for u in decision.staff_usage],
        )
        return SlotPlan(
            staff_id=decision.selected_staff_id,
            start_time=decision.start_time,
            end_time=decision.end_time,
            window_id=inputs.window_map.for_window(request.window) or window_id,
        )

    async def _resolve_legacy_staff(self, request: BookingRequest, adapter: DirectoryAdapter) -> str | None:
        """Configured default if active, else first active staff, else the configured default."""
        configured = self.settings.default_staff_id or None
        try:
            records = await adapter.fetch_staff_records()
        except DirectoryError as e:
            logger.warning(
                "Staff lookup failed request_id=%s status=%s; using configured staff",
                request.request_id,
                e.status,
            )
            return configured

        active_ids = [
            pick(r, "staff.id") for r in records if pick(r, "staff.id") and is_active(r)
        ]
        if configured and configured in active_ids:
            return configured
        return active_ids[0] if active_ids else configured

    async def _resolve_queue(self, request: BookingRequest) -> str | None:
        if self.settings.default_queue_id:
            return self.settings.default_queue_id

        try:
            job = await self.directory.get(f"/job/{quote(request.job_id)}.json")
            queue_id = pick(job.data, "job.queue_id")
            if queue_id:
                logger.info("Resolved queue from job request_id=%s queue_id=%s", request.request_id, queue_id)
                return queue_id
        except DirectoryError as e:
            logger.debug("Job lookup for queue failed request_id=%s status=%s", request.request_id, e.status)

        try:
            queues = as_record_list((await self.directory.get("/jobqueue.json")).data)
        except DirectoryError as e:
            logger.debug("Queue list failed request_id=%s status=%s", request.request_id, e.status)
            return None
        active = [q for q in queues if is_active(q)]
        unassigned = [q for q in active if str(q.get("requires_assignment", "0")) != "1"]
        preferred = (unassigned or active or queues or [None])[0]
        return pick(preferred, "queue.id")

    async def _create_allocation(
        self,
        request: BookingRequest,
        adapter: DirectoryAdapter,
        plan: SlotPlan,
        queue_id: str | None,
        engine_mode: bool,
    ) -> str:
        async def create(state: AttemptState) -> DirectoryResponse:
            body: dict[str, Any] = {
                "job_uuid": request.job_id,
                "allocation_window_uuid": state.window_id,
                "allocation_date": request.date,
                "start_date": request.date,
                "start_time": plan.start_time,
                "end_time": plan.end_time,
            }
            if state.include_scheduling_status:
                body["status"] = "scheduled"
            if queue_id:
                body["queue_uuid"] = queue_id
            if plan.staff_id:
                body["staff_uuid"] = plan.staff_id
            logger.info(
                "Allocation create attempt=%s request_id=%s job_id=%s allocation_window_id=%s",
                state.attempts,
                request.request_id,
                request.job_id,
                state.window_id,
            )
            return await self.directory.post("/joballocation.json", body)

        async def refresh_window_id() -> str | None:
            return (await adapter.refresh_window_map()).for_window(request.window)

        state = AttemptState(window_id=plan.window_id, include_scheduling_status=engine_mode)
        try:
            response = await create_with_retry(create, state, default_retry_rules(refresh_window_id))
        except AllocationCreateFailed as e:
            logger.warning(
                "Allocation create failed request_id=%s status=%s rules_used=%s",
                request.request_id,
                e.error.status,
                e.state.rules_used,
            )
            raise BookingFailed.from_directory_error(e.error) from e

        allocation_id = response.record_id or pick(response.data, "allocation.created_id")
        if not allocation_id:
            raise BookingFailed(
                "ALLOCATION_MISSING_UUID",
                "Allocation did not return an id",
                external_status=response.status,
                external_body=response.data,
            )
        return allocation_id

    async def _verify_allocation(self, request: BookingRequest, allocation_id: str) -> None:
        try:
            listed = await self.directory.get(f"/joballocation.json?job_uuid={quote(request.job_id)}")
        except DirectoryError as e:
            raise BookingFailed(
                "ALLOCATION_VERIFY_FAILED",
                "Allocation list verification failed",
                external_status=e.status,
                external_body=e.body,
            ) from e
        if not as_record_list(listed.data):
            raise BookingFailed(
                "ALLOCATION_VERIFY_FAILED",
                "Allocation list verification failed (0 results)",
                external_body=listed.data,
            )

        try:
            await self.directory.get(f"/joballocation/{quote(allocation_id)}.json")
        except DirectoryError as e:
            raise BookingFailed(
                "ALLOCATION_VERIFY_FAILED",
                "Allocation verification failed",
                external_status=e.status,
                external_body=e.body,
            ) from e
        logger.info("Allocation verified request_id=%s allocation_id=%s", request.request_id, allocation_id)

    async def _commit_capacity(self, request: BookingRequest, config: TenantConfig, allocation_id: str) -> None:
        async def reserve() -> None:
            await reserve_window_capacity(
                self.session_factory,
                config,
                job_id=request.job_id,
                date=request.date,
                window=request.window,
                allocation_id=allocation_id,
            )

        async def compensate() -> None:
            logger.warning(
                "Capacity reservation failed; deleting allocation request_id=%s allocation_id=%s",
                request.request_id,
                allocation_id,
            )
            await self.directory.delete(f"/joballocation/{quote(allocation_id)}.json")

        try:
            await reserve_or_compensate(reserve, compensate)
        except CapacityConflict as e:
            raise BookingFailed("NO_CAPACITY", "No capacity available", with_debug_ref=False) from e

    async def _send_confirmation(self, request: BookingRequest) -> tuple[bool | None, str | None]:
        """(sms_sent, sms_error); (None, None) when no SMS was requested."""
        if request.sms is None:
            return None, None

        mobile = normalize_mobile(request.sms.to_mobile)
        if not mobile:
            return False, "Invalid mobile number"
        if self.sms_sender is None:
            return False, "SMS sender not configured"

        try:
            await self.sms_sender.send_sms(
                request.tenant_id,
                mobile,
                request.sms.message,
                related_job_id=request.sms.job_id or request.job_id,
            )
        except SmsSendError as e:
            sms_error = f"ServiceM8 SMS failed ({e.status})" if e.status else "ServiceM8 SMS failed"
            logger.warning("Booking SMS failed request_id=%s error=%s", request.request_id, sms_error)
            return False, sms_error
        except Exception:
            # The allocation and capacity are already committed at this point
            logger.exception("Booking SMS failed request_id=%s", request.request_id)
            return False, "ServiceM8 SMS failed"

        logger.info("Booking SMS sent request_id=%s job_id=%s", request.request_id, request.job_id)
        return True, None
