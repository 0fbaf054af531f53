"""
Job overrun monitor.

Scans today's allocations for one tenant. An allocation still open more than
the grace period after its estimated end is an overrun: the next job for the
same technician gets a delay notice, and a large overrun alerts the
dispatcher. When an allocation is completed the next job's customer gets a
"30 minutes away" message once that job is close.

Every notification is claimed in overrun_sms_event before it is sent. The
unique (source_allocation_id, target_job_id, sms_type) key makes the claim the
only dedup mechanism; a failed send deletes the claim and re-raises so that a
later run can try again.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable
from urllib.parse import quote

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from booking_engine.config import Settings, settings
from booking_engine.db.models import TenantConfig, utcnow
from booking_engine.db.repository import (
    get_or_create_tenant_config,
    get_overrun_state,
    list_detected_overrun_states,
    release_sms_event,
    try_claim_sms_event,
    upsert_overrun_state,
)
from booking_engine.services.business_time import (
    format_local_clock,
    format_local_time,
    local_datetime,
    local_today,
    parse_servicem8_datetime,
)
from booking_engine.services.directory_adapter import DirectoryAdapter
from booking_engine.services.field_map import is_active, pick
from booking_engine.services.notifications import SmsSender, append_job_note, normalize_mobile
from booking_engine.services.ops_events import log_ops_event
from booking_engine.services.servicem8 import Directory, DirectoryError, as_record_list
from booking_engine.services.window_cache import MemoryWindowMapCache, WindowMapCache

logger = logging.getLogger(__name__)

DELAY_SMS_SENT = "DELAY_SMS_SENT"
MAJOR_DELAY_ALERT_SENT = "MAJOR_DELAY_ALERT_SENT"
ETA_30MIN_SENT = "ETA_30MIN_SENT"

DEFAULT_START = "08:00"
DEFAULT_END = "12:00"
ETA_LEAD_MINUTES = 30


# ======================================================
# ALLOCATION HELPERS
# ======================================================

def _allocation_day(record: dict[str, Any]) -> str | None:
    value = pick(record, "allocation.date")
    return value[:10] if value else None


def get_estimated_start(record: dict[str, Any], tz_name: str) -> datetime | None:
    day = _allocation_day(record)
    if not day:
        return None
    start = (pick(record, "allocation.start") or DEFAULT_START)[:5]
    return local_datetime(day, start, tz_name)


def get_estimated_end(record: dict[str, Any], tz_name: str) -> datetime | None:
    day = _allocation_day(record)
    if not day:
        return None
    end = (pick(record, "allocation.end") or DEFAULT_END)[:5]
    return local_datetime(day, end, tz_name)


def is_completed(record: dict[str, Any], tz_name: str) -> bool:
    return parse_servicem8_datetime(pick(record, "allocation.completed_at"), tz_name) is not None


def find_next_allocation(
    allocations: list[dict[str, Any]], current: dict[str, Any], tz_name: str
) -> dict[str, Any] | None:
    """Same staff, same day, later start, not completed; earliest wins."""
    current_start = get_estimated_start(current, tz_name)
    staff_id = pick(current, "allocation.staff_id")
    if current_start is None or not staff_id:
        return None

    current_id = pick(current, "allocation.id")
    day = _allocation_day(current)
    candidates = []
    for item in allocations:
        item_id = pick(item, "allocation.id")
        if not item_id or item_id == current_id:
            continue
        if pick(item, "allocation.staff_id") != staff_id or _allocation_day(item) != day:
            continue
        if is_completed(item, tz_name):
            continue
        start = get_estimated_start(item, tz_name)
        if start is not None and start > current_start:
            candidates.append((start, item))

    if not candidates:
        return None
    candidates.sort(key=lambda pair: pair[0])
    return candidates[0][1]


@dataclass
class CustomerContact:
    name: str
    mobile: str


async def get_job_customer_contact(directory: Directory, job_id: str) -> CustomerContact:
    """Prefer a contact whose type mentions "job"; any lookup failure means no contact."""
    try:
        res = await directory.get(f"/jobcontact.json?job_uuid={quote(job_id)}")
    except DirectoryError as e:
        logger.debug("Job contact lookup failed job_id=%s status=%s", job_id, e.status)
        return CustomerContact(name="there", mobile="")

    contacts = as_record_list(res.data)
    preferred = next(
        (c for c in contacts if "job" in (pick(c, "contact.type") or "").lower()),
        contacts[0] if contacts else None,
    )
    return CustomerContact(
        name=pick(preferred, "contact.name") or "there",
        mobile=pick(preferred, "contact.mobile") or "",
    )


# ======================================================
# MONITOR
# ======================================================

@dataclass
class _MonitorPass:
    tenant_id: str
    tz_name: str
    business_name: str
    dispatcher_mobile: str | None
    now: datetime
    allocations: list[dict[str, Any]]
    overrun_events: int = 0
    total_delay_minutes: int = 0
    sms_sent_count: int = 0


class OverrunMonitor:
    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        directory: Directory,
        sms_sender: SmsSender,
        window_cache: WindowMapCache | None = None,
        clock: Callable[[], datetime] = utcnow,
        app_settings: Settings = settings,
    ):
        self.session_factory = session_factory
        self.directory = directory
        self.sms_sender = sms_sender
        self.window_cache = window_cache or MemoryWindowMapCache()
        self.clock = clock
        self.settings = app_settings

    async def _tenant_config(self, tenant_id: str) -> TenantConfig:
        async with self.session_factory() as session:
            config = await get_or_create_tenant_config(
                session,
                tenant_id,
                business_name=self.settings.business_name,
                timezone=self.settings.business_tz,
            )
            await session.commit()
            return config

    async def run(self, tenant_id: str, dispatcher_mobile: str | None = None) -> dict[str, Any]:
        if not self.settings.overrun_protection_enabled:
            return {"ok": True, "skipped": True}

        now = self.clock()
        config = await self._tenant_config(tenant_id)
        today = local_today(config.timezone, now)
        adapter = DirectoryAdapter(self.directory, self.window_cache, tenant_id)
        records = [
            r for r in await adapter.fetch_allocations_for_date(today) if _allocation_day(r) == today
        ]

        monitor_pass = _MonitorPass(
            tenant_id=tenant_id,
            tz_name=config.timezone,
            business_name=config.business_name or self.settings.business_name,
            dispatcher_mobile=normalize_mobile(
                dispatcher_mobile if dispatcher_mobile is not None else self.settings.dispatcher_mobile
            ),
            now=now,
            allocations=records,
        )

        for allocation in records:
            if not pick(allocation, "allocation.id") or not pick(allocation, "allocation.job_id"):
                continue
            if not is_active(allocation, "allocation.active"):
                continue
            estimated_end = get_estimated_end(allocation, config.timezone)
            if estimated_end is None:
                continue

            if not is_completed(allocation, config.timezone):
                overrun_by = int((now - estimated_end).total_seconds() // 60)
                if overrun_by > self.settings.overrun_grace_minutes:
                    await self._handle_overrun(monitor_pass, allocation, overrun_by)
                continue

            await self._handle_completed(monitor_pass, allocation)

        return await self._metrics(monitor_pass)

    # ── overrun path ──

    async def _handle_overrun(self, p: _MonitorPass, allocation: dict[str, Any], overrun_by: int) -> None:
        allocation_id = pick(allocation, "allocation.id")
        job_id = pick(allocation, "allocation.job_id")
        p.overrun_events += 1
        p.total_delay_minutes += overrun_by
        log_ops_event(
            logger,
            "OVERRUN_DETECTED",
            tenant_id=p.tenant_id,
            allocation_id=allocation_id,
            job_id=job_id,
            delay_minutes=overrun_by,
        )
        await self._record_state(
            p, allocation, allocation_id, overrun_detected_at=p.now, delay_minutes=overrun_by
        )

        next_allocation = find_next_allocation(p.allocations, allocation, p.tz_name)
        if next_allocation is not None:
            await self._send_delay_notice(p, allocation, next_allocation, overrun_by)
        await self._send_major_alert(p, allocation, overrun_by)

    async def _send_delay_notice(
        self, p: _MonitorPass, source: dict[str, Any], target: dict[str, Any], overrun_by: int
    ) -> None:
        source_id = pick(source, "allocation.id")
        target_id = pick(target, "allocation.id")
        target_job = pick(target, "allocation.job_id")
        original_start = get_estimated_start(target, p.tz_name)
        if not target_id or not target_job or original_start is None:
            return
        if not await self._claim(p, source_id, target_job, DELAY_SMS_SENT, target_allocation_id=target_id):
            return

        new_eta = original_start + timedelta(minutes=overrun_by)
        contact = await get_job_customer_contact(self.directory, target_job)
        mobile = normalize_mobile(contact.mobile)
        if not mobile:
            # Claim is kept: there is nobody to notify for this pair.
            logger.info("No valid customer mobile for delay notice job_id=%s", target_job)
            return

        eta_text = format_local_time(new_eta, p.tz_name)
        message = (
            f"[{p.business_name}]\n\n"
            f"Hi {contact.name},\n\n"
            "Your technician is running slightly behind due to a complex job.\n\n"
            f"Updated arrival estimate: approximately {eta_text}.\n\n"
            "Thanks for your patience. We'll message again when 30 mins away."
        )
        await self._send_or_release(p, source_id, target_job, DELAY_SMS_SENT, mobile, message)

        p.sms_sent_count += 1
        log_ops_event(
            logger,
            "DELAY_SMS_SENT",
            tenant_id=p.tenant_id,
            source_allocation_id=source_id,
            target_allocation_id=target_id,
            target_job_id=target_job,
            delay_minutes=overrun_by,
            new_eta=new_eta.isoformat(),
        )
        await self._record_state(p, source, source_id, delay_sms_sent_at=p.now)
        await append_job_note(
            self.directory,
            target_job,
            f"Delay update sent to customer at {p.now.isoformat()} (new ETA ~{eta_text})",
        )

    async def _send_major_alert(self, p: _MonitorPass, allocation: dict[str, Any], overrun_by: int) -> None:
        if overrun_by <= self.settings.overrun_major_delay_minutes or not p.dispatcher_mobile:
            return
        allocation_id = pick(allocation, "allocation.id")
        job_id = pick(allocation, "allocation.job_id")
        async with self.session_factory() as session:
            state = await get_overrun_state(session, allocation_id)
            if state is not None and state.major_alert_sent_at is not None:
                return
        if not await self._claim(p, allocation_id, job_id, MAJOR_DELAY_ALERT_SENT):
            return

        message = (
            f"Major delay detected on job {job_id} ({overrun_by} min over). "
            "Manual intervention recommended."
        )
        await self._send_or_release(
            p, allocation_id, job_id, MAJOR_DELAY_ALERT_SENT, p.dispatcher_mobile, message
        )
        p.sms_sent_count += 1
        log_ops_event(
            logger,
            "MAJOR_DELAY_ALERT_SENT",
            tenant_id=p.tenant_id,
            source_allocation_id=allocation_id,
            job_id=job_id,
            delay_minutes=overrun_by,
        )
        await self._record_state(p, allocation, allocation_id, major_alert_sent_at=p.now)

    # ── completed path ──

    async def _handle_completed(self, p: _MonitorPass, allocation: dict[str, Any]) -> None:
        next_allocation = find_next_allocation(p.allocations, allocation, p.tz_name)
        if next_allocation is None:
            return
        source_id = pick(allocation, "allocation.id")
        target_id = pick(next_allocation, "allocation.id")
        target_job = pick(next_allocation, "allocation.job_id")
        next_start = get_estimated_start(next_allocation, p.tz_name)
        if not target_id or not target_job or next_start is None:
            return

        minutes_until = int((next_start - p.now).total_seconds() // 60)
        if minutes_until <= 0 or minutes_until > ETA_LEAD_MINUTES:
            return
        if not await self._claim(p, source_id, target_job, ETA_30MIN_SENT, target_allocation_id=target_id):
            return

        contact = await get_job_customer_contact(self.directory, target_job)
        mobile = normalize_mobile(contact.mobile)
        if not mobile:
            await self._release(source_id, target_job, ETA_30MIN_SENT)
            return

        message = f"Hi {contact.name}, your technician is 30 minutes away."
        await self._send_or_release(p, source_id, target_job, ETA_30MIN_SENT, mobile, message)

        p.sms_sent_count += 1
        log_ops_event(
            logger,
            "ETA_30MIN_SENT",
            tenant_id=p.tenant_id,
            source_allocation_id=source_id,
            target_allocation_id=target_id,
            target_job_id=target_job,
        )
        await self._record_state(p, next_allocation, target_id, thirty_away_sent_at=p.now)
        await append_job_note(
            self.directory, target_job, f"30-minute-away SMS sent at {p.now.isoformat()}"
        )

    # ── claims, sends, state ──

    async def _claim(
        self,
        p: _MonitorPass,
        source_allocation_id: str,
        target_job_id: str,
        sms_type: str,
        target_allocation_id: str | None = None,
    ) -> bool:
        async with self.session_factory() as session:
            claimed = await try_claim_sms_event(
                session,
                source_allocation_id=source_allocation_id,
                target_job_id=target_job_id,
                sms_type=sms_type,
                sent_at=p.now,
                target_allocation_id=target_allocation_id,
            )
            await session.commit()
        if not claimed:
            logger.debug(
                "Notification already claimed source=%s target_job=%s type=%s",
                source_allocation_id,
                target_job_id,
                sms_type,
            )
        return claimed

    async def _release(self, source_allocation_id: str, target_job_id: str, sms_type: str) -> None:
        async with self.session_factory() as session:
            await release_sms_event(
                session,
                source_allocation_id=source_allocation_id,
                target_job_id=target_job_id,
                sms_type=sms_type,
            )
            await session.commit()

    async def _send_or_release(
        self,
        p: _MonitorPass,
        source_allocation_id: str,
        target_job_id: str,
        sms_type: str,
        mobile: str,
        message: str,
    ) -> None:
        try:
            await self.sms_sender.send_sms(p.tenant_id, mobile, message, related_job_id=target_job_id)
        except Exception:
            logger.warning(
                "Overrun SMS failed; releasing claim source=%s target_job=%s type=%s",
                source_allocation_id,
                target_job_id,
                sms_type,
            )
            await self._release(source_allocation_id, target_job_id, sms_type)
            raise

    async def _record_state(
        self, p: _MonitorPass, allocation: dict[str, Any], allocation_id: str, **values: Any
    ) -> None:
        async with self.session_factory() as session:
            await upsert_overrun_state(
                session,
                allocation_id,
                tenant_id=p.tenant_id,
                job_id=pick(allocation, "allocation.job_id"),
                staff_id=pick(allocation, "allocation.staff_id"),
                allocation_date=_allocation_day(allocation),
                **values,
            )
            await session.commit()

    async def _metrics(self, p: _MonitorPass) -> dict[str, Any]:
        async with self.session_factory() as session:
            states = await list_detected_overrun_states(session, p.tenant_id)
        notified = sum(1 for state in states if state.delay_sms_sent_at is not None)
        eta_accuracy_rate = notified / len(states) if states else 1.0
        average_delay = p.total_delay_minutes / p.overrun_events if p.overrun_events else 0.0

        result = {
            "ok": True,
            "overrun_events": p.overrun_events,
            "average_delay_minutes": round(average_delay, 1),
            "eta_accuracy_rate": round(eta_accuracy_rate, 3),
            "sms_sent_count": p.sms_sent_count,
        }
        logger.info("Overrun monitor metrics tenant_id=%s %s", p.tenant_id, result)
        return result

    # ======================================================
    # SIMULATION
    # ======================================================

    async def simulate_overrun_for_job(self, tenant_id: str, job_id: str, minutes_overdue: int) -> dict[str, Any]:
        """Backdate the job's latest allocation so it ended minutes_overdue ago, then run a pass."""
        res = await self.directory.get(f"/joballocation.json?job_uuid={quote(job_id)}")
        allocations = [a for a in as_record_list(res.data) if pick(a, "allocation.id")]
        if not allocations:
            return {"ok": False, "error": "allocation_not_found"}
        current = max(allocations, key=lambda a: pick(a, "allocation.date") or "")
        allocation_id = pick(current, "allocation.id")

        config = await self._tenant_config(tenant_id)
        backdated_end = self.clock() - timedelta(minutes=minutes_overdue)
        allocation_date = local_today(config.timezone, backdated_end)
        end_time = format_local_clock(backdated_end, config.timezone)
        await self.directory.put(
            f"/joballocation/{quote(allocation_id)}.json",
            {"allocation_date": allocation_date, "end_time": end_time},
        )
        simulated_end = f"{allocation_date} {end_time}"
        logger.info(
            "Simulated overrun tenant_id=%s job_id=%s allocation_id=%s end=%s minutes_overdue=%s",
            tenant_id,
            job_id,
            allocation_id,
            simulated_end,
            minutes_overdue,
        )

        result = await self.run(tenant_id)
        return {
            "ok": True,
            "allocation_id": allocation_id,
            "simulated_end_time": simulated_end,
            "monitor_result": result,
        }
