"""
Database models for the booking ledger, window capacity and overrun tracking.

Uniqueness constraints on these tables are the concurrency guards: the tool run
ledger, the per-window capacity counters and the overrun SMS claims all rely on
insert-or-fail semantics rather than advisory locks.
"""

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import JSON, DateTime, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JsonType = JSON().with_variant(JSONB(), "postgresql")


def _uuid() -> str:
    return str(uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class ToolRun(Base):
    """Idempotency ledger: one row per (tenant, endpoint, call_id)."""

    __tablename__ = "tool_run"
    __table_args__ = (
        UniqueConstraint("tenant_id", "endpoint", "call_id", name="uq_tool_run_identity"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    endpoint: Mapped[str] = mapped_column(String(128), nullable=False)
    call_id: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False
    )  # STARTED | SUCCEEDED | FAILED
    result_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now()
    )


class TenantConfig(Base):
    """Per-tenant business settings (timezone, cutoffs, legacy capacities)."""

    __tablename__ = "tenant_config"

    tenant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    business_name: Mapped[str] = mapped_column(String(255), nullable=False)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="Australia/Brisbane")
    morning_capacity: Mapped[int] = mapped_column(Integer, nullable=False, default=6)
    afternoon_capacity: Mapped[int] = mapped_column(Integer, nullable=False, default=6)
    emergency_reserve: Mapped[int] = mapped_column(Integer, nullable=False, default=2)
    cutoff_today_afternoon: Mapped[str] = mapped_column(
        String(5), nullable=False, default="14:30"
    )  # HH:MM local time
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )


class WindowCapacity(Base):
    """Legacy per-window booking counter."""

    __tablename__ = "window_capacity"
    __table_args__ = (
        UniqueConstraint("tenant_id", "date", "window", name="uq_window_capacity"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    date: Mapped[str] = mapped_column(String(10), nullable=False)  # YYYY-MM-DD
    window: Mapped[str] = mapped_column(String(16), nullable=False)  # morning | afternoon
    max_capacity: Mapped[int] = mapped_column(Integer, nullable=False)
    booked_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now()
    )


class JobWindowBooking(Base):
    """Which window/allocation a job was booked into (legacy mode)."""

    __tablename__ = "job_window_booking"

    job_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    date: Mapped[str] = mapped_column(String(10), nullable=False)
    window: Mapped[str] = mapped_column(String(16), nullable=False)
    allocation_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="confirmed")
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now()
    )


class AllocationWindowMap(Base):
    """Cached morning/afternoon allocation window ids per tenant."""

    __tablename__ = "allocation_window_map"

    tenant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    morning_window_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    afternoon_window_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    raw_windows_json: Mapped[list | None] = mapped_column(JsonType, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now()
    )


class OverrunMonitorState(Base):
    """Historical overrun / notification record per allocation."""

    __tablename__ = "overrun_monitor_state"

    allocation_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    job_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    staff_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    allocation_date: Mapped[str | None] = mapped_column(String(10), nullable=True)
    overrun_detected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    delay_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    delay_sms_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    thirty_away_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    major_alert_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )


class OverrunSmsEvent(Base):
    """Claim row: existence means the notification was sent or is in flight."""

    __tablename__ = "overrun_sms_event"
    __table_args__ = (
        UniqueConstraint(
            "source_allocation_id", "target_job_id", "sms_type", name="uq_overrun_sms_event"
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    source_allocation_id: Mapped[str] = mapped_column(String(64), nullable=False)
    target_allocation_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    target_job_id: Mapped[str] = mapped_column(String(64), nullable=False)
    sms_type: Mapped[str] = mapped_column(
        String(32), nullable=False
    )  # DELAY_SMS_SENT | MAJOR_DELAY_ALERT_SENT | ETA_30MIN_SENT
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
