"""
Declarative field mapping for ServiceM8 records.

ServiceM8 (and the different API versions tenants are on) is inconsistent
about key names. Each logical field lists its candidate keys in precedence
order; the first present, non-empty string value wins.
"""

from typing import Any

FIELD_MAP: dict[str, tuple[str, ...]] = {
    # staff
    "staff.id": ("uuid",),
    "staff.active": ("active",),
    "staff.work_start": ("work_start", "start_time"),
    "staff.work_end": ("work_end", "end_time"),
    # allocation windows
    "window.id": ("uuid", "window_uuid", "allocation_window_uuid"),
    "window.name": ("name", "title"),
    "window.start": ("start_time", "start", "start_time_24", "start_time_local"),
    "window.end": ("end_time", "end", "end_time_24", "end_time_local"),
    # job allocations
    "allocation.id": ("uuid",),
    "allocation.job_id": ("job_uuid",),
    "allocation.staff_id": ("staff_uuid",),
    "allocation.window_id": ("allocation_window_uuid",),
    "allocation.date": ("allocation_date",),
    "allocation.start": ("start_time",),
    "allocation.end": ("end_time",),
    "allocation.completed_at": ("completion_timestamp",),
    "allocation.active": ("active",),
    "allocation.created_id": ("uuid", "recordUuid"),
    # jobs, queues, contacts
    "job.queue_id": ("queue_uuid", "job_queue_uuid"),
    "queue.id": ("uuid",),
    "contact.type": ("type",),
    "contact.name": ("first", "name"),
    "contact.mobile": ("mobile",),
}


def pick(record: Any, field: str, default: str | None = None) -> str | None:
    """Return the first non-empty value for a logical field, as a string."""
    if not isinstance(record, dict):
        return default
    for key in FIELD_MAP[field]:
        value = record.get(key)
        if value is None:
            continue
        if isinstance(value, bool):
            return "1" if value else "0"
        if isinstance(value, (int, float)):
            value = str(value)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return default


def is_active(record: Any, field: str = "staff.active") -> bool:
    """Missing, "1" and "true" count as active."""
    value = pick(record, field, "1") or "1"
    return value.lower() in {"1", "true"}
