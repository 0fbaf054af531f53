"""
Capacity / slot-finding engine.

Pure function: staff + existing allocations + window + job duration -> a chosen
staff member and time slot, or "window full". No I/O, no clock; identical input
always gives identical output.
"""

import math
import re
from dataclasses import dataclass, field
from typing import Literal

SchedulingWindow = Literal["morning", "afternoon"]

WINDOW_BOUNDS: dict[str, tuple[int, int]] = {
    "morning": (8 * 60, 12 * 60),
    "afternoon": (12 * 60, 17 * 60),
}

DEFAULT_WORK_START = 8 * 60
DEFAULT_WORK_END = 17 * 60

_CLOCK_RE = re.compile(r"(\d{1,2}):(\d{2})")


@dataclass(frozen=True)
class StaffInput:
    id: str
    work_start: str | None = None
    work_end: str | None = None


@dataclass(frozen=True)
class ExistingAllocation:
    staff_id: str
    window: str | None = None
    start_time: str | None = None
    end_time: str | None = None
    effective_minutes: int | None = None


@dataclass(frozen=True)
class StaffWindowUsage:
    staff_id: str
    jobs_count: int
    used_minutes: int
    eligible: bool
    next_start_time: str | None = None
    next_end_time: str | None = None


@dataclass(frozen=True)
class CapacityDecision:
    effective_minutes: int
    window_full: bool
    selected_staff_id: str | None = None
    start_time: str | None = None
    end_time: str | None = None
    staff_usage: tuple[StaffWindowUsage, ...] = field(default_factory=tuple)


def parse_clock(value: str | None, fallback: int | None = None) -> int | None:
    """'HH:MM' (or any string containing it) -> minutes since midnight."""
    if not value:
        return fallback
    match = _CLOCK_RE.search(str(value))
    if not match:
        return fallback
    return int(match.group(1)) * 60 + int(match.group(2))


def to_clock(minutes: int) -> str:
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def compute_effective_minutes(job_duration_minutes: int, buffer_ratio: float) -> int:
    return job_duration_minutes + math.ceil(job_duration_minutes * buffer_ratio)


def _normalize_allocations(
    allocations: list[ExistingAllocation], window: str, default_effective: int
) -> list[tuple[str, int, int]]:
    window_start = WINDOW_BOUNDS[window][0]
    spans = []
    for allocation in allocations:
        if allocation.window != window:
            continue
        start = parse_clock(allocation.start_time, window_start)
        if allocation.end_time is not None:
            end = parse_clock(allocation.end_time, start + default_effective)
        else:
            end = start + (allocation.effective_minutes or default_effective)
        spans.append((allocation.staff_id, start, end))
    # stable on equal starts, so input order breaks ties
    return sorted(spans, key=lambda span: span[1])


def find_earliest_slot(
    existing: list[tuple[int, int]],
    window_start: int,
    window_end: int,
    staff_start: int,
    staff_end: int,
    required_minutes: int,
) -> tuple[int, int] | None:
    """Earliest gap of `required_minutes` inside window ∩ work hours; existing must be sorted."""
    start_bound = max(window_start, staff_start)
    end_bound = min(window_end, staff_end)
    if end_bound - start_bound < required_minutes:
        return None

    cursor = start_bound
    for alloc_start, alloc_end in existing:
        block_start = max(start_bound, alloc_start)
        block_end = min(end_bound, alloc_end)
        if block_end <= block_start:
            continue
        if block_start - cursor >= required_minutes:
            return cursor, cursor + required_minutes
        cursor = max(cursor, block_end)

    if end_bound - cursor >= required_minutes:
        return cursor, cursor + required_minutes
    return None


def run_capacity_engine(
    staff: list[StaffInput],
    allocations: list[ExistingAllocation],
    window: SchedulingWindow,
    job_duration_minutes: int,
    max_jobs_per_window: int = 2,
    buffer_ratio: float = 0.2,
) -> CapacityDecision:
    if window not in WINDOW_BOUNDS:
        raise ValueError(f"Unknown scheduling window: {window!r}")

    effective = compute_effective_minutes(job_duration_minutes, buffer_ratio)
    window_start, window_end = WINDOW_BOUNDS[window]
    window_length = window_end - window_start
    normalized = _normalize_allocations(allocations, window, effective)

    usage: list[StaffWindowUsage] = []
    for member in staff:
        staff_start = parse_clock(member.work_start, DEFAULT_WORK_START)
        staff_end = parse_clock(member.work_end, DEFAULT_WORK_END)
        existing = [(start, end) for staff_id, start, end in normalized if staff_id == member.id]
        used = sum(
            max(0, min(window_end, end) - max(window_start, start)) for start, end in existing
        )
        slot = find_earliest_slot(
            existing, window_start, window_end, staff_start, staff_end, effective
        )
        eligible = (
            len(existing) < max_jobs_per_window
            and used + effective <= window_length
            and slot is not None
        )
        usage.append(
            StaffWindowUsage(
                staff_id=member.id,
                jobs_count=len(existing),
                used_minutes=used,
                eligible=eligible,
                next_start_time=to_clock(slot[0]) if slot else None,
                next_end_time=to_clock(slot[1]) if slot else None,
            )
        )

    candidates = sorted(
        (u for u in usage if u.eligible and u.next_start_time and u.next_end_time),
        key=lambda u: (u.used_minutes, u.next_start_time),
    )
    if not candidates:
        return CapacityDecision(
            effective_minutes=effective, window_full=True, staff_usage=tuple(usage)
        )

    selected = candidates[0]
    return CapacityDecision(
        effective_minutes=effective,
        window_full=False,
        selected_staff_id=selected.staff_id,
        start_time=selected.next_start_time,
        end_time=selected.next_end_time,
        staff_usage=tuple(usage),
    )
