"""
Directory adapter: ServiceM8 records -> capacity engine inputs.

Given a date and a semantic window (morning/afternoon), returns active staff
and that day's allocations labelled the way the capacity engine expects, and
resolves semantic windows to ServiceM8 allocation window ids.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

from booking_engine.services.capacity_engine import ExistingAllocation, StaffInput, parse_clock
from booking_engine.services.field_map import is_active, pick
from booking_engine.services.servicem8 import Directory, DirectoryError, as_record_list
from booking_engine.services.window_cache import WindowMap, WindowMapCache

logger = logging.getLogger(__name__)

_NAME_TOKEN_RE = re.compile(r"[a-z]+")

MORNING_START_BAND = (7 * 60, 13 * 60)
MORNING_END_BAND = (11 * 60, 13 * 60)
AFTERNOON_START_BAND = (12 * 60, 15 * 60)
AFTERNOON_END_BAND = (15 * 60, 18 * 60)


def _in_band(value: int | None, band: tuple[int, int]) -> bool:
    return value is not None and band[0] <= value <= band[1]


def classify_allocation_window(record: dict[str, Any]) -> str | None:
    """Return "morning", "afternoon" or None for a ServiceM8 allocation window."""
    name = (pick(record, "window.name") or "").lower()
    tokens = set(_NAME_TOKEN_RE.findall(name))
    by_name_morning = "morning" in name or "am" in tokens
    by_name_afternoon = "afternoon" in name or "arvo" in name or "pm" in tokens
    if by_name_morning != by_name_afternoon:
        return "morning" if by_name_morning else "afternoon"

    start = parse_clock(pick(record, "window.start"))
    end = parse_clock(pick(record, "window.end"))
    if _in_band(start, MORNING_START_BAND) and _in_band(end, MORNING_END_BAND):
        return "morning"
    if _in_band(start, AFTERNOON_START_BAND) and _in_band(end, AFTERNOON_END_BAND):
        return "afternoon"
    return None


def build_window_map(windows: list[dict[str, Any]]) -> WindowMap:
    morning_id = None
    afternoon_id = None
    for record in windows:
        window_id = pick(record, "window.id")
        if not window_id:
            continue
        label = classify_allocation_window(record)
        if label == "morning" and morning_id is None:
            morning_id = window_id
        elif label == "afternoon" and afternoon_id is None:
            afternoon_id = window_id
    return WindowMap(morning_window_id=morning_id, afternoon_window_id=afternoon_id)


def map_staff(records: list[dict[str, Any]]) -> list[StaffInput]:
    staff = []
    for record in records:
        staff_id = pick(record, "staff.id")
        if not staff_id or not is_active(record):
            continue
        staff.append(
            StaffInput(
                id=staff_id,
                work_start=pick(record, "staff.work_start"),
                work_end=pick(record, "staff.work_end"),
            )
        )
    return staff


def window_from_start_time(start_time: str | None) -> str | None:
    minutes = parse_clock(start_time)
    if minutes is None:
        return None
    return "morning" if minutes < 12 * 60 else "afternoon"


def map_allocations(
    records: list[dict[str, Any]], date: str, window_map: WindowMap | None
) -> list[ExistingAllocation]:
    window_map = window_map or WindowMap()
    allocations = []
    for record in records:
        staff_id = pick(record, "allocation.staff_id")
        if not staff_id:
            continue
        if not (pick(record, "allocation.date") or "").startswith(date):
            continue
        window_id = pick(record, "allocation.window_id")
        start_time = pick(record, "allocation.start")
        if window_id and window_id == window_map.morning_window_id:
            label = "morning"
        elif window_id and window_id == window_map.afternoon_window_id:
            label = "afternoon"
        else:
            label = window_from_start_time(start_time)
        allocations.append(
            ExistingAllocation(
                staff_id=staff_id,
                window=label,
                start_time=start_time,
                end_time=pick(record, "allocation.end"),
            )
        )
    return allocations


@dataclass
class SchedulingInputs:
    staff: list[StaffInput]
    allocations: list[ExistingAllocation]
    window_map: WindowMap


class DirectoryAdapter:
    """Tenant-scoped translation layer over a Directory."""

    def __init__(self, directory: Directory, cache: WindowMapCache, tenant_id: str):
        self.directory = directory
        self.cache = cache
        self.tenant_id = tenant_id

    async def fetch_staff_records(self) -> list[dict[str, Any]]:
        res = await self.directory.get("/staff.json")
        return as_record_list(res.data)

    async def fetch_active_staff(self) -> list[StaffInput]:
        return map_staff(await self.fetch_staff_records())

    async def fetch_allocations_for_date(self, date: str) -> list[dict[str, Any]]:
        """Try each query encoding ServiceM8 has accepted; first non-error response wins."""
        candidates = [
            f"/joballocation.json?allocation_date={quote(date)}",
            f"/joballocation.json?allocation_date={quote(date + ' 00:00:00')}",
            "/joballocation.json",
        ]
        for path in candidates:
            try:
                res = await self.directory.get(path)
            except DirectoryError as e:
                logger.debug("Allocation fetch variant failed path=%s status=%s", path, e.status)
                continue
            return as_record_list(res.data)
        return []

    async def refresh_window_map(self) -> WindowMap:
        res = await self.directory.get("/allocationwindow.json")
        windows = as_record_list(res.data)
        window_map = build_window_map(windows)
        await self.cache.put(self.tenant_id, window_map, windows)
        logger.info(
            "Allocation windows refreshed tenant_id=%s morning=%s afternoon=%s",
            self.tenant_id,
            window_map.morning_window_id,
            window_map.afternoon_window_id,
        )
        return window_map

    async def resolve_window_id(self, window: str, preferred: str | None = None) -> str | None:
        """Caller-preferred id, else cached id, else a refresh from the Directory."""
        if preferred:
            return preferred
        cached = await self.cache.get(self.tenant_id)
        if cached and cached.for_window(window):
            return cached.for_window(window)
        refreshed = await self.refresh_window_map()
        return refreshed.for_window(window)

    async def load_scheduling_inputs(self, date: str) -> SchedulingInputs:
        staff = await self.fetch_active_staff()
        if not staff:
            return SchedulingInputs(staff=[], allocations=[], window_map=WindowMap())
        window_map = await self.refresh_window_map()
        raw = await self.fetch_allocations_for_date(date)
        return SchedulingInputs(
            staff=staff,
            allocations=map_allocations(raw, date, window_map),
            window_map=window_map,
        )
