"""Business-timezone date/time helpers."""

from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from booking_engine.services.capacity_engine import parse_clock

WINDOW_LABELS = {
    "morning": "morning (8–12pm)",
    "afternoon": "arvo (1–4pm)",
}


def local_now(tz_name: str, now: datetime) -> datetime:
    return now.astimezone(ZoneInfo(tz_name))


def local_today(tz_name: str, now: datetime) -> str:
    return local_now(tz_name, now).date().isoformat()


def is_past_window(date_str: str, window: str, tz_name: str, afternoon_cutoff: str, now: datetime) -> bool:
    """
    Past if the date is before today (business tz); for today, morning is past
    from 12:00 and afternoon from the tenant's cutoff. Future dates never are.
    """
    local = local_now(tz_name, now)
    today = local.date().isoformat()
    if date_str < today:
        return True
    if date_str != today:
        return False
    if window == "morning":
        return local.hour >= 12
    cutoff = parse_clock(afternoon_cutoff, 14 * 60 + 30)
    return local.hour * 60 + local.minute >= cutoff


def format_window_label(date_str: str, window: str, tz_name: str, now: datetime) -> str:
    """'Today morning (8–12pm)' or 'Tue arvo (1–4pm)'."""
    window_text = WINDOW_LABELS.get(window, window)
    if date_str == local_today(tz_name, now):
        return f"Today {window_text}"
    weekday = date.fromisoformat(date_str).strftime("%a")
    return f"{weekday} {window_text}"


def local_datetime(date_str: str, clock: str, tz_name: str) -> datetime:
    """'YYYY-MM-DD' + 'HH:MM' in the business tz -> aware UTC datetime."""
    minutes = parse_clock(clock, 0)
    naive = datetime.combine(date.fromisoformat(date_str[:10]), time()) + timedelta(minutes=minutes)
    return naive.replace(tzinfo=ZoneInfo(tz_name)).astimezone(timezone.utc)


def parse_servicem8_datetime(raw: str | None, tz_name: str) -> datetime | None:
    """
    ServiceM8 timestamps: 'YYYY-MM-DD HH:MM:SS' local to the business, ISO
    strings with a 'T', or zero/empty meaning "not set".
    """
    if not raw:
        return None
    value = str(raw).strip()
    if not value or value.startswith("0000-00-00"):
        return None
    try:
        if "T" in value:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=ZoneInfo(tz_name))
            return parsed.astimezone(timezone.utc)
        date_part, _, time_part = value.partition(" ")
        return local_datetime(date_part, (time_part or "00:00")[:5], tz_name)
    except ValueError:
        return None


def format_local_time(value: datetime, tz_name: str) -> str:
    """12-hour clock for customer messages, e.g. '02:15 pm'."""
    return value.astimezone(ZoneInfo(tz_name)).strftime("%I:%M %p").lower()


def format_local_clock(value: datetime, tz_name: str) -> str:
    return value.astimezone(ZoneInfo(tz_name)).strftime("%H:%M")
