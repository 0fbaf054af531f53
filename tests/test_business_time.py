"""Tests for business-timezone helpers."""

from datetime import datetime, timezone

from booking_engine.services.business_time import (
    format_local_time,
    format_window_label,
    is_past_window,
    local_datetime,
    parse_servicem8_datetime,
)

TZ = "Australia/Brisbane"


def brisbane(hour: int, minute: int = 0) -> datetime:
    """2026-03-02 at the given Brisbane wall-clock time, as UTC."""
    return local_datetime("2026-03-02", f"{hour:02d}:{minute:02d}", TZ)


class TestIsPastWindow:
    def test_yesterday_is_past(self) -> None:
        assert is_past_window("2026-03-01", "afternoon", TZ, "14:30", brisbane(7))

    def test_future_date_is_never_past(self) -> None:
        assert not is_past_window("2026-03-03", "morning", TZ, "14:30", brisbane(23))

    def test_morning_closes_at_noon(self) -> None:
        assert not is_past_window("2026-03-02", "morning", TZ, "14:30", brisbane(11, 59))
        assert is_past_window("2026-03-02", "morning", TZ, "14:30", brisbane(12))

    def test_afternoon_closes_at_cutoff(self) -> None:
        assert not is_past_window("2026-03-02", "afternoon", TZ, "14:30", brisbane(14, 29))
        assert is_past_window("2026-03-02", "afternoon", TZ, "14:30", brisbane(14, 30))

    def test_today_is_judged_in_business_timezone(self) -> None:
        # 2026-03-01 22:00 UTC is already 2026-03-02 08:00 in Brisbane
        now = datetime(2026, 3, 1, 22, 0, tzinfo=timezone.utc)
        assert not is_past_window("2026-03-02", "morning", TZ, "14:30", now)
        assert is_past_window("2026-03-01", "afternoon", TZ, "14:30", now)


class TestLabels:
    def test_today_label(self) -> None:
        assert format_window_label("2026-03-02", "morning", TZ, brisbane(9)) == "Today morning (8–12pm)"

    def test_weekday_label(self) -> None:
        assert format_window_label("2026-03-03", "afternoon", TZ, brisbane(9)) == "Tue arvo (1–4pm)"


class TestServiceM8Datetimes:
    def test_local_timestamp(self) -> None:
        assert parse_servicem8_datetime("2026-03-02 13:40:00", TZ) == brisbane(13, 40)

    def test_iso_timestamp(self) -> None:
        parsed = parse_servicem8_datetime("2026-03-02T03:40:00Z", TZ)
        assert parsed == datetime(2026, 3, 2, 3, 40, tzinfo=timezone.utc)

    def test_unset_values(self) -> None:
        assert parse_servicem8_datetime("0000-00-00 00:00:00", TZ) is None
        assert parse_servicem8_datetime("", TZ) is None
        assert parse_servicem8_datetime(None, TZ) is None

    def test_customer_time_format(self) -> None:
        assert format_local_time(brisbane(16, 30), TZ) == "04:30 pm"
