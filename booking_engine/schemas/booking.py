"""
Pydantic schemas for /booking/book-window.

Responses are plain dicts shaped by BookingSuccess / BookingFailure so that a
replayed result is returned byte-for-byte as first stored.
"""

import re
from datetime import date as date_type
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

ISO_DATE = re.compile(r"\d{4}-\d{2}-\d{2}", re.ASCII)

WINDOW_ALIASES = {
    "morning": "morning",
    "am": "morning",
    "afternoon": "afternoon",
    "arvo": "afternoon",
    "pm": "afternoon",
}


class BookingSms(BaseModel):
    to_mobile: str = Field(..., min_length=1)
    message: str = Field(..., min_length=1)
    job_id: str | None = None  # defaults to the booked job


class BookingRequest(BaseModel):
    """A request to reserve a technician window for a job."""

    request_id: str = Field(..., min_length=1)
    tenant_id: str = Field(..., min_length=1)
    call_id: str = Field(..., min_length=1)
    job_id: str = Field(..., min_length=1)
    date: str = Field(..., examples=["2026-02-18"])
    window: Literal["morning", "afternoon"]
    allocation_window_id: str | None = None
    sms: BookingSms | None = None
    record_booking: bool = True

    @field_validator("date")
    @classmethod
    def _iso_date(cls, value: str) -> str:
        value = value.strip()
        if not ISO_DATE.fullmatch(value):
            raise ValueError("date must be YYYY-MM-DD")
        return date_type.fromisoformat(value).isoformat()  # rejects 2026-02-30

    @field_validator("window", mode="before")
    @classmethod
    def _window_alias(cls, value: Any) -> Any:
        if isinstance(value, str):
            return WINDOW_ALIASES.get(value.strip().lower(), value)
        return value


class BookingSuccess(BaseModel):
    ok: Literal[True] = True
    allocation_id: str
    date: str
    window: str
    label: str
    sms_sent: bool | None = None
    sms_error: str | None = None


class BookingFailure(BaseModel):
    ok: Literal[False] = False
    error_code: str
    message: str
    debug_ref: str | None = None
    external_status: int | None = None
    external_body: Any = None


def success_payload(**fields: Any) -> dict[str, Any]:
    return BookingSuccess(**fields).model_dump(exclude_none=True)


def failure_payload(**fields: Any) -> dict[str, Any]:
    return BookingFailure(**fields).model_dump(exclude_none=True)
