"""
POST /booking/book-window — reserve a technician window for a job.

Idempotent per (tenant_id, call_id): a succeeded booking is replayed verbatim,
a failed one is re-run on retry.
"""

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from booking_engine.schemas.booking import BookingRequest, failure_payload
from booking_engine.routes.deps import get_booking_orchestrator
from booking_engine.services.booking import BookingOrchestrator

router = APIRouter(prefix="/booking", tags=["booking"])


@router.post("/book-window")
async def book_window(
    request: Request,
    orchestrator: BookingOrchestrator = Depends(get_booking_orchestrator),
):
    # ── 1. Parse body ──
    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON body.")

    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Payload must be a JSON object.")

    # ── 2. Validate (before any ledger write) ──
    try:
        booking = BookingRequest.model_validate(payload)
    except ValidationError as e:
        fields = sorted({".".join(str(p) for p in err["loc"]) for err in e.errors()})
        return JSONResponse(
            status_code=400,
            content=failure_payload(
                error_code="VALIDATION_ERROR",
                message=f"Invalid booking request: {', '.join(fields)}",
                debug_ref=payload.get("request_id") if isinstance(payload.get("request_id"), str) else None,
            ),
        )

    # ── 3. Book ──
    result = await orchestrator.book_window(booking)
    if result.get("error_code") == "REQUEST_IN_PROGRESS":
        return JSONResponse(status_code=409, content=result, headers={"Retry-After": "5"})
    return result
