"""GET /debug/booking-errors — most recent booking failures, newest last."""

from fastapi import APIRouter, Request

router = APIRouter(prefix="/debug", tags=["debug"])


@router.get("/booking-errors")
async def booking_errors(request: Request):
    ring = request.app.state.booking_errors
    return {"count": len(ring), "errors": ring.snapshot()}
