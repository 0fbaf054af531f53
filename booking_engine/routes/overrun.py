"""
/overrun — trigger a monitor pass (normally called by a scheduler) or simulate
an overrun against a real job for end-to-end checks.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from booking_engine.routes.deps import get_overrun_monitor
from booking_engine.services.notifications import SmsSendError
from booking_engine.services.overrun import OverrunMonitor
from booking_engine.services.servicem8 import DirectoryError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/overrun", tags=["overrun"])


class OverrunRunRequest(BaseModel):
    tenant_id: str = Field(..., min_length=1)
    dispatcher_mobile: Optional[str] = None


class OverrunSimulateRequest(BaseModel):
    tenant_id: str = Field(..., min_length=1)
    job_id: str = Field(..., min_length=1)
    minutes_overdue: int = Field(30, ge=1, le=24 * 60)


def _upstream_failure(e: Exception) -> HTTPException:
    status = getattr(e, "status", None)
    logger.warning("Overrun monitor upstream failure status=%s: %s", status, e)
    return HTTPException(
        status_code=502,
        detail={"error": "upstream_failed", "upstream_status": status, "message": str(e)},
    )


@router.post("/run")
async def run_overrun_monitor(
    data: OverrunRunRequest,
    monitor: OverrunMonitor = Depends(get_overrun_monitor),
):
    try:
        return await monitor.run(data.tenant_id, dispatcher_mobile=data.dispatcher_mobile)
    except (DirectoryError, SmsSendError) as e:
        raise _upstream_failure(e) from e


@router.post("/simulate")
async def simulate_overrun(
    data: OverrunSimulateRequest,
    monitor: OverrunMonitor = Depends(get_overrun_monitor),
):
    try:
        result = await monitor.simulate_overrun_for_job(data.tenant_id, data.job_id, data.minutes_overdue)
    except (DirectoryError, SmsSendError) as e:
        raise _upstream_failure(e) from e
    if not result.get("ok"):
        raise HTTPException(status_code=404, detail=result)
    return result
