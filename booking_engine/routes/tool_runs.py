"""
/tool-runs — read-only view of the idempotency ledger.

Every booking call leaves one row per (tenant_id, endpoint, call_id) with its
current status (STARTED | SUCCEEDED | FAILED) and, once succeeded, the exact
result that is replayed to retries.
"""

from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel

from booking_engine.db.repository import count_tool_runs, get_tool_run_by_id, list_tool_runs
from booking_engine.db.session import async_session
from booking_engine.services.idempotency import parse_result

router = APIRouter(prefix="/tool-runs", tags=["tool-runs"])


# ============================================================
# Pydantic schemas
# ============================================================

class ToolRunResponse(BaseModel):
    id: str
    tenant_id: str
    endpoint: str
    call_id: str
    status: str
    error_code: Optional[str]
    result_json: Optional[Any]
    created_at: str
    updated_at: str

    @classmethod
    def from_run(cls, run) -> "ToolRunResponse":
        return cls(
            id=run.id,
            tenant_id=run.tenant_id,
            endpoint=run.endpoint,
            call_id=run.call_id,
            status=run.status,
            error_code=run.error_code,
            result_json=parse_result(run.result_json),
            created_at=run.created_at.isoformat() if run.created_at else "",
            updated_at=run.updated_at.isoformat() if run.updated_at else "",
        )


class ToolRunListResponse(BaseModel):
    runs: list[ToolRunResponse]
    total: int
    limit: int
    offset: int


# ============================================================
# LIST RUNS  GET /tool-runs
# ============================================================

@router.get("", response_model=ToolRunListResponse)
async def list_tool_runs_api(
    tenant_id: Optional[str] = Query(None),
    status: Optional[str] = Query(None, description="Filter: STARTED | SUCCEEDED | FAILED"),
    endpoint: Optional[str] = Query(None, examples=["book-window"]),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    """Return a paginated, optionally filtered list of ledger rows, newest first."""
    async with async_session() as session:
        runs = await list_tool_runs(
            session, tenant_id=tenant_id, status=status, endpoint=endpoint, limit=limit, offset=offset
        )
        total = await count_tool_runs(session, tenant_id=tenant_id, status=status, endpoint=endpoint)
        await session.commit()

    return ToolRunListResponse(
        runs=[ToolRunResponse.from_run(r) for r in runs],
        total=total,
        limit=limit,
        offset=offset,
    )


# ============================================================
# GET SINGLE RUN  GET /tool-runs/{run_id}
# ============================================================

@router.get("/{run_id}", response_model=ToolRunResponse)
async def get_tool_run_api(run_id: str):
    async with async_session() as session:
        run = await get_tool_run_by_id(session, run_id)
        if not run:
            raise HTTPException(status_code=404, detail="Tool run not found.")
        await session.commit()
    return ToolRunResponse.from_run(run)
