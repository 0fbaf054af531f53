"""
Field-Service Booking Engine — FastAPI Service

Idempotent window booking against ServiceM8, with capacity checks, allocation
verification and compensation, plus an overrun monitor for same-day delays.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from booking_engine.config import settings
from booking_engine.db.session import async_session, init_db
from booking_engine.routes import booking, debug, overrun, tool_runs
from booking_engine.services.ops_events import DebugRing
from booking_engine.services.window_cache import build_window_map_cache

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize DB tables on startup (idempotent via CREATE TABLE IF NOT EXISTS)."""
    await init_db()
    yield


app = FastAPI(
    title="Field-Service Booking Engine",
    description="Idempotent technician window booking and overrun notifications.",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Process-wide state shared by every request
app.state.booking_errors = DebugRing(settings.debug_ring_size)
app.state.window_cache = build_window_map_cache(async_session)

app.include_router(booking.router)
app.include_router(tool_runs.router)
app.include_router(overrun.router)
app.include_router(debug.router)


@app.get("/health", tags=["health"])
async def health():
    """Health check for load balancers and container orchestration."""
    return {"status": "ok"}
