"""FastAPI dependencies: per-request ServiceM8 clients and the services built on them."""

from typing import AsyncIterator

from fastapi import Depends, Request

from booking_engine.db.session import async_session
from booking_engine.services.booking import BookingOrchestrator
from booking_engine.services.notifications import ServiceM8SmsSender, SmsSender
from booking_engine.services.overrun import OverrunMonitor
from booking_engine.services.servicem8 import Directory, ServiceM8Client


async def get_directory() -> AsyncIterator[Directory]:
    async with ServiceM8Client() as client:
        yield client


def get_sms_sender() -> SmsSender:
    return ServiceM8SmsSender()


def get_booking_orchestrator(
    request: Request,
    directory: Directory = Depends(get_directory),
    sms_sender: SmsSender = Depends(get_sms_sender),
) -> BookingOrchestrator:
    return BookingOrchestrator(
        session_factory=async_session,
        directory=directory,
        window_cache=request.app.state.window_cache,
        sms_sender=sms_sender,
        error_ring=request.app.state.booking_errors,
    )


def get_overrun_monitor(
    request: Request,
    directory: Directory = Depends(get_directory),
    sms_sender: SmsSender = Depends(get_sms_sender),
) -> OverrunMonitor:
    return OverrunMonitor(
        session_factory=async_session,
        directory=directory,
        sms_sender=sms_sender,
        window_cache=request.app.state.window_cache,
    )
