"""
FastAPI route: Scheduler control endpoints.

Provides endpoints to:
    POST /api/v1/scheduler/start    — start periodic delivery
    POST /api/v1/scheduler/stop     — stop after the in-flight pass
    GET  /api/v1/scheduler/status   — current status snapshot

All endpoints require the ``x-ins-auth-key`` header matching SCHEDULER_API_KEY.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends

from backend.app.api.deps import get_scheduler
from backend.app.api.schemas import StartSchedulerRequest, success
from backend.app.core.security import require_api_key
from backend.app.scheduler.scheduler import MessageScheduler

router = APIRouter(
    prefix="/api/v1/scheduler",
    tags=["scheduler"],
    dependencies=[Depends(require_api_key("SCHEDULER_API_KEY"))],
)


@router.post("/start")
async def start_scheduler(
    request: Optional[StartSchedulerRequest] = None,
    scheduler: MessageScheduler = Depends(get_scheduler),
):
    """
    Start periodic delivery. An empty body uses the configured interval and
    no simulated failures. Starting a running scheduler changes nothing.
    """
    request = request or StartSchedulerRequest()
    already_running = await scheduler.is_running()
    status = await scheduler.start(
        interval_minutes=request.interval,
        failure_probability=request.failure_rate,
    )
    message = "Scheduler already running" if already_running else "Scheduler started"
    return success(status.to_dict(), message)


@router.post("/stop")
async def stop_scheduler(scheduler: MessageScheduler = Depends(get_scheduler)):
    status = await scheduler.stop()
    return success(status.to_dict(), "Scheduler stopped")


@router.get("/status")
async def scheduler_status(scheduler: MessageScheduler = Depends(get_scheduler)):
    status = await scheduler.status()
    return success(status.to_dict())
