"""
Route dependencies — services wired onto ``app.state`` at startup.
"""

from __future__ import annotations

from fastapi import Request

from backend.app.core.errors import ConfigurationError
from backend.app.messages.delivery_service import MessageService
from backend.app.scheduler.scheduler import MessageScheduler


def get_message_service(request: Request) -> MessageService:
    service = getattr(request.app.state, "message_service", None)
    if service is None:
        raise ConfigurationError("message service not initialised")
    return service


def get_scheduler(request: Request) -> MessageScheduler:
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        raise ConfigurationError("scheduler not initialised")
    return scheduler
