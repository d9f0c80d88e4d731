"""
FastAPI route: Message management endpoints.

Provides endpoints to:
    GET  /api/v1/messages               — paginated list, optional status filter
    POST /api/v1/messages               — queue a new message
    GET  /api/v1/messages/sent          — paginated sent messages
    GET  /api/v1/messages/stats         — counts per status
    GET  /api/v1/messages/cached        — sent-message cache contents
    POST /api/v1/messages/replay        — reset every failed message to pending
    POST /api/v1/messages/{id}/replay   — reset one failed message to pending

All endpoints require the ``x-ins-auth-key`` header matching MESSAGES_API_KEY.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Path, Query, status

from backend.app.api.deps import get_message_service
from backend.app.api.schemas import CreateMessageRequest, paginated, success
from backend.app.core.errors import ValidationError
from backend.app.core.security import require_api_key
from backend.app.messages.delivery_service import MessageService
from backend.app.messages.models import MessageStatus

router = APIRouter(
    prefix="/api/v1/messages",
    tags=["messages"],
    dependencies=[Depends(require_api_key("MESSAGES_API_KEY"))],
)

_STATUSES = ", ".join(s.value for s in MessageStatus)


def _parse_status(value: Optional[str]) -> Optional[MessageStatus]:
    if value is None or value == "":
        return None
    try:
        return MessageStatus(value.lower())
    except ValueError:
        raise ValidationError(
            f"invalid status '{value}', expected one of: {_STATUSES}",
            field="status",
        ) from None


@router.get("")
async def list_messages(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100, alias="pageSize"),
    status_filter: Optional[str] = Query(None, alias="status", examples=["failed"]),
    service: MessageService = Depends(get_message_service),
):
    """All messages, newest first."""
    messages, total = await service.get_all_messages(_parse_status(status_filter), page, page_size)
    return paginated([m.to_dict() for m in messages], page, page_size, total)


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_message(
    request: CreateMessageRequest,
    service: MessageService = Depends(get_message_service),
):
    message = await service.create_message(request.content, request.phone_number)
    return success(message.to_dict(), "Message created")


@router.get("/sent")
async def list_sent_messages(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100, alias="pageSize"),
    service: MessageService = Depends(get_message_service),
):
    """Sent messages, most recently delivered first."""
    messages, total = await service.get_sent_messages(page, page_size)
    return paginated([m.to_dict() for m in messages], page, page_size, total)


@router.get("/stats")
async def message_stats(service: MessageService = Depends(get_message_service)):
    stats = await service.get_stats()
    return success(stats.to_dict())


@router.get("/cached")
async def cached_messages(service: MessageService = Depends(get_message_service)):
    """Delivery metadata currently held in Redis, keyed by message id."""
    entries = await service.get_cached_messages()
    return success({
        "count": len(entries),
        "messages": {str(mid): entry.to_dict() for mid, entry in sorted(entries.items())},
    })


@router.post("/replay")
async def replay_all_failed(service: MessageService = Depends(get_message_service)):
    replayed = await service.replay_all_failed_messages()
    return success({"replayed": replayed}, f"{replayed} failed messages queued for replay")


@router.post("/{message_id}/replay")
async def replay_failed(
    message_id: int = Path(..., ge=1),
    service: MessageService = Depends(get_message_service),
):
    await service.replay_failed_message(message_id)
    return success({"replayed": 1, "id": message_id}, f"Message {message_id} queued for replay")
