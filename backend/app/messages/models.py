"""
models.py — Shared data structures for message delivery.

Defines:
    • MessageStatus   — delivery state machine
    • Message         — a queued message and its delivery metadata
    • DeliveryOutcome — result of one delivery attempt
    • WebhookResponse — acknowledgement returned by the delivery webhook
    • CacheEntry      — sent-message metadata kept in Redis

═══════════════════════════════════════════════════════════════════════════
MESSAGE LIFECYCLE
═══════════════════════════════════════════════════════════════════════════

    ┌─────────┐  delivered   ┌──────┐
    │ PENDING │─────────────▶│ SENT │   (terminal)
    └────┬────┘              └──────┘
         │ failed / forced failure
         ▼
    ┌─────────┐
    │ FAILED  │──── replay ───▶ PENDING
    └─────────┘

delivery_id and sent_at are set exactly when status is SENT.
A replay clears both before the message re-enters the queue.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class MessageStatus(str, Enum):
    """Delivery state of a message."""
    PENDING = "pending"
    SENT    = "sent"
    FAILED  = "failed"


@dataclass
class Message:
    """A message row as seen by the delivery pipeline."""
    id: int
    content: str
    phone_number: str
    status: MessageStatus = MessageStatus.PENDING
    delivery_id: Optional[str] = None
    sent_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "id": self.id,
            "content": self.content,
            "phoneNumber": self.phone_number,
            "status": self.status.value,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }
        if self.delivery_id is not None:
            d["messageId"] = self.delivery_id
        if self.sent_at is not None:
            d["sentAt"] = _iso(self.sent_at)
        return d


@dataclass
class DeliveryOutcome:
    """
    Result of delivering one message.

    Ephemeral: consumed by the scheduler right after the batch and never
    persisted. ``success`` is True only once the store confirmed the
    transition to SENT.
    """
    message_id: int
    success: bool = False
    delivery_id: Optional[str] = None
    error: Optional[str] = None
    attempted_at: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class WebhookResponse:
    """Body of a 202 response from the delivery webhook."""
    message: str
    message_id: str

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "WebhookResponse":
        return cls(
            message=str(data.get("message") or ""),
            message_id=str(data.get("messageId") or ""),
        )


@dataclass(frozen=True)
class CacheEntry:
    """Sent-message metadata stored under ``sent_message:<id>``."""
    delivery_id: str
    sent_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "messageId": self.delivery_id,
            "sentAt": self.sent_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CacheEntry":
        return cls(
            delivery_id=data["messageId"],
            sent_at=datetime.fromisoformat(data["sentAt"]),
        )


@dataclass(frozen=True)
class MessageStats:
    """Aggregate message counts by status."""
    pending: int = 0
    sent: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.sent + self.failed

    def to_dict(self) -> Dict[str, int]:
        return {
            "pending": self.pending,
            "sent": self.sent,
            "failed": self.failed,
            "total": self.total,
        }
