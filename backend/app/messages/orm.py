"""
Database model for queued messages.

Table: messages
─────────────────────────────────────────────────────────────────────────────
| Column        | Type          | Description                              |
|---------------|---------------|------------------------------------------|
| id            | BIGINT PK     | Auto-increment primary key               |
| content       | TEXT          | Message body                             |
| phone_number  | VARCHAR(20)   | Destination address                      |
| status        | VARCHAR(20)   | pending / sent / failed                  |
| delivery_id   | VARCHAR(100)  | Webhook message id (sent only)           |
| sent_at       | TIMESTAMP     | Delivery time (sent only)                |
| created_at    | TIMESTAMP     | Record creation time                     |
| updated_at    | TIMESTAMP     | Last update time                         |
─────────────────────────────────────────────────────────────────────────────

Indexes on status, created_at and sent_at back the batch fetch
(oldest pending first) and the sent-message listing.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import BigInteger, DateTime, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from backend.app.core.database import Base
from backend.app.messages.models import Message, MessageStatus


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """Drivers without tz support hand back naive UTC values."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class MessageRecord(Base):
    __tablename__ = "messages"

    # BIGINT on real databases; INTEGER keeps SQLite autoincrement working
    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"),
        primary_key=True,
        autoincrement=True,
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    phone_number: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=MessageStatus.PENDING.value,
        server_default=MessageStatus.PENDING.value,
        index=True,
    )
    delivery_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    sent_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), index=True,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    def to_domain(self) -> Message:
        return Message(
            id=self.id,
            content=self.content,
            phone_number=self.phone_number,
            status=MessageStatus(self.status),
            delivery_id=self.delivery_id,
            sent_at=_aware(self.sent_at),
            created_at=_aware(self.created_at),
            updated_at=_aware(self.updated_at),
        )

    def __repr__(self) -> str:
        return f"<MessageRecord id={self.id} status={self.status}>"
