"""
Shared test doubles for the delivery pipeline.

    InMemoryRepository — MessageRepository semantics over a dict
    StubTransport      — scripted webhook responses / failures
    StubCache          — records put() calls, optional failure
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

import pytest

from backend.app.core.errors import ReplayNotFoundError, StoreError, TransportError
from backend.app.messages.models import (
    CacheEntry,
    Message,
    MessageStats,
    MessageStatus,
    WebhookResponse,
)

BASE_TIME = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


class InMemoryRepository:
    """Dict-backed stand-in for MessageRepository."""

    def __init__(self):
        self.messages: Dict[int, Message] = {}
        self.fail_fetch = False
        self.fail_mark_sent = False
        self.fail_mark_failed = False
        self.mark_sent_calls: List[int] = []
        self.mark_failed_calls: List[int] = []
        self._next_id = 1

    def add(self, content: str = "hello", phone_number: str = "+905551234567",
            status: MessageStatus = MessageStatus.PENDING) -> Message:
        message = Message(
            id=self._next_id,
            content=content,
            phone_number=phone_number,
            status=status,
            created_at=BASE_TIME + timedelta(seconds=self._next_id),
        )
        if status == MessageStatus.SENT:
            message.delivery_id = f"wh-{self._next_id}"
            message.sent_at = BASE_TIME
        self.messages[message.id] = message
        self._next_id += 1
        return message

    def status_of(self, message_id: int) -> MessageStatus:
        return self.messages[message_id].status

    async def fetch_pending(self, limit: int) -> List[Message]:
        if self.fail_fetch:
            raise StoreError("fetch_pending", "database is down")
        pending = sorted(
            (m for m in self.messages.values() if m.status == MessageStatus.PENDING),
            key=lambda m: (m.created_at, m.id),
        )
        return [replace(m) for m in pending[:limit]]

    async def mark_sent(self, message_id: int, delivery_id: str, sent_at: datetime) -> None:
        self.mark_sent_calls.append(message_id)
        if self.fail_mark_sent:
            raise StoreError("mark_sent", "write timeout")
        message = self.messages.get(message_id)
        if message is None or message.status != MessageStatus.PENDING:
            raise StoreError("mark_sent", f"no pending message found with id {message_id}")
        message.status = MessageStatus.SENT
        message.delivery_id = delivery_id
        message.sent_at = sent_at

    async def mark_failed(self, message_id: int) -> None:
        self.mark_failed_calls.append(message_id)
        if self.fail_mark_failed:
            raise StoreError("mark_failed", "write timeout")
        message = self.messages.get(message_id)
        if message is None or message.status != MessageStatus.PENDING:
            raise StoreError("mark_failed", f"no pending message found with id {message_id}")
        message.status = MessageStatus.FAILED

    async def replay_one(self, message_id: int) -> None:
        message = self.messages.get(message_id)
        if message is None or message.status != MessageStatus.FAILED:
            raise ReplayNotFoundError(message_id)
        message.status = MessageStatus.PENDING
        message.delivery_id = None
        message.sent_at = None

    async def replay_all(self) -> int:
        failed = [m for m in self.messages.values() if m.status == MessageStatus.FAILED]
        for message in failed:
            message.status = MessageStatus.PENDING
            message.delivery_id = None
            message.sent_at = None
        return len(failed)

    async def create(self, content: str, phone_number: str) -> Message:
        return replace(self.add(content, phone_number))

    async def list_sent(self, page: int, page_size: int) -> Tuple[List[Message], int]:
        sent = [m for m in self.messages.values() if m.status == MessageStatus.SENT]
        sent.sort(key=lambda m: (m.sent_at, m.id), reverse=True)
        start = (page - 1) * page_size
        return sent[start:start + page_size], len(sent)

    async def list_all(self, status: Optional[MessageStatus], page: int,
                       page_size: int) -> Tuple[List[Message], int]:
        rows = [m for m in self.messages.values() if status is None or m.status == status]
        rows.sort(key=lambda m: (m.created_at, m.id), reverse=True)
        start = (page - 1) * page_size
        return rows[start:start + page_size], len(rows)

    async def stats(self) -> MessageStats:
        counts = {s: 0 for s in MessageStatus}
        for message in self.messages.values():
            counts[message.status] += 1
        return MessageStats(
            pending=counts[MessageStatus.PENDING],
            sent=counts[MessageStatus.SENT],
            failed=counts[MessageStatus.FAILED],
        )

    async def count(self) -> int:
        return len(self.messages)


class StubTransport:
    """Webhook stand-in: accepts everything unless told otherwise."""

    def __init__(self):
        self.calls: List[Tuple[str, str]] = []
        self.reject_status: Optional[int] = None
        self.reject_numbers: set = set()
        self.unreachable = False
        self.error: Optional[Exception] = None

    async def send(self, phone_number: str, content: str) -> WebhookResponse:
        self.calls.append((phone_number, content))
        if self.error is not None:
            raise self.error
        if self.unreachable:
            raise TransportError("failed to send request: connection refused")
        if self.reject_status is not None or phone_number in self.reject_numbers:
            status = self.reject_status or 400
            raise TransportError(
                f"unexpected status code: {status} (expected 202)",
                status_code=status,
            )
        return WebhookResponse(message="Accepted", message_id=f"wh-{len(self.calls)}")

    async def close(self) -> None:
        pass


class StubCache:
    """Sent-message cache stand-in."""

    def __init__(self, *, fail: bool = False):
        self.entries: Dict[int, CacheEntry] = {}
        self.fail = fail

    async def put(self, message_id: int, delivery_id: str, sent_at: datetime,
                  ttl: Optional[int] = None) -> bool:
        if self.fail:
            return False
        self.entries[message_id] = CacheEntry(delivery_id=delivery_id, sent_at=sent_at)
        return True

    async def get_all(self) -> Dict[int, CacheEntry]:
        return dict(self.entries)

    async def ping(self) -> None:
        pass


@pytest.fixture
def repository() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def transport() -> StubTransport:
    return StubTransport()


@pytest.fixture
def cache() -> StubCache:
    return StubCache()
