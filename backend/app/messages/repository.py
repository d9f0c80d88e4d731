"""
repository.py — Message store backed by async SQLAlchemy.

Every status transition is a single conditional UPDATE so concurrent
callers (the scheduler loop and replay requests) cannot race each other:

    mark_sent     pending → sent     (sets delivery_id + sent_at)
    mark_failed   pending → failed
    replay_one    failed  → pending  (clears delivery_id + sent_at)
    replay_all    failed  → pending  (bulk)

Driver errors surface as StoreError; callers decide whether to log or
propagate.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.core.errors import ReplayNotFoundError, StoreError
from backend.app.messages.models import Message, MessageStats, MessageStatus
from backend.app.messages.orm import MessageRecord

logger = logging.getLogger(__name__)


class MessageRepository:
    """
    Data access for the ``messages`` table.

    Usage:
        repo = MessageRepository(get_session_factory())
        batch = await repo.fetch_pending(limit=2)
        await repo.mark_sent(batch[0].id, "wh-123", datetime.now(timezone.utc))
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    # ── Delivery pipeline ──

    async def fetch_pending(self, limit: int) -> List[Message]:
        """Oldest-first batch of pending messages."""
        stmt = (
            select(MessageRecord)
            .where(MessageRecord.status == MessageStatus.PENDING.value)
            .order_by(MessageRecord.created_at.asc(), MessageRecord.id.asc())
            .limit(limit)
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                return [row.to_domain() for row in result.scalars().all()]
        except SQLAlchemyError as exc:
            raise StoreError("fetch_pending", str(exc)) from exc

    async def mark_sent(self, message_id: int, delivery_id: str, sent_at: datetime) -> None:
        """Transition a pending message to sent; raises if nothing changed."""
        rows = await self._transition(
            "mark_sent",
            message_id,
            expected=MessageStatus.PENDING,
            status=MessageStatus.SENT.value,
            delivery_id=delivery_id,
            sent_at=sent_at,
        )
        if rows == 0:
            raise StoreError(
                "mark_sent",
                f"no pending message found with id {message_id}",
                message_id=message_id,
            )

    async def mark_failed(self, message_id: int) -> None:
        """Transition a pending message to failed."""
        rows = await self._transition(
            "mark_failed",
            message_id,
            expected=MessageStatus.PENDING,
            status=MessageStatus.FAILED.value,
        )
        if rows == 0:
            raise StoreError(
                "mark_failed",
                f"no pending message found with id {message_id}",
                message_id=message_id,
            )

    # ── Replay ──

    async def replay_one(self, message_id: int) -> None:
        """Reset one failed message to pending; ReplayNotFoundError otherwise."""
        rows = await self._transition(
            "replay_one",
            message_id,
            expected=MessageStatus.FAILED,
            status=MessageStatus.PENDING.value,
            delivery_id=None,
            sent_at=None,
        )
        if rows == 0:
            raise ReplayNotFoundError(message_id)
        logger.info("Replayed failed message %d", message_id, extra={"message_id": message_id})

    async def replay_all(self) -> int:
        """Reset every failed message to pending; returns the affected count."""
        stmt = (
            update(MessageRecord)
            .where(MessageRecord.status == MessageStatus.FAILED.value)
            .values(
                status=MessageStatus.PENDING.value,
                delivery_id=None,
                sent_at=None,
                updated_at=func.now(),
            )
            .execution_options(synchronize_session=False)
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                await session.commit()
        except SQLAlchemyError as exc:
            raise StoreError("replay_all", str(exc)) from exc

        count = result.rowcount or 0
        logger.info("Replayed %d failed messages", count)
        return count

    # ── Management ──

    async def create(self, content: str, phone_number: str) -> Message:
        record = MessageRecord(
            content=content,
            phone_number=phone_number,
            status=MessageStatus.PENDING.value,
        )
        try:
            async with self._session_factory() as session:
                session.add(record)
                await session.commit()
                await session.refresh(record)
                return record.to_domain()
        except SQLAlchemyError as exc:
            raise StoreError("create", str(exc)) from exc

    async def get_by_id(self, message_id: int) -> Optional[Message]:
        try:
            async with self._session_factory() as session:
                record = await session.get(MessageRecord, message_id)
                return record.to_domain() if record else None
        except SQLAlchemyError as exc:
            raise StoreError("get_by_id", str(exc)) from exc

    async def list_sent(self, page: int, page_size: int) -> Tuple[List[Message], int]:
        """Sent messages, most recently delivered first."""
        return await self._paginate(
            "list_sent",
            MessageStatus.SENT,
            page,
            page_size,
            order_by=(MessageRecord.sent_at.desc(), MessageRecord.id.desc()),
        )

    async def list_all(
        self,
        status: Optional[MessageStatus],
        page: int,
        page_size: int,
    ) -> Tuple[List[Message], int]:
        """All messages (optionally filtered by status), newest first."""
        return await self._paginate(
            "list_all",
            status,
            page,
            page_size,
            order_by=(MessageRecord.created_at.desc(), MessageRecord.id.desc()),
        )

    async def stats(self) -> MessageStats:
        stmt = select(MessageRecord.status, func.count()).group_by(MessageRecord.status)
        try:
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).all()
        except SQLAlchemyError as exc:
            raise StoreError("stats", str(exc)) from exc

        counts = {status: count for status, count in rows}
        return MessageStats(
            pending=counts.get(MessageStatus.PENDING.value, 0),
            sent=counts.get(MessageStatus.SENT.value, 0),
            failed=counts.get(MessageStatus.FAILED.value, 0),
        )

    async def count(self) -> int:
        try:
            async with self._session_factory() as session:
                return (await session.execute(select(func.count(MessageRecord.id)))).scalar_one()
        except SQLAlchemyError as exc:
            raise StoreError("count", str(exc)) from exc

    async def ping(self) -> None:
        """Round-trip to the database; raises StoreError when it is unreachable."""
        try:
            async with self._session_factory() as session:
                await session.execute(select(1))
        except SQLAlchemyError as exc:
            raise StoreError("ping", str(exc)) from exc

    # ── Internals ──

    async def _transition(
        self,
        operation: str,
        message_id: int,
        *,
        expected: MessageStatus,
        **values,
    ) -> int:
        """Conditional single-row UPDATE; returns rows affected."""
        stmt = (
            update(MessageRecord)
            .where(
                MessageRecord.id == message_id,
                MessageRecord.status == expected.value,
            )
            .values(updated_at=func.now(), **values)
            .execution_options(synchronize_session=False)
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                await session.commit()
        except SQLAlchemyError as exc:
            raise StoreError(operation, str(exc), message_id=message_id) from exc
        return result.rowcount or 0

    async def _paginate(
        self,
        operation: str,
        status: Optional[MessageStatus],
        page: int,
        page_size: int,
        *,
        order_by,
    ) -> Tuple[List[Message], int]:
        offset = (page - 1) * page_size
        count_stmt = select(func.count(MessageRecord.id))
        page_stmt = select(MessageRecord).order_by(*order_by).limit(page_size).offset(offset)
        if status is not None:
            count_stmt = count_stmt.where(MessageRecord.status == status.value)
            page_stmt = page_stmt.where(MessageRecord.status == status.value)

        try:
            async with self._session_factory() as session:
                total = (await session.execute(count_stmt)).scalar_one()
                rows = (await session.execute(page_stmt)).scalars().all()
        except SQLAlchemyError as exc:
            raise StoreError(operation, str(exc)) from exc

        return [row.to_domain() for row in rows], total
