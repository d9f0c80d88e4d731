"""
delivery_service.py — Message delivery engine and service facade.

Delivery of one message:

    ┌─────────────────────┐
    │  1. Failure         │  draw u ~ U[0, 1); u < failure_probability
    │     injection       │  → forced failure, webhook never called
    └─────────┬───────────┘
              ▼
    ┌─────────────────────┐
    │  2. Content         │  over-long content truncated to max length,
    │     policy          │  ending in "..." when there is room for it
    └─────────┬───────────┘
              ▼
    ┌─────────────────────┐
    │  3. Webhook call    │  only 202 Accepted counts as delivered
    └─────────┬───────────┘
              ▼
    ┌─────────────────────┐
    │  4. Store update    │  failure → mark_failed (errors logged)
    │                     │  success → mark_sent (error downgrades outcome)
    └─────────┬───────────┘
              ▼
    ┌─────────────────────┐
    │  5. Cache write     │  best-effort, only after the store confirmed
    └─────────────────────┘

Store and transport errors stop here: the caller only ever sees
DeliveryOutcome records.
"""

from __future__ import annotations

import logging
import random
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from backend.app.core.cache import SentMessageCache
from backend.app.core.config import settings
from backend.app.core.errors import (
    CacheNotConfiguredError,
    StoreError,
    TransportError,
    ValidationError,
)
from backend.app.messages.models import (
    CacheEntry,
    DeliveryOutcome,
    Message,
    MessageStats,
    MessageStatus,
)
from backend.app.messages.repository import MessageRepository
from backend.app.messages.transport import WebhookTransport

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "..."
FORCED_FAILURE_REASON = "simulated failure for testing"


def truncate_content(content: str, max_length: int) -> str:
    """
    Fit content into ``max_length`` characters.

    Longer content keeps its first ``max_length - 3`` characters followed by
    "...". When ``max_length`` leaves no room for the marker the content is
    cut to exactly ``max_length`` characters.
    """
    if len(content) <= max_length:
        return content
    if max_length > len(TRUNCATION_MARKER):
        return content[:max_length - len(TRUNCATION_MARKER)] + TRUNCATION_MARKER
    return content[:max(max_length, 0)]


class MessageService:
    """
    Delivers pending messages and exposes message management operations.

    Usage:
        service = MessageService(repository, transport, cache)
        outcomes = await service.process_pending(failure_probability=0.0)
    """

    def __init__(
        self,
        repository: MessageRepository,
        transport: WebhookTransport,
        cache: Optional[SentMessageCache] = None,
        *,
        batch_size: Optional[int] = None,
        max_content_length: Optional[int] = None,
        rng: Optional[random.Random] = None,
    ):
        self.repository = repository
        self.transport = transport
        self.cache = cache
        self.batch_size = batch_size or settings.MESSAGE_BATCH_SIZE
        self.max_content_length = (
            max_content_length if max_content_length is not None
            else settings.MESSAGE_MAX_CONTENT_LENGTH
        )
        self._rng = rng or random.Random()

    # ── Delivery ──

    async def process_pending(self, failure_probability: float = 0.0) -> List[DeliveryOutcome]:
        """
        Deliver one batch of pending messages in store order.

        Raises StoreError if the batch itself cannot be fetched.
        """
        messages = await self.repository.fetch_pending(self.batch_size)
        if not messages:
            logger.debug("No unsent messages to process")
            return []

        logger.info("Processing %d unsent messages", len(messages), extra={"batch_size": len(messages)})
        return [await self.deliver(msg, failure_probability) for msg in messages]

    async def deliver(self, message: Message, failure_probability: float = 0.0) -> DeliveryOutcome:
        """Deliver one pending message; always returns an outcome."""
        outcome = DeliveryOutcome(
            message_id=message.id,
            attempted_at=datetime.now(timezone.utc),
        )

        if self._rng.random() < failure_probability:
            logger.warning(
                "Simulated failure for message %d (failure rate test)", message.id,
                extra={"message_id": message.id},
            )
            return await self._fail(outcome, FORCED_FAILURE_REASON)

        content = message.content
        if len(content) > self.max_content_length:
            logger.warning(
                "Message %d exceeds max content length (%d > %d)",
                message.id, len(content), self.max_content_length,
                extra={"message_id": message.id},
            )
            content = truncate_content(content, self.max_content_length)

        try:
            response = await self.transport.send(message.phone_number, content)
        except TransportError as exc:
            logger.error(
                "Failed to send message %d: %s", message.id, exc.message,
                extra={"message_id": message.id},
            )
            return await self._fail(outcome, exc.message)
        except Exception as exc:
            logger.exception(
                "Unexpected error sending message %d", message.id,
                extra={"message_id": message.id},
            )
            return await self._fail(outcome, f"unexpected transport error: {exc}")

        try:
            await self.repository.mark_sent(message.id, response.message_id, outcome.attempted_at)
        except StoreError as exc:
            logger.error(
                "Failed to mark message %d as sent: %s", message.id, exc.message,
                extra={"message_id": message.id},
            )
            outcome.error = exc.message
            return outcome

        if self.cache is not None:
            cached = await self.cache.put(message.id, response.message_id, outcome.attempted_at)
            if not cached:
                logger.warning("Failed to cache message %d", message.id, extra={"message_id": message.id})

        logger.info(
            "Successfully sent message %d (webhookMessageId: %s)",
            message.id, response.message_id,
            extra={"message_id": message.id, "delivery_id": response.message_id},
        )
        outcome.success = True
        outcome.delivery_id = response.message_id
        return outcome

    async def _fail(self, outcome: DeliveryOutcome, reason: str) -> DeliveryOutcome:
        outcome.success = False
        outcome.error = reason
        try:
            await self.repository.mark_failed(outcome.message_id)
        except StoreError as exc:
            logger.error(
                "Failed to mark message %d as failed: %s", outcome.message_id, exc.message,
                extra={"message_id": outcome.message_id},
            )
        return outcome

    # ── Management ──

    async def create_message(self, content: str, phone_number: str) -> Message:
        if len(content) > self.max_content_length:
            raise ValidationError(
                f"content exceeds maximum length of {self.max_content_length} characters",
                field="content",
            )
        message = await self.repository.create(content, phone_number)
        logger.info("Created message %d", message.id, extra={"message_id": message.id})
        return message

    async def get_sent_messages(self, page: int, page_size: int) -> Tuple[List[Message], int]:
        return await self.repository.list_sent(page, page_size)

    async def get_all_messages(
        self,
        status: Optional[MessageStatus],
        page: int,
        page_size: int,
    ) -> Tuple[List[Message], int]:
        return await self.repository.list_all(status, page, page_size)

    async def get_stats(self) -> MessageStats:
        return await self.repository.stats()

    async def get_cached_messages(self) -> Dict[int, CacheEntry]:
        if self.cache is None:
            raise CacheNotConfiguredError()
        return await self.cache.get_all()

    # ── Replay ──

    async def replay_failed_message(self, message_id: int) -> None:
        await self.repository.replay_one(message_id)

    async def replay_all_failed_messages(self) -> int:
        return await self.repository.replay_all()
