"""
Sample data for local development.

Run standalone:
    python -m backend.app.messages.seed
"""

from __future__ import annotations

import asyncio
import logging

from backend.app.messages.repository import MessageRepository

logger = logging.getLogger(__name__)

SAMPLE_MESSAGES = [
    ("Hello! This is a test message from the relay service.", "+905551234567"),
    ("Your verification code is 123456", "+905559876543"),
    ("Welcome to our platform! We're excited to have you.", "+905551112233"),
    ("Your order has been shipped. Track it here.", "+905554445566"),
    ("Reminder: Your appointment is tomorrow at 10 AM", "+905557778899"),
    ("Special offer just for you! 20% off all products.", "+905552223344"),
    ("Your password has been successfully reset.", "+905556667788"),
    ("Thank you for your purchase! Order #12345", "+905553334455"),
    ("Don't forget to complete your profile.", "+905558889900"),
    ("New features available! Check out what's new.", "+905551239876"),
]


async def seed_test_data(repository: MessageRepository) -> int:
    """Insert the sample messages if the table is empty. Returns rows inserted."""
    existing = await repository.count()
    if existing > 0:
        logger.info("Skipping seed, %d messages already present", existing)
        return 0

    for content, phone_number in SAMPLE_MESSAGES:
        await repository.create(content, phone_number)

    logger.info("Seeded %d test messages", len(SAMPLE_MESSAGES))
    return len(SAMPLE_MESSAGES)


async def _main() -> None:
    from backend.app.core.database import close_db, get_session_factory, init_db
    from backend.app.core.logging_config import setup_logging

    setup_logging()
    await init_db()
    try:
        await seed_test_data(MessageRepository(get_session_factory()))
    finally:
        await close_db()


if __name__ == "__main__":
    asyncio.run(_main())
