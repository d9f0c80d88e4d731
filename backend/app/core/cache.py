"""
Redis cache layer — async Redis client with typed helpers.

Provides:
    • Connection bootstrap with a startup ping (None when unavailable)
    • JSON-serialised sent-message metadata under ``sent_message:<id>``
    • TTL-aware writes that never raise (best-effort bookkeeping)
    • Prefix scan to read back every cached entry

Usage:
    from backend.app.core.cache import connect_redis, SentMessageCache

    client = await connect_redis(settings.REDIS_URL)
    cache = SentMessageCache(client) if client else None

    await cache.put(42, "wh-123", datetime.now(timezone.utc))
    entries = await cache.get_all()
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from backend.app.core.config import settings
from backend.app.core.errors import ExternalServiceError
from backend.app.messages.models import CacheEntry

logger = logging.getLogger(__name__)

SENT_MESSAGE_KEY_PREFIX = "sent_message:"


async def connect_redis(url: Optional[str] = None) -> Optional[aioredis.Redis]:
    """Create and ping an async Redis client; None if Redis is unreachable."""
    url = url or settings.REDIS_URL
    client = aioredis.from_url(url, encoding="utf-8", decode_responses=True)
    try:
        await client.ping()
    except (RedisError, OSError) as e:
        logger.warning("Redis unavailable: %s — caching disabled", e)
        await client.aclose()
        return None
    logger.info("Redis connected: %s", url.split("@")[-1])
    return client


class SentMessageCache:
    """Post-delivery metadata cache keyed by message id."""

    def __init__(self, client: Any, *, ttl_seconds: Optional[int] = None):
        self._client = client
        self._ttl = ttl_seconds or settings.SENT_MESSAGE_CACHE_TTL

    @staticmethod
    def key_for(message_id: int) -> str:
        return f"{SENT_MESSAGE_KEY_PREFIX}{message_id}"

    async def put(
        self,
        message_id: int,
        delivery_id: str,
        sent_at: datetime,
        ttl: Optional[int] = None,
    ) -> bool:
        """Cache delivery metadata. Returns False (and logs) on error."""
        key = self.key_for(message_id)
        entry = CacheEntry(delivery_id=delivery_id, sent_at=sent_at)
        try:
            await self._client.set(key, json.dumps(entry.to_dict()), ex=ttl or self._ttl)
        except (RedisError, OSError) as e:
            logger.warning("Cache SET error for %s: %s", key, e)
            return False
        logger.debug("Cached message %d -> %s", message_id, delivery_id)
        return True

    async def get(self, message_id: int) -> Optional[CacheEntry]:
        """Cached entry for one message; None on miss or error."""
        key = self.key_for(message_id)
        try:
            raw = await self._client.get(key)
        except (RedisError, OSError) as e:
            logger.warning("Cache GET error for %s: %s", key, e)
            return None
        if raw is None:
            return None
        return self._decode(key, raw)

    async def get_all(self) -> Dict[int, CacheEntry]:
        """Every cached entry keyed by message id; unreadable keys are skipped."""
        entries: Dict[int, CacheEntry] = {}
        try:
            async for key in self._client.scan_iter(match=f"{SENT_MESSAGE_KEY_PREFIX}*", count=100):
                try:
                    message_id = int(key[len(SENT_MESSAGE_KEY_PREFIX):])
                except ValueError:
                    logger.warning("Unparseable cache key %r", key)
                    continue

                raw = await self._client.get(key)
                if raw is None:
                    continue  # expired between SCAN and GET
                entry = self._decode(key, raw)
                if entry is not None:
                    entries[message_id] = entry
        except (RedisError, OSError) as e:
            raise ExternalServiceError("redis", str(e)) from e
        return entries

    async def ping(self) -> None:
        await self._client.ping()

    async def close(self) -> None:
        """Close Redis connection."""
        await self._client.aclose()
        logger.info("Redis connection closed")

    @staticmethod
    def _decode(key: str, raw: str) -> Optional[CacheEntry]:
        try:
            return CacheEntry.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("Corrupt cache entry %s: %s", key, e)
            return None
