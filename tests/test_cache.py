"""
test_cache.py — Tests for the Redis-backed sent-message cache.

Run with:
    pytest tests/test_cache.py -v
"""

from __future__ import annotations

import fnmatch
import json
from datetime import datetime, timezone

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from backend.app.core.cache import SENT_MESSAGE_KEY_PREFIX, SentMessageCache, connect_redis
from backend.app.core.errors import ExternalServiceError

SENT_AT = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeRedis:
    """Just enough of redis.asyncio.Redis for the cache."""

    def __init__(self, *, broken: bool = False):
        self.store = {}
        self.ttls = {}
        self.broken = broken
        self.closed = False

    def _check(self):
        if self.broken:
            raise RedisConnectionError("connection refused")

    async def set(self, key, value, ex=None):
        self._check()
        self.store[key] = value
        self.ttls[key] = ex

    async def get(self, key):
        self._check()
        return self.store.get(key)

    async def scan_iter(self, match=None, count=None):
        self._check()
        for key in list(self.store):
            if match is None or fnmatch.fnmatch(key, match):
                yield key

    async def ping(self):
        self._check()
        return True

    async def aclose(self):
        self.closed = True


class TestSentMessageCache:

    @pytest.mark.asyncio
    async def test_put_writes_json_with_ttl(self):
        redis = FakeRedis()
        cache = SentMessageCache(redis, ttl_seconds=86400)

        assert await cache.put(42, "wh-1", SENT_AT) is True

        key = f"{SENT_MESSAGE_KEY_PREFIX}42"
        assert json.loads(redis.store[key]) == {"messageId": "wh-1", "sentAt": SENT_AT.isoformat()}
        assert redis.ttls[key] == 86400

    @pytest.mark.asyncio
    async def test_put_ttl_override(self):
        redis = FakeRedis()
        cache = SentMessageCache(redis, ttl_seconds=86400)

        await cache.put(1, "wh-1", SENT_AT, ttl=60)

        assert redis.ttls["sent_message:1"] == 60

    @pytest.mark.asyncio
    async def test_put_failure_returns_false(self):
        cache = SentMessageCache(FakeRedis(broken=True))

        assert await cache.put(1, "wh-1", SENT_AT) is False

    @pytest.mark.asyncio
    async def test_get_round_trip_and_miss(self):
        cache = SentMessageCache(FakeRedis())
        await cache.put(7, "wh-7", SENT_AT)

        entry = await cache.get(7)

        assert entry.delivery_id == "wh-7"
        assert entry.sent_at == SENT_AT
        assert await cache.get(8) is None

    @pytest.mark.asyncio
    async def test_get_all_skips_foreign_and_corrupt_keys(self):
        redis = FakeRedis()
        cache = SentMessageCache(redis)
        await cache.put(1, "wh-1", SENT_AT)
        await cache.put(2, "wh-2", SENT_AT)
        redis.store["sent_message:abc"] = "{}"
        redis.store["sent_message:3"] = "not json"
        redis.store["other:9"] = "{}"

        entries = await cache.get_all()

        assert sorted(entries) == [1, 2]
        assert entries[2].delivery_id == "wh-2"

    @pytest.mark.asyncio
    async def test_close(self):
        redis = FakeRedis()
        await SentMessageCache(redis).close()
        assert redis.closed is True

    @pytest.mark.asyncio
    async def test_get_all_on_broken_connection(self):
        with pytest.raises(ExternalServiceError):
            await SentMessageCache(FakeRedis(broken=True)).get_all()


class TestConnectRedis:

    @pytest.mark.asyncio
    async def test_unreachable_redis_returns_none(self, monkeypatch):
        broken = FakeRedis(broken=True)
        monkeypatch.setattr("backend.app.core.cache.aioredis.from_url", lambda *a, **kw: broken)

        assert await connect_redis("redis://nowhere:6379/0") is None
        assert broken.closed is True

    @pytest.mark.asyncio
    async def test_reachable_redis_returned(self, monkeypatch):
        healthy = FakeRedis()
        monkeypatch.setattr("backend.app.core.cache.aioredis.from_url", lambda *a, **kw: healthy)

        assert await connect_redis("redis://localhost:6379/0") is healthy
