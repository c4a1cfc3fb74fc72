"""Tests for the Redis cache and reliable-queue channel.

Skipped unless a Redis server answers at GATEHOUSE_TEST_REDIS_URL
(default ``redis://localhost:6379/15``). The database is flushed per test.
"""

import os
import uuid

import pytest
from redis import Redis
from redis.exceptions import RedisError

from gatehouse.storage.channel import RedisChannel, dead_letter_queue
from gatehouse.storage.redis_cache import RedisCache, SyncRedisCache

REDIS_URL = os.environ.get("GATEHOUSE_TEST_REDIS_URL", "redis://localhost:6379/15")


def _redis_available() -> bool:
    client = Redis.from_url(REDIS_URL, socket_connect_timeout=0.5)
    try:
        client.ping()
        return True
    except (RedisError, OSError):
        return False
    finally:
        client.close()


pytestmark = pytest.mark.skipif(not _redis_available(), reason="redis not reachable")


@pytest.fixture(autouse=True)
def flush_redis():
    client = Redis.from_url(REDIS_URL)
    client.flushdb()
    yield
    client.flushdb()
    client.close()


@pytest.fixture
def queue():
    return f"test-{uuid.uuid4().hex[:8]}"


class TestSyncRedisCache:
    async def test_pop_claims_once(self):
        cache = SyncRedisCache(REDIS_URL)
        await cache.set("verify:t", "user-1", 60)
        assert await cache.pop("verify:t") == "user-1"
        assert await cache.pop("verify:t") is None
        await cache.close()

    async def test_counter_ttl_only_set_on_first_write(self):
        cache = SyncRedisCache(REDIS_URL)
        assert await cache.incr_with_expiry_on_first_write("login:attempts:a", 600) == 1
        cache.client.expire("login:attempts:a", 5)
        assert await cache.incr_with_expiry_on_first_write("login:attempts:a", 600) == 2
        assert cache.client.ttl("login:attempts:a") <= 5
        await cache.close()

    async def test_ttl_reports_remaining_seconds(self):
        cache = SyncRedisCache(REDIS_URL)
        await cache.set("login:attempts:b", "6", 60)
        assert 0 < await cache.ttl("login:attempts:b") <= 60
        assert await cache.ttl("login:attempts:missing") is None
        await cache.close()


class TestRedisCache:
    async def test_set_get_delete(self):
        cache = RedisCache(REDIS_URL)
        try:
            cache.verify_connection()
            await cache.set("refresh:u1", "token", 60)
            assert await cache.get("refresh:u1") == "token"
            await cache.delete("refresh:u1")
            assert await cache.get("refresh:u1") is None
        finally:
            await cache.close()


class TestRedisChannel:
    async def test_ack_removes_from_processing(self, queue):
        channel = RedisChannel(REDIS_URL, max_attempts=3)
        await channel.connect()
        try:
            await channel.declare_queue(queue)
            await channel.publish(queue, {"n": 1})
            await channel.publish(queue, {"n": 2})

            delivery = await channel.receive(queue, timeout=1)
            assert delivery.payload == {"n": 1}
            assert await channel.client.llen(RedisChannel._processing_key(queue)) == 1

            await channel.ack(delivery)
            assert await channel.client.llen(RedisChannel._processing_key(queue)) == 0
            assert await channel.client.llen(RedisChannel._queue_key(queue)) == 1
        finally:
            await channel.close()

    async def test_requeue_then_dead_letter(self, queue):
        channel = RedisChannel(REDIS_URL, max_attempts=2)
        await channel.connect()
        try:
            await channel.declare_queue(queue)
            await channel.publish(queue, {"n": 1})

            first = await channel.receive(queue, timeout=1)
            assert await channel.requeue(first, error="smtp down") is True

            second = await channel.receive(queue, timeout=1)
            assert second.attempts == 1
            assert second.message_id == first.message_id
            assert await channel.requeue(second, error="smtp down") is False

            assert await channel.client.llen(RedisChannel._queue_key(queue)) == 0
            assert await channel.client.llen(RedisChannel._processing_key(queue)) == 0
            assert (
                await channel.client.llen(RedisChannel._queue_key(dead_letter_queue(queue))) == 1
            )
        finally:
            await channel.close()

    async def test_recover_returns_stranded_messages(self, queue):
        crashed = RedisChannel(REDIS_URL)
        await crashed.connect()
        await crashed.declare_queue(queue)
        await crashed.publish(queue, {"n": 1})
        await crashed.receive(queue, timeout=1)
        await crashed.close()

        channel = RedisChannel(REDIS_URL)
        await channel.connect()
        try:
            assert await channel.recover(queue) == 1
            delivery = await channel.receive(queue, timeout=1)
            assert delivery.payload == {"n": 1}
        finally:
            await channel.close()
