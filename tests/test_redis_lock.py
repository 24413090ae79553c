"""
Tests for the per-payment Redis lock (redis client mocked).
"""
import pytest
from unittest.mock import AsyncMock, MagicMock

import redis.asyncio as redis

from app.core.redis_lock import (
    LockBackendUnavailableError,
    LockNotAcquiredError,
    RedisDistributedLock,
    make_payment_lock_factory,
    payment_lock_key,
)


def make_redis(set_results):
    client = MagicMock()
    client.set = AsyncMock(side_effect=set_results)
    release_script = AsyncMock(return_value=1)
    client.register_script = MagicMock(return_value=release_script)
    return client, release_script


class TestPaymentLockKey:
    def test_key_format(self):
        assert payment_lock_key("prod", "p1") == "lock:prod:payment_complete:p1"


class TestRedisDistributedLock:
    @pytest.mark.asyncio
    async def test_acquire_and_release(self):
        client, release_script = make_redis([True])
        lock = RedisDistributedLock(client, "lock:test:payment_complete:p1", ttl_seconds=30)

        async with lock:
            assert lock.acquired is True
            token = lock.token

        kwargs = client.set.await_args.kwargs
        assert kwargs == {"nx": True, "px": 30000}
        release_script.assert_awaited_once_with(keys=["lock:test:payment_complete:p1"], args=[token])
        assert lock.acquired is False

    @pytest.mark.asyncio
    async def test_waits_for_holder(self):
        client, _ = make_redis([None, None, True])
        lock = RedisDistributedLock(client, "k", wait_timeout=5, poll_interval=0)

        assert await lock.acquire() is True
        assert client.set.await_count == 3

    @pytest.mark.asyncio
    async def test_timeout_raises(self):
        client = MagicMock()
        client.set = AsyncMock(return_value=None)
        lock = RedisDistributedLock(client, "k", wait_timeout=0, poll_interval=0)

        with pytest.raises(LockNotAcquiredError):
            async with lock:
                pass

    @pytest.mark.asyncio
    async def test_redis_error_retried(self):
        client, _ = make_redis([redis.ConnectionError("down"), True])
        lock = RedisDistributedLock(client, "k", wait_timeout=5, poll_interval=0)

        assert await lock.acquire() is True

    @pytest.mark.asyncio
    async def test_redis_down_fails_fast(self):
        """Repeated Redis errors end the wait early with their own error"""
        client, _ = make_redis([redis.ConnectionError("down")] * 3)
        lock = RedisDistributedLock(client, "k", wait_timeout=60, poll_interval=0)

        with pytest.raises(LockBackendUnavailableError) as exc_info:
            async with lock:
                pass

        assert client.set.await_count == 3
        assert isinstance(exc_info.value.cause, redis.ConnectionError)
        assert not isinstance(exc_info.value, LockNotAcquiredError)

    @pytest.mark.asyncio
    async def test_release_without_acquire_is_noop(self):
        client, release_script = make_redis([])
        lock = RedisDistributedLock(client, "k")

        await lock.release()

        release_script.assert_not_awaited()


class TestLockFactory:
    def test_no_redis_no_factory(self):
        assert make_payment_lock_factory(None, "prod") is None

    def test_factory_builds_payment_lock(self):
        factory = make_payment_lock_factory(MagicMock(), "stage")
        lock = factory("p9")
        assert isinstance(lock, RedisDistributedLock)
        assert lock.key == "lock:stage:payment_complete:p9"
