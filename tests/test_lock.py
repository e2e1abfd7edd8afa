"""Tests for distributed locks and channel publishing."""

import asyncio
import json

import pytest
import pytest_asyncio

from rediscoord.exceptions import LockError
from rediscoord.redis.lock import LockManager, LockOptions

NO_RETRY = LockOptions(ttl_seconds=5, retry_delay=0.01, max_retries=0)


@pytest_asyncio.fixture
async def subscriber(connection_factory):
    """PubSub on the same fake server as the pool."""
    client = connection_factory()
    pubsub = client.pubsub()
    yield pubsub
    await pubsub.aclose()
    await client.aclose()


async def _next_message(pubsub, attempts: int = 50):
    for _ in range(attempts):
        message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=0.1)
        if message is not None:
            return message
    raise AssertionError("No message received")


@pytest.fixture
def locks(redis):
    return LockManager(
        redis,
        default_options=LockOptions(ttl_seconds=5, retry_delay=0.01, max_retries=2),
    )


class TestAcquireRelease:
    """Ownership semantics."""

    async def test_acquire_returns_token(self, locks, redis):
        token = await locks.acquire_lock("report")

        assert token
        assert await redis.get("lock:report") == token
        assert 0 < await redis.pttl("lock:report") <= 5000

    async def test_second_acquire_fails_while_held(self, locks):
        assert await locks.acquire_lock("report")

        assert await locks.acquire_lock("report", options=NO_RETRY) is None

    async def test_tokens_are_unique(self, locks):
        first = await locks.acquire_lock("a")
        second = await locks.acquire_lock("b")

        assert first != second

    async def test_wrong_token_cannot_release(self, locks):
        token = await locks.acquire_lock("report")

        assert not await locks.release_lock("report", "someone-else")
        assert await locks.is_locked("report")

        assert await locks.release_lock("report", token)
        assert not await locks.is_locked("report")

    async def test_release_after_expiry_is_noop(self, locks):
        """A stale holder cannot free a lock taken by someone else."""
        stale = await locks.acquire_lock("job", ttl=0.1)
        await asyncio.sleep(0.15)
        fresh = await locks.acquire_lock("job")

        assert not await locks.release_lock("job", stale)
        assert (await locks.get_lock_info("job")).token == fresh

    async def test_extend_requires_ownership(self, locks, redis):
        token = await locks.acquire_lock("report", ttl=1)

        assert not await locks.extend_lock("report", "someone-else", 60)
        assert await redis.pttl("lock:report") <= 1000

        assert await locks.extend_lock("report", token, 60)
        assert await redis.pttl("lock:report") > 1000

    async def test_lock_expires_on_its_own(self, locks):
        await locks.acquire_lock("report", ttl=0.1)
        await asyncio.sleep(0.15)

        assert not await locks.is_locked("report")

    async def test_retry_acquires_after_holder_expires(self, locks):
        await locks.acquire_lock("report", ttl=0.1)

        patient = LockOptions(ttl_seconds=5, retry_delay=0.05, max_retries=5)
        assert await locks.acquire_lock("report", options=patient)

    async def test_force_release(self, locks):
        await locks.acquire_lock("report")

        assert await locks.force_release_lock("report")
        assert not await locks.force_release_lock("report")


class TestWithLock:
    """Scoped lock helpers."""

    async def test_runs_task_and_releases(self, locks):
        async def task():
            assert await locks.is_locked("job")
            return "done"

        assert await locks.with_lock("job", task) == "done"
        assert not await locks.is_locked("job")

    async def test_sync_task(self, locks):
        assert await locks.with_lock("job", lambda: 7) == 7

    async def test_releases_when_task_raises(self, locks):
        async def task():
            raise ValueError("boom")

        with pytest.raises(ValueError):
            await locks.with_lock("job", task)

        assert not await locks.is_locked("job")

    async def test_raises_lock_error_when_held(self, locks):
        token = await locks.acquire_lock("job")

        with pytest.raises(LockError) as exc_info:
            await locks.with_lock("job", lambda: None, options=NO_RETRY)

        assert exc_info.value.code == "LOCK_NOT_ACQUIRED"
        assert "job" in exc_info.value.message
        # The holder's lock is untouched
        assert (await locks.get_lock_info("job")).token == token

    async def test_context_manager(self, locks):
        async with locks.lock("job") as token:
            assert (await locks.get_lock_info("job")).token == token

        assert not await locks.is_locked("job")

    async def test_serializes_concurrent_tasks(self, locks):
        """Only one task runs inside the lock at a time."""
        active = 0
        peak = 0
        patient = LockOptions(ttl_seconds=5, retry_delay=0.02, max_retries=50)

        async def task():
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.02)
            active -= 1

        await asyncio.gather(*(locks.with_lock("shared", task, options=patient) for _ in range(4)))

        assert peak == 1


class TestInspection:
    """Lock listing, cleanup and publishing."""

    async def test_get_lock_info(self, locks):
        token = await locks.acquire_lock("report", ttl=30)

        info = await locks.get_lock_info("report")

        assert info.resource == "report"
        assert info.token == token
        assert 0 < info.ttl <= 30

    async def test_get_lock_info_when_free(self, locks):
        info = await locks.get_lock_info("free")

        assert info.token is None
        assert info.ttl == -2

    async def test_get_active_locks(self, locks):
        await locks.acquire_lock("a")
        await locks.acquire_lock("b")

        active = await locks.get_active_locks()

        assert sorted(lock.resource for lock in active) == ["a", "b"]

    async def test_cleanup_removes_locks_without_expiry(self, locks, redis):
        await locks.acquire_lock("healthy")
        await redis.set("lock:stuck", "token")

        assert await locks.cleanup_locks() == 1
        assert await locks.is_locked("healthy")
        assert not await locks.is_locked("stuck")

    async def test_publish_without_subscribers(self, locks):
        assert await locks.publish("updates", {"event": "ready"}) == 0

    async def test_publish_reaches_subscriber(self, locks, subscriber):
        """Dicts arrive as JSON on the prefixed channel."""
        await subscriber.subscribe("channel:updates")

        assert await locks.publish("updates", {"event": "ready"}) == 1

        message = await _next_message(subscriber)
        assert message["channel"] == "channel:updates"
        assert json.loads(message["data"]) == {"event": "ready"}

    async def test_publish_string_unchanged(self, locks, subscriber):
        await subscriber.subscribe("channel:updates")

        assert await locks.publish("updates", "plain text") == 1

        message = await _next_message(subscriber)
        assert message["data"] == "plain text"

    def test_retry_delay_grows_linearly(self):
        options = LockOptions(retry_delay=0.1)

        assert options.get_delay(1) == pytest.approx(0.1)
        assert options.get_delay(3) == pytest.approx(0.3)
