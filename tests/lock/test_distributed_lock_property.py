"""Property tests for the Redis distributed lock.

**Feature: mediaflow, Property: Lock Mutual Exclusion**
"""

import asyncio

import pytest
from hypothesis import given, settings, strategies as st
from redis.exceptions import ConnectionError as RedisConnectionError

from mediaflow.modules.lock import LockError, RedisDistributedLockService, video_lock_key
from mediaflow.modules.lock.service import EXTEND_SCRIPT, RELEASE_SCRIPT


class FakeRedis:
    """The handful of Redis commands the lock uses, over a dict with a manual clock."""

    def __init__(self):
        self.now_ms = 0
        self.values: dict[str, tuple[str, int]] = {}
        self.down = False

    def advance(self, ms: int) -> None:
        self.now_ms += ms

    def _get(self, key):
        entry = self.values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self.now_ms:
            del self.values[key]
            return None
        return value

    def _check(self):
        if self.down:
            raise RedisConnectionError("connection refused")

    async def set(self, key, value, nx=False, px=None):
        self._check()
        await asyncio.sleep(0)
        if nx and self._get(key) is not None:
            return None
        self.values[key] = (value, self.now_ms + px)
        return True

    async def eval(self, script, numkeys, key, token, *args):
        self._check()
        await asyncio.sleep(0)
        if self._get(key) != token:
            return 0
        if script == RELEASE_SCRIPT:
            del self.values[key]
            return 1
        if script == EXTEND_SCRIPT:
            self.values[key] = (token, self.now_ms + int(args[0]))
            return 1
        raise AssertionError("unexpected script")

    async def exists(self, key):
        self._check()
        return 1 if self._get(key) is not None else 0


def make_lock(client, token=None):
    return RedisDistributedLockService(
        client,
        key_prefix="lock:",
        owner_token=token,
        acquire_attempts=1,
        acquire_retry_delay_ms=0,
    )


class TestMutualExclusion:
    """**Feature: mediaflow, Property: Lock Mutual Exclusion**"""

    @given(workers=st.integers(min_value=2, max_value=12))
    @settings(max_examples=30, deadline=None)
    @pytest.mark.asyncio
    async def test_exactly_one_concurrent_acquirer_wins(self, workers):
        client = FakeRedis()
        locks = [make_lock(client) for _ in range(workers)]
        key = video_lock_key("T1", "V1")

        results = await asyncio.gather(*(lock.acquire_lock(key, 30) for lock in locks))

        assert results.count(True) == 1
        assert await locks[0].lock_exists(key)

    @pytest.mark.asyncio
    async def test_expired_lock_can_be_taken_over(self):
        client = FakeRedis()
        first, second = make_lock(client, "w1"), make_lock(client, "w2")
        key = video_lock_key("T1", "V1")

        assert await first.acquire_lock(key, 1)
        assert not await second.acquire_lock(key, 1)

        client.advance(1000)

        assert not await first.lock_exists(key)
        assert await second.acquire_lock(key, 1)
        assert not await first.extend_lock(key, 30)
        assert not await first.release_lock(key)
        assert await second.lock_exists(key)


class TestOwnership:
    """Only the holder may extend or release."""

    @pytest.mark.asyncio
    async def test_extend_pushes_expiry(self):
        client = FakeRedis()
        lock = make_lock(client)
        key = video_lock_key("T1", "V1")

        await lock.acquire_lock(key, 1)
        client.advance(900)
        assert await lock.extend_lock(key, 1)
        client.advance(900)

        assert await lock.lock_exists(key)

    @pytest.mark.asyncio
    async def test_release_is_owner_only(self):
        client = FakeRedis()
        holder, other = make_lock(client, "w1"), make_lock(client, "w2")
        key = video_lock_key("T1", "V1")

        await holder.acquire_lock(key, 30)

        assert not await other.release_lock(key)
        assert await holder.lock_exists(key)
        assert await holder.release_lock(key)
        assert not await holder.lock_exists(key)

    @pytest.mark.asyncio
    async def test_keys_are_prefixed_and_scoped_per_video(self):
        client = FakeRedis()
        lock = make_lock(client, "w1")

        assert await lock.acquire_lock(video_lock_key("T1", "V1"), 30)
        assert await lock.acquire_lock(video_lock_key("T1", "V2"), 30)
        assert await lock.acquire_lock(video_lock_key("T2", "V1"), 30)

        assert set(client.values) == {"lock:video:T1:V1", "lock:video:T1:V2", "lock:video:T2:V1"}

    def test_generated_tokens_are_unique(self):
        client = FakeRedis()

        assert make_lock(client).owner_token != make_lock(client).owner_token


class TestBackendErrors:
    """Redis failures surface as LockError."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("operation", ["acquire_lock", "extend_lock"])
    async def test_ttl_operations(self, operation):
        client = FakeRedis()
        client.down = True
        lock = make_lock(client)

        with pytest.raises(LockError):
            await getattr(lock, operation)("video:T1:V1", 30)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("operation", ["release_lock", "lock_exists"])
    async def test_key_operations(self, operation):
        client = FakeRedis()
        client.down = True
        lock = make_lock(client)

        with pytest.raises(LockError):
            await getattr(lock, operation)("video:T1:V1")
