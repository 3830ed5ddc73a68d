"""Distributed lock service.

A TTL-bounded lock keyed by (tenant, video) is the only cross-process
exclusion mechanism between workers. A crashed holder stops extending its
lock, so the key expires and the video becomes claimable again.
"""

import asyncio
import logging
import os
import socket
import uuid
from abc import ABC, abstractmethod
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from mediaflow.core.config import settings
from mediaflow.core.metrics import LOCK_OPERATIONS_TOTAL

logger = logging.getLogger(__name__)

# Delete only when the caller still owns the lock
RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""

# Extend only when the caller still owns the lock
EXTEND_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("pexpire", KEYS[1], ARGV[2])
else
    return 0
end
"""


class LockError(Exception):
    """Raised when the lock backend cannot be reached."""


def video_lock_key(tenant_id: str, video_id: str) -> str:
    """Build the lock key guarding one (tenant, video) pair."""
    return f"video:{tenant_id}:{video_id}"


def generate_owner_token() -> str:
    """Build an owner token unique to this process instance."""
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex}"


class DistributedLockService(ABC):
    """Minimal TTL lock interface used by the engine.

    Implementations identify the holder with owner_token so a lock can only
    be extended or released by the worker that acquired it.
    """

    @property
    @abstractmethod
    def owner_token(self) -> str:
        """Token written into every lock this instance acquires."""

    @abstractmethod
    async def acquire_lock(self, key: str, ttl_seconds: float) -> bool:
        """Atomically take the lock if nobody holds it."""

    @abstractmethod
    async def release_lock(self, key: str) -> bool:
        """Release the lock if this instance still owns it."""

    @abstractmethod
    async def extend_lock(self, key: str, ttl_seconds: float) -> bool:
        """Push the expiry forward. False when the lock was already lost."""

    @abstractmethod
    async def lock_exists(self, key: str) -> bool:
        """Check whether anyone holds the lock."""


class RedisDistributedLockService(DistributedLockService):
    """Redis-backed lock using SET NX PX and compare-token Lua scripts."""

    def __init__(
        self,
        redis_client: redis.Redis,
        key_prefix: str = settings.LOCK_KEY_PREFIX,
        owner_token: Optional[str] = None,
        acquire_attempts: int = settings.LOCK_ACQUIRE_ATTEMPTS,
        acquire_retry_delay_ms: int = settings.LOCK_ACQUIRE_RETRY_DELAY_MS,
    ):
        self._redis = redis_client
        self._key_prefix = key_prefix
        self._owner_token = owner_token or generate_owner_token()
        self._acquire_attempts = max(acquire_attempts, 1)
        self._acquire_retry_delay = acquire_retry_delay_ms / 1000

    @property
    def owner_token(self) -> str:
        return self._owner_token

    def _full_key(self, key: str) -> str:
        return f"{self._key_prefix}{key}"

    async def acquire_lock(self, key: str, ttl_seconds: float) -> bool:
        full_key = self._full_key(key)
        ttl_ms = int(ttl_seconds * 1000)

        try:
            for attempt in range(1, self._acquire_attempts + 1):
                acquired = await self._redis.set(
                    full_key, self._owner_token, nx=True, px=ttl_ms
                )
                if acquired:
                    LOCK_OPERATIONS_TOTAL.labels(operation="acquire", result="acquired").inc()
                    logger.debug(f"Acquired lock {full_key}", extra={"lock_key": full_key})
                    return True
                if attempt < self._acquire_attempts:
                    await asyncio.sleep(self._acquire_retry_delay)
        except RedisError as e:
            LOCK_OPERATIONS_TOTAL.labels(operation="acquire", result="error").inc()
            raise LockError(f"Failed to acquire lock {full_key}: {e}") from e

        LOCK_OPERATIONS_TOTAL.labels(operation="acquire", result="contended").inc()
        return False

    async def release_lock(self, key: str) -> bool:
        full_key = self._full_key(key)
        try:
            released = await self._redis.eval(RELEASE_SCRIPT, 1, full_key, self._owner_token)
        except RedisError as e:
            LOCK_OPERATIONS_TOTAL.labels(operation="release", result="error").inc()
            raise LockError(f"Failed to release lock {full_key}: {e}") from e

        result = "released" if released else "not_owner"
        LOCK_OPERATIONS_TOTAL.labels(operation="release", result=result).inc()
        return bool(released)

    async def extend_lock(self, key: str, ttl_seconds: float) -> bool:
        full_key = self._full_key(key)
        try:
            extended = await self._redis.eval(
                EXTEND_SCRIPT, 1, full_key, self._owner_token, int(ttl_seconds * 1000)
            )
        except RedisError as e:
            LOCK_OPERATIONS_TOTAL.labels(operation="extend", result="error").inc()
            raise LockError(f"Failed to extend lock {full_key}: {e}") from e

        result = "extended" if extended else "lost"
        LOCK_OPERATIONS_TOTAL.labels(operation="extend", result=result).inc()
        return bool(extended)

    async def lock_exists(self, key: str) -> bool:
        full_key = self._full_key(key)
        try:
            return bool(await self._redis.exists(full_key))
        except RedisError as e:
            raise LockError(f"Failed to check lock {full_key}: {e}") from e
