"""Distributed lock module for cross-process mutual exclusion."""

from mediaflow.modules.lock.service import (
    DistributedLockService,
    LockError,
    RedisDistributedLockService,
    video_lock_key,
)

__all__ = [
    "DistributedLockService",
    "LockError",
    "RedisDistributedLockService",
    "video_lock_key",
]
