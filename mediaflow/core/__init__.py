"""Core module for configuration and shared infrastructure."""

from mediaflow.core.config import settings
from mediaflow.core.database import Base, async_session_maker
from mediaflow.core.redis import create_redis_client

__all__ = [
    "settings",
    "Base",
    "async_session_maker",
    "create_redis_client",
]
