"""Dependency health checks for the /health endpoint."""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable

from sqlalchemy import text

logger = logging.getLogger(__name__)

# Slower Redis round trips are reported as degraded
REDIS_DEGRADED_LATENCY_MS = 200.0


class HealthStatus(str, Enum):
    """Component health status."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass
class ComponentHealth:
    """Result of checking one dependency."""
    name: str
    status: HealthStatus
    message: str
    latency_ms: float = 0.0
    details: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "message": self.message,
            "latency_ms": self.latency_ms,
        }


HealthCheck = Callable[[], Awaitable[ComponentHealth]]


async def check_database() -> ComponentHealth:
    """Check database connection health."""
    from mediaflow.core.database import engine

    start_time = time.perf_counter()
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return ComponentHealth(
            name="database",
            status=HealthStatus.UNHEALTHY,
            message=f"Database connection failed: {e}",
            latency_ms=round((time.perf_counter() - start_time) * 1000, 2),
        )

    return ComponentHealth(
        name="database",
        status=HealthStatus.HEALTHY,
        message="Database connection successful",
        latency_ms=round((time.perf_counter() - start_time) * 1000, 2),
    )


async def check_redis() -> ComponentHealth:
    """Check Redis connection health with a PING."""
    from mediaflow.core.redis import create_redis_client

    client = create_redis_client()
    start_time = time.perf_counter()
    try:
        await client.ping()
    except Exception as e:
        logger.error(f"Redis health check failed: {e}")
        return ComponentHealth(
            name="redis",
            status=HealthStatus.UNHEALTHY,
            message="Could not connect to Redis",
            latency_ms=round((time.perf_counter() - start_time) * 1000, 2),
        )
    finally:
        await client.aclose()

    latency = round((time.perf_counter() - start_time) * 1000, 2)
    if latency > REDIS_DEGRADED_LATENCY_MS:
        return ComponentHealth(
            name="redis",
            status=HealthStatus.DEGRADED,
            message=f"Redis ping took {latency}ms",
            latency_ms=latency,
        )
    return ComponentHealth(
        name="redis",
        status=HealthStatus.HEALTHY,
        message=f"Redis ping took {latency}ms",
        latency_ms=latency,
    )


def get_health_checks() -> list[HealthCheck]:
    """Dependency providing the checks run by /health."""
    return [check_database, check_redis]


def overall_status(components: list[ComponentHealth]) -> HealthStatus:
    """Worst component status wins."""
    statuses = {c.status for c in components}
    if HealthStatus.UNHEALTHY in statuses:
        return HealthStatus.UNHEALTHY
    if HealthStatus.DEGRADED in statuses:
        return HealthStatus.DEGRADED
    return HealthStatus.HEALTHY
