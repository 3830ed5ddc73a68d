"""Celery tasks for running the engine on Celery beat and workers.

Each task runs its coroutine in a fresh event loop with its own database
engine and Redis client; pools are never reused across loops.
"""

import asyncio
import logging
import uuid
from dataclasses import asdict
from typing import Any, Awaitable, Callable, Optional, TypeVar

from celery import Task
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from mediaflow.core.alerting import alert_manager
from mediaflow.core.celery_app import celery_app
from mediaflow.core.config import settings
from mediaflow.core.redis import create_redis_client
from mediaflow.modules.transcoding.bootstrap import (
    EngineComponents,
    build_completion_announcer,
    build_components,
    build_intake_poller,
    build_orchestrator,
)
from mediaflow.modules.transcoding.intake import CeleryJobDispatcher

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def _with_components(
    func: Callable[[EngineComponents], Awaitable[T]],
    lock_owner_token: Optional[str] = None,
) -> T:
    engine = create_async_engine(settings.DATABASE_URL, poolclass=NullPool)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    redis_client = create_redis_client()
    try:
        components = build_components(session_factory, redis_client, lock_owner_token)
        return await func(components)
    finally:
        await redis_client.aclose()
        await engine.dispose()


class EngineTask(Task):
    """Base task for engine cycles."""
    abstract = True

    def on_failure(self, exc, task_id, args, kwargs, einfo):
        logger.error(
            f"Task {self.name} failed: {exc}",
            extra={"task_id": task_id},
        )


@celery_app.task(base=EngineTask, name="mediaflow.modules.transcoding.tasks.run_intake_cycle_task")
def run_intake_cycle_task() -> dict[str, Any]:
    """Claim Received and stale jobs and enqueue them for processing."""

    async def cycle(components: EngineComponents):
        dispatcher = CeleryJobDispatcher(transcode_job_task, components.lock_service.owner_token)
        return await build_intake_poller(components, dispatcher).run_cycle()

    return asdict(asyncio.run(_with_components(cycle)))


@celery_app.task(base=EngineTask, name="mediaflow.modules.transcoding.tasks.run_completion_cycle_task")
def run_completion_cycle_task() -> dict[str, Any]:
    """Announce quiescent Completed jobs."""

    async def cycle(components: EngineComponents):
        return await build_completion_announcer(components, alert_manager).run_cycle()

    return asdict(asyncio.run(_with_components(cycle)))


@celery_app.task(base=EngineTask, name="mediaflow.modules.transcoding.tasks.transcode_job_task")
def transcode_job_task(job_id: str, lock_key: str, lock_owner_token: str) -> dict[str, Any]:
    """Process one claimed job.

    Args:
        job_id: Job to process
        lock_key: Video lock taken by the intake cycle
        lock_owner_token: Token the lock was taken with
    """

    async def process(components: EngineComponents):
        return await build_orchestrator(components).process_job(uuid.UUID(job_id), lock_key)

    result = asyncio.run(_with_components(process, lock_owner_token))
    return {"job_id": job_id, "outcome": result.outcome.value, "error": result.error}
