"""Job intake poller.

Each cycle claims the oldest Received jobs: skip a video whose lock is held,
take the lock, then flip Received -> Processing with a conditional update so
two pollers can never both win the same job. Claimed jobs are handed to a
dispatcher and the cycle keeps scanning.
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from mediaflow.core.config import settings
from mediaflow.core.logging import log_error, log_info, log_warning
from mediaflow.core.metrics import JOBS_RECLAIMED_TOTAL
from mediaflow.modules.lock import DistributedLockService, LockError, video_lock_key
from mediaflow.modules.transcoding.models import JobStatus, TranscodeJob, utc_now
from mediaflow.modules.transcoding.orchestrator import TranscodingOrchestrator
from mediaflow.modules.transcoding.store import JobStore

logger = logging.getLogger(__name__)


class JobDispatcher(ABC):
    """Hands claimed jobs to whatever runs the orchestrator."""

    @abstractmethod
    def has_capacity(self) -> bool:
        """Whether another job can be accepted now."""

    @abstractmethod
    async def dispatch(self, job_id: uuid.UUID, lock_key: str) -> None:
        """Start processing without waiting for it to finish."""

    def is_running(self, job_id: uuid.UUID) -> bool:
        """Whether this dispatcher is already processing the job."""
        return False


class AsyncioJobDispatcher(JobDispatcher):
    """Runs jobs as tasks in this process, bounded by max_concurrent_jobs."""

    def __init__(
        self,
        orchestrator: TranscodingOrchestrator,
        max_concurrent_jobs: int = settings.MAX_CONCURRENT_JOBS,
    ):
        self.orchestrator = orchestrator
        self.max_concurrent_jobs = max(max_concurrent_jobs, 1)
        self._tasks: dict[uuid.UUID, asyncio.Task] = {}

    def has_capacity(self) -> bool:
        return len(self._tasks) < self.max_concurrent_jobs

    def is_running(self, job_id: uuid.UUID) -> bool:
        return job_id in self._tasks

    async def dispatch(self, job_id: uuid.UUID, lock_key: str) -> None:
        task = asyncio.create_task(self.orchestrator.process_job(job_id, lock_key))
        self._tasks[job_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(job_id, None))

    async def wait_idle(self) -> None:
        """Wait for every in-flight job to finish."""
        if self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)


class CeleryJobDispatcher(JobDispatcher):
    """Enqueues a Celery task per job, passing the lock owner token along."""

    def __init__(self, task: Any, lock_owner_token: str):
        self.task = task
        self.lock_owner_token = lock_owner_token

    def has_capacity(self) -> bool:
        return True

    async def dispatch(self, job_id: uuid.UUID, lock_key: str) -> None:
        await asyncio.to_thread(
            self.task.delay, str(job_id), lock_key, self.lock_owner_token
        )


@dataclass
class IntakeCycleResult:
    """Counters of one intake cycle."""
    scanned: int = 0
    dispatched: int = 0
    skipped_locked: int = 0
    lost_race: int = 0
    reclaimed: int = 0
    abandoned: int = 0


class JobIntakePoller:
    """Finds Received jobs no other worker owns and dispatches them."""

    def __init__(
        self,
        store: JobStore,
        lock_service: DistributedLockService,
        dispatcher: JobDispatcher,
        batch_size: int = settings.INTAKE_BATCH_SIZE,
        lock_ttl_seconds: float = settings.LOCK_TTL_SECONDS,
        stale_processing_seconds: float = settings.STALE_PROCESSING_SECONDS,
        max_reclaim_attempts: int = settings.MAX_RECLAIM_ATTEMPTS,
    ):
        self.store = store
        self.lock_service = lock_service
        self.dispatcher = dispatcher
        self.batch_size = batch_size
        self.lock_ttl_seconds = lock_ttl_seconds
        self.stale_processing_seconds = stale_processing_seconds
        self.max_reclaim_attempts = max_reclaim_attempts

    async def run_cycle(self) -> IntakeCycleResult:
        """Scan once for Received jobs, then for stale Processing jobs."""
        result = IntakeCycleResult()

        jobs = await self.store.get_jobs_by_status(JobStatus.RECEIVED, self.batch_size)
        for job in jobs:
            if not self.dispatcher.has_capacity():
                break
            result.scanned += 1
            try:
                await self._claim(job, result)
            except Exception as e:
                log_error(logger, f"Failed to claim job {job.id}", exception=e, job_id=str(job.id))

        await self._reclaim_stale(result)

        if result.dispatched or result.reclaimed:
            log_info(
                logger,
                f"Intake cycle dispatched {result.dispatched} jobs, reclaimed {result.reclaimed}",
                dispatched=result.dispatched,
                reclaimed=result.reclaimed,
            )
        return result

    async def _claim(self, job: TranscodeJob, result: IntakeCycleResult) -> None:
        lock_key = video_lock_key(job.tenant_id, job.video_id)

        if await self.lock_service.lock_exists(lock_key):
            result.skipped_locked += 1
            return
        if not await self.lock_service.acquire_lock(lock_key, self.lock_ttl_seconds):
            result.skipped_locked += 1
            return

        try:
            claimed = await self.store.transition(job.id, JobStatus.RECEIVED, JobStatus.PROCESSING)
        except Exception:
            await self._release(lock_key)
            raise

        if not claimed:
            # Another poller moved it first, or it was aborted
            result.lost_race += 1
            await self._release(lock_key)
            return

        await self._dispatch(job, lock_key)
        result.dispatched += 1

    async def _reclaim_stale(self, result: IntakeCycleResult) -> None:
        if not self.dispatcher.has_capacity():
            return

        cutoff = utc_now() - timedelta(seconds=self.stale_processing_seconds)
        jobs = await self.store.get_jobs_by_status(
            JobStatus.PROCESSING, self.batch_size, updated_before=cutoff
        )

        for job in jobs:
            if not self.dispatcher.has_capacity():
                break
            if self.dispatcher.is_running(job.id):
                continue
            try:
                await self._reclaim(job, result)
            except Exception as e:
                log_error(logger, f"Failed to reclaim job {job.id}", exception=e, job_id=str(job.id))

    async def _reclaim(self, job: TranscodeJob, result: IntakeCycleResult) -> None:
        lock_key = video_lock_key(job.tenant_id, job.video_id)

        if await self.lock_service.lock_exists(lock_key):
            return
        if not await self.lock_service.acquire_lock(lock_key, self.lock_ttl_seconds):
            return

        try:
            if job.retry_count >= self.max_reclaim_attempts:
                message = f"Abandoned after {job.retry_count + 1} processing attempts"
                if await self.store.transition(
                    job.id, JobStatus.PROCESSING, JobStatus.FAILED, error_message=message
                ):
                    result.abandoned += 1
                    log_warning(logger, f"Job {job.id}: {message}", job_id=str(job.id))
                await self._release(lock_key)
                return

            if not await self.store.reclaim_stale_job(job.id, job.updated_at):
                await self._release(lock_key)
                return
        except Exception:
            await self._release(lock_key)
            raise

        JOBS_RECLAIMED_TOTAL.inc()
        log_warning(
            logger,
            f"Reclaimed stale job {job.id} (attempt {job.retry_count + 2})",
            job_id=str(job.id),
        )
        await self._dispatch(job, lock_key)
        result.reclaimed += 1

    async def _dispatch(self, job: TranscodeJob, lock_key: str) -> None:
        try:
            await self.dispatcher.dispatch(job.id, lock_key)
        except Exception:
            # Job stays Processing without a lock and is reclaimed later
            await self._release(lock_key)
            raise

    async def _release(self, lock_key: str) -> None:
        try:
            await self.lock_service.release_lock(lock_key)
        except LockError as e:
            log_warning(logger, f"Failed to release lock {lock_key}: {e}", lock_key=lock_key)
