"""Read and administrative operations on transcoding jobs."""

import logging
import uuid
from typing import Optional

from mediaflow.core.logging import log_info
from mediaflow.modules.transcoding.models import ABORTABLE_STATUSES, JobStatus
from mediaflow.modules.transcoding.orchestrator import ABORTED_ERROR_MESSAGE, CancellationRegistry
from mediaflow.modules.transcoding.schemas import (
    AbortResponse,
    JobDetail,
    JobInfo,
    JobListResponse,
    JobStatsResponse,
)
from mediaflow.modules.transcoding.store import JobStore

logger = logging.getLogger(__name__)


class JobNotFoundError(Exception):
    """Raised when a job does not exist."""


class InvalidJobStateError(Exception):
    """Raised when an operation is not allowed in the job's current status."""


class TranscodingJobService:
    """Service behind the admin API."""

    def __init__(self, store: JobStore, registry: Optional[CancellationRegistry] = None):
        self.store = store
        self.registry = registry

    async def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        video_id: Optional[str] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> JobListResponse:
        jobs, total = await self.store.list_jobs(status, video_id, skip, limit)
        return JobListResponse(
            items=[JobInfo.model_validate(job) for job in jobs],
            total=total,
            skip=skip,
            limit=limit,
        )

    async def get_job(self, job_id: uuid.UUID) -> Optional[JobDetail]:
        job = await self.store.get_job(job_id, with_renditions=True)
        return JobDetail.model_validate(job) if job else None

    async def get_job_by_video(self, video_id: str, tenant_id: str = "") -> Optional[JobDetail]:
        """Get the latest job of a video within a tenant."""
        job = await self.store.get_latest_job_for_video(tenant_id, video_id, with_renditions=True)
        return JobDetail.model_validate(job) if job else None

    async def abort_job(self, job_id: uuid.UUID) -> AbortResponse:
        """Abort a Received or Processing job.

        The job is failed first; a run in this process is then signalled to
        stop, and runs elsewhere notice at their next lock renewal.

        Raises:
            JobNotFoundError: If the job does not exist
            InvalidJobStateError: If the job is already Completed, Notified or Failed
        """
        job = await self.store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")

        if JobStatus(job.status) not in ABORTABLE_STATUSES:
            raise InvalidJobStateError(f"Cannot abort job in status {job.status}")

        if not await self.store.transition(
            job.id, ABORTABLE_STATUSES, JobStatus.FAILED, error_message=ABORTED_ERROR_MESSAGE
        ):
            current = await self.store.get_job(job_id)
            status = current.status if current else "missing"
            raise InvalidJobStateError(f"Cannot abort job in status {status}")

        signalled = self.registry.cancel(job.id) if self.registry else False
        log_info(
            logger,
            f"Job {job.id} aborted",
            job_id=str(job.id),
            signalled_local_worker=signalled,
        )
        return AbortResponse(job_id=job.id, status=JobStatus.FAILED, message=ABORTED_ERROR_MESSAGE)

    async def get_stats(self) -> JobStatsResponse:
        counts = await self.store.count_by_status()
        by_status = {status.value: counts.get(status.value, 0) for status in JobStatus}
        return JobStatsResponse(**by_status, total=sum(by_status.values()))
