"""Repository for transcoding job database operations.

Status changes are issued as conditional UPDATEs (the row must still be in
an expected status) so concurrent workers can race on the same job without
double-processing it.
"""

import uuid
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import desc, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from mediaflow.modules.transcoding.models import (
    NON_TERMINAL_STATUSES,
    JobStatus,
    RenditionStatus,
    TranscodeJob,
    TranscodeRendition,
    utc_now,
)
from mediaflow.modules.transcoding.profiles import RenditionProfile


class TranscodeJobRepository:
    """Repository for TranscodeJob and TranscodeRendition rows."""

    def __init__(self, session: AsyncSession):
        self.session = session

    # ==================== Jobs ====================

    async def create_job(
        self,
        tenant_id: str,
        video_id: str,
        input_location: str,
    ) -> TranscodeJob:
        """Insert a new Received job."""
        now = utc_now()
        job = TranscodeJob(
            id=uuid.uuid4(),
            tenant_id=tenant_id,
            video_id=video_id,
            input_location=input_location,
            status=JobStatus.RECEIVED.value,
            retry_count=0,
            notification_attempts=0,
            created_at=now,
            updated_at=now,
        )
        self.session.add(job)
        await self.session.flush()
        return job

    async def get_by_id(
        self,
        job_id: uuid.UUID,
        with_renditions: bool = False,
    ) -> Optional[TranscodeJob]:
        """Get job by ID."""
        query = select(TranscodeJob).where(TranscodeJob.id == job_id)
        if with_renditions:
            query = query.options(selectinload(TranscodeJob.renditions))
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def get_active_job(self, tenant_id: str, video_id: str) -> Optional[TranscodeJob]:
        """Get the non-terminal job of a (tenant, video), if any."""
        query = (
            select(TranscodeJob)
            .where(
                TranscodeJob.tenant_id == tenant_id,
                TranscodeJob.video_id == video_id,
                TranscodeJob.status.in_([s.value for s in NON_TERMINAL_STATUSES]),
            )
            .order_by(desc(TranscodeJob.created_at))
            .limit(1)
        )
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def get_latest_by_video(
        self,
        tenant_id: str,
        video_id: str,
        with_renditions: bool = False,
    ) -> Optional[TranscodeJob]:
        """Get the most recently created job of a (tenant, video)."""
        query = (
            select(TranscodeJob)
            .where(
                TranscodeJob.tenant_id == tenant_id,
                TranscodeJob.video_id == video_id,
            )
            .order_by(desc(TranscodeJob.created_at))
            .limit(1)
        )
        if with_renditions:
            query = query.options(selectinload(TranscodeJob.renditions))
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        video_id: Optional[str] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> tuple[list[TranscodeJob], int]:
        """List jobs with optional filters, newest first."""
        conditions = []
        if status:
            conditions.append(TranscodeJob.status == JobStatus(status).value)
        if video_id:
            conditions.append(TranscodeJob.video_id == video_id)

        count_query = select(func.count(TranscodeJob.id)).where(*conditions)
        total = (await self.session.execute(count_query)).scalar() or 0

        query = (
            select(TranscodeJob)
            .where(*conditions)
            .order_by(desc(TranscodeJob.created_at))
            .offset(skip)
            .limit(limit)
        )
        result = await self.session.execute(query)
        return list(result.scalars().all()), total

    async def get_jobs_by_status(
        self,
        status: JobStatus,
        limit: int,
        updated_before: Optional[datetime] = None,
    ) -> list[TranscodeJob]:
        """Get jobs in a status, oldest first."""
        query = select(TranscodeJob).where(TranscodeJob.status == JobStatus(status).value)
        if updated_before is not None:
            query = query.where(TranscodeJob.updated_at < updated_before)
        query = query.order_by(TranscodeJob.created_at).limit(limit)

        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def transition_status(
        self,
        job_id: uuid.UUID,
        expected: Iterable[JobStatus],
        target: JobStatus,
        error_message: Optional[str] = None,
        manifest_location: Optional[str] = None,
    ) -> bool:
        """Move a job to target only if it is still in one of the expected statuses.

        Returns:
            True if the row was updated
        """
        now = utc_now()
        values = {"status": target.value, "updated_at": now}

        if target == JobStatus.PROCESSING:
            values["started_at"] = now
        elif target in (JobStatus.COMPLETED, JobStatus.FAILED):
            values["completed_at"] = now

        if error_message is not None:
            values["error_message"] = error_message
        if manifest_location is not None:
            values["output_manifest_location"] = manifest_location

        stmt = (
            update(TranscodeJob)
            .where(
                TranscodeJob.id == job_id,
                TranscodeJob.status.in_([JobStatus(s).value for s in expected]),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def reclaim_stale_job(self, job_id: uuid.UUID, seen_updated_at: datetime) -> bool:
        """Take over a Processing job nobody touched since seen_updated_at."""
        stmt = (
            update(TranscodeJob)
            .where(
                TranscodeJob.id == job_id,
                TranscodeJob.status == JobStatus.PROCESSING.value,
                TranscodeJob.updated_at == seen_updated_at,
            )
            .values(retry_count=TranscodeJob.retry_count + 1, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def increment_notification_attempts(self, job_id: uuid.UUID) -> Optional[int]:
        """Record a failed publish for a Completed job.

        Returns:
            The new attempt count, or None if the job is no longer Completed
        """
        stmt = (
            update(TranscodeJob)
            .where(
                TranscodeJob.id == job_id,
                TranscodeJob.status == JobStatus.COMPLETED.value,
            )
            .values(
                notification_attempts=TranscodeJob.notification_attempts + 1,
                updated_at=utc_now(),
            )
            .returning(TranscodeJob.notification_attempts)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_counts_by_status(self) -> dict[str, int]:
        """Count jobs per status."""
        query = (
            select(TranscodeJob.status, func.count(TranscodeJob.id))
            .group_by(TranscodeJob.status)
        )
        result = await self.session.execute(query)
        return {row[0]: row[1] for row in result.all()}

    # ==================== Renditions ====================

    async def get_renditions(self, job_id: uuid.UUID) -> list[TranscodeRendition]:
        """Get the renditions of a job."""
        query = (
            select(TranscodeRendition)
            .where(TranscodeRendition.job_id == job_id)
            .order_by(TranscodeRendition.created_at)
        )
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def create_rendition(
        self,
        job_id: uuid.UUID,
        profile: RenditionProfile,
    ) -> TranscodeRendition:
        """Insert a Pending rendition for a profile."""
        rendition = TranscodeRendition(
            id=uuid.uuid4(),
            job_id=job_id,
            profile_name=profile.name,
            resolution=profile.resolution,
            bitrate=profile.video_bitrate,
            status=RenditionStatus.PENDING.value,
            created_at=utc_now(),
        )
        self.session.add(rendition)
        await self.session.flush()
        return rendition

    async def update_rendition(
        self,
        rendition_id: uuid.UUID,
        status: RenditionStatus,
        output_path: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> bool:
        """Update a rendition's status and output."""
        values = {"status": status.value}
        if status in (RenditionStatus.COMPLETED, RenditionStatus.FAILED):
            values["completed_at"] = utc_now()
        elif status == RenditionStatus.PENDING:
            values["completed_at"] = None
            values["error_message"] = None
        if output_path is not None:
            values["output_path"] = output_path
        if error_message is not None:
            values["error_message"] = error_message

        stmt = (
            update(TranscodeRendition)
            .where(TranscodeRendition.id == rendition_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1
