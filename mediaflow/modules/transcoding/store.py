"""Job store: the engine's only view of durable job state.

Every operation runs in its own short transaction so a long-running
orchestration never holds a database connection between steps.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable, Optional, Union

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mediaflow.core.metrics import JOB_TRANSITIONS_TOTAL
from mediaflow.modules.transcoding.models import (
    JobStatus,
    RenditionStatus,
    TranscodeJob,
    TranscodeRendition,
    is_valid_transition,
)
from mediaflow.modules.transcoding.profiles import RenditionProfile
from mediaflow.modules.transcoding.repository import TranscodeJobRepository

logger = logging.getLogger(__name__)

ExpectedStatus = Union[JobStatus, Iterable[JobStatus]]


class InvalidTransitionError(ValueError):
    """Raised when asked for a status change the state machine forbids."""


def normalize_expected(expected: ExpectedStatus, target: JobStatus) -> tuple[JobStatus, ...]:
    """Validate a conditional transition request against the state machine."""
    if isinstance(expected, (JobStatus, str)):
        statuses = (JobStatus(expected),)
    else:
        statuses = tuple(JobStatus(s) for s in expected)

    for status in statuses:
        if not is_valid_transition(status, target):
            raise InvalidTransitionError(f"Transition {status.value} -> {target.value} is not allowed")
    return statuses


class JobStore(ABC):
    """Durable job and rendition state shared by all workers."""

    @abstractmethod
    async def create_job_if_absent(
        self,
        tenant_id: str,
        video_id: str,
        input_location: str,
    ) -> tuple[TranscodeJob, bool]:
        """Return the non-terminal job for (tenant, video) or create one.

        Returns:
            (job, created) where created is False for an existing job
        """

    @abstractmethod
    async def get_job(self, job_id: uuid.UUID, with_renditions: bool = False) -> Optional[TranscodeJob]:
        """Get a job by id."""

    @abstractmethod
    async def get_latest_job_for_video(
        self,
        tenant_id: str,
        video_id: str,
        with_renditions: bool = False,
    ) -> Optional[TranscodeJob]:
        """Get the most recent job of a (tenant, video)."""

    @abstractmethod
    async def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        video_id: Optional[str] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> tuple[list[TranscodeJob], int]:
        """List jobs newest first with the total matching count."""

    @abstractmethod
    async def get_jobs_by_status(
        self,
        status: JobStatus,
        limit: int,
        updated_before: Optional[datetime] = None,
    ) -> list[TranscodeJob]:
        """Get up to limit jobs in a status, oldest first."""

    @abstractmethod
    async def transition(
        self,
        job_id: uuid.UUID,
        expected: ExpectedStatus,
        target: JobStatus,
        error_message: Optional[str] = None,
        manifest_location: Optional[str] = None,
    ) -> bool:
        """Conditionally move a job to target.

        Returns:
            True if the job was still in an expected status and was updated

        Raises:
            InvalidTransitionError: If any expected -> target edge is forbidden
        """

    @abstractmethod
    async def reclaim_stale_job(self, job_id: uuid.UUID, seen_updated_at: datetime) -> bool:
        """Bump retry_count of an untouched Processing job."""

    @abstractmethod
    async def ensure_renditions(
        self,
        job_id: uuid.UUID,
        profiles: list[RenditionProfile],
    ) -> list[TranscodeRendition]:
        """Create missing renditions and reset unfinished ones to Pending.

        Completed renditions from an earlier attempt are kept as they are.
        """

    @abstractmethod
    async def update_rendition(
        self,
        rendition_id: uuid.UUID,
        status: RenditionStatus,
        output_path: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> bool:
        """Update one rendition."""

    @abstractmethod
    async def increment_notification_attempts(self, job_id: uuid.UUID) -> Optional[int]:
        """Count a failed publish. None when the job is no longer Completed."""

    @abstractmethod
    async def count_by_status(self) -> dict[str, int]:
        """Count jobs per status."""


class SqlAlchemyJobStore(JobStore):
    """JobStore over PostgreSQL via SQLAlchemy async sessions."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def create_job_if_absent(
        self,
        tenant_id: str,
        video_id: str,
        input_location: str,
    ) -> tuple[TranscodeJob, bool]:
        async with self._session_factory() as session:
            repo = TranscodeJobRepository(session)
            existing = await repo.get_active_job(tenant_id, video_id)
            if existing:
                return existing, False

            try:
                job = await repo.create_job(tenant_id, video_id, input_location)
                await session.commit()
            except IntegrityError:
                # A concurrent delivery inserted the active job first
                await session.rollback()
                existing = await repo.get_active_job(tenant_id, video_id)
                if existing is None:
                    raise
                return existing, False

        JOB_TRANSITIONS_TOTAL.labels(status=JobStatus.RECEIVED.value).inc()
        return job, True

    async def get_job(self, job_id: uuid.UUID, with_renditions: bool = False) -> Optional[TranscodeJob]:
        async with self._session_factory() as session:
            return await TranscodeJobRepository(session).get_by_id(job_id, with_renditions)

    async def get_latest_job_for_video(
        self,
        tenant_id: str,
        video_id: str,
        with_renditions: bool = False,
    ) -> Optional[TranscodeJob]:
        async with self._session_factory() as session:
            return await TranscodeJobRepository(session).get_latest_by_video(
                tenant_id, video_id, with_renditions
            )

    async def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        video_id: Optional[str] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> tuple[list[TranscodeJob], int]:
        async with self._session_factory() as session:
            return await TranscodeJobRepository(session).list_jobs(status, video_id, skip, limit)

    async def get_jobs_by_status(
        self,
        status: JobStatus,
        limit: int,
        updated_before: Optional[datetime] = None,
    ) -> list[TranscodeJob]:
        async with self._session_factory() as session:
            return await TranscodeJobRepository(session).get_jobs_by_status(
                status, limit, updated_before
            )

    async def transition(
        self,
        job_id: uuid.UUID,
        expected: ExpectedStatus,
        target: JobStatus,
        error_message: Optional[str] = None,
        manifest_location: Optional[str] = None,
    ) -> bool:
        statuses = normalize_expected(expected, target)
        async with self._session_factory() as session:
            updated = await TranscodeJobRepository(session).transition_status(
                job_id, statuses, target, error_message, manifest_location
            )
            await session.commit()

        if updated:
            JOB_TRANSITIONS_TOTAL.labels(status=target.value).inc()
        return updated

    async def reclaim_stale_job(self, job_id: uuid.UUID, seen_updated_at: datetime) -> bool:
        async with self._session_factory() as session:
            reclaimed = await TranscodeJobRepository(session).reclaim_stale_job(job_id, seen_updated_at)
            await session.commit()
        return reclaimed

    async def ensure_renditions(
        self,
        job_id: uuid.UUID,
        profiles: list[RenditionProfile],
    ) -> list[TranscodeRendition]:
        async with self._session_factory() as session:
            repo = TranscodeJobRepository(session)
            existing = {r.profile_name: r for r in await repo.get_renditions(job_id)}

            for profile in profiles:
                rendition = existing.get(profile.name)
                if rendition is None:
                    existing[profile.name] = await repo.create_rendition(job_id, profile)
                elif rendition.status != RenditionStatus.COMPLETED.value:
                    await repo.update_rendition(rendition.id, RenditionStatus.PENDING)

            await session.commit()
            session.expire_all()
            renditions = await repo.get_renditions(job_id)

        by_profile = {r.profile_name: r for r in renditions}
        return [by_profile[p.name] for p in profiles]

    async def update_rendition(
        self,
        rendition_id: uuid.UUID,
        status: RenditionStatus,
        output_path: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> bool:
        async with self._session_factory() as session:
            updated = await TranscodeJobRepository(session).update_rendition(
                rendition_id, status, output_path, error_message
            )
            await session.commit()
        return updated

    async def increment_notification_attempts(self, job_id: uuid.UUID) -> Optional[int]:
        async with self._session_factory() as session:
            attempts = await TranscodeJobRepository(session).increment_notification_attempts(job_id)
            await session.commit()
        return attempts

    async def count_by_status(self) -> dict[str, int]:
        async with self._session_factory() as session:
            return await TranscodeJobRepository(session).get_counts_by_status()
