"""Database models for transcoding jobs and renditions.

A job is one transcoding attempt for a (tenant, video) pair; its renditions
are fixed to the configured profile set when processing starts.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from mediaflow.core.database import Base


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    """Job lifecycle status."""
    RECEIVED = "received"
    PROCESSING = "processing"
    COMPLETED = "completed"
    NOTIFIED = "notified"
    FAILED = "failed"


class RenditionStatus(str, Enum):
    """Rendition lifecycle status."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


NON_TERMINAL_STATUSES = (JobStatus.RECEIVED, JobStatus.PROCESSING)
TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.NOTIFIED, JobStatus.FAILED)
ABORTABLE_STATUSES = NON_TERMINAL_STATUSES

# Statuses only ever move forward along these edges
ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.RECEIVED: frozenset({JobStatus.PROCESSING, JobStatus.FAILED}),
    JobStatus.PROCESSING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset({JobStatus.NOTIFIED}),
    JobStatus.NOTIFIED: frozenset(),
    JobStatus.FAILED: frozenset(),
}


def is_valid_transition(current: JobStatus, target: JobStatus) -> bool:
    """Check whether a job may move from current to target."""
    return target in ALLOWED_TRANSITIONS[JobStatus(current)]


class TranscodeJob(Base):
    """One transcoding job per (tenant, video) creation attempt."""

    __tablename__ = "transcode_jobs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )

    tenant_id: Mapped[str] = mapped_column(String(100), nullable=False)
    video_id: Mapped[str] = mapped_column(String(100), nullable=False)

    status: Mapped[str] = mapped_column(
        String(20), default=JobStatus.RECEIVED.value, nullable=False, index=True
    )

    input_location: Mapped[str] = mapped_column(String(1024), nullable=False)
    output_manifest_location: Mapped[Optional[str]] = mapped_column(
        String(1024), nullable=True
    )

    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    notification_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    renditions: Mapped[list["TranscodeRendition"]] = relationship(
        back_populates="job",
        order_by="TranscodeRendition.created_at",
        lazy="raise",
    )

    __table_args__ = (
        Index("ix_transcode_jobs_tenant_video", "tenant_id", "video_id"),
        Index("ix_transcode_jobs_status_created", "status", "created_at"),
        Index("ix_transcode_jobs_status_updated", "status", "updated_at"),
        # At most one non-terminal job per (tenant, video)
        Index(
            "uq_transcode_jobs_active_video",
            "tenant_id",
            "video_id",
            unique=True,
            postgresql_where=text("status IN ('received', 'processing')"),
            sqlite_where=text("status IN ('received', 'processing')"),
        ),
    )

    @property
    def is_terminal(self) -> bool:
        return JobStatus(self.status) in TERMINAL_STATUSES

    def __repr__(self) -> str:
        return f"<TranscodeJob {self.id} {self.tenant_id}/{self.video_id} {self.status}>"


class TranscodeRendition(Base):
    """One encoded output variant of a job."""

    __tablename__ = "transcode_renditions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    job_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("transcode_jobs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    profile_name: Mapped[str] = mapped_column(String(20), nullable=False)
    resolution: Mapped[str] = mapped_column(String(20), nullable=False)  # e.g. 1280x720
    bitrate: Mapped[int] = mapped_column(Integer, nullable=False)  # bits per second

    status: Mapped[str] = mapped_column(
        String(20), default=RenditionStatus.PENDING.value, nullable=False
    )
    output_path: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    job: Mapped["TranscodeJob"] = relationship(back_populates="renditions")

    __table_args__ = (
        Index("uq_transcode_renditions_job_profile", "job_id", "profile_name", unique=True),
    )

    def __repr__(self) -> str:
        return f"<TranscodeRendition {self.profile_name} {self.status}>"
