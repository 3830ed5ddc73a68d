"""Pydantic schemas for the transcoding admin surface."""

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from mediaflow.modules.transcoding.models import JobStatus, RenditionStatus


class RenditionInfo(BaseModel):
    """Rendition of a job."""
    id: uuid.UUID
    profile_name: str
    resolution: str
    bitrate: int
    status: RenditionStatus
    output_path: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class JobInfo(BaseModel):
    """Job summary."""
    id: uuid.UUID
    tenant_id: str
    video_id: str
    status: JobStatus
    input_location: str
    output_manifest_location: Optional[str] = None
    error_message: Optional[str] = None
    retry_count: int
    notification_attempts: int
    created_at: datetime
    updated_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class JobDetail(JobInfo):
    """Job with its renditions."""
    renditions: list[RenditionInfo] = Field(default_factory=list)


class JobListResponse(BaseModel):
    """Paginated job list."""
    items: list[JobInfo]
    total: int
    skip: int
    limit: int


class JobStatsResponse(BaseModel):
    """Job counts per status."""
    received: int = 0
    processing: int = 0
    completed: int = 0
    notified: int = 0
    failed: int = 0
    total: int = 0


class AbortResponse(BaseModel):
    """Result of an abort request."""
    job_id: uuid.UUID
    status: JobStatus
    message: str
