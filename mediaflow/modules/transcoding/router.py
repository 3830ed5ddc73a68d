"""API Router for transcoding job administration."""

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from mediaflow.core.database import async_session_maker
from mediaflow.modules.transcoding.models import JobStatus
from mediaflow.modules.transcoding.schemas import (
    AbortResponse,
    JobDetail,
    JobListResponse,
    JobStatsResponse,
)
from mediaflow.modules.transcoding.service import (
    InvalidJobStateError,
    JobNotFoundError,
    TranscodingJobService,
)
from mediaflow.modules.transcoding.store import SqlAlchemyJobStore

router = APIRouter(prefix="/transcoding/jobs", tags=["transcoding"])


def get_transcoding_service() -> TranscodingJobService:
    """Dependency to get TranscodingJobService instance."""
    return TranscodingJobService(SqlAlchemyJobStore(async_session_maker))


@router.get("/", response_model=JobListResponse)
async def list_jobs(
    status: Optional[JobStatus] = Query(None, description="Filter by status"),
    video_id: Optional[str] = Query(None, description="Filter by video ID"),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
    service: TranscodingJobService = Depends(get_transcoding_service),
) -> JobListResponse:
    """List jobs, newest first."""
    return await service.list_jobs(status, video_id, skip, limit)


@router.get("/stats", response_model=JobStatsResponse)
async def get_stats(
    service: TranscodingJobService = Depends(get_transcoding_service),
) -> JobStatsResponse:
    """Count jobs per status."""
    return await service.get_stats()


@router.get("/by-video/{video_id}", response_model=JobDetail)
async def get_job_by_video(
    video_id: str,
    tenant_id: str = Query("", description="Tenant owning the video"),
    service: TranscodingJobService = Depends(get_transcoding_service),
) -> JobDetail:
    """Get the latest job of a video."""
    job = await service.get_job_by_video(video_id, tenant_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


@router.get("/{job_id}", response_model=JobDetail)
async def get_job(
    job_id: uuid.UUID,
    service: TranscodingJobService = Depends(get_transcoding_service),
) -> JobDetail:
    """Get job by ID with its renditions."""
    job = await service.get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


@router.post("/{job_id}/abort", response_model=AbortResponse)
async def abort_job(
    job_id: uuid.UUID,
    service: TranscodingJobService = Depends(get_transcoding_service),
) -> AbortResponse:
    """Abort a Received or Processing job."""
    try:
        return await service.abort_job(job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")
    except InvalidJobStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
