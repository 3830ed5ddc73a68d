"""Inbound event handlers.

Handlers let store errors propagate; the consumer's retry and dead-letter
policy decides about redelivery.
"""

import logging
from typing import Optional

from mediaflow.core.config import settings
from mediaflow.core.logging import get_correlation_id, log_info, log_warning
from mediaflow.modules.events import (
    EventBus,
    EventMessage,
    VideoProcessingFailedEvent,
    VideoUploadedEvent,
)
from mediaflow.modules.transcoding.models import NON_TERMINAL_STATUSES, JobStatus, TranscodeJob
from mediaflow.modules.transcoding.orchestrator import CancellationRegistry
from mediaflow.modules.transcoding.store import JobStore

logger = logging.getLogger(__name__)


class JobCreationHandler:
    """Creates a Received job for an uploaded video, at most once per video."""

    def __init__(self, store: JobStore):
        self.store = store

    async def handle(self, event: VideoUploadedEvent) -> TranscodeJob:
        job, created = await self.store.create_job_if_absent(
            event.tenant_id, event.video_id, event.input_location
        )

        if created:
            log_info(
                logger,
                f"Created transcode job {job.id} for video {event.video_id}",
                job_id=str(job.id),
                video_id=event.video_id,
                tenant_id=event.tenant_id,
            )
        else:
            log_info(
                logger,
                f"Video {event.video_id} already has job {job.id} ({job.status}), ignoring duplicate",
                job_id=str(job.id),
                video_id=event.video_id,
            )
        return job


def format_failure_message(event: VideoProcessingFailedEvent) -> str:
    """Compose the stored error text of an externally reported failure."""
    message = f"{event.exception_type}: {event.error_message}"
    if event.diagnostic_info:
        message += "\nDiagnostic Information:"
        for key, value in event.diagnostic_info.items():
            message += f"\n- {key}: {value}"
    return message


class FailureEventHandler:
    """Records externally reported failures against the video's latest job."""

    def __init__(self, store: JobStore, registry: Optional[CancellationRegistry] = None):
        self.store = store
        self.registry = registry

    async def handle(self, event: VideoProcessingFailedEvent) -> bool:
        """Mark the job Failed.

        Returns:
            True if a job was moved to Failed
        """
        log_warning(
            logger,
            f"Processing failure reported for video {event.video_id}: {event.error_message}",
            video_id=event.video_id,
            tenant_id=event.tenant_id,
        )

        job = await self.store.get_latest_job_for_video(event.tenant_id, event.video_id)
        if job is None:
            log_warning(
                logger,
                f"No job found for failed video {event.video_id}, tenant {event.tenant_id}",
                video_id=event.video_id,
                tenant_id=event.tenant_id,
            )
            return False

        if JobStatus(job.status) not in NON_TERMINAL_STATUSES:
            log_info(
                logger,
                f"Job {job.id} is already {job.status}, failure report ignored",
                job_id=str(job.id),
            )
            return False

        updated = await self.store.transition(
            job.id,
            NON_TERMINAL_STATUSES,
            JobStatus.FAILED,
            error_message=format_failure_message(event),
        )
        if not updated:
            log_info(logger, f"Job {job.id} finished before the failure was recorded", job_id=str(job.id))
            return False

        if self.registry:
            self.registry.cancel(job.id)
        log_info(logger, f"Job {job.id} marked failed from reported failure", job_id=str(job.id))
        return True


class UploadDeadLetterNotifier:
    """Reports a dead-lettered upload event as a processing failure.

    Used as the on_dead_letter callback of the upload consumer so the
    video service learns that its upload will never be transcoded.
    """

    def __init__(self, bus: EventBus, topic: str = settings.EVENT_TOPIC_PROCESSING_FAILED):
        self.bus = bus
        self.topic = topic

    async def __call__(
        self,
        message: EventMessage,
        event: Optional[VideoUploadedEvent],
        error: BaseException,
    ) -> None:
        if event is None:
            # Undecodable payload, nothing identifies the video
            return

        failed = VideoProcessingFailedEvent(
            video_id=event.video_id,
            tenant_id=event.tenant_id,
            error_message=str(error),
            exception_type=type(error).__name__,
            diagnostic_info={
                "OriginalMessageId": message.message_id,
                "CorrelationId": event.correlation_id or get_correlation_id(),
                "ErrorType": type(error).__name__,
            },
            correlation_id=event.correlation_id,
        )
        await self.bus.publish(self.topic, failed)
