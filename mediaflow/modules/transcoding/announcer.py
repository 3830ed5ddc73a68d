"""Job completion announcer.

Publishes a "transcoded" event for every Completed job that has been quiet
for the quiescence window, then marks it Notified. A failed publish only
counts an attempt; delivery problems never turn a job Failed.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from mediaflow.core.alerting import AlertManager
from mediaflow.core.config import settings
from mediaflow.core.logging import correlation_context, log_error, log_info, log_warning
from mediaflow.core.metrics import NOTIFICATION_FAILURES_TOTAL
from mediaflow.core.retry import RETRY_CONFIGS, RetryConfig, RetryExhaustedError, retry_async
from mediaflow.modules.events import EventBus, VideoTranscodedEvent
from mediaflow.modules.transcoding.models import (
    JobStatus,
    RenditionStatus,
    TranscodeJob,
    utc_now,
)
from mediaflow.modules.transcoding.store import JobStore

logger = logging.getLogger(__name__)


def build_transcoded_event(job: TranscodeJob) -> VideoTranscodedEvent:
    """Build the outbound event for a job loaded with its renditions."""
    output_summary = {
        r.profile_name: r.output_path
        for r in job.renditions
        if r.status == RenditionStatus.COMPLETED.value and r.output_path
    }
    return VideoTranscodedEvent(
        video_id=job.video_id,
        job_id=str(job.id),
        tenant_id=job.tenant_id,
        manifest_location=job.output_manifest_location,
        success=True,
        output_summary=output_summary,
        correlation_id=str(job.id),
    )


@dataclass
class CompletionCycleResult:
    """Counters of one announcer cycle."""
    scanned: int = 0
    notified: int = 0
    failed_publishes: int = 0


class JobCompletionAnnouncer:
    """Announces completed jobs downstream."""

    def __init__(
        self,
        store: JobStore,
        bus: EventBus,
        topic: str = settings.EVENT_TOPIC_VIDEO_TRANSCODED,
        batch_size: int = settings.COMPLETION_BATCH_SIZE,
        quiescence_seconds: float = settings.COMPLETION_QUIESCENCE_SECONDS,
        attempt_ceiling: int = settings.NOTIFICATION_ATTEMPT_CEILING,
        alert_manager: Optional[AlertManager] = None,
        retry_config: Optional[RetryConfig] = None,
    ):
        self.store = store
        self.bus = bus
        self.topic = topic
        self.batch_size = batch_size
        self.quiescence_seconds = quiescence_seconds
        self.attempt_ceiling = attempt_ceiling
        self.alert_manager = alert_manager
        self.retry_config = retry_config or RETRY_CONFIGS["event_publish"]

    async def run_cycle(self) -> CompletionCycleResult:
        """Announce one batch of quiescent Completed jobs."""
        result = CompletionCycleResult()
        cutoff = utc_now() - timedelta(seconds=self.quiescence_seconds)
        jobs = await self.store.get_jobs_by_status(
            JobStatus.COMPLETED, self.batch_size, updated_before=cutoff
        )

        for job in jobs:
            result.scanned += 1
            try:
                with correlation_context(str(job.id)):
                    if await self.announce(job.id):
                        result.notified += 1
                    else:
                        result.failed_publishes += 1
            except Exception as e:
                log_error(logger, f"Failed to announce job {job.id}", exception=e, job_id=str(job.id))

        return result

    async def announce(self, job_id: uuid.UUID) -> bool:
        """Publish the transcoded event for one job.

        Returns:
            True if the event was published
        """
        job = await self.store.get_job(job_id, with_renditions=True)
        if job is None or job.status != JobStatus.COMPLETED.value:
            return False

        event = build_transcoded_event(job)
        try:
            await retry_async(
                self.bus.publish,
                self.topic,
                event,
                config=self.retry_config,
                operation=f"publish {self.topic}",
            )
        except RetryExhaustedError as e:
            await self._record_failure(job, e.last_error)
            return False

        if await self.store.transition(job.id, JobStatus.COMPLETED, JobStatus.NOTIFIED):
            log_info(
                logger,
                f"Job {job.id} announced",
                job_id=str(job.id),
                video_id=job.video_id,
                renditions=len(event.output_summary),
            )
        if job.notification_attempts and self.alert_manager:
            self.alert_manager.check_metric("notification_attempts", 0, {"job_id": str(job.id)})
        return True

    async def _record_failure(self, job: TranscodeJob, error: BaseException) -> None:
        NOTIFICATION_FAILURES_TOTAL.inc()
        attempts = await self.store.increment_notification_attempts(job.id)
        if attempts is None:
            return

        log_warning(
            logger,
            f"Publishing transcoded event for job {job.id} failed (attempt {attempts}): {error}",
            job_id=str(job.id),
            notification_attempts=attempts,
        )

        if attempts > self.attempt_ceiling:
            log_error(
                logger,
                f"Job {job.id} exceeded {self.attempt_ceiling} notification attempts",
                job_id=str(job.id),
                notification_attempts=attempts,
            )
            if self.alert_manager:
                self.alert_manager.check_metric(
                    "notification_attempts", attempts, {"job_id": str(job.id)}
                )
