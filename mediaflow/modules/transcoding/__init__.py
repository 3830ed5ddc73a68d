"""Transcoding job orchestration.

Job store, intake poller, orchestrator, completion announcer, event
handlers and the admin API.
"""

from mediaflow.modules.transcoding.announcer import JobCompletionAnnouncer
from mediaflow.modules.transcoding.handlers import FailureEventHandler, JobCreationHandler
from mediaflow.modules.transcoding.intake import (
    AsyncioJobDispatcher,
    CeleryJobDispatcher,
    JobDispatcher,
    JobIntakePoller,
)
from mediaflow.modules.transcoding.models import JobStatus, RenditionStatus, TranscodeJob, TranscodeRendition
from mediaflow.modules.transcoding.orchestrator import (
    CancellationRegistry,
    ProcessingOutcome,
    ProcessingResult,
    TranscodingOrchestrator,
)
from mediaflow.modules.transcoding.service import TranscodingJobService
from mediaflow.modules.transcoding.store import JobStore, SqlAlchemyJobStore

__all__ = [
    "AsyncioJobDispatcher",
    "CancellationRegistry",
    "CeleryJobDispatcher",
    "FailureEventHandler",
    "JobCompletionAnnouncer",
    "JobCreationHandler",
    "JobDispatcher",
    "JobIntakePoller",
    "JobStatus",
    "JobStore",
    "ProcessingOutcome",
    "ProcessingResult",
    "RenditionStatus",
    "SqlAlchemyJobStore",
    "TranscodeJob",
    "TranscodeRendition",
    "TranscodingJobService",
    "TranscodingOrchestrator",
]
