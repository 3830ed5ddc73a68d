"""Transcoding orchestrator.

Turns a Processing job into a Completed or Failed one: downloads the source,
encodes every configured profile with bounded parallelism, uploads each
rendition, then publishes the manifest. The job lock is renewed while work
is in flight and released in every outcome.
"""

import asyncio
import logging
import os
import shutil
import tempfile
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from mediaflow.core.config import settings
from mediaflow.core.logging import correlation_context, log_error, log_info, log_warning
from mediaflow.core.metrics import (
    JOB_DURATION_SECONDS,
    JOBS_IN_FLIGHT,
    RENDITION_DURATION_SECONDS,
    RENDITIONS_TOTAL,
)
from mediaflow.core.retry import RetryExhaustedError
from mediaflow.core.storage import ObjectStore
from mediaflow.core.tracing import create_span
from mediaflow.modules.lock import DistributedLockService, LockError
from mediaflow.modules.transcoding.ffmpeg import MediaEncoder
from mediaflow.modules.transcoding.manifest import (
    build_master_manifest,
    manifest_key,
    output_base_path,
    rendition_key,
)
from mediaflow.modules.transcoding.models import (
    JobStatus,
    RenditionStatus,
    TranscodeJob,
    TranscodeRendition,
)
from mediaflow.modules.transcoding.profiles import RenditionProfile
from mediaflow.modules.transcoding.store import JobStore

logger = logging.getLogger(__name__)

ABORTED_ERROR_MESSAGE = "Job aborted by user"
CANCELLED_RENDITION_MESSAGE = "cancelled"


class LockLostError(Exception):
    """The job lock expired or was taken over while work was in flight."""


class JobCancelledError(Exception):
    """An abort was observed while the job was in flight."""


class ProcessingOutcome(str, Enum):
    """How one processing attempt ended."""
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"
    LOCK_LOST = "lock_lost"
    SKIPPED = "skipped"
    ERROR = "error"


@dataclass
class ProcessingResult:
    """Result of one processing attempt."""
    job_id: uuid.UUID
    outcome: ProcessingOutcome
    error: Optional[str] = None


class ProcessingControl:
    """Stop signal shared by everything working on one job."""

    ABORTED = "aborted"
    LOCK_LOST = "lock_lost"

    def __init__(self, job_id: uuid.UUID):
        self.job_id = job_id
        self.stopped = asyncio.Event()
        self.reason: Optional[str] = None

    def abort(self) -> None:
        self._stop(self.ABORTED)

    def mark_lock_lost(self) -> None:
        self._stop(self.LOCK_LOST)

    def _stop(self, reason: str) -> None:
        if self.reason is None:
            self.reason = reason
        self.stopped.set()

    @property
    def aborted(self) -> bool:
        return self.reason == self.ABORTED

    @property
    def lock_lost(self) -> bool:
        return self.reason == self.LOCK_LOST

    def raise_if_stopped(self) -> None:
        if self.reason == self.LOCK_LOST:
            raise LockLostError(f"Lock lost for job {self.job_id}")
        if self.reason == self.ABORTED:
            raise JobCancelledError(f"Job {self.job_id} was aborted")


class CancellationRegistry:
    """In-process map of job id to the control of its running attempt."""

    def __init__(self):
        self._controls: dict[uuid.UUID, ProcessingControl] = {}

    def register(self, job_id: uuid.UUID) -> ProcessingControl:
        control = ProcessingControl(job_id)
        self._controls[job_id] = control
        return control

    def unregister(self, job_id: uuid.UUID) -> None:
        self._controls.pop(job_id, None)

    def is_running(self, job_id: uuid.UUID) -> bool:
        return job_id in self._controls

    def cancel(self, job_id: uuid.UUID) -> bool:
        """Signal abort to a job running in this process.

        Returns:
            True if the job was running here
        """
        control = self._controls.get(job_id)
        if control is None:
            return False
        control.abort()
        return True


class TranscodingOrchestrator:
    """Runs the encode / upload / manifest pipeline for one job at a time."""

    def __init__(
        self,
        store: JobStore,
        lock_service: DistributedLockService,
        object_store: ObjectStore,
        encoder: MediaEncoder,
        profiles: list[RenditionProfile],
        registry: Optional[CancellationRegistry] = None,
        max_concurrent_renditions: int = settings.MAX_CONCURRENT_RENDITIONS,
        lock_ttl_seconds: float = settings.LOCK_TTL_SECONDS,
        renewal_interval_seconds: float = settings.LOCK_RENEWAL_INTERVAL_SECONDS,
        work_dir: str = settings.WORK_DIR,
        output_path_format: str = settings.OUTPUT_PATH_FORMAT,
        manifest_filename: str = settings.MANIFEST_FILENAME,
    ):
        self.store = store
        self.lock_service = lock_service
        self.object_store = object_store
        self.encoder = encoder
        self.profiles = profiles
        self.registry = registry or CancellationRegistry()
        self.max_concurrent_renditions = max(max_concurrent_renditions, 1)
        self.lock_ttl_seconds = lock_ttl_seconds
        self.renewal_interval_seconds = renewal_interval_seconds
        self.work_dir = work_dir
        self.output_path_format = output_path_format
        self.manifest_filename = manifest_filename
        self._profiles_by_name = {p.name: p for p in profiles}

    async def process_job(self, job_id: uuid.UUID, lock_key: str) -> ProcessingResult:
        """Process one job whose lock is held by this worker.

        Never raises for job-level problems; the outcome is reported in the
        result and in the job's stored state.
        """
        control = self.registry.register(job_id)
        renewal = asyncio.create_task(self._renew_lock_loop(job_id, lock_key, control))
        JOBS_IN_FLIGHT.inc()
        start_time = time.monotonic()

        try:
            with correlation_context(str(job_id)):
                with create_span("transcode.job", {"job.id": str(job_id)}):
                    result = await self._process(job_id, lock_key, control)
        except LockLostError as e:
            log_warning(logger, f"Lock lost, abandoning attempt: {e}", job_id=str(job_id))
            result = ProcessingResult(job_id, ProcessingOutcome.LOCK_LOST, str(e))
        except JobCancelledError as e:
            log_info(logger, f"Job {job_id} aborted while processing", job_id=str(job_id))
            result = ProcessingResult(job_id, ProcessingOutcome.ABORTED, str(e))
        except Exception as e:
            # Left Processing; a later intake cycle reclaims it once the lock expires
            log_error(logger, f"Unexpected error processing job {job_id}", exception=e, job_id=str(job_id))
            result = ProcessingResult(job_id, ProcessingOutcome.ERROR, str(e))
        finally:
            renewal.cancel()
            await asyncio.gather(renewal, return_exceptions=True)
            await self._release_lock(lock_key)
            self.registry.unregister(job_id)
            JOBS_IN_FLIGHT.dec()

        JOB_DURATION_SECONDS.labels(outcome=result.outcome.value).observe(time.monotonic() - start_time)
        return result

    async def _process(
        self,
        job_id: uuid.UUID,
        lock_key: str,
        control: ProcessingControl,
    ) -> ProcessingResult:
        job = await self.store.get_job(job_id)
        if job is None or job.status != JobStatus.PROCESSING.value:
            status = job.status if job else "missing"
            log_warning(logger, f"Job {job_id} is {status}, nothing to process", job_id=str(job_id))
            return ProcessingResult(job_id, ProcessingOutcome.SKIPPED)

        await self._checkpoint(lock_key, control)
        renditions = await self.store.ensure_renditions(job.id, self.profiles)

        os.makedirs(self.work_dir, exist_ok=True)
        workdir = tempfile.mkdtemp(prefix=f"job-{job.id}-", dir=self.work_dir)
        try:
            return await self._run_pipeline(job, renditions, workdir, lock_key, control)
        except JobCancelledError:
            await self._cancel_unfinished(job.id, lock_key, control)
            raise
        finally:
            shutil.rmtree(workdir, ignore_errors=True)

    async def _run_pipeline(
        self,
        job: TranscodeJob,
        renditions: list[TranscodeRendition],
        workdir: str,
        lock_key: str,
        control: ProcessingControl,
    ) -> ProcessingResult:
        base_path = output_base_path(job.tenant_id, job.video_id, job.id, self.output_path_format)
        source_path = os.path.join(workdir, "source" + os.path.splitext(job.input_location)[1])

        try:
            await self.object_store.download(job.input_location, source_path)
        except RetryExhaustedError as e:
            message = f"Failed to download source {job.input_location}: {e.last_error}"
            return await self._fail_job(job, message, lock_key, control)
        control.raise_if_stopped()

        finished, failures = await self._encode_renditions(
            renditions, source_path, workdir, base_path, lock_key, control
        )

        if control.lock_lost:
            raise LockLostError(f"Lock lost for job {job.id}")

        settled = finished | {rendition.id for rendition, _ in failures}
        unfinished = [
            r for r in renditions
            if r.status != RenditionStatus.COMPLETED.value and r.id not in settled
        ]

        if failures:
            await self._verify_lock(lock_key, control)
            for rendition, error in failures:
                await self.store.update_rendition(rendition.id, RenditionStatus.FAILED, error_message=str(error))
                RENDITIONS_TOTAL.labels(profile=rendition.profile_name, status="failed").inc()
            await self._mark_cancelled(unfinished)

            message = "; ".join(
                f"Rendition {rendition.profile_name} failed: {error}" for rendition, error in failures
            )
            return await self._fail_job(job, message, lock_key, control)

        if control.aborted or unfinished:
            await self._verify_lock(lock_key, control)
            await self._mark_cancelled(unfinished)
            return ProcessingResult(job.id, ProcessingOutcome.ABORTED, ABORTED_ERROR_MESSAGE)

        return await self._complete_job(job, base_path, lock_key, control)

    async def _encode_renditions(
        self,
        renditions: list[TranscodeRendition],
        source_path: str,
        workdir: str,
        base_path: str,
        lock_key: str,
        control: ProcessingControl,
    ) -> tuple[set[uuid.UUID], list[tuple[TranscodeRendition, BaseException]]]:
        """Encode pending renditions, stopping at the first failure.

        Returns:
            (ids of renditions completed in this attempt, failed renditions with their error)
        """
        semaphore = asyncio.Semaphore(self.max_concurrent_renditions)
        tasks = {
            asyncio.create_task(
                self._process_rendition(r, source_path, workdir, base_path, semaphore, lock_key, control)
            ): r
            for r in renditions
            if r.status != RenditionStatus.COMPLETED.value
        }

        finished: set[uuid.UUID] = set()
        failures: list[tuple[TranscodeRendition, BaseException]] = []
        remaining = set(tasks)
        stop_waiter = asyncio.create_task(control.stopped.wait())

        try:
            while remaining:
                done, _ = await asyncio.wait(
                    remaining | {stop_waiter}, return_when=asyncio.FIRST_COMPLETED
                )
                for task in done:
                    if task is stop_waiter:
                        continue
                    remaining.discard(task)
                    error = task.exception()
                    if error is None:
                        finished.add(tasks[task].id)
                    elif not isinstance(error, (LockLostError, JobCancelledError)):
                        failures.append((tasks[task], error))

                if failures or control.stopped.is_set():
                    break
        finally:
            stop_waiter.cancel()
            pending = list(remaining)
            for task in pending:
                task.cancel()
            results = await asyncio.gather(*pending, return_exceptions=True)
            for task, outcome in zip(pending, results):
                if not isinstance(outcome, BaseException):
                    finished.add(tasks[task].id)

        return finished, failures

    async def _process_rendition(
        self,
        rendition: TranscodeRendition,
        source_path: str,
        workdir: str,
        base_path: str,
        semaphore: asyncio.Semaphore,
        lock_key: str,
        control: ProcessingControl,
    ) -> uuid.UUID:
        profile = self._profiles_by_name[rendition.profile_name]

        async with semaphore:
            await self._checkpoint(lock_key, control)
            start_time = time.monotonic()

            with create_span(
                "transcode.rendition",
                {"job.id": str(rendition.job_id), "rendition.profile": profile.name},
            ):
                await self.store.update_rendition(rendition.id, RenditionStatus.PROCESSING)

                local_output = os.path.join(workdir, profile.name, f"{rendition.id}_{profile.name}.mp4")
                await self.encoder.encode(source_path, profile, local_output)

                key = rendition_key(base_path, rendition.id, profile.name)
                await self.object_store.upload_file(local_output, key, "video/mp4")

                await self._checkpoint(lock_key, control)
                await self.store.update_rendition(rendition.id, RenditionStatus.COMPLETED, output_path=key)

        RENDITIONS_TOTAL.labels(profile=profile.name, status="completed").inc()
        RENDITION_DURATION_SECONDS.labels(profile=profile.name).observe(time.monotonic() - start_time)
        log_info(
            logger,
            f"Rendition {profile.name} completed",
            job_id=str(rendition.job_id),
            profile=profile.name,
        )
        return rendition.id

    async def _complete_job(
        self,
        job: TranscodeJob,
        base_path: str,
        lock_key: str,
        control: ProcessingControl,
    ) -> ProcessingResult:
        await self._checkpoint(lock_key, control)
        current = await self.store.get_job(job.id, with_renditions=True)
        if current is None:
            return ProcessingResult(job.id, ProcessingOutcome.SKIPPED)

        incomplete = [r.profile_name for r in current.renditions if r.status != RenditionStatus.COMPLETED.value]
        if incomplete:
            return await self._fail_job(
                job, f"Renditions not completed: {', '.join(incomplete)}", lock_key, control
            )

        key = manifest_key(base_path, self.manifest_filename)
        manifest = build_master_manifest(base_path, current.renditions)
        try:
            await self.object_store.upload_bytes(
                manifest.encode("utf-8"), key, "application/vnd.apple.mpegurl"
            )
        except RetryExhaustedError as e:
            return await self._fail_job(job, f"Failed to upload manifest: {e.last_error}", lock_key, control)

        await self._checkpoint(lock_key, control)
        if not await self.store.transition(
            job.id, JobStatus.PROCESSING, JobStatus.COMPLETED, manifest_location=key
        ):
            log_warning(logger, f"Job {job.id} left Processing before completion", job_id=str(job.id))
            return ProcessingResult(job.id, ProcessingOutcome.ABORTED, ABORTED_ERROR_MESSAGE)

        log_info(logger, f"Job {job.id} completed", job_id=str(job.id), manifest_location=key)
        return ProcessingResult(job.id, ProcessingOutcome.COMPLETED)

    async def _fail_job(
        self,
        job: TranscodeJob,
        error_message: str,
        lock_key: str,
        control: ProcessingControl,
    ) -> ProcessingResult:
        await self._cancel_unfinished(job.id, lock_key, control)
        if not await self.store.transition(
            job.id, JobStatus.PROCESSING, JobStatus.FAILED, error_message=error_message
        ):
            return ProcessingResult(job.id, ProcessingOutcome.ABORTED, ABORTED_ERROR_MESSAGE)

        log_warning(logger, f"Job {job.id} failed: {error_message}", job_id=str(job.id))
        return ProcessingResult(job.id, ProcessingOutcome.FAILED, error_message)

    async def _cancel_unfinished(
        self,
        job_id: uuid.UUID,
        lock_key: str,
        control: ProcessingControl,
    ) -> None:
        """Mark every rendition still Pending or Processing as cancelled."""
        current = await self.store.get_job(job_id, with_renditions=True)
        if current is None:
            return
        await self._verify_lock(lock_key, control)
        await self._mark_cancelled(
            [r for r in current.renditions
             if r.status in (RenditionStatus.PENDING.value, RenditionStatus.PROCESSING.value)]
        )

    async def _mark_cancelled(self, renditions: list[TranscodeRendition]) -> None:
        for rendition in renditions:
            await self.store.update_rendition(
                rendition.id, RenditionStatus.FAILED, error_message=CANCELLED_RENDITION_MESSAGE
            )
            RENDITIONS_TOTAL.labels(profile=rendition.profile_name, status="cancelled").inc()

    async def _checkpoint(self, lock_key: str, control: ProcessingControl) -> None:
        """Stop if aborted, and confirm ownership before a state write."""
        control.raise_if_stopped()
        await self._verify_lock(lock_key, control)

    async def _verify_lock(self, lock_key: str, control: ProcessingControl) -> None:
        try:
            owned = await self.lock_service.extend_lock(lock_key, self.lock_ttl_seconds)
        except LockError as e:
            control.mark_lock_lost()
            raise LockLostError(str(e)) from e

        if not owned:
            control.mark_lock_lost()
            raise LockLostError(f"Lock {lock_key} no longer owned")

    async def _renew_lock_loop(
        self,
        job_id: uuid.UUID,
        lock_key: str,
        control: ProcessingControl,
    ) -> None:
        """Extend the lock periodically and watch for a cross-process abort."""
        while not control.stopped.is_set():
            try:
                await asyncio.wait_for(control.stopped.wait(), timeout=self.renewal_interval_seconds)
                return
            except asyncio.TimeoutError:
                pass

            try:
                if not await self.lock_service.extend_lock(lock_key, self.lock_ttl_seconds):
                    log_warning(logger, f"Lock {lock_key} lost during renewal", job_id=str(job_id))
                    control.mark_lock_lost()
                    return

                job = await self.store.get_job(job_id)
                if job is not None and job.status != JobStatus.PROCESSING.value:
                    log_info(logger, f"Job {job_id} is now {job.status}, stopping work", job_id=str(job_id))
                    control.abort()
                    return
            except Exception as e:
                # Transient; the next checkpoint or renewal decides
                log_warning(logger, f"Lock renewal check failed: {e}", job_id=str(job_id))

    async def _release_lock(self, lock_key: str) -> None:
        try:
            await self.lock_service.release_lock(lock_key)
        except LockError as e:
            log_warning(logger, f"Failed to release lock {lock_key}: {e}", lock_key=lock_key)
