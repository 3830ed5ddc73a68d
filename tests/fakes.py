"""In-memory stand-ins for the engine's infrastructure.

They keep the conditional-update semantics of the real adapters so the
concurrency properties can be exercised without PostgreSQL or Redis.
"""

import asyncio
import os
import time
import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from mediaflow.core.retry import RetryConfig
from mediaflow.core.storage import LocalStorage, ObjectStore, StorageConfig, StorageResult
from mediaflow.modules.events import BaseEvent, EventBus, EventMessage
from mediaflow.modules.lock.service import DistributedLockService, generate_owner_token, video_lock_key
from mediaflow.modules.transcoding.ffmpeg import EncodeResult, EncodingError, MediaEncoder
from mediaflow.modules.transcoding.models import (
    NON_TERMINAL_STATUSES,
    JobStatus,
    RenditionStatus,
    TranscodeJob,
    TranscodeRendition,
    utc_now,
)
from mediaflow.modules.transcoding.orchestrator import CancellationRegistry, TranscodingOrchestrator
from mediaflow.modules.transcoding.profiles import RenditionProfile, resolve_profiles
from mediaflow.modules.transcoding.store import JobStore, normalize_expected


class InMemoryJobStore(JobStore):
    """JobStore over dicts. Every call yields once to let callers interleave."""

    def __init__(self):
        self.jobs: dict[uuid.UUID, dict] = {}
        self.renditions: dict[uuid.UUID, dict] = {}
        self.status_history: dict[uuid.UUID, list[str]] = defaultdict(list)
        self.unavailable = False

    async def _enter(self) -> None:
        await asyncio.sleep(0)
        if self.unavailable:
            raise ConnectionError("job store unavailable")

    def _to_job(self, record: dict, with_renditions: bool = False) -> TranscodeJob:
        job = TranscodeJob(**record)
        if with_renditions:
            job.renditions = [
                TranscodeRendition(**r) for r in self.renditions.values() if r["job_id"] == record["id"]
            ]
        return job

    # ==================== Test helpers ====================

    def add_job(self, tenant_id: str, video_id: str, status: JobStatus = JobStatus.RECEIVED,
                input_location: str = "in/source.mp4", **fields) -> uuid.UUID:
        now = utc_now()
        job_id = uuid.uuid4()
        self.jobs[job_id] = {
            "id": job_id,
            "tenant_id": tenant_id,
            "video_id": video_id,
            "status": status.value,
            "input_location": input_location,
            "output_manifest_location": None,
            "error_message": None,
            "retry_count": 0,
            "notification_attempts": 0,
            "created_at": now,
            "updated_at": now,
            "started_at": None,
            "completed_at": None,
        }
        self.jobs[job_id].update(fields)
        self.status_history[job_id].append(status.value)
        return job_id

    def age(self, job_id: uuid.UUID, seconds: float) -> None:
        """Move a job's timestamps into the past."""
        record = self.jobs[job_id]
        record["updated_at"] = record["updated_at"] - timedelta(seconds=seconds)
        record["created_at"] = record["created_at"] - timedelta(seconds=seconds)

    def status(self, job_id: uuid.UUID) -> str:
        return self.jobs[job_id]["status"]

    def job_renditions(self, job_id: uuid.UUID) -> dict[str, dict]:
        return {r["profile_name"]: r for r in self.renditions.values() if r["job_id"] == job_id}

    # ==================== JobStore ====================

    async def create_job_if_absent(self, tenant_id, video_id, input_location):
        await self._enter()
        for record in self.jobs.values():
            if (
                record["tenant_id"] == tenant_id
                and record["video_id"] == video_id
                and JobStatus(record["status"]) in NON_TERMINAL_STATUSES
            ):
                return self._to_job(record), False

        job_id = self.add_job(tenant_id, video_id, input_location=input_location)
        return self._to_job(self.jobs[job_id]), True

    async def get_job(self, job_id, with_renditions=False):
        await self._enter()
        record = self.jobs.get(job_id)
        return self._to_job(record, with_renditions) if record else None

    async def get_latest_job_for_video(self, tenant_id, video_id, with_renditions=False):
        await self._enter()
        matches = [
            r for r in self.jobs.values()
            if r["tenant_id"] == tenant_id and r["video_id"] == video_id
        ]
        if not matches:
            return None
        return self._to_job(max(matches, key=lambda r: r["created_at"]), with_renditions)

    async def list_jobs(self, status=None, video_id=None, skip=0, limit=50):
        await self._enter()
        matches = [
            r for r in self.jobs.values()
            if (status is None or r["status"] == JobStatus(status).value)
            and (video_id is None or r["video_id"] == video_id)
        ]
        matches.sort(key=lambda r: r["created_at"], reverse=True)
        return [self._to_job(r) for r in matches[skip:skip + limit]], len(matches)

    async def get_jobs_by_status(self, status, limit, updated_before: Optional[datetime] = None):
        await self._enter()
        matches = [
            r for r in self.jobs.values()
            if r["status"] == JobStatus(status).value
            and (updated_before is None or r["updated_at"] < updated_before)
        ]
        matches.sort(key=lambda r: r["created_at"])
        return [self._to_job(r) for r in matches[:limit]]

    async def transition(self, job_id, expected, target, error_message=None, manifest_location=None):
        statuses = normalize_expected(expected, target)
        await self._enter()
        record = self.jobs.get(job_id)
        if record is None or JobStatus(record["status"]) not in statuses:
            return False

        now = utc_now()
        record["status"] = target.value
        record["updated_at"] = now
        if target == JobStatus.PROCESSING:
            record["started_at"] = now
        elif target in (JobStatus.COMPLETED, JobStatus.FAILED):
            record["completed_at"] = now
        if error_message is not None:
            record["error_message"] = error_message
        if manifest_location is not None:
            record["output_manifest_location"] = manifest_location

        self.status_history[job_id].append(target.value)
        return True

    async def reclaim_stale_job(self, job_id, seen_updated_at):
        await self._enter()
        record = self.jobs.get(job_id)
        if (
            record is None
            or record["status"] != JobStatus.PROCESSING.value
            or record["updated_at"] != seen_updated_at
        ):
            return False
        record["retry_count"] += 1
        record["updated_at"] = utc_now()
        return True

    async def ensure_renditions(self, job_id, profiles: list[RenditionProfile]):
        await self._enter()
        existing = self.job_renditions(job_id)
        for profile in profiles:
            record = existing.get(profile.name)
            if record is None:
                rendition_id = uuid.uuid4()
                self.renditions[rendition_id] = {
                    "id": rendition_id,
                    "job_id": job_id,
                    "profile_name": profile.name,
                    "resolution": profile.resolution,
                    "bitrate": profile.video_bitrate,
                    "status": RenditionStatus.PENDING.value,
                    "output_path": None,
                    "error_message": None,
                    "created_at": utc_now(),
                    "completed_at": None,
                }
            elif record["status"] != RenditionStatus.COMPLETED.value:
                record.update(status=RenditionStatus.PENDING.value, completed_at=None, error_message=None)

        by_profile = self.job_renditions(job_id)
        return [TranscodeRendition(**by_profile[p.name]) for p in profiles]

    async def update_rendition(self, rendition_id, status, output_path=None, error_message=None):
        await self._enter()
        record = self.renditions.get(rendition_id)
        if record is None:
            return False
        record["status"] = status.value
        if status in (RenditionStatus.COMPLETED, RenditionStatus.FAILED):
            record["completed_at"] = utc_now()
        if output_path is not None:
            record["output_path"] = output_path
        if error_message is not None:
            record["error_message"] = error_message
        return True

    async def increment_notification_attempts(self, job_id):
        await self._enter()
        record = self.jobs.get(job_id)
        if record is None or record["status"] != JobStatus.COMPLETED.value:
            return None
        record["notification_attempts"] += 1
        record["updated_at"] = utc_now()
        return record["notification_attempts"]

    async def count_by_status(self):
        await self._enter()
        counts: dict[str, int] = defaultdict(int)
        for record in self.jobs.values():
            counts[record["status"]] += 1
        return dict(counts)


class LockTable:
    """Shared lock state standing in for Redis; entries expire by TTL."""

    def __init__(self):
        self.entries: dict[str, tuple[str, float]] = {}

    def owner(self, key: str) -> Optional[str]:
        entry = self.entries.get(key)
        if entry is None:
            return None
        token, expires_at = entry
        if expires_at <= time.monotonic():
            del self.entries[key]
            return None
        return token

    def steal(self, key: str) -> None:
        """Simulate expiry followed by another worker taking the lock."""
        self.entries[key] = ("someone-else", time.monotonic() + 3600)

    def expire(self, key: str) -> None:
        self.entries.pop(key, None)


class FakeLockService(DistributedLockService):
    """DistributedLockService over a LockTable, one owner token per instance."""

    def __init__(self, table: Optional[LockTable] = None, owner_token: Optional[str] = None):
        self.table = table or LockTable()
        self._owner_token = owner_token or generate_owner_token()
        self.released: list[str] = []

    @property
    def owner_token(self) -> str:
        return self._owner_token

    async def acquire_lock(self, key, ttl_seconds):
        await asyncio.sleep(0)
        if self.table.owner(key) is not None:
            return False
        self.table.entries[key] = (self._owner_token, time.monotonic() + ttl_seconds)
        return True

    async def release_lock(self, key):
        await asyncio.sleep(0)
        if self.table.owner(key) != self._owner_token:
            return False
        del self.table.entries[key]
        self.released.append(key)
        return True

    async def extend_lock(self, key, ttl_seconds):
        await asyncio.sleep(0)
        if self.table.owner(key) != self._owner_token:
            return False
        self.table.entries[key] = (self._owner_token, time.monotonic() + ttl_seconds)
        return True

    async def lock_exists(self, key):
        await asyncio.sleep(0)
        return self.table.owner(key) is not None


class FakeEventBus(EventBus):
    """Records published events; publishing can be made to fail."""

    def __init__(self):
        self.published: list[tuple[str, BaseEvent]] = []
        self.dead_letters: list[tuple[EventMessage, str, str]] = []
        self.acked: list[str] = []
        self.pending: dict[str, list[EventMessage]] = defaultdict(list)
        self.fail_publishes = 0

    def push(self, topic: str, event: BaseEvent) -> EventMessage:
        """Queue an inbound message for a consumer."""
        message = EventMessage(
            message_id=f"{len(self.acked) + sum(map(len, self.pending.values()))}-0",
            topic=topic,
            data=event.to_json(),
            event_type=event.event_type,
        )
        self.pending[topic].append(message)
        return message

    async def publish(self, topic, event):
        await asyncio.sleep(0)
        if self.fail_publishes:
            self.fail_publishes -= 1
            raise ConnectionError("event transport unavailable")
        self.published.append((topic, event))
        return f"{len(self.published)}-0"

    async def ensure_group(self, topic, group):
        return None

    async def read(self, topic, group, consumer, count, block_ms):
        batch = self.pending[topic][:count]
        del self.pending[topic][:count]
        return batch

    async def ack(self, topic, group, message_id):
        self.acked.append(message_id)

    async def dead_letter(self, message, group, error):
        self.dead_letters.append((message, group, error))
        return f"dlq-{len(self.dead_letters)}"


class FakeEncoder(MediaEncoder):
    """Writes a small file per rendition.

    failing: profiles whose encode raises EncodingError
    gates: profiles that block until their event is set
    """

    def __init__(self, failing: Optional[set[str]] = None, gates: Optional[dict[str, asyncio.Event]] = None):
        self.failing = failing or set()
        self.gates = gates or {}
        self.started: list[str] = []
        self.cancelled: list[str] = []
        self.active = 0
        self.max_active = 0

    async def encode(self, source_path, profile, output_path):
        self.started.append(profile.name)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(0)
            gate = self.gates.get(profile.name)
            if gate is not None:
                await gate.wait()
            if profile.name in self.failing:
                raise EncodingError(f"unsupported input for {profile.name}")

            os.makedirs(os.path.dirname(output_path), exist_ok=True)
            with open(output_path, "wb") as f:
                f.write(f"encoded {profile.name}".encode())
            return EncodeResult(output_path=output_path, file_size=os.path.getsize(output_path))
        except asyncio.CancelledError:
            self.cancelled.append(profile.name)
            raise
        finally:
            self.active -= 1


class FlakyStorage(LocalStorage):
    """LocalStorage whose first uploads or downloads report failure."""

    def __init__(self, config: StorageConfig, failing_uploads: int = 0, failing_downloads: int = 0):
        super().__init__(config)
        self.failing_uploads = failing_uploads
        self.failing_downloads = failing_downloads
        self.upload_calls = 0

    def upload(self, file_path, key, content_type="application/octet-stream"):
        self.upload_calls += 1
        if self.failing_uploads:
            self.failing_uploads -= 1
            return StorageResult(success=False, key=key, error_message="503 Slow Down")
        return super().upload(file_path, key, content_type)

    def upload_bytes(self, content, key, content_type="application/octet-stream"):
        self.upload_calls += 1
        if self.failing_uploads:
            self.failing_uploads -= 1
            return StorageResult(success=False, key=key, error_message="503 Slow Down")
        return super().upload_bytes(content, key, content_type)

    def download(self, key, destination):
        if self.failing_downloads:
            self.failing_downloads -= 1
            return StorageResult(success=False, key=key, error_message="connection reset")
        return super().download(key, destination)


FAST_RETRY = RetryConfig(max_attempts=3, initial_delay=0, max_delay=0)


@dataclass
class Harness:
    """One worker's worth of engine parts over in-memory infrastructure."""
    root: str
    store: InMemoryJobStore
    locks: LockTable
    lock_service: FakeLockService
    storage: FlakyStorage
    encoder: FakeEncoder
    registry: CancellationRegistry
    orchestrator: TranscodingOrchestrator

    def seed_source(self, key: str = "in/V1.mp4") -> str:
        LocalStorage.upload_bytes(self.storage, b"source video", key)
        return key


def make_harness(
    root: str,
    profiles: tuple[str, ...] = ("480p", "720p"),
    encoder: Optional[FakeEncoder] = None,
    store: Optional[InMemoryJobStore] = None,
    locks: Optional[LockTable] = None,
    max_concurrent_renditions: int = 3,
    renewal_interval_seconds: float = 60.0,
    failing_uploads: int = 0,
    failing_downloads: int = 0,
) -> Harness:
    store = store or InMemoryJobStore()
    locks = locks or LockTable()
    lock_service = FakeLockService(locks)
    storage = FlakyStorage(
        StorageConfig(backend="local", local_path=os.path.join(root, "storage")),
        failing_uploads=failing_uploads,
        failing_downloads=failing_downloads,
    )
    encoder = encoder or FakeEncoder()
    registry = CancellationRegistry()
    orchestrator = TranscodingOrchestrator(
        store=store,
        lock_service=lock_service,
        object_store=ObjectStore(storage, FAST_RETRY),
        encoder=encoder,
        profiles=resolve_profiles(profiles),
        registry=registry,
        max_concurrent_renditions=max_concurrent_renditions,
        lock_ttl_seconds=300,
        renewal_interval_seconds=renewal_interval_seconds,
        work_dir=os.path.join(root, "work"),
    )
    return Harness(root, store, locks, lock_service, storage, encoder, registry, orchestrator)


async def claim(harness: Harness, job_id: uuid.UUID) -> str:
    """Do what the intake poller does for one job and return the lock key."""
    record = harness.store.jobs[job_id]
    lock_key = video_lock_key(record["tenant_id"], record["video_id"])
    assert await harness.lock_service.acquire_lock(lock_key, 300)
    assert await harness.store.transition(job_id, JobStatus.RECEIVED, JobStatus.PROCESSING)
    return lock_key


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Poll predicate until it holds or fail after timeout."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)
