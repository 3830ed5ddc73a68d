"""End-to-end scenario: one upload of V1 for tenant T1 with 480p and 720p.

**Feature: mediaflow, Property: Upload To Notification**
"""

import tempfile

import pytest

from mediaflow.modules.events import EventConsumer, VideoTranscodedEvent, VideoUploadedEvent
from mediaflow.modules.transcoding.announcer import JobCompletionAnnouncer
from mediaflow.modules.transcoding.handlers import JobCreationHandler
from mediaflow.modules.transcoding.intake import AsyncioJobDispatcher, JobIntakePoller
from mediaflow.modules.transcoding.models import JobStatus, RenditionStatus
from tests.fakes import FAST_RETRY, FakeEventBus, make_harness

UPLOADS = "video.uploaded"
TRANSCODED = "video.transcoded"


class TestUploadToNotification:
    """**Feature: mediaflow, Property: Upload To Notification**"""

    @pytest.mark.asyncio
    async def test_single_upload_is_transcoded_and_announced_once(self):
        with tempfile.TemporaryDirectory() as root:
            harness = make_harness(root)
            store = harness.store
            bus = FakeEventBus()
            source = harness.seed_source("in/V1.mp4")

            # Duplicate delivery of the same upload
            upload = VideoUploadedEvent(video_id="V1", tenant_id="T1", input_location=source)
            bus.push(UPLOADS, upload)
            bus.push(UPLOADS, upload)

            consumer = EventConsumer(
                bus=bus,
                topic=UPLOADS,
                group="engine",
                consumer_name="test",
                event_model=VideoUploadedEvent,
                handler=JobCreationHandler(store).handle,
                retry_config=FAST_RETRY,
            )
            assert await consumer.run_once() == 2
            assert len(store.jobs) == 1
            (job_id,) = store.jobs

            dispatcher = AsyncioJobDispatcher(harness.orchestrator, max_concurrent_jobs=2)
            poller = JobIntakePoller(store, harness.lock_service, dispatcher)
            cycle = await poller.run_cycle()
            await dispatcher.wait_idle()

            assert cycle.dispatched == 1
            assert store.status(job_id) == JobStatus.COMPLETED.value
            assert harness.locks.entries == {}

            renditions = store.job_renditions(job_id)
            assert set(renditions) == {"480p", "720p"}
            assert all(r["status"] == RenditionStatus.COMPLETED.value for r in renditions.values())

            manifest = store.jobs[job_id]["output_manifest_location"]
            assert manifest == f"T1/videos/V1/{job_id}/manifest.m3u8"
            assert harness.storage.exists(manifest)

            # A second intake cycle finds nothing left to do
            assert (await poller.run_cycle()).dispatched == 0

            announcer = JobCompletionAnnouncer(
                store,
                bus,
                topic=TRANSCODED,
                quiescence_seconds=5,
                retry_config=FAST_RETRY,
            )
            assert (await announcer.run_cycle()).notified == 0

            store.age(job_id, seconds=60)
            assert (await announcer.run_cycle()).notified == 1
            assert (await announcer.run_cycle()).notified == 0

            assert store.status(job_id) == JobStatus.NOTIFIED.value
            assert store.status_history[job_id] == ["received", "processing", "completed", "notified"]

            assert len(bus.published) == 1
            topic, event = bus.published[0]
            assert topic == TRANSCODED
            assert isinstance(event, VideoTranscodedEvent)
            assert event.job_id == str(job_id)
            assert event.video_id == "V1"
            assert event.tenant_id == "T1"
            assert event.success is True
            assert event.manifest_location == manifest
            assert set(event.output_summary) == {"480p", "720p"}
            assert harness.encoder.started.count("480p") == 1
            assert harness.encoder.started.count("720p") == 1
