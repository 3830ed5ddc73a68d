"""Property tests for job administration and the status state machine.

**Feature: mediaflow, Property: Abort Restrictions**
**Feature: mediaflow, Property: Monotonic Status**
"""

import uuid

import pytest
from hypothesis import given, settings, strategies as st

from mediaflow.modules.transcoding.models import (
    ALLOWED_TRANSITIONS,
    JobStatus,
    is_valid_transition,
)
from mediaflow.modules.transcoding.orchestrator import ABORTED_ERROR_MESSAGE
from mediaflow.modules.transcoding.service import (
    InvalidJobStateError,
    JobNotFoundError,
    TranscodingJobService,
)
from mediaflow.modules.transcoding.store import InvalidTransitionError
from tests.fakes import InMemoryJobStore

STATUS_ORDER = {
    JobStatus.RECEIVED: 0,
    JobStatus.PROCESSING: 1,
    JobStatus.COMPLETED: 2,
    JobStatus.NOTIFIED: 3,
    JobStatus.FAILED: 4,
}

status_strategy = st.sampled_from(list(JobStatus))


class TestAbortRestrictions:
    """**Feature: mediaflow, Property: Abort Restrictions**"""

    @given(status=st.sampled_from([JobStatus.RECEIVED, JobStatus.PROCESSING]))
    @settings(max_examples=10, deadline=None)
    @pytest.mark.asyncio
    async def test_active_job_abort_yields_failed(self, status: JobStatus):
        store = InMemoryJobStore()
        job_id = store.add_job("T1", "V1", status=status)

        response = await TranscodingJobService(store).abort_job(job_id)

        assert response.status == JobStatus.FAILED
        assert store.status(job_id) == JobStatus.FAILED.value
        assert store.jobs[job_id]["error_message"] == ABORTED_ERROR_MESSAGE

    @given(status=st.sampled_from([JobStatus.COMPLETED, JobStatus.NOTIFIED, JobStatus.FAILED]))
    @settings(max_examples=10, deadline=None)
    @pytest.mark.asyncio
    async def test_terminal_job_abort_rejected(self, status: JobStatus):
        store = InMemoryJobStore()
        job_id = store.add_job("T1", "V1", status=status)

        with pytest.raises(InvalidJobStateError):
            await TranscodingJobService(store).abort_job(job_id)

        assert store.status(job_id) == status.value

    @pytest.mark.asyncio
    async def test_missing_job_abort(self):
        with pytest.raises(JobNotFoundError):
            await TranscodingJobService(InMemoryJobStore()).abort_job(uuid.uuid4())


class TestMonotonicStatus:
    """**Feature: mediaflow, Property: Monotonic Status**"""

    @given(current=status_strategy, target=status_strategy)
    @settings(max_examples=100)
    def test_allowed_transitions_only_move_forward(self, current: JobStatus, target: JobStatus):
        if is_valid_transition(current, target):
            assert STATUS_ORDER[target] > STATUS_ORDER[current]
            assert target != JobStatus.RECEIVED

    def test_terminal_statuses_have_no_exits(self):
        assert ALLOWED_TRANSITIONS[JobStatus.NOTIFIED] == frozenset()
        assert ALLOWED_TRANSITIONS[JobStatus.FAILED] == frozenset()
        assert ALLOWED_TRANSITIONS[JobStatus.COMPLETED] == frozenset({JobStatus.NOTIFIED})

    @given(steps=st.lists(st.tuples(status_strategy, status_strategy), min_size=1, max_size=15))
    @settings(max_examples=50, deadline=None)
    @pytest.mark.asyncio
    async def test_observed_history_is_monotonic(self, steps):
        store = InMemoryJobStore()
        job_id = store.add_job("T1", "V1")

        for expected, target in steps:
            try:
                await store.transition(job_id, expected, target)
            except InvalidTransitionError:
                pass

        history = [JobStatus(s) for s in store.status_history[job_id]]
        for before, after in zip(history, history[1:]):
            assert is_valid_transition(before, after)

    @pytest.mark.asyncio
    async def test_backward_transition_rejected(self):
        store = InMemoryJobStore()
        job_id = store.add_job("T1", "V1", status=JobStatus.COMPLETED)

        with pytest.raises(InvalidTransitionError):
            await store.transition(job_id, JobStatus.COMPLETED, JobStatus.PROCESSING)

        assert store.status(job_id) == JobStatus.COMPLETED.value


class TestReadSurface:
    """List, lookup and stats."""

    @pytest.mark.asyncio
    async def test_stats_zero_filled(self):
        store = InMemoryJobStore()
        store.add_job("T1", "V1")
        store.add_job("T1", "V2", status=JobStatus.FAILED)
        store.add_job("T1", "V3", status=JobStatus.FAILED)

        stats = await TranscodingJobService(store).get_stats()

        assert stats.received == 1
        assert stats.failed == 2
        assert stats.processing == 0
        assert stats.completed == 0
        assert stats.notified == 0
        assert stats.total == 3

    @pytest.mark.asyncio
    async def test_list_filters_by_status_and_video(self):
        store = InMemoryJobStore()
        store.add_job("T1", "V1")
        store.add_job("T1", "V2", status=JobStatus.FAILED)
        store.add_job("T2", "V2")

        service = TranscodingJobService(store)
        by_status = await service.list_jobs(status=JobStatus.FAILED)
        by_video = await service.list_jobs(video_id="V2")

        assert by_status.total == 1
        assert by_status.items[0].video_id == "V2"
        assert by_video.total == 2

    @pytest.mark.asyncio
    async def test_get_by_video_scoped_to_tenant(self):
        store = InMemoryJobStore()
        store.add_job("T1", "V1")
        other = store.add_job("T2", "V1")

        job = await TranscodingJobService(store).get_job_by_video("V1", "T2")

        assert job.id == other
        assert job.renditions == []
