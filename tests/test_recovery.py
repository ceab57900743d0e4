"""Crash recovery tests.

A crash is simulated by leaving ids in the processing set, closing the
store and reopening it under a fresh queue instance.
"""

from datetime import datetime, timezone

import pytest

from video_queue.queue import (
    JobStatus,
    ProcessingError,
    RecoveryManager,
    SQLiteStore,
    VideoProcessingQueue,
)
from video_queue.queue.structures import QueueState


def crash_mid_flight(state, count):
    """Submit jobs and leave them claimed but unfinished."""
    ids = []
    for n in range(count):
        queue = VideoProcessingQueue(state.store)
        job_id = queue.submit("video_processing", {"n": n}, priority=n + 1)
        assert state.pending.dequeue(into=state.processing.name) is not None
        job = state.jobs.get(job_id)
        job.transition(JobStatus.PROCESSING)
        job.processed_at = datetime.now(timezone.utc)
        job.attempts += 1
        state.jobs.put(job)
        ids.append(job_id)
    return ids


class TestRecoveryManager:
    def test_orphans_requeued_exactly_once(self, temp_db):
        store = SQLiteStore(temp_db)
        ids = crash_mid_flight(QueueState(store), 3)
        store.close()

        store = SQLiteStore(temp_db)
        try:
            state = QueueState(store)
            report = RecoveryManager(state).recover()

            assert sorted(report.requeued) == sorted(ids)
            assert state.processing.size() == 0
            assert state.pending.size() == 3
            assert sorted(state.pending.peek_ids(10)) == sorted(ids)
            for job_id in ids:
                job = state.jobs.get(job_id)
                assert job.status == JobStatus.QUEUED
                assert job.processed_at is None
                assert job.attempts == 0
        finally:
            store.close()

    def test_original_priority_kept(self, state):
        ids = crash_mid_flight(state, 2)

        RecoveryManager(state).recover()

        assert state.pending.peek_ids(10) == [ids[1], ids[0]]
        assert state.store.zscore(state.pending.name, ids[1]) == 2

    def test_popped_but_unclaimed_job_requeued(self, state):
        job_id = VideoProcessingQueue(state.store).submit("video_processing")
        state.pending.dequeue(into=state.processing.name)

        report = RecoveryManager(state).recover()

        assert report.requeued == [job_id]
        assert state.pending.contains(job_id)

    def test_crash_on_last_attempt_keeps_budget(self, state):
        ids = crash_mid_flight(state, 1)
        job = state.jobs.get(ids[0])
        job.attempts = job.max_attempts
        state.jobs.put(job)

        RecoveryManager(state).recover()

        job = state.jobs.get(ids[0])
        assert job.status == JobStatus.QUEUED
        assert job.attempts == job.max_attempts - 1
        assert job.has_attempts_left

    def test_missing_record_reported_lost(self, state):
        state.processing.add("ghost")

        report = RecoveryManager(state).recover()

        assert report.lost == ["ghost"]
        assert state.processing.size() == 0
        assert state.pending.size() == 0

    def test_unreadable_record_reported_lost(self, state):
        state.store.set(state.jobs.key("garbled"), "not json")
        state.processing.add("garbled")

        report = RecoveryManager(state).recover()
        assert report.lost == ["garbled"]
        assert report.skipped == []
        assert state.processing.size() == 0

        # A second start has nothing left to reconcile
        assert RecoveryManager(state).recover().total == 0

    def test_completed_job_not_requeued(self, state):
        ids = crash_mid_flight(state, 1)
        job = state.jobs.get(ids[0])
        job.transition(JobStatus.COMPLETED)
        job.completed_at = datetime.now(timezone.utc)
        state.jobs.put(job)

        report = RecoveryManager(state).recover()

        assert report.finalized == ids
        assert state.processing.size() == 0
        assert state.pending.size() == 0

    def test_interrupted_dead_letter_move_finished(self, state):
        ids = crash_mid_flight(state, 1)
        job = state.jobs.get(ids[0])
        job.record_failure("boom", datetime.now(timezone.utc))
        job.transition(JobStatus.DEAD_LETTERED)
        state.jobs.put(job)

        RecoveryManager(state).recover()

        assert state.dead_letters.list_ids() == ids
        assert state.processing.size() == 0
        assert state.pending.size() == 0

    def test_interrupted_retry_move_finished(self, state):
        ids = crash_mid_flight(state, 1)
        job = state.jobs.get(ids[0])
        failed_at = datetime.now(timezone.utc)
        job.record_failure("boom", failed_at)
        job.transition(JobStatus.RETRYING)
        state.jobs.put(job)

        RecoveryManager(state).recover()

        assert state.processing.size() == 0
        assert state.delayed.ready_at(ids[0]) == pytest.approx(failed_at.timestamp() + 2.0)

    def test_empty_processing_set(self, state):
        report = RecoveryManager(state).recover()
        assert report.total == 0


class TestRecoveryOnStart:
    @pytest.mark.asyncio
    async def test_start_recovers_then_processes(
        self, temp_db, processing, fast_config, wait_until
    ):
        store = SQLiteStore(temp_db)
        ids = crash_mid_flight(QueueState(store), 2)
        store.close()

        done = []
        processing.register("video_processing", lambda job_id, payload: done.append(job_id))

        store = SQLiteStore(temp_db)
        try:
            queue = VideoProcessingQueue(store, processing, fast_config)
            report = await queue.start()
            try:
                assert sorted(report.requeued) == sorted(ids)
                assert await wait_until(lambda: len(done) == 2)
            finally:
                await queue.stop()

            assert sorted(done) == sorted(ids)
            for job_id in ids:
                view = queue.get_status(job_id)
                assert view.status == JobStatus.COMPLETED
                assert view.attempts == 1
        finally:
            store.close()

    @pytest.mark.asyncio
    async def test_crash_on_last_attempt_never_exceeds_budget(
        self, temp_db, processing, fast_config, wait_until
    ):
        store = SQLiteStore(temp_db)
        state = QueueState(store)
        ids = crash_mid_flight(state, 1)
        job = state.jobs.get(ids[0])
        job.attempts = job.max_attempts
        state.jobs.put(job)
        store.close()

        calls = []

        def always_fails(job_id, payload):
            calls.append(job_id)
            raise ProcessingError("encoder crashed")

        processing.register("video_processing", always_fails)

        store = SQLiteStore(temp_db)
        try:
            queue = VideoProcessingQueue(store, processing, fast_config)
            await queue.start()
            try:
                assert await wait_until(
                    lambda: queue.get_status(ids[0]).status == JobStatus.DEAD_LETTERED
                )
            finally:
                await queue.stop()

            view = queue.get_status(ids[0])
            assert view.attempts == view.max_attempts == 3
            assert calls == ids
            assert queue.list_dead_letters()[0].id == ids[0]
        finally:
            store.close()
