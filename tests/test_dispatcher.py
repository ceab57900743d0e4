"""Tests for the dispatcher and worker pool."""

import asyncio
import time

import pytest

from video_queue.queue import JobStatus, StoreUnavailable
from video_queue.queue.models import Job


class TestDispatching:
    @pytest.mark.asyncio
    async def test_concurrency_cap(self, make_queue, processing, wait_until):
        running = 0
        peak = 0
        done = []

        @processing.register("video_processing")
        async def handler(job_id, payload):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.05)
            running -= 1
            done.append(job_id)

        queue = make_queue(max_concurrent_jobs=2)
        for n in range(6):
            queue.submit("video_processing", {"n": n})

        await queue.start()
        try:
            assert await wait_until(lambda: len(done) == 6)
        finally:
            await queue.stop()

        assert peak == 2
        assert queue.get_stats().completed == 6

    @pytest.mark.asyncio
    async def test_priority_order_single_worker(self, make_queue, processing, wait_until):
        order = []

        @processing.register("video_processing")
        async def handler(job_id, payload):
            order.append(payload["priority"])

        queue = make_queue(max_concurrent_jobs=1)
        for priority in [1, 5, 3]:
            queue.submit("video_processing", {"priority": priority}, priority=priority)

        await queue.start()
        try:
            assert await wait_until(lambda: len(order) == 3)
        finally:
            await queue.stop()

        assert order == [5, 3, 1]

    @pytest.mark.asyncio
    async def test_high_priority_finishes_before_low_starts(
        self, make_queue, processing, wait_until
    ):
        events = []

        @processing.register("video_processing")
        async def handler(job_id, payload):
            events.append(("start", payload["name"]))
            await asyncio.sleep(0.02)
            events.append(("end", payload["name"]))

        queue = make_queue(max_concurrent_jobs=1)
        queue.submit("video_processing", {"name": "A"}, priority=1)
        queue.submit("video_processing", {"name": "B"}, priority=5)

        await queue.start()
        try:
            assert await wait_until(lambda: len(events) == 4)
        finally:
            await queue.stop()

        assert events.index(("end", "B")) < events.index(("start", "A"))

    @pytest.mark.asyncio
    async def test_job_submitted_while_running(self, make_queue, processing, wait_until):
        done = []
        processing.register("video_processing", lambda job_id, payload: done.append(job_id))

        queue = make_queue()
        await queue.start()
        try:
            job_id = queue.submit("video_processing")
            assert await wait_until(lambda: done == [job_id])
        finally:
            await queue.stop()

        assert queue.get_status(job_id).status == JobStatus.COMPLETED


class TestRetries:
    @pytest.mark.asyncio
    async def test_always_failing_job_dead_lettered_after_max_attempts(
        self, make_queue, processing, wait_until
    ):
        calls = []

        @processing.register("video_processing")
        async def handler(job_id, payload):
            calls.append(job_id)
            raise RuntimeError("transcode failed")

        queue = make_queue()
        job_id = queue.submit("video_processing", max_attempts=3)

        await queue.start()
        try:
            assert await wait_until(
                lambda: queue.get_status(job_id).status == JobStatus.DEAD_LETTERED
            )
            # Never re-enqueued once dead-lettered
            await asyncio.sleep(0.1)
        finally:
            await queue.stop()

        view = queue.get_status(job_id)
        assert len(calls) == 3
        assert view.attempts == 3
        assert "transcode failed" in view.last_error

        stats = queue.get_stats()
        assert stats.failed == 1
        assert stats.pending == 0
        assert stats.delayed == 0
        assert stats.processing == 0

    @pytest.mark.asyncio
    async def test_retry_succeeds_after_backoff(self, make_queue, processing, wait_until):
        attempts = []

        @processing.register("video_processing")
        async def handler(job_id, payload):
            attempts.append(time.time())
            if len(attempts) == 1:
                raise RuntimeError("flaky storage")

        queue = make_queue()
        job_id = queue.submit("video_processing")

        await queue.start()
        try:
            assert await wait_until(
                lambda: queue.get_status(job_id).status == JobStatus.COMPLETED
            )
        finally:
            await queue.stop()

        assert len(attempts) == 2
        # First retry waits 2^1 backoff units (0.01s each)
        assert attempts[1] - attempts[0] >= 0.02
        assert queue.get_status(job_id).attempts == 2

    def test_promote_due_retries(self, make_queue):
        queue = make_queue()
        state = queue.state
        job = Job(id="r1", type="video_processing", priority=4, status=JobStatus.RETRYING)
        state.jobs.put(job)
        state.delayed.schedule("r1", 100.0)

        assert queue.dispatcher.promote_due_retries(now=50.0) == 0
        assert queue.dispatcher.promote_due_retries(now=150.0) == 1

        assert state.jobs.get("r1").status == JobStatus.QUEUED
        assert state.store.zscore(state.pending.name, "r1") == 4
        assert state.delayed.size() == 0

    def test_promote_drops_missing_record(self, make_queue):
        queue = make_queue()
        queue.state.delayed.schedule("ghost", 1.0)

        assert queue.dispatcher.promote_due_retries(now=10.0) == 0
        assert queue.state.delayed.size() == 0
        assert queue.state.pending.size() == 0


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_stop_waits_for_in_flight_job(self, make_queue, processing, wait_until):
        started = asyncio.Event()

        @processing.register("video_processing")
        async def handler(job_id, payload):
            started.set()
            await asyncio.sleep(0.2)

        queue = make_queue()
        job_id = queue.submit("video_processing")

        await queue.start()
        await asyncio.wait_for(started.wait(), timeout=5.0)
        await queue.stop()

        assert not queue.running
        assert queue.get_status(job_id).status == JobStatus.COMPLETED
        assert queue.get_stats().processing == 0

    @pytest.mark.asyncio
    async def test_stop_leaves_pending_jobs_queued(self, make_queue, processing):
        queue = make_queue()
        await queue.start()
        await queue.stop()

        job_id = queue.submit("video_processing")
        assert queue.get_status(job_id).status == JobStatus.QUEUED
        assert queue.get_stats().pending == 1

    @pytest.mark.asyncio
    async def test_start_twice_is_noop(self, make_queue):
        queue = make_queue(max_concurrent_jobs=2)
        await queue.start()
        try:
            assert await queue.start() is None
            assert len(queue.dispatcher._worker_tasks) == 2
        finally:
            await queue.stop()

    @pytest.mark.asyncio
    async def test_store_failure_does_not_kill_dispatcher(
        self, make_queue, processing, wait_until, monkeypatch
    ):
        done = []
        processing.register("video_processing", lambda job_id, payload: done.append(job_id))

        queue = make_queue()
        real_pop = queue.state.pop_next
        failures = []

        async def flaky_pop(timeout, stop_event=None):
            if not failures:
                failures.append(1)
                raise StoreUnavailable("database is locked")
            return await real_pop(timeout, stop_event=stop_event)

        monkeypatch.setattr(queue.state, "pop_next", flaky_pop)
        job_id = queue.submit("video_processing")

        await queue.start()
        try:
            assert await wait_until(lambda: done == [job_id])
            assert queue.running
        finally:
            await queue.stop()

        assert failures == [1]
