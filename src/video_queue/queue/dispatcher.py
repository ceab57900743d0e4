"""Dispatcher: one coordinating loop feeding a fixed pool of worker tasks.

The pool holds max_concurrent_jobs long-lived tasks. An idle task offers a
slot (a future) on a shared channel; the loop takes a slot, pops the next job
id and resolves the slot with it. Since only pool-size slots ever exist, the
dispatcher cannot pop a job while every worker is busy.

Ordering is strict priority first, FIFO within a priority. There is no
anti-starvation: sustained high-priority load can hold back low priority
jobs indefinitely.
"""

import asyncio
import time
from typing import List, Optional

import structlog

from ..models import DispatcherConfig
from .errors import IncompatibleRecordError, InvalidTransition, StoreError
from .models import JobStatus
from .structures import QueueState
from .worker import JobWorker

logger = structlog.get_logger(__name__)


class Dispatcher:
    """Pulls ready jobs and hands them to idle workers."""

    def __init__(
        self,
        state: QueueState,
        worker: JobWorker,
        config: Optional[DispatcherConfig] = None,
    ):
        self.state = state
        self.worker = worker
        self.config = config or DispatcherConfig()
        self._stopping = asyncio.Event()
        self._slots: Optional[asyncio.Queue] = None
        self._loop_task: Optional[asyncio.Task] = None
        self._worker_tasks: List[asyncio.Task] = []
        self._busy = 0

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    @property
    def active_jobs(self) -> int:
        """Workers currently running a job."""
        return self._busy

    async def start(self) -> None:
        """Spawn the worker pool and the dispatch loop."""
        if self.running:
            logger.warning("dispatcher_already_running", source="dispatcher")
            return

        self._stopping = asyncio.Event()
        self._slots = asyncio.Queue()
        self._worker_tasks = [
            asyncio.create_task(self._worker_loop(index), name=f"queue-worker-{index}")
            for index in range(self.config.max_concurrent_jobs)
        ]
        self._loop_task = asyncio.create_task(self._dispatch_loop(), name="queue-dispatcher")

        logger.info(
            "dispatcher_started",
            max_concurrent_jobs=self.config.max_concurrent_jobs,
            dequeue_timeout_s=self.config.dequeue_timeout_s,
            source="dispatcher",
        )

    async def stop(self) -> None:
        """Stop popping new jobs and wait for in-flight jobs to finish.

        In-flight handlers are never cancelled.
        """
        if self._loop_task is None:
            return

        logger.info("dispatcher_stopping", active_jobs=self._busy, source="dispatcher")
        self._stopping.set()
        await self._loop_task

        # Release idle workers; busy ones exit after their current job
        while not self._slots.empty():
            slot = self._slots.get_nowait()
            if not slot.done():
                slot.set_result(None)

        await asyncio.gather(*self._worker_tasks)
        self._worker_tasks = []
        self._loop_task = None

        logger.info("dispatcher_stopped", source="dispatcher")

    async def _dispatch_loop(self) -> None:
        while not self._stopping.is_set():
            slot = await self._next_slot()
            if slot is None:
                break

            try:
                self.promote_due_retries()
                job_id = await self.state.pop_next(self._pop_timeout(), stop_event=self._stopping)
            except StoreError as e:
                self._slots.put_nowait(slot)
                logger.error(
                    "dispatch_store_unavailable",
                    error=str(e),
                    error_type=type(e).__name__,
                    retry_in_s=self.config.error_backoff_s,
                    source="dispatcher",
                )
                await self._pause(self.config.error_backoff_s)
                continue
            except Exception as e:
                # Unexpected error in the loop itself: log, never crash
                self._slots.put_nowait(slot)
                logger.error(
                    "dispatch_loop_error",
                    error=str(e),
                    error_type=type(e).__name__,
                    source="dispatcher",
                    exc_info=True,
                )
                await self._pause(self.config.error_backoff_s)
                continue

            if job_id is None:
                self._slots.put_nowait(slot)
                continue

            logger.debug("job_dispatched", job_id=job_id, source="dispatcher")
            slot.set_result(job_id)

    async def _next_slot(self) -> Optional[asyncio.Future]:
        """Wait for an idle worker, or return None once stopping."""
        get_slot = asyncio.ensure_future(self._slots.get())
        stop_wait = asyncio.ensure_future(self._stopping.wait())
        done, _ = await asyncio.wait({get_slot, stop_wait}, return_when=asyncio.FIRST_COMPLETED)

        if get_slot in done:
            stop_wait.cancel()
            slot = get_slot.result()
            if self._stopping.is_set():
                self._slots.put_nowait(slot)
                return None
            return slot

        get_slot.cancel()
        return None

    async def _worker_loop(self, index: int) -> None:
        loop = asyncio.get_running_loop()

        while not self._stopping.is_set():
            slot = loop.create_future()
            self._slots.put_nowait(slot)
            job_id = await slot
            if job_id is None:
                return

            self._busy += 1
            try:
                await self.worker.run(job_id)
            except Exception as e:
                logger.error(
                    "worker_loop_error",
                    worker=index,
                    job_id=job_id,
                    error=str(e),
                    error_type=type(e).__name__,
                    source="dispatcher",
                    exc_info=True,
                )
            finally:
                self._busy -= 1

    def _pop_timeout(self) -> float:
        """Bounded wait, cut short so the next delayed retry is not overslept."""
        timeout = self.config.dequeue_timeout_s
        next_ready = self.state.delayed.next_ready_at()
        if next_ready is not None:
            timeout = min(timeout, max(next_ready - time.time(), 0.0))
        return timeout

    async def _pause(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    def promote_due_retries(self, now: Optional[float] = None) -> int:
        """Move retries whose backoff has elapsed back into the priority queue.

        Returns:
            Number of jobs promoted
        """
        promoted = 0
        for job_id in self.state.delayed.due(now):
            try:
                job = self.state.jobs.get(job_id)
            except IncompatibleRecordError as e:
                self.state.delayed.remove(job_id)
                logger.error("delayed_job_unreadable", job_id=job_id, error=str(e), source="dispatcher")
                continue

            if job is None:
                self.state.delayed.remove(job_id)
                logger.warning("delayed_job_record_missing", job_id=job_id, source="dispatcher")
                continue

            try:
                job.transition(JobStatus.QUEUED)
            except InvalidTransition as e:
                self.state.delayed.remove(job_id)
                logger.error("delayed_job_rejected", job_id=job_id, error=str(e), source="dispatcher")
                continue

            self.state.jobs.put(job)
            if self.state.delayed_to_pending(job_id, job.priority):
                promoted += 1
                logger.info(
                    "job_requeued_after_backoff",
                    job_id=job_id,
                    attempts=job.attempts,
                    priority=job.priority,
                    source="dispatcher",
                )
        return promoted
