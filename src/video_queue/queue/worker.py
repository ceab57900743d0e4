"""Job worker: runs one job and applies the retry policy.

This module provides:
- Claiming a popped job (mark processing, count the attempt, persist)
- Handler execution through the processing service
- Error classification (retryable vs non-retryable vs infrastructure)
- Exponential backoff scheduling into the durable delayed-retry collection
- Dead-lettering once the retry budget is spent

Every outcome is settled here; nothing raised by a job reaches the
dispatcher.
"""

import time
from typing import Optional

import structlog

from ..models import RetryConfig
from .errors import (
    IncompatibleRecordError,
    InvalidTransition,
    NonRetryableError,
    ProcessingError,
    StoreError,
)
from .models import Job, JobStatus, utcnow
from .processing import ProcessingService
from .structures import QueueState

logger = structlog.get_logger(__name__)


def backoff_delay(attempts: int, unit_s: float = 1.0) -> float:
    """Delay before the next attempt: 2^attempts units."""
    return (2 ** attempts) * unit_s


def retry_ready_at(job: Job, unit_s: float) -> float:
    """Ready time for a job in the retrying state (falls back to now)."""
    failed_at = job.failed_at.timestamp() if job.failed_at else time.time()
    return failed_at + backoff_delay(job.attempts, unit_s)


class JobWorker:
    """Executes jobs by id against the shared queue state."""

    def __init__(
        self,
        state: QueueState,
        processing: ProcessingService,
        retry: Optional[RetryConfig] = None,
    ):
        self.state = state
        self.processing = processing
        self.retry = retry or RetryConfig()

    async def run(self, job_id: str) -> Optional[JobStatus]:
        """Process one job end to end.

        Args:
            job_id: Id already popped from the priority queue

        Returns:
            The job's resulting status, or None if the job could not be
            claimed or its outcome could not be persisted (in which case the
            processing-set entry is left for crash recovery)
        """
        try:
            job = self._claim(job_id)
        except InvalidTransition as e:
            logger.error("job_claim_rejected", job_id=job_id, error=str(e), source="worker")
            self._release(job_id)
            return None
        except IncompatibleRecordError as e:
            logger.error("job_record_unreadable", job_id=job_id, error=str(e), source="worker")
            self._release(job_id)
            return None
        except StoreError as e:
            logger.error(
                "job_claim_failed",
                job_id=job_id,
                error=str(e),
                error_type=type(e).__name__,
                source="worker",
            )
            return None

        if job is None:
            return None

        logger.info(
            "processing_job",
            job_id=job.id,
            job_type=job.type,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            source="worker",
        )

        error: Optional[Exception] = None
        try:
            await self.processing.execute(job)
        except (NonRetryableError, ProcessingError) as e:
            error = e

        try:
            if error is None:
                self._complete(job)
            elif isinstance(error, NonRetryableError):
                self._dead_letter(job, error)
            else:
                self._fail(job, error)
        except StoreError as e:
            logger.error(
                "job_state_update_failed",
                job_id=job.id,
                error=str(e),
                error_type=type(e).__name__,
                source="worker",
            )
            return None

        return job.status

    def _claim(self, job_id: str) -> Optional[Job]:
        job = self.state.jobs.get(job_id)
        if job is None:
            # Reference without a record: garbage, not a job
            self.state.processing.remove(job_id)
            logger.warning("job_record_missing", job_id=job_id, source="worker")
            return None

        if job.status == JobStatus.COMPLETED:
            self.state.processing.remove(job_id)
            logger.warning("job_already_completed", job_id=job_id, source="worker")
            return None

        job.transition(JobStatus.PROCESSING)
        job.processed_at = utcnow()
        job.attempts += 1
        self.state.jobs.put(job)
        self.state.processing.add(job_id)
        return job

    def _release(self, job_id: str) -> None:
        try:
            self.state.processing.remove(job_id)
        except StoreError as e:
            logger.error("job_release_failed", job_id=job_id, error=str(e), source="worker")

    def _complete(self, job: Job) -> None:
        job.transition(JobStatus.COMPLETED)
        job.completed_at = utcnow()
        self.state.jobs.put(job)
        self.state.mark_completed(job.id)

        logger.info(
            "job_completed",
            job_id=job.id,
            job_type=job.type,
            attempts=job.attempts,
            processing_time_s=(job.completed_at - job.processed_at).total_seconds(),
            source="worker",
        )

    def _fail(self, job: Job, error: Exception) -> None:
        job.record_failure(str(error), utcnow())

        if not job.has_attempts_left:
            self._dead_letter(job, error, recorded=True)
            return

        job.transition(JobStatus.RETRYING)
        self.state.jobs.put(job)

        delay = backoff_delay(job.attempts, self.retry.backoff_unit_s)
        self.state.processing_to_delayed(job.id, retry_ready_at(job, self.retry.backoff_unit_s))

        logger.warning(
            "job_scheduled_for_retry",
            job_id=job.id,
            job_type=job.type,
            error=job.last_error,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            delay_s=delay,
            source="worker",
        )

    def _dead_letter(self, job: Job, error: Exception, recorded: bool = False) -> None:
        if not recorded:
            job.record_failure(str(error), utcnow())

        job.transition(JobStatus.DEAD_LETTERED)
        self.state.jobs.put(job)
        self.state.processing_to_dead_letters(job.id, job.failed_at)

        logger.error(
            "job_moved_to_dead_letter_queue",
            job_id=job.id,
            job_type=job.type,
            error=job.last_error,
            error_type=type(error).__name__,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            source="worker",
        )
