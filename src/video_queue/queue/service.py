"""VideoProcessingQueue: the public face of the job queue.

Wires the queue structures, worker, dispatcher and recovery manager around
one explicitly passed store handle, and exposes the submit and admin
operations used by application code and the CLI.
"""

import json
import uuid
from datetime import timedelta
from typing import Any, Dict, List, Optional

import pydantic
import structlog

from ..models import QueueConfig
from .backends import DurableStore
from .dispatcher import Dispatcher
from .errors import (
    IncompatibleRecordError,
    InvalidTransition,
    JobNotFoundError,
    MaxAttemptsExceeded,
    ValidationError,
)
from .models import Job, JobStatus, JobView, QueueStats, VideoProcessingPayload, utcnow
from .processing import VIDEO_PROCESSING, ProcessingService
from .recovery import RecoveryManager, RecoveryReport
from .structures import QueueState
from .worker import JobWorker

logger = structlog.get_logger(__name__)


class VideoProcessingQueue:
    """Durable priority queue for background video jobs.

    Example:
        store = SQLiteStore("queue.db")
        queue = VideoProcessingQueue(store, processing, config)
        await queue.start()
        job_id = queue.submit_video("v1", "s3://bucket/v1.mp4", priority=5)
        ...
        await queue.stop()
    """

    def __init__(
        self,
        store: DurableStore,
        processing: Optional[ProcessingService] = None,
        config: Optional[QueueConfig] = None,
    ):
        self.store = store
        self.config = config or QueueConfig()
        self.processing = processing or ProcessingService()

        self.state = QueueState(
            store,
            namespace=self.config.store.namespace,
            job_ttl_s=self.config.jobs.ttl_s,
            poll_interval_s=self.config.dispatcher.poll_interval_s,
        )
        self.worker = JobWorker(self.state, self.processing, self.config.retry)
        self.dispatcher = Dispatcher(self.state, self.worker, self.config.dispatcher)
        self.recovery = RecoveryManager(self.state, self.config.retry)

    @property
    def running(self) -> bool:
        return self.dispatcher.running

    # Lifecycle

    async def start(self) -> Optional[RecoveryReport]:
        """Recover interrupted jobs, then start dispatching.

        Returns:
            The recovery report, or None if the queue was already running
        """
        if self.running:
            logger.warning("queue_already_running", source="queue")
            return None

        report = self.recovery.recover()
        await self.dispatcher.start()
        logger.info(
            "queue_started",
            namespace=self.state.namespace,
            job_types=self.processing.job_types,
            source="queue",
        )
        return report

    async def stop(self) -> None:
        """Stop taking new jobs and wait for in-flight jobs to finish."""
        await self.dispatcher.stop()
        logger.info("queue_stopped", source="queue")

    # Submission

    def submit(
        self,
        job_type: str,
        payload: Optional[Dict[str, Any]] = None,
        priority: int = 1,
        max_attempts: Optional[int] = None,
        job_id: Optional[str] = None,
    ) -> str:
        """Persist a new job and make it available for dispatch.

        Args:
            job_type: Handler key (e.g. "video_processing")
            payload: JSON-serializable handler input
            priority: Higher runs first (default 1)
            max_attempts: Retry budget (defaults to retry.max_attempts)
            job_id: Explicit id (default: random uuid4 hex)

        Returns:
            The job id

        Raises:
            ValidationError: Bad parameters or duplicate id; nothing is persisted
        """
        payload = {} if payload is None else payload
        if not isinstance(payload, dict):
            raise ValidationError("payload must be a JSON object")
        try:
            json.dumps(payload)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"payload is not JSON-serializable: {e}") from e

        if isinstance(priority, bool):
            raise ValidationError("priority must be an integer")

        try:
            job = Job(
                id=job_id or uuid.uuid4().hex,
                type=job_type,
                payload=payload,
                priority=priority,
                max_attempts=self.config.retry.max_attempts if max_attempts is None else max_attempts,
            )
        except pydantic.ValidationError as e:
            raise ValidationError(f"Invalid job: {e}") from e

        if job_id is not None and self.state.jobs.exists(job.id):
            raise ValidationError(f"Job {job.id} already exists")

        self.state.jobs.put(job)
        self.state.pending.enqueue(job.id, job.priority, job.created_at.timestamp())

        logger.info(
            "job_enqueued",
            job_id=job.id,
            job_type=job.type,
            priority=job.priority,
            max_attempts=job.max_attempts,
            source="queue",
        )
        return job.id

    def submit_video(
        self,
        video_id: str,
        video_url: str,
        user_id: Optional[str] = None,
        options: Optional[Dict[str, Any]] = None,
        priority: int = 1,
    ) -> str:
        """Submit a `video_processing` job for one uploaded video."""
        try:
            payload = VideoProcessingPayload(
                video_id=video_id,
                video_url=video_url,
                user_id=user_id,
                options=options or {},
            )
        except pydantic.ValidationError as e:
            raise ValidationError(f"Invalid video payload: {e}") from e

        return self.submit(VIDEO_PROCESSING, payload.model_dump(), priority=priority)

    # Inspection

    def get_status(self, job_id: str) -> JobView:
        """Raises JobNotFoundError if the job has no live record."""
        return JobView.from_job(self._load(job_id))

    def get_stats(self) -> QueueStats:
        return QueueStats(
            pending=self.state.pending.size(),
            processing=self.state.processing.size(),
            failed=self.state.dead_letters.size(),
            completed=self.state.completed_count(),
            delayed=self.state.delayed.size(),
        )

    def list_dead_letters(self, limit: int = 50) -> List[JobView]:
        """Dead-lettered jobs, newest first.

        References whose record has expired or cannot be read are skipped.
        """
        views = []
        for job_id in self.state.dead_letters.list_ids(limit):
            try:
                job = self.state.jobs.get(job_id)
            except IncompatibleRecordError as e:
                logger.warning("dead_letter_unreadable", job_id=job_id, error=str(e), source="queue")
                continue
            if job is not None:
                views.append(JobView.from_job(job))
        return views

    # Admin

    def retry(self, job_id: str, extra_attempts: int = 0) -> JobView:
        """Put a dead-lettered job back in the priority queue.

        Args:
            job_id: Job to retry
            extra_attempts: Raise max_attempts by this much first, so an
                exhausted job can be given another chance

        Raises:
            JobNotFoundError: No record for job_id
            InvalidTransition: The job is not dead-lettered
            MaxAttemptsExceeded: No attempts left (nothing is enqueued)
        """
        if extra_attempts < 0:
            raise ValidationError("extra_attempts must be >= 0")

        job = self._load(job_id)
        if job.status != JobStatus.DEAD_LETTERED:
            raise InvalidTransition(job_id, job.status.value, JobStatus.QUEUED.value)

        max_attempts = job.max_attempts + extra_attempts
        if job.attempts >= max_attempts:
            raise MaxAttemptsExceeded(job_id, job.attempts, max_attempts)

        job.max_attempts = max_attempts
        job.transition(JobStatus.QUEUED)
        job.failed_at = None
        job.last_error = None
        self.state.jobs.put(job)
        self.state.dead_letters_to_pending(job_id, job.priority)

        logger.info(
            "job_manually_retried",
            job_id=job_id,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            source="queue",
        )
        return JobView.from_job(job)

    def cleanup_old_jobs(self, older_than_days: Optional[int] = None) -> int:
        """Delete completed job records older than the cutoff.

        Also purges expired records and drops dead-letter references whose
        record is gone. Scans every job key, so this does not scale to very
        large key spaces; run it from a maintenance job, not a hot path.

        Returns:
            Number of completed records deleted
        """
        if older_than_days is None:
            older_than_days = self.config.jobs.cleanup_older_than_days
        cutoff = utcnow() - timedelta(days=older_than_days)

        deleted = 0
        for job_id in list(self.state.jobs.iter_ids()):
            try:
                job = self.state.jobs.get(job_id)
            except IncompatibleRecordError:
                continue
            if job is None or job.status != JobStatus.COMPLETED:
                continue
            if job.completed_at is not None and job.completed_at < cutoff:
                self.state.jobs.delete(job_id)
                deleted += 1

        expired = self.store.purge_expired()

        pruned = 0
        for job_id in self.state.dead_letters.list_ids(self.state.dead_letters.size()):
            if not self.state.jobs.exists(job_id):
                self.state.dead_letters.remove(job_id)
                pruned += 1

        logger.info(
            "cleanup_completed",
            deleted=deleted,
            expired=expired,
            dead_letters_pruned=pruned,
            older_than_days=older_than_days,
            source="queue",
        )
        return deleted

    def _load(self, job_id: str) -> Job:
        job = self.state.jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job
