"""Crash recovery for the processing set.

Runs once on startup, before the dispatcher accepts work. A restarted
process has no memory of what was in flight, so every processing-set entry
is treated as provisional and reconciled against its job record:

- no record: the payload is gone, the entry is logged as lost and dropped
- completed: the crash hit after completion was persisted, drop the entry
- dead_lettered / retrying: finish the interrupted move
- anything else: reset and re-queue at the original priority, returning
  the attempt the crash interrupted so the retry budget is not overrun

Re-queued jobs may run twice; handlers must tolerate duplicate invocation.
"""

from dataclasses import dataclass, field
from typing import List, Optional

import structlog

from ..models import RetryConfig
from .errors import IncompatibleRecordError, RecoveryInconsistency, StoreError
from .models import JobStatus
from .structures import QueueState
from .worker import retry_ready_at

logger = structlog.get_logger(__name__)


@dataclass
class RecoveryReport:
    """Outcome of one recovery pass."""

    requeued: List[str] = field(default_factory=list)
    finalized: List[str] = field(default_factory=list)
    lost: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.requeued) + len(self.finalized) + len(self.lost) + len(self.skipped)


class RecoveryManager:
    """Reconciles the processing set after a restart."""

    def __init__(self, state: QueueState, retry: Optional[RetryConfig] = None):
        self.state = state
        self.retry = retry or RetryConfig()

    def recover(self) -> RecoveryReport:
        """Reconcile every processing-set entry.

        Returns:
            RecoveryReport listing what happened to each entry

        Raises:
            StoreError: If the processing set itself cannot be read
        """
        report = RecoveryReport()

        for job_id in self.state.processing.members():
            try:
                self._recover_one(job_id, report)
            except RecoveryInconsistency as e:
                self.state.processing.remove(job_id)
                report.lost.append(job_id)
                logger.error("job_lost", job_id=job_id, error=str(e), source="recovery")
            except IncompatibleRecordError as e:
                # Unreadable by this version; nothing to re-run
                self.state.processing.remove(job_id)
                report.lost.append(job_id)
                logger.error(
                    "job_record_unreadable", job_id=job_id, error=str(e), source="recovery"
                )
            except StoreError as e:
                # Left in place for the next startup
                report.skipped.append(job_id)
                logger.error(
                    "job_recovery_failed",
                    job_id=job_id,
                    error=str(e),
                    error_type=type(e).__name__,
                    source="recovery",
                )

        if report.total:
            logger.info(
                "recovered_interrupted_jobs",
                requeued=len(report.requeued),
                finalized=len(report.finalized),
                lost=len(report.lost),
                skipped=len(report.skipped),
                source="recovery",
            )

        return report

    def _recover_one(self, job_id: str, report: RecoveryReport) -> None:
        job = self.state.jobs.get(job_id)
        if job is None:
            raise RecoveryInconsistency(job_id)

        if job.status == JobStatus.COMPLETED:
            self.state.processing.remove(job_id)
            report.finalized.append(job_id)
            return

        if job.status == JobStatus.DEAD_LETTERED:
            self.state.processing_to_dead_letters(job_id, job.failed_at or job.created_at)
            report.finalized.append(job_id)
            return

        if job.status == JobStatus.RETRYING:
            self.state.processing_to_delayed(job_id, retry_ready_at(job, self.retry.backoff_unit_s))
            report.finalized.append(job_id)
            return

        if job.status == JobStatus.PROCESSING:
            job.transition(JobStatus.QUEUED)
            # The interrupted attempt never finished; give it back
            job.attempts = max(job.attempts - 1, 0)
        job.processed_at = None
        self.state.jobs.put(job)
        self.state.processing_to_pending(job_id, job.priority)
        report.requeued.append(job_id)

        logger.info(
            "job_requeued_after_crash",
            job_id=job_id,
            priority=job.priority,
            attempts=job.attempts,
            source="recovery",
        )
