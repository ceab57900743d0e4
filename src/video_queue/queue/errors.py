"""Exception hierarchy for the job queue.

Errors fall into three groups:
- Caller errors (ValidationError, JobNotFoundError, MaxAttemptsExceeded,
  InvalidTransition) raised by the public queue operations.
- Job errors (ProcessingError, NonRetryableError) raised at the worker
  boundary and never propagated to the dispatcher.
- Infrastructure errors (StoreError and subclasses) raised by the durable
  store.
"""


class QueueError(Exception):
    """Base class for all queue errors."""


class ValidationError(QueueError, ValueError):
    """Submit parameters were rejected before anything was persisted."""


class JobNotFoundError(QueueError, LookupError):
    """No job record exists for the given id."""

    def __init__(self, job_id: str):
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class MaxAttemptsExceeded(QueueError):
    """Manual retry refused because the job has no attempts left."""

    def __init__(self, job_id: str, attempts: int, max_attempts: int):
        super().__init__(
            f"Job {job_id} has exceeded maximum retry attempts "
            f"({attempts}/{max_attempts})"
        )
        self.job_id = job_id
        self.attempts = attempts
        self.max_attempts = max_attempts


class InvalidTransition(QueueError):
    """A job status change outside the allowed lifecycle."""

    def __init__(self, job_id: str, from_status: str, to_status: str):
        super().__init__(f"Job {job_id}: cannot move from {from_status} to {to_status}")
        self.job_id = job_id
        self.from_status = from_status
        self.to_status = to_status


class ProcessingError(QueueError):
    """Retryable failure reported by a processing handler."""


class NonRetryableError(QueueError):
    """Failure that sends the job straight to the dead-letter queue."""


class UnknownJobType(NonRetryableError):
    """No handler is registered for the job type."""

    def __init__(self, job_type: str):
        super().__init__(f"Unknown job type: {job_type}")
        self.job_type = job_type


class StoreError(QueueError):
    """Durable store failure."""


class StoreUnavailable(StoreError):
    """The durable store could not be reached or is locked."""


class IncompatibleRecordError(StoreError):
    """A persisted job record was written by a newer format version."""


class RecoveryInconsistency(QueueError):
    """A processing-set entry has no backing job record."""

    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} is in the processing set but has no record")
        self.job_id = job_id
