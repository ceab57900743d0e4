"""Pydantic models for job queue data structures.

This module defines the type-safe models used throughout the queue system.
All models use Pydantic for validation and serialization; a Job is persisted
as one JSON record per job id.
"""

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import IncompatibleRecordError, InvalidTransition

# Persisted record format version. Bump when the Job layout changes.
RECORD_VERSION = 1

MAX_ERROR_LENGTH = 500


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    """Job processing states with explicit semantics.

    State transitions:
        queued → processing           (worker picks the job)
        processing → completed        (handler succeeded)
        processing → retrying         (handler failed, budget left)
        processing → dead_lettered    (budget exhausted or non-retryable)
        processing → queued           (crash recovery)
        retrying → queued             (backoff elapsed, promoted)
        dead_lettered → queued        (manual retry)
    """

    QUEUED = "queued"
    PROCESSING = "processing"
    RETRYING = "retrying"
    COMPLETED = "completed"
    DEAD_LETTERED = "dead_lettered"


ALLOWED_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.PROCESSING}),
    JobStatus.PROCESSING: frozenset(
        {
            JobStatus.COMPLETED,
            JobStatus.RETRYING,
            JobStatus.DEAD_LETTERED,
            JobStatus.QUEUED,
        }
    ),
    JobStatus.RETRYING: frozenset({JobStatus.QUEUED}),
    JobStatus.DEAD_LETTERED: frozenset({JobStatus.QUEUED}),
    JobStatus.COMPLETED: frozenset(),
}


class Job(BaseModel):
    """Canonical job record held by the job store.

    Queue structures (priority queue, processing set, delayed retries,
    dead-letter queue) only ever hold the job id; the payload lives here.
    """

    model_config = ConfigDict(extra="ignore", validate_assignment=True)

    version: int = Field(default=RECORD_VERSION, ge=1, description="Record format version")
    id: str = Field(..., min_length=1, description="Unique job identifier")
    type: str = Field(..., pattern=r"^[a-z][a-z0-9_]*$", description="Processing handler key")
    payload: Dict[str, Any] = Field(default_factory=dict, description="Handler input data")
    priority: int = Field(default=1, strict=True, description="Higher = dispatched first")
    status: JobStatus = Field(default=JobStatus.QUEUED, description="Current lifecycle state")
    attempts: int = Field(default=0, ge=0, description="Processing attempts so far")
    max_attempts: int = Field(default=3, ge=1, description="Retry budget")
    created_at: datetime = Field(default_factory=utcnow, description="Submission time")
    processed_at: Optional[datetime] = Field(default=None, description="Last pick time")
    completed_at: Optional[datetime] = Field(default=None, description="Completion time")
    failed_at: Optional[datetime] = Field(default=None, description="Last failure time")
    last_error: Optional[str] = Field(default=None, description="Last error (truncated)")

    @field_validator("created_at", "processed_at", "completed_at", "failed_at")
    @classmethod
    def as_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        """Store timestamps as aware UTC; naive values are read as local time."""
        if value is None:
            return None
        return value.astimezone(timezone.utc)

    @property
    def has_attempts_left(self) -> bool:
        return self.attempts < self.max_attempts

    def transition(self, status: JobStatus) -> None:
        """Move to a new status, enforcing the lifecycle table.

        Raises:
            InvalidTransition: If the move is not allowed from the current status
        """
        if status not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransition(self.id, self.status.value, status.value)
        self.status = status

    def record_failure(self, error: str, when: datetime) -> None:
        self.failed_at = when
        self.last_error = error[:MAX_ERROR_LENGTH] if error else None

    def to_record(self) -> str:
        """Serialize for the durable store."""
        return self.model_dump_json()

    @classmethod
    def from_record(cls, raw: str) -> "Job":
        """Deserialize a stored record.

        Raises:
            IncompatibleRecordError: If the record was written by a newer
                version or cannot be parsed
        """
        try:
            data = json.loads(raw)
        except ValueError as e:
            raise IncompatibleRecordError(f"Job record is not valid JSON: {e}") from e

        version = data.get("version", 1) if isinstance(data, dict) else None
        if not isinstance(version, int):
            raise IncompatibleRecordError("Job record has no usable version field")
        if version > RECORD_VERSION:
            raise IncompatibleRecordError(
                f"Job record version {version} is newer than supported {RECORD_VERSION}"
            )

        try:
            return cls.model_validate(data)
        except ValueError as e:
            raise IncompatibleRecordError(f"Job record failed validation: {e}") from e


class JobView(BaseModel):
    """Job as returned to callers of the queue API."""

    id: str
    type: str
    payload: Dict[str, Any]
    priority: int
    status: JobStatus
    attempts: int
    max_attempts: int
    created_at: datetime
    processed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    last_error: Optional[str] = None

    @classmethod
    def from_job(cls, job: Job) -> "JobView":
        return cls(**job.model_dump(exclude={"version"}))


class QueueStats(BaseModel):
    """Point-in-time queue counters."""

    pending: int = Field(default=0, ge=0, description="Jobs waiting in the priority queue")
    processing: int = Field(default=0, ge=0, description="Jobs currently in flight")
    failed: int = Field(default=0, ge=0, description="Jobs in the dead-letter queue")
    completed: int = Field(default=0, ge=0, description="Jobs completed (persisted counter)")
    delayed: int = Field(default=0, ge=0, description="Jobs waiting out a retry backoff")


class VideoProcessingPayload(BaseModel):
    """Payload for `video_processing` jobs."""

    video_id: str = Field(..., min_length=1, description="Video identifier")
    video_url: str = Field(..., min_length=1, description="Source video location")
    user_id: Optional[str] = Field(default=None, description="Uploading user")
    options: Dict[str, Any] = Field(default_factory=dict, description="Encoding options")
