"""Durable priority job queue for background video processing."""

from .backends import DurableStore
from .dispatcher import Dispatcher
from .errors import (
    IncompatibleRecordError,
    InvalidTransition,
    JobNotFoundError,
    MaxAttemptsExceeded,
    NonRetryableError,
    ProcessingError,
    QueueError,
    RecoveryInconsistency,
    StoreError,
    StoreUnavailable,
    UnknownJobType,
    ValidationError,
)
from .models import Job, JobStatus, JobView, QueueStats, VideoProcessingPayload
from .processing import ProcessingService, load_handlers
from .recovery import RecoveryManager, RecoveryReport
from .service import VideoProcessingQueue
from .sqlite_backend import SQLiteStore
from .worker import JobWorker, backoff_delay

__all__ = [
    "DurableStore",
    "SQLiteStore",
    "Job",
    "JobStatus",
    "JobView",
    "QueueStats",
    "VideoProcessingPayload",
    "ProcessingService",
    "load_handlers",
    "JobWorker",
    "backoff_delay",
    "Dispatcher",
    "RecoveryManager",
    "RecoveryReport",
    "VideoProcessingQueue",
    "QueueError",
    "ValidationError",
    "JobNotFoundError",
    "MaxAttemptsExceeded",
    "InvalidTransition",
    "ProcessingError",
    "NonRetryableError",
    "UnknownJobType",
    "StoreError",
    "StoreUnavailable",
    "IncompatibleRecordError",
    "RecoveryInconsistency",
]
