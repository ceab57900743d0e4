"""Queue structures layered over the durable store.

Each class owns one key or collection name in the store and exposes the
operations the dispatcher, workers and recovery manager need. Only the job
store holds job data; every other structure holds job ids.
"""

import asyncio
import time
from datetime import datetime
from typing import Iterator, List, Optional

from .backends import DurableStore
from .models import Job, utcnow

DEFAULT_JOB_TTL_S = 24 * 60 * 60


class JobStore:
    """Job records keyed by id, expiring a fixed TTL after creation."""

    def __init__(self, store: DurableStore, namespace: str = "job", ttl_s: int = DEFAULT_JOB_TTL_S):
        self.store = store
        self.prefix = f"{namespace}:"
        self.ttl_s = ttl_s

    def key(self, job_id: str) -> str:
        return f"{self.prefix}{job_id}"

    def put(self, job: Job) -> None:
        """Upsert the job record.

        The expiry is anchored to created_at, so rewriting a job never
        extends its lifetime.
        """
        expires_at = job.created_at.timestamp() + self.ttl_s
        self.store.set(self.key(job.id), job.to_record(), expires_at=expires_at)

    def get(self, job_id: str) -> Optional[Job]:
        raw = self.store.get(self.key(job_id))
        if raw is None:
            return None
        return Job.from_record(raw)

    def exists(self, job_id: str) -> bool:
        return self.store.get(self.key(job_id)) is not None

    def delete(self, job_id: str) -> bool:
        return self.store.delete(self.key(job_id))

    def iter_ids(self) -> Iterator[str]:
        """Iterate every live job id (full key-space scan)."""
        for key in self.store.scan_keys(self.prefix):
            yield key[len(self.prefix):]


class PriorityQueue:
    """Pending job ids ordered by priority desc, then enqueue time asc."""

    def __init__(self, store: DurableStore, name: str, poll_interval_s: float = 0.1):
        self.store = store
        self.name = name
        self.poll_interval_s = poll_interval_s

    def enqueue(self, job_id: str, priority: int, timestamp: Optional[float] = None) -> None:
        self.store.zadd(self.name, job_id, priority, time.time() if timestamp is None else timestamp)

    def dequeue(self, into: Optional[str] = None) -> Optional[str]:
        """Pop the next id without waiting.

        Args:
            into: Optional set name that receives the id atomically
        """
        popped = self.store.zpopmax(self.name, move_to=into)
        return popped[0] if popped else None

    async def dequeue_blocking(
        self,
        timeout: float,
        into: Optional[str] = None,
        stop_event: Optional[asyncio.Event] = None,
    ) -> Optional[str]:
        """Pop the next id, waiting up to timeout seconds.

        Returns None when the timeout elapses on an empty queue, or as soon
        as stop_event is set.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while True:
            job_id = self.dequeue(into=into)
            if job_id is not None:
                return job_id

            remaining = deadline - loop.time()
            if remaining <= 0 or (stop_event is not None and stop_event.is_set()):
                return None
            await asyncio.sleep(min(self.poll_interval_s, remaining))

    def remove(self, job_id: str) -> bool:
        return self.store.zrem(self.name, job_id)

    def contains(self, job_id: str) -> bool:
        return self.store.zscore(self.name, job_id) is not None

    def size(self) -> int:
        return self.store.zcard(self.name)

    def peek_ids(self, limit: int = 10) -> List[str]:
        return [member for member, _ in self.store.zrange(self.name, 0, limit - 1, desc=True)]


class ProcessingSet:
    """Ids currently in flight. Membership is provisional, never proof of work done."""

    def __init__(self, store: DurableStore, name: str):
        self.store = store
        self.name = name

    def add(self, job_id: str) -> bool:
        return self.store.sadd(self.name, job_id)

    def remove(self, job_id: str) -> bool:
        return self.store.srem(self.name, job_id)

    def members(self) -> List[str]:
        return self.store.smembers(self.name)

    def contains(self, job_id: str) -> bool:
        return self.store.sismember(self.name, job_id)

    def size(self) -> int:
        return self.store.scard(self.name)


class DelayedRetries:
    """Ids waiting out a retry backoff, keyed by ready time (Unix seconds).

    Stored as a sorted collection whose score is the ready time, so pending
    retries survive a restart.
    """

    def __init__(self, store: DurableStore, name: str):
        self.store = store
        self.name = name

    def schedule(self, job_id: str, ready_at: float) -> None:
        self.store.zadd(self.name, job_id, ready_at)

    def ready_at(self, job_id: str) -> Optional[float]:
        return self.store.zscore(self.name, job_id)

    def due(self, now: Optional[float] = None, limit: Optional[int] = None) -> List[str]:
        now = time.time() if now is None else now
        return [member for member, _ in self.store.zrangebyscore(self.name, now, limit=limit)]

    def next_ready_at(self) -> Optional[float]:
        first = self.store.zrange(self.name, 0, 0)
        return first[0][1] if first else None

    def remove(self, job_id: str) -> bool:
        return self.store.zrem(self.name, job_id)

    def contains(self, job_id: str) -> bool:
        return self.ready_at(job_id) is not None

    def size(self) -> int:
        return self.store.zcard(self.name)


class DeadLetterQueue:
    """Ids that exhausted retries or failed non-retryably.

    Indexed by job id (a sorted collection scored by dead-letter time), so
    removal on manual retry is O(1) and listing is newest first.
    """

    def __init__(self, store: DurableStore, name: str):
        self.store = store
        self.name = name

    def push(self, job_id: str, when: Optional[datetime] = None) -> None:
        when = when or utcnow()
        self.store.zadd(self.name, job_id, when.timestamp())

    def remove(self, job_id: str) -> bool:
        return self.store.zrem(self.name, job_id)

    def contains(self, job_id: str) -> bool:
        return self.store.zscore(self.name, job_id) is not None

    def list_ids(self, limit: int = 50) -> List[str]:
        if limit <= 0:
            return []
        return [member for member, _ in self.store.zrange(self.name, 0, limit - 1, desc=True)]

    def size(self) -> int:
        return self.store.zcard(self.name)


class QueueState:
    """All queue structures for one namespace, sharing one store handle.

    Moves between structures go through this class so each one is a single
    atomic store operation.
    """

    def __init__(
        self,
        store: DurableStore,
        namespace: str = "video_processing",
        job_ttl_s: int = DEFAULT_JOB_TTL_S,
        poll_interval_s: float = 0.1,
    ):
        self.store = store
        self.namespace = namespace
        self.jobs = JobStore(store, ttl_s=job_ttl_s)
        self.pending = PriorityQueue(store, f"{namespace}_queue", poll_interval_s=poll_interval_s)
        self.processing = ProcessingSet(store, f"{namespace}_active")
        self.delayed = DelayedRetries(store, f"{namespace}_delayed")
        self.dead_letters = DeadLetterQueue(store, f"{namespace}_failed")
        self.completed_counter = "completed_jobs_count"

    async def pop_next(
        self, timeout: float, stop_event: Optional[asyncio.Event] = None
    ) -> Optional[str]:
        """Block-pop the next pending id straight into the processing set."""
        return await self.pending.dequeue_blocking(
            timeout, into=self.processing.name, stop_event=stop_event
        )

    def processing_to_delayed(self, job_id: str, ready_at: float) -> bool:
        return self.store.smove_to_zset(self.processing.name, self.delayed.name, job_id, ready_at)

    def processing_to_dead_letters(self, job_id: str, when: datetime) -> bool:
        return self.store.smove_to_zset(
            self.processing.name, self.dead_letters.name, job_id, when.timestamp()
        )

    def processing_to_pending(self, job_id: str, priority: int) -> bool:
        return self.store.smove_to_zset(
            self.processing.name, self.pending.name, job_id, priority, time.time()
        )

    def delayed_to_pending(self, job_id: str, priority: int) -> bool:
        return self.store.zmove(
            self.delayed.name, self.pending.name, job_id, priority, time.time()
        )

    def dead_letters_to_pending(self, job_id: str, priority: int) -> bool:
        return self.store.zmove(
            self.dead_letters.name,
            self.pending.name,
            job_id,
            priority,
            time.time(),
            require_member=False,
        )

    def completed_count(self) -> int:
        return self.store.get_counter(self.completed_counter)

    def mark_completed(self, job_id: str) -> None:
        self.processing.remove(job_id)
        self.store.incr(self.completed_counter)
