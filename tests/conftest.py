import asyncio
import time

import pytest

from video_queue.models import DispatcherConfig, QueueConfig, RetryConfig
from video_queue.queue import ProcessingService, SQLiteStore, VideoProcessingQueue
from video_queue.queue.structures import QueueState


@pytest.fixture
def temp_db(tmp_path):
    """Path to a fresh SQLite database file."""
    return str(tmp_path / "test_queue.db")


@pytest.fixture
def store(temp_db):
    """SQLiteStore on a temp database, closed after the test."""
    store = SQLiteStore(temp_db)
    yield store
    store.close()


@pytest.fixture
def state(store):
    return QueueState(store)


@pytest.fixture
def fast_config():
    """Config with millisecond timings so dispatcher tests stay quick."""
    return QueueConfig(
        dispatcher=DispatcherConfig(
            max_concurrent_jobs=1,
            dequeue_timeout_s=0.2,
            poll_interval_s=0.01,
            error_backoff_s=0.05,
        ),
        retry=RetryConfig(max_attempts=3, backoff_unit_s=0.01),
    )


@pytest.fixture
def processing():
    return ProcessingService()


@pytest.fixture
def make_queue(store, processing, fast_config):
    """Factory for a VideoProcessingQueue on the shared store.

    Keyword overrides are applied to the dispatcher section of the config.
    """

    def factory(**dispatcher_overrides):
        config = fast_config
        if dispatcher_overrides:
            config = fast_config.model_copy(
                update={
                    "dispatcher": fast_config.dispatcher.model_copy(update=dispatcher_overrides)
                }
            )
        return VideoProcessingQueue(store, processing, config)

    return factory


@pytest.fixture
def wait_until():
    """Poll an async predicate until it holds or the timeout elapses."""

    async def wait(predicate, timeout: float = 5.0, interval: float = 0.01) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            await asyncio.sleep(interval)
        return predicate()

    return wait
