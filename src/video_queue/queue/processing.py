"""Processing service registry: routes jobs to handlers by job type.

Handlers are the external video work (transcoding, thumbnails, HLS
packaging). The queue only decides when they run. A handler is called as
``handler(job_id, payload)``; it may be a coroutine function or a plain
callable, in which case it runs in a worker thread so the event loop stays
free for dispatching.

Handlers must tolerate being called more than once for the same job id:
delivery is at-least-once across crashes.
"""

import asyncio
import importlib
import inspect
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

import structlog

from .errors import NonRetryableError, ProcessingError, UnknownJobType
from .models import Job

logger = structlog.get_logger(__name__)

VIDEO_PROCESSING = "video_processing"
THUMBNAIL_GENERATION = "thumbnail_generation"
HLS_GENERATION = "hls_generation"

JobHandler = Callable[[str, Dict[str, Any]], Union[Awaitable[Any], Any]]


class ProcessingService:
    """Registry of job handlers keyed by job type.

    Example:
        service = ProcessingService()

        @service.register("video_processing")
        async def transcode(job_id, payload):
            ...
    """

    def __init__(self, handlers: Optional[Mapping[str, JobHandler]] = None):
        self._handlers: Dict[str, JobHandler] = dict(handlers or {})

    @property
    def job_types(self) -> List[str]:
        return sorted(self._handlers)

    def register(self, job_type: str, handler: Optional[JobHandler] = None):
        """Register a handler, directly or as a decorator."""
        if handler is None:

            def decorator(fn: JobHandler) -> JobHandler:
                self._handlers[job_type] = fn
                return fn

            return decorator

        self._handlers[job_type] = handler
        return handler

    def handler_for(self, job_type: str) -> JobHandler:
        """Look up the handler for a job type.

        Raises:
            UnknownJobType: If nothing is registered for job_type
        """
        try:
            return self._handlers[job_type]
        except KeyError:
            raise UnknownJobType(job_type) from None

    async def execute(self, job: Job) -> Any:
        """Run the handler for job.

        Returns:
            Whatever the handler returned

        Raises:
            UnknownJobType: No handler for job.type (non-retryable)
            NonRetryableError: Handler declared the failure permanent
            ProcessingError: Any other handler failure, or a handler
                returning False (retryable)
        """
        handler = self.handler_for(job.type)

        try:
            if inspect.iscoroutinefunction(handler):
                result = await handler(job.id, job.payload)
            else:
                result = await asyncio.to_thread(handler, job.id, job.payload)
                if inspect.isawaitable(result):
                    result = await result
        except (NonRetryableError, ProcessingError):
            raise
        except Exception as e:
            raise ProcessingError(f"{type(e).__name__}: {e}") from e

        if result is False:
            raise ProcessingError(f"Handler for {job.type} reported failure")

        return result


def import_handler(path: str) -> JobHandler:
    """Import a handler from a "package.module:attribute" path."""
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Handler path must look like 'module:attribute', got {path!r}")

    module = importlib.import_module(module_name)
    handler = getattr(module, attr)
    if not callable(handler):
        raise ValueError(f"Handler {path!r} is not callable")
    return handler


def load_handlers(paths: Mapping[str, str]) -> ProcessingService:
    """Build a ProcessingService from a {job_type: "module:attribute"} mapping."""
    service = ProcessingService()
    for job_type, path in paths.items():
        service.register(job_type, import_handler(path))
        logger.info("handler_registered", job_type=job_type, handler=path, source="processing")
    return service
