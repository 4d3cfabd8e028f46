"""Process-level wiring of store, queue, publisher, runner and workers."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from agent_jobs.config import Settings
from agent_jobs.jobs.cancellation import CancellationRegistry
from agent_jobs.jobs.echo import default_registry
from agent_jobs.jobs.events import EventPublisher, EventSink
from agent_jobs.jobs.handlers import HandlerRegistry
from agent_jobs.jobs.lifecycle import JobLifecycleManager
from agent_jobs.jobs.pipeline import StagePipelineRunner
from agent_jobs.jobs.queue import InMemoryJobQueue, JobQueue, SQLiteJobQueue
from agent_jobs.jobs.repository import JobRepository
from agent_jobs.jobs.service import JobService
from agent_jobs.jobs.worker import WorkerPool

logger = logging.getLogger(__name__)


def build_queue(settings: Settings) -> JobQueue:
    """Queue backend selected by `AGENT_JOBS_QUEUE_BACKEND`."""

    if settings.jobs.queue_backend == "memory":
        return InMemoryJobQueue()
    return SQLiteJobQueue(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.jobs.sqlite_busy_timeout_ms,
    )


class JobRuntime:
    """Owns every engine component for one process.

    `open()` migrates the schema. `start()` additionally runs startup recovery
    and launches the worker threads; only a process that runs workers should
    call it, since recovery fails every job still marked running. `close()`
    stops workers and releases the database. Usable as a context manager.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        registry: HandlerRegistry | None = None,
        queue: JobQueue | None = None,
        sinks: Sequence[EventSink] = (),
    ) -> None:
        settings.validate()
        self.settings = settings
        self.repository = JobRepository(
            settings.db_path,
            sqlite_busy_timeout_ms=settings.jobs.sqlite_busy_timeout_ms,
        )
        self.queue = queue or build_queue(settings)
        self.publisher = EventPublisher(
            max_queue_size=settings.events.subscriber_queue_size,
            sinks=list(sinks),
        )
        self.cancellations = CancellationRegistry()
        self.lifecycle = JobLifecycleManager(
            repository=self.repository,
            queue=self.queue,
            publisher=self.publisher,
            cancellations=self.cancellations,
        )
        self.runner = StagePipelineRunner(
            repository=self.repository,
            lifecycle=self.lifecycle,
            publisher=self.publisher,
            defaults=settings.stages,
        )
        self.registry = registry if registry is not None else default_registry()
        self.pool = WorkerPool(
            lifecycle=self.lifecycle,
            queue=self.queue,
            registry=self.registry,
            runner=self.runner,
            cancellations=self.cancellations,
            size=settings.jobs.worker_count,
            poll_interval_seconds=settings.jobs.poll_interval_seconds,
            graceful_shutdown_seconds=settings.jobs.graceful_shutdown_seconds,
        )
        self.service = JobService(
            lifecycle=self.lifecycle,
            publisher=self.publisher,
            default_priority=settings.jobs.default_priority,
        )
        self._opened = False

    def open(self) -> None:
        if self._opened:
            return
        self.repository.init_schema()
        self._opened = True

    def recover(self) -> list[str]:
        """Run startup recovery if enabled in settings; returns touched job ids."""

        self.open()
        if not self.settings.jobs.recover_on_start:
            return []
        return self.lifecycle.recover_interrupted()

    def start(self) -> None:
        self.recover()
        self.pool.start()

    def close(self, timeout: float | None = None) -> None:
        self.pool.stop(timeout)
        self.queue.close()
        self.publisher.close()
        self.repository.close()
        logger.debug("Job runtime for %s closed", self.settings.db_path)

    def __enter__(self) -> JobRuntime:
        self.open()
        return self

    def __exit__(self, *_: object) -> None:
        self.close()
