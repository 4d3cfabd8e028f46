"""Fixed-size worker pool that drains the job queue."""

from __future__ import annotations

import json
import logging
import signal
import threading
import time
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass

from agent_jobs.jobs.cancellation import CancellationRegistry, CancellationToken
from agent_jobs.jobs.errors import CancellationError, InvalidTransitionError, NotFoundError
from agent_jobs.jobs.handlers import DirectHandler, HandlerRegistry, HandlerResult, JobContext
from agent_jobs.jobs.lifecycle import JobLifecycleManager
from agent_jobs.jobs.models import (
    PAYLOAD_RESUME_KEY,
    JobMetadata,
    JobStatus,
    JobView,
    QueueEntry,
    WorkflowRunStatus,
)
from agent_jobs.jobs.pipeline import (
    StagePipelineRunner,
    WorkflowDefinition,
    WorkflowOutcome,
    WorkflowResume,
)
from agent_jobs.jobs.queue import JobQueue

logger = logging.getLogger(__name__)

WORKFLOW_INPUT_KEY = "workflowInput"
WORKFLOW_CONFIG_KEY = "stageConfig"


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    completed: int = 0
    failed: int = 0
    canceled: int = 0
    skipped: int = 0
    idle_polls: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.completed += other.completed
        self.failed += other.failed
        self.canceled += other.canceled
        self.skipped += other.skipped
        self.idle_polls += other.idle_polls


class WorkerPool:
    """Runs queued jobs on a small fixed set of threads.

    Workers never retry a job: retries belong to workflow stages. Every
    exception raised while handling one entry is turned into a terminal job
    state so the worker thread survives.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        lifecycle: JobLifecycleManager,
        queue: JobQueue,
        registry: HandlerRegistry,
        runner: StagePipelineRunner,
        cancellations: CancellationRegistry,
        size: int = 4,
        poll_interval_seconds: float = 0.5,
        graceful_shutdown_seconds: float = 30.0,
        worker_id_prefix: str = "worker",
    ) -> None:
        if size <= 0:
            raise ValueError("Worker pool size must be > 0.")
        self.lifecycle = lifecycle
        self.queue = queue
        self.registry = registry
        self.runner = runner
        self.cancellations = cancellations
        self.size = size
        self.poll_interval_seconds = poll_interval_seconds
        self.graceful_shutdown_seconds = graceful_shutdown_seconds
        self.worker_id_prefix = worker_id_prefix
        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []
        self._summary_lock = threading.Lock()
        self._summary = WorkerRunSummary()
        self._stop_signal_name: str | None = None

    @property
    def running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    @property
    def summary(self) -> WorkerRunSummary:
        with self._summary_lock:
            snapshot = WorkerRunSummary()
            snapshot.add(self._summary)
            return snapshot

    def start(self) -> None:
        """Start the worker threads; calling it twice is a no-op."""

        if self.running:
            return
        self._stop_event.clear()
        self._threads = [
            threading.Thread(
                target=self._worker_loop,
                args=(f"{self.worker_id_prefix}-{index + 1}",),
                name=f"{self.worker_id_prefix}-{index + 1}",
                daemon=True,
            )
            for index in range(self.size)
        ]
        for thread in self._threads:
            thread.start()
        logger.info("Started %d worker thread(s)", self.size)

    def stop(self, timeout: float | None = None) -> None:
        """Ask workers to finish their current job and wait for them."""

        self._stop_event.set()
        self.queue.wake_all()
        deadline = time.monotonic() + (
            self.graceful_shutdown_seconds if timeout is None else timeout
        )
        for thread in self._threads:
            thread.join(timeout=max(0.0, deadline - time.monotonic()))
        alive = [thread.name for thread in self._threads if thread.is_alive()]
        if alive:
            logger.warning("Worker threads still busy after shutdown timeout: %s", alive)
        self._threads = [thread for thread in self._threads if thread.is_alive()]

    def run_once(self, worker_id: str = "inline") -> WorkerRunSummary:
        """Process at most one queue entry in the calling thread."""

        summary = WorkerRunSummary()
        if self._stop_event.is_set():
            summary.idle_polls = 1
            return summary

        entry = self.queue.pop_highest_priority()
        if entry is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        self._process_entry(entry=entry, worker_id=worker_id, summary=summary)
        with self._summary_lock:
            self._summary.add(summary)
        return summary

    def run_until_idle(
        self,
        *,
        max_jobs: int | None = None,
        worker_id: str = "inline",
    ) -> WorkerRunSummary:
        """Drain the queue in the calling thread until it is empty or `max_jobs` ran."""

        aggregate = WorkerRunSummary()
        with self._signal_handlers():
            while not self._stop_event.is_set():
                if max_jobs is not None and aggregate.processed >= max_jobs:
                    break
                summary = self.run_once(worker_id=worker_id)
                aggregate.add(summary)
                if summary.processed == 0:
                    break
        return aggregate

    def serve_forever(self) -> WorkerRunSummary:
        """Run the pool until SIGINT/SIGTERM, then shut down gracefully."""

        with self._signal_handlers():
            self.start()
            while not self._stop_event.wait(self.poll_interval_seconds):
                continue
        if self._stop_signal_name is not None:
            logger.info("Received %s, stopping workers", self._stop_signal_name)
        self.stop()
        return self.summary

    def request_stop(self, signal_name: str | None = None) -> None:
        self._stop_signal_name = signal_name
        self._stop_event.set()

    def _worker_loop(self, worker_id: str) -> None:
        while not self._stop_event.is_set():
            try:
                summary = self.run_once(worker_id=worker_id)
                if summary.processed == 0 and not self._stop_event.is_set():
                    self.queue.wait_for_entry(self.poll_interval_seconds, stop=self._stop_event)
            except Exception:
                logger.exception("Worker %s loop iteration failed", worker_id)
                self._stop_event.wait(self.poll_interval_seconds)
        logger.debug("Worker %s stopped", worker_id)

    def _process_entry(
        self,
        *,
        entry: QueueEntry,
        worker_id: str,
        summary: WorkerRunSummary,
    ) -> None:
        job_id = entry.job_id
        token = self.cancellations.register(job_id)
        try:
            try:
                job = self.lifecycle.mark_running(job_id, worker_id=worker_id)
            except (InvalidTransitionError, NotFoundError) as error:
                logger.info("Skipping queue entry %s: %s", entry.queue_job_id, error)
                summary.skipped = 1
                return
            except Exception:
                # Already popped: return the entry or the job stays queued forever.
                logger.exception(
                    "Could not start job %s, returning queue entry %s",
                    job_id,
                    entry.queue_job_id,
                )
                self.queue.push(entry)
                summary.skipped = 1
                self._stop_event.wait(self.poll_interval_seconds)
                return

            logger.info(
                "Worker %s picked job %s (%s, priority %s)",
                worker_id,
                job_id,
                entry.job_type,
                entry.priority,
            )
            status = self._execute(job=job, entry=entry, token=token, worker_id=worker_id)
            if status == JobStatus.COMPLETED:
                summary.completed = 1
            elif status == JobStatus.FAILED:
                summary.failed = 1
            elif status == JobStatus.CANCELED:
                summary.canceled = 1
        finally:
            self.cancellations.release(job_id)

    def _execute(
        self,
        *,
        job: JobView,
        entry: QueueEntry,
        token: CancellationToken,
        worker_id: str,
    ) -> JobStatus | None:
        try:
            target = self.registry.resolve(entry.job_type)
        except LookupError as error:
            return self._finish_failed(job.job_id, str(error))

        try:
            if isinstance(target, WorkflowDefinition):
                return self._run_workflow(job=job, entry=entry, definition=target, token=token)
            return self._run_direct(
                job=job,
                entry=entry,
                handler=target,
                token=token,
                worker_id=worker_id,
            )
        except CancellationError as error:
            return self._finish_canceled(job.job_id, token.reason or error.reason)
        except Exception as error:
            logger.exception("Job %s (%s) failed", job.job_id, entry.job_type)
            if token.is_cancelled:
                return self._finish_canceled(job.job_id, token.reason)
            return self._finish_failed(job.job_id, str(error))

    def _run_direct(  # noqa: PLR0913
        self,
        *,
        job: JobView,
        entry: QueueEntry,
        handler: DirectHandler,
        token: CancellationToken,
        worker_id: str,
    ) -> JobStatus | None:
        context = JobContext(
            job_id=job.job_id,
            session_id=job.session_id,
            job_type=entry.job_type,
            api_type=job.api_type,
            task_type=job.task_type,
            token=token,
            worker_id=worker_id,
            report_progress=lambda message: self._report_progress(job.job_id, message),
        )
        result = _as_handler_result(handler(dict(entry.payload), context))
        if token.is_cancelled:
            return self._finish_canceled(job.job_id, token.reason)
        return self._finish(
            lambda: self.lifecycle.mark_completed(
                job.job_id,
                result.text,
                result.usage,
                cost=result.cost,
                metadata=result.metadata or None,
            ),
        )

    def _run_workflow(
        self,
        *,
        job: JobView,
        entry: QueueEntry,
        definition: WorkflowDefinition,
        token: CancellationToken,
    ) -> JobStatus | None:
        payload = entry.payload
        workflow_input = payload.get(WORKFLOW_INPUT_KEY, job.raw_input)
        stage_config = payload.get(WORKFLOW_CONFIG_KEY)
        outcome = self.runner.run(
            job=job,
            definition=definition,
            workflow_input=workflow_input,
            token=token,
            config=stage_config if isinstance(stage_config, Mapping) else None,
            resume=_resume_point(payload.get(PAYLOAD_RESUME_KEY)),
        )
        metadata = JobMetadata(
            workflow_id=outcome.workflow_id,
            progress_percentage=outcome.progress_percentage,
            actual_cost=outcome.total_actual_cost,
            extra={"stage_attempts": dict(outcome.stage_attempts)},
        )
        if outcome.status == WorkflowRunStatus.COMPLETED:
            return self._finish(
                lambda: self.lifecycle.mark_completed(
                    job.job_id,
                    _render_output(outcome),
                    outcome.usage,
                    cost=outcome.total_actual_cost,
                    metadata=metadata,
                ),
            )
        if outcome.status == WorkflowRunStatus.CANCELED:
            status = self._finish_canceled(job.job_id, token.reason or outcome.error_message)
            if status == JobStatus.CANCELED:
                # The cancel usually finished the job first; attach what the run spent.
                self.lifecycle.record_metadata(
                    job.job_id,
                    metadata,
                    event_type="workflow_canceled",
                )
            return status
        if outcome.failed_stage:
            metadata.current_stage = outcome.failed_stage
        return self._finish(
            lambda: self.lifecycle.mark_failed(job.job_id, outcome.error_message, metadata),
        )

    def _finish_failed(self, job_id: str, message: str) -> JobStatus | None:
        return self._finish(lambda: self.lifecycle.mark_failed(job_id, message))

    def _finish_canceled(self, job_id: str, reason: str | None) -> JobStatus | None:
        return self._finish(lambda: self.lifecycle.mark_canceled(job_id, reason))

    def _finish(self, transition: Callable[[], JobView]) -> JobStatus | None:
        try:
            job = transition()
        except InvalidTransitionError as error:
            # Someone else (usually a cancel) already finished the job.
            logger.info("Job %s already %s", error.job_id, error.current.value)
            return error.current
        return job.status

    def _report_progress(self, job_id: str, message: str) -> None:
        try:
            self.lifecycle.update_progress(job_id, status_message=message)
        except InvalidTransitionError:
            logger.debug("Ignoring progress for finished job %s", job_id)

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        in_main_thread = threading.current_thread() is threading.main_thread()
        if not hasattr(signal, "SIGINT") or not in_main_thread:
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(signal_name=name)

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)


def _as_handler_result(value: object) -> HandlerResult:
    if isinstance(value, HandlerResult):
        return value
    if value is None:
        return HandlerResult(text=None)
    if isinstance(value, str):
        return HandlerResult(text=value)
    return HandlerResult(text=json.dumps(value, ensure_ascii=False, default=str))


def _resume_point(value: object) -> WorkflowResume | None:
    if not isinstance(value, Mapping):
        return None
    return WorkflowResume(
        workflow_id=str(value.get("workflowId") or ""),
        stage_name=str(value.get("stage") or ""),
    )


def _render_output(outcome: WorkflowOutcome) -> str | None:
    output = outcome.final_output
    if output is None:
        return None
    if isinstance(output, str):
        return output
    return json.dumps(output, ensure_ascii=False, sort_keys=True, default=str)
