"""Job lifecycle state machine.

`JobLifecycleManager` is the only writer of job status, timestamps and
terminal payloads. Each operation is one compare-and-set patch on the job row
followed by a best-effort event publish.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from agent_jobs.jobs.cancellation import CancellationRegistry
from agent_jobs.jobs.errors import InvalidTransitionError, NotFoundError, ValidationError
from agent_jobs.jobs.events import EventPublisher
from agent_jobs.jobs.models import (
    ACTIVE_STATUSES,
    DEFAULT_PRIORITY,
    PAYLOAD_JOB_ID_KEY,
    PAYLOAD_SESSION_ID_KEY,
    ApiType,
    CancellationResult,
    FailedCancellation,
    JobCreate,
    JobMetadata,
    JobStatus,
    JobView,
    QueueEntry,
    TaskType,
    TokenUsage,
)
from agent_jobs.jobs.pricing import estimate_usage_cost
from agent_jobs.jobs.queue import JobQueue
from agent_jobs.jobs.repository import JobPatch, JobRepository, PatchResult
from agent_jobs.storage.common import utc_now

logger = logging.getLogger(__name__)

EMPTY_RESPONSE_PLACEHOLDER = "Job completed with no output content."
EMPTY_ERROR_PLACEHOLDER = "Job failed without a specific error message."
DEFAULT_CANCEL_REASON = "Canceled by user interaction"
SESSION_CANCEL_REASON = "Canceled together with its session"
INTERRUPTED_MESSAGE = "Job was interrupted by a process restart before it finished."

COMPLETED_STATUS_MESSAGE = "Completed successfully"
FAILED_STATUS_MESSAGE = "Failed due to error"

_RUNNABLE_FROM = frozenset({JobStatus.CREATED, JobStatus.QUEUED, JobStatus.RUNNING})
_COMPLETABLE_FROM = frozenset({JobStatus.RUNNING, JobStatus.QUEUED})


class JobLifecycleManager:
    """Creates jobs, enqueues them and applies every status transition."""

    def __init__(
        self,
        *,
        repository: JobRepository,
        queue: JobQueue,
        publisher: EventPublisher | None = None,
        cancellations: CancellationRegistry | None = None,
    ) -> None:
        self.repository = repository
        self.queue = queue
        self.publisher = publisher
        self.cancellations = cancellations or CancellationRegistry()

    def create(  # noqa: PLR0913
        self,
        session_id: str,
        api_type: ApiType | str,
        task_type: TaskType | str,
        raw_input: str = "",
        metadata: JobMetadata | Mapping[str, Any] | None = None,
        *,
        visible: bool = True,
    ) -> JobView:
        """Persist a new job in the created state."""

        if not session_id or not session_id.strip():
            raise ValidationError("Session id is required to create a job.")
        try:
            api = ApiType(api_type)
            task = TaskType(task_type)
        except ValueError as error:
            raise ValidationError(str(error)) from error

        job = self.repository.insert(
            JobCreate(
                session_id=session_id,
                api_type=api,
                task_type=task,
                raw_input=raw_input or "",
                metadata=JobMetadata().merged(metadata),
                visible=visible,
                status_message="Created",
            ),
        )
        self._publish(job, event_type="created", previous_status=None)
        return job

    def enqueue(
        self,
        job_type: str,
        payload: Mapping[str, Any],
        priority: int = DEFAULT_PRIORITY,
        *,
        delay_seconds: float = 0.0,
    ) -> str:
        """Push a queue entry for an existing job and move it to queued.

        Returns the queue job id. Invalid payloads leave both the queue and
        the job untouched.
        """

        job_id = str(payload.get(PAYLOAD_JOB_ID_KEY) or "").strip()
        session_id = str(payload.get(PAYLOAD_SESSION_ID_KEY) or "").strip()
        if not job_id:
            raise ValidationError(f"Queue payload is missing {PAYLOAD_JOB_ID_KEY}.")
        if not session_id:
            raise ValidationError(f"Queue payload is missing {PAYLOAD_SESSION_ID_KEY}.")
        if not job_type or not job_type.strip():
            raise ValidationError("Job type is required to enqueue a job.")
        if delay_seconds < 0:
            raise ValidationError("Enqueue delay must be >= 0.")
        job = self.get(job_id)
        if job.session_id != session_id:
            raise ValidationError(
                f"Queue payload {PAYLOAD_SESSION_ID_KEY} '{session_id}' does not match "
                f"session '{job.session_id}' of job {job_id}.",
            )

        now = utc_now()
        entry = QueueEntry(
            queue_job_id=str(uuid4()),
            job_type=job_type,
            payload=dict(payload),
            priority=priority,
            enqueued_at=now,
            run_after=now + timedelta(seconds=delay_seconds) if delay_seconds else None,
        )
        result = self._transition(
            job_id,
            JobPatch(
                status=JobStatus.QUEUED,
                status_message="Queued",
                metadata=JobMetadata(
                    job_type_for_worker=job_type,
                    job_payload_for_worker=dict(payload),
                    job_priority_for_worker=priority,
                    queue_job_id=entry.queue_job_id,
                    queued_at=now.isoformat(),
                ),
            ),
            allowed_from={JobStatus.CREATED},
            event_type="queued",
            details={"queue_job_id": entry.queue_job_id, "priority": priority},
        )
        try:
            self.queue.push(entry)
        except Exception as error:
            self.mark_failed(job_id, f"Failed to enqueue job: {error}")
            raise
        logger.debug(
            "Enqueued job %s (%s) as %s with priority %s",
            result.job.job_id,
            job_type,
            entry.queue_job_id,
            priority,
        )
        return entry.queue_job_id

    def mark_running(
        self,
        job_id: str,
        status_message: str | None = None,
        *,
        worker_id: str | None = None,
    ) -> JobView:
        """Move a job to running; repeated calls while running are allowed."""

        def _running_metadata(current: JobView) -> JobMetadata:
            return JobMetadata(
                running_update_count=(current.metadata.running_update_count or 0) + 1,
                started_at=current.metadata.started_at or utc_now().isoformat(),
                worker_id=worker_id,
            )

        result = self._transition(
            job_id,
            JobPatch(
                status=JobStatus.RUNNING,
                status_message=status_message,
                metadata_from=_running_metadata,
                set_start_time=True,
                clear_end_time=True,
            ),
            allowed_from=_RUNNABLE_FROM,
            event_type="running",
            details={"worker_id": worker_id} if worker_id else None,
            default_status_message=_processing_message,
        )
        return result.job

    def mark_completed(
        self,
        job_id: str,
        response_text: str | None,
        usage: TokenUsage | None = None,
        *,
        cost: float | None = None,
        metadata: JobMetadata | Mapping[str, Any] | None = None,
    ) -> JobView:
        """Finish a job successfully with its response text and usage."""

        if response_text is None:
            logger.warning("Job %s completed without output; storing placeholder", job_id)
            response_text = EMPTY_RESPONSE_PLACEHOLDER

        def _completed_metadata(current: JobView) -> JobMetadata:
            now = utc_now()
            actual_cost = cost
            if actual_cost is None:
                actual_cost = estimate_usage_cost(api_type=current.api_type.value, usage=usage)
            extra = JobMetadata(
                completed_at=now.isoformat(),
                duration_ms=_duration_ms(current, now),
                actual_cost=actual_cost,
            )
            if usage is not None:
                extra.tokens_sent = usage.tokens_sent
                extra.tokens_received = usage.tokens_received
                extra.total_tokens = usage.resolved_total()
                extra.model_used = usage.model_used
            return extra

        result = self._transition(
            job_id,
            JobPatch(
                status=JobStatus.COMPLETED,
                response=response_text,
                clear_error_message=True,
                status_message=COMPLETED_STATUS_MESSAGE,
                metadata=metadata,
                metadata_from=_completed_metadata,
                set_end_time=True,
            ),
            allowed_from=_COMPLETABLE_FROM,
            event_type="completed",
        )
        return result.job

    def mark_failed(
        self,
        job_id: str,
        error_message: str | None,
        metadata: JobMetadata | Mapping[str, Any] | None = None,
    ) -> JobView:
        """Finish a job as failed; an empty message gets a placeholder."""

        message = (error_message or "").strip() or EMPTY_ERROR_PLACEHOLDER

        def _failed_metadata(current: JobView) -> JobMetadata:
            now = utc_now()
            return JobMetadata(failed_at=now.isoformat(), duration_ms=_duration_ms(current, now))

        result = self._transition(
            job_id,
            JobPatch(
                status=JobStatus.FAILED,
                error_message=message,
                status_message=FAILED_STATUS_MESSAGE,
                metadata=metadata,
                metadata_from=_failed_metadata,
                set_end_time=True,
            ),
            allowed_from=ACTIVE_STATUSES,
            event_type="failed",
            details={"error_message": message},
        )
        return result.job

    def mark_canceled(self, job_id: str, reason: str | None = None) -> JobView:
        """Cancel a non-terminal job, drop its queue entry and trip its token."""

        message = (reason or "").strip() or DEFAULT_CANCEL_REASON

        def _canceled_metadata(current: JobView) -> JobMetadata:
            now = utc_now()
            return JobMetadata(
                canceled_at=now.isoformat(),
                duration_ms=_duration_ms(current, now) if current.start_time else None,
            )

        result = self._transition(
            job_id,
            JobPatch(
                status=JobStatus.CANCELED,
                error_message=message,
                status_message=DEFAULT_CANCEL_REASON,
                metadata_from=_canceled_metadata,
                set_end_time=True,
            ),
            allowed_from=ACTIVE_STATUSES,
            event_type="canceled",
            details={"reason": message},
        )

        queue_job_id = result.job.metadata.queue_job_id
        if queue_job_id and result.previous_status == JobStatus.QUEUED:
            try:
                self.queue.remove(queue_job_id)
            except Exception:  # noqa: BLE001
                logger.warning(
                    "Could not drop queue entry %s of canceled job %s",
                    queue_job_id,
                    job_id,
                    exc_info=True,
                )
        self.cancellations.cancel(job_id, message)
        return result.job

    def cancel_all_for_session(
        self,
        session_id: str,
        reason: str | None = None,
    ) -> CancellationResult:
        """Cancel every active job of a session; one failure never stops the batch."""

        if not session_id or not session_id.strip():
            raise ValidationError("Session id is required to cancel session jobs.")

        outcome = CancellationResult(session_id=session_id)
        jobs = self.repository.find_by_session_id(session_id, statuses=ACTIVE_STATUSES)
        for job in jobs:
            if not job.job_id:
                outcome.skipped_count += 1
                continue
            try:
                self.mark_canceled(job.job_id, reason or SESSION_CANCEL_REASON)
            except InvalidTransitionError:
                # Finished between the lookup and the cancel.
                outcome.skipped_count += 1
            except Exception as error:  # noqa: BLE001
                logger.exception("Failed to cancel job %s of session %s", job.job_id, session_id)
                outcome.failed_cancellations.append(
                    FailedCancellation(job_id=job.job_id, error=str(error)),
                )
            else:
                outcome.canceled_job_ids.append(job.job_id)

        logger.info(
            "Canceled %d job(s) of session %s (%d skipped, %d failed)",
            outcome.canceled_count,
            session_id,
            outcome.skipped_count,
            len(outcome.failed_cancellations),
        )
        return outcome

    def update_progress(
        self,
        job_id: str,
        *,
        status_message: str | None = None,
        metadata: JobMetadata | Mapping[str, Any] | None = None,
        event_type: str = "progress",
    ) -> JobView:
        """Merge progress metadata into a non-terminal job without changing its status."""

        result = self._transition(
            job_id,
            JobPatch(status_message=status_message, metadata=metadata or JobMetadata()),
            allowed_from=ACTIVE_STATUSES,
            event_type=event_type,
        )
        return result.job

    def record_metadata(
        self,
        job_id: str,
        metadata: JobMetadata | Mapping[str, Any],
        *,
        event_type: str = "metadata",
    ) -> JobView:
        """Merge metadata into a job in any state, terminal ones included.

        Status, timestamps, response and error message are never touched, so
        bookkeeping that arrives after a cancel (workflow cost, attempts) can
        still be attached to the finished job.
        """

        result = self._transition(
            job_id,
            JobPatch(metadata=metadata),
            allowed_from=frozenset(JobStatus),
            event_type=event_type,
        )
        return result.job

    def recover_interrupted(self) -> list[str]:
        """Repair jobs left behind by a process that died mid-flight.

        Running jobs are failed; their handler is gone and workers never retry.
        Queued jobs whose queue entry vanished are pushed again from the
        metadata recorded at enqueue time. Returns the ids of touched jobs.
        """

        touched: list[str] = []
        for job in self.repository.list_by_status({JobStatus.RUNNING, JobStatus.QUEUED}):
            try:
                if job.status == JobStatus.RUNNING:
                    self.mark_failed(job.job_id, INTERRUPTED_MESSAGE)
                    touched.append(job.job_id)
                elif self._requeue_if_orphaned(job):
                    touched.append(job.job_id)
            except InvalidTransitionError:
                continue
        if touched:
            logger.warning("Recovered %d interrupted job(s)", len(touched))
        return touched

    def get(self, job_id: str) -> JobView:
        job = self.repository.get(job_id)
        if job is None:
            raise NotFoundError(job_id)
        return job

    def _requeue_if_orphaned(self, job: JobView) -> bool:
        metadata = job.metadata
        if metadata.queue_job_id and self.queue.contains(metadata.queue_job_id):
            return False
        if not metadata.job_type_for_worker or not metadata.job_payload_for_worker:
            self.mark_failed(job.job_id, "Queued job lost its queue entry and cannot be requeued.")
            return True

        queue_job_id = metadata.queue_job_id or str(uuid4())
        self.queue.push(
            QueueEntry(
                queue_job_id=queue_job_id,
                job_type=metadata.job_type_for_worker,
                payload=dict(metadata.job_payload_for_worker),
                priority=metadata.job_priority_for_worker or DEFAULT_PRIORITY,
                enqueued_at=utc_now(),
            ),
        )
        self.update_progress(
            job.job_id,
            metadata=JobMetadata(queue_job_id=queue_job_id),
            event_type="requeued",
        )
        return True

    def _transition(  # noqa: PLR0913
        self,
        job_id: str,
        patch: JobPatch,
        *,
        allowed_from: frozenset[JobStatus] | set[JobStatus],
        event_type: str,
        details: Mapping[str, Any] | None = None,
        default_status_message: Callable[[JobView], str] | None = None,
    ) -> PatchResult:
        if default_status_message is not None and patch.status_message is None:
            current = self.get(job_id)
            patch.status_message = default_status_message(current)
        result = self.repository.apply_patch(
            job_id,
            patch,
            allowed_from=allowed_from,
            event_type=event_type,
            event_details=details,
        )
        self._publish(result.job, event_type=event_type, previous_status=result.previous_status)
        return result

    def _publish(
        self,
        job: JobView,
        *,
        event_type: str,
        previous_status: JobStatus | None,
    ) -> None:
        if self.publisher is None:
            return
        self.publisher.publish_job_update(
            job,
            event_type=event_type,
            previous_status=previous_status,
        )


def _processing_message(job: JobView) -> str:
    return f"Processing with {job.api_type.value.upper()} API"


def _duration_ms(job: JobView, now: datetime) -> int | None:
    if job.start_time is None:
        return None
    return max(0, int((now - job.start_time).total_seconds() * 1000))
