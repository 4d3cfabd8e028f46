"""Caller-facing job API: submit, inspect, subscribe and cancel."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import timedelta
from typing import Any

from agent_jobs.jobs.errors import InvalidTransitionError, ValidationError
from agent_jobs.jobs.events import EventPublisher, Subscription
from agent_jobs.jobs.lifecycle import JobLifecycleManager
from agent_jobs.jobs.models import (
    DEFAULT_PRIORITY,
    PAYLOAD_JOB_ID_KEY,
    PAYLOAD_RESUME_KEY,
    PAYLOAD_SESSION_ID_KEY,
    ApiType,
    CancellationResult,
    CleanupResult,
    JobEventView,
    JobMetadata,
    JobStatus,
    JobView,
    TaskType,
    WorkflowRunView,
)
from agent_jobs.storage.common import utc_now

logger = logging.getLogger(__name__)


class JobService:
    """Thin facade over the lifecycle manager for request handlers and the CLI."""

    def __init__(
        self,
        *,
        lifecycle: JobLifecycleManager,
        publisher: EventPublisher,
        default_api_type: ApiType = ApiType.GEMINI,
        default_priority: int = DEFAULT_PRIORITY,
    ) -> None:
        self.lifecycle = lifecycle
        self.publisher = publisher
        self.default_api_type = default_api_type
        self.default_priority = default_priority

    def submit(  # noqa: PLR0913
        self,
        session_id: str,
        task_type: TaskType | str,
        raw_input: str = "",
        priority: int | None = None,
        *,
        job_type: str | None = None,
        api_type: ApiType | str | None = None,
        payload: Mapping[str, Any] | None = None,
        metadata: JobMetadata | Mapping[str, Any] | None = None,
        visible: bool = True,
        delay_seconds: float = 0.0,
    ) -> str:
        """Create and enqueue a job; returns its id.

        `job_type` selects the registered handler and defaults to the task
        type's value.
        """

        try:
            task = TaskType(task_type)
        except ValueError as error:
            raise ValidationError(str(error)) from error

        job = self.lifecycle.create(
            session_id,
            api_type or self.default_api_type,
            task,
            raw_input,
            metadata,
            visible=visible,
        )
        queue_payload = dict(payload or {})
        queue_payload.setdefault("rawInput", raw_input)
        queue_payload[PAYLOAD_JOB_ID_KEY] = job.job_id
        queue_payload[PAYLOAD_SESSION_ID_KEY] = job.session_id
        try:
            self.lifecycle.enqueue(
                job_type or task.value,
                queue_payload,
                self.default_priority if priority is None else priority,
                delay_seconds=delay_seconds,
            )
        except ValidationError as error:
            self.lifecycle.mark_failed(job.job_id, f"Failed to enqueue job: {error}")
            raise
        return job.job_id

    def get_status(self, job_id: str) -> JobView:
        return self.lifecycle.get(job_id)

    def list_jobs(self, session_id: str, *, include_hidden: bool = False) -> list[JobView]:
        return self.lifecycle.repository.find_by_session_id(
            session_id,
            include_hidden=include_hidden,
        )

    def list_events(self, job_id: str) -> list[JobEventView]:
        """Audit trail for callers that poll instead of subscribing."""

        self.lifecycle.get(job_id)
        return self.lifecycle.repository.list_events(job_id)

    def list_workflow_runs(self, job_id: str) -> list[WorkflowRunView]:
        self.lifecycle.get(job_id)
        return self.lifecycle.repository.list_workflow_runs(job_id)

    def subscribe(
        self,
        *,
        job_id: str | None = None,
        session_id: str | None = None,
    ) -> Subscription:
        return self.publisher.subscribe(job_id=job_id, session_id=session_id)

    def cancel(self, job_id: str, reason: str | None = None) -> bool:
        """Cancel a job. Returns False if it had already finished."""

        try:
            self.lifecycle.mark_canceled(job_id, reason)
        except InvalidTransitionError as error:
            logger.info("Cancel of job %s ignored: already %s", job_id, error.current.value)
            return False
        return True

    def cancel_session(self, session_id: str, reason: str | None = None) -> CancellationResult:
        return self.lifecycle.cancel_all_for_session(session_id, reason)

    def retry_workflow_stage(
        self,
        job_id: str,
        stage_name: str,
        *,
        priority: int | None = None,
    ) -> str:
        """Resubmit a failed or canceled workflow job starting at `stage_name`.

        Finished jobs are immutable, so the retry is a new job in the same
        session. Stages before `stage_name` are not run again: the new run
        starts from the output the previous stage stored in the latest run,
        and every later stage is reset. Returns the new job id.
        """

        job = self.lifecycle.get(job_id)
        if job.status not in {JobStatus.FAILED, JobStatus.CANCELED}:
            raise ValidationError(
                f"Only failed or canceled jobs can be retried; job {job_id} is "
                f"{job.status.value}.",
            )
        runs = self.lifecycle.repository.list_workflow_runs(job_id)
        if not runs:
            raise ValidationError(f"Job {job_id} has no workflow run to retry.")
        run = runs[-1]
        if stage_name not in run.stages:
            raise ValidationError(
                f"Workflow '{run.definition_name}' has no stage '{stage_name}'.",
            )
        missing = [
            name
            for name in run.stages[: run.stages.index(stage_name)]
            if name not in run.intermediate_data
        ]
        if missing:
            raise ValidationError(
                f"Cannot retry from '{stage_name}': stage '{missing[0]}' has no stored output.",
            )
        job_type = job.metadata.job_type_for_worker
        if not job_type:
            raise ValidationError(f"Job {job_id} has no recorded job type to retry with.")

        payload = dict(job.metadata.job_payload_for_worker or {})
        payload.pop(PAYLOAD_JOB_ID_KEY, None)
        payload.pop(PAYLOAD_SESSION_ID_KEY, None)
        payload[PAYLOAD_RESUME_KEY] = {"workflowId": run.workflow_id, "stage": stage_name}
        if priority is None:
            priority = job.metadata.job_priority_for_worker
        retry_job_id = self.submit(
            job.session_id,
            job.task_type,
            job.raw_input,
            priority,
            job_type=job_type,
            api_type=job.api_type,
            payload=payload,
            metadata={"retry_of_job_id": job_id, "retry_from_stage": stage_name},
            visible=job.visible,
        )
        logger.info(
            "Job %s retries stage %s of job %s (run %s)",
            retry_job_id,
            stage_name,
            job_id,
            run.workflow_id,
        )
        return retry_job_id

    def cleanup_finished(self, max_age_hours: float) -> CleanupResult:
        """Delete finished jobs and workflow runs older than `max_age_hours`.

        Active jobs and running workflow runs are never touched.
        """

        if max_age_hours < 0:
            raise ValidationError("Cleanup age must be >= 0 hours.")
        cutoff = utc_now() - timedelta(hours=max_age_hours)
        job_ids, run_count = self.lifecycle.repository.delete_finished_before(cutoff)
        result = CleanupResult(
            cutoff=cutoff,
            deleted_job_ids=job_ids,
            deleted_workflow_runs=run_count,
        )
        if job_ids or run_count:
            logger.info(
                "Cleaned up %d finished job(s) and %d workflow run(s) older than %s",
                result.deleted_job_count,
                run_count,
                cutoff.isoformat(),
            )
        return result

    def active_jobs(self, session_id: str) -> list[JobView]:
        return self.lifecycle.repository.find_by_session_id(
            session_id,
            statuses={JobStatus.CREATED, JobStatus.QUEUED, JobStatus.RUNNING},
        )
