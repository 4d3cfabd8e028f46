"""Controllers for job CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from agent_jobs.config import Settings
from agent_jobs.jobs.echo import ECHO_JOB_TYPE
from agent_jobs.jobs.errors import ValidationError
from agent_jobs.jobs.models import JobStatus, JobView
from agent_jobs.runtime import JobRuntime


@dataclass(slots=True)
class JobSubmitCommand:
    """CLI input for job submission."""

    db_path: Path | None
    session_id: str
    task_type: str
    raw_input: str
    priority: int | None
    job_type: str | None
    api_type: str | None
    delay_seconds: float = 0.0


@dataclass(slots=True)
class JobInspectCommand:
    """CLI input for status/events inspection."""

    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class JobListCommand:
    db_path: Path | None
    session_id: str | None
    status: str | None
    limit: int


@dataclass(slots=True)
class JobCancelCommand:
    db_path: Path | None
    job_id: str
    reason: str | None


@dataclass(slots=True)
class SessionCancelCommand:
    db_path: Path | None
    session_id: str
    reason: str | None


@dataclass(slots=True)
class StageRetryCommand:
    db_path: Path | None
    job_id: str
    stage_name: str
    priority: int | None


@dataclass(slots=True)
class CleanupCommand:
    db_path: Path | None
    max_age_hours: float


@dataclass(slots=True)
class JobWorkerCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    once: bool
    max_jobs: int | None
    workers: int | None


class JobsCliController:
    """Coordinates submission, inspection, cancellation and worker CLI operations."""

    def submit(self, command: JobSubmitCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        job_type = command.job_type or ECHO_JOB_TYPE
        with _runtime(settings) as runtime:
            if job_type not in runtime.registry:
                raise ValidationError(
                    f"Unknown job type '{job_type}'; registered: "
                    f"{', '.join(runtime.registry.job_types())}.",
                )
            job_id = runtime.service.submit(
                command.session_id,
                command.task_type,
                command.raw_input,
                command.priority,
                job_type=job_type,
                api_type=command.api_type,
                delay_seconds=command.delay_seconds,
            )
            job = runtime.service.get_status(job_id)
        return [
            f"Job submitted: job_id={job.job_id} session={job.session_id} "
            f"type={job.metadata.job_type_for_worker} status={job.status.value}",
        ]

    def status(self, command: JobInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            job = runtime.service.get_status(command.job_id)
            runs = runtime.service.list_workflow_runs(command.job_id)

        lines = [
            f"Job: {job.job_id}",
            f"Session: {job.session_id}",
            f"Task type: {job.task_type.value} ({job.api_type.value})",
            f"Status: {job.status.value}",
            f"Status message: {job.status_message or '-'}",
            f"Started: {_format_time(job.start_time)}",
            f"Finished: {_format_time(job.end_time)}",
        ]
        if job.metadata.progress_percentage is not None:
            lines.append(f"Progress: {job.metadata.progress_percentage:.1f}%")
        if job.metadata.actual_cost is not None:
            lines.append(f"Cost (USD): {job.metadata.actual_cost:.6f}")
        if job.error_message:
            lines.append(f"Error: {job.error_message}")
        if job.response is not None:
            lines.append(f"Response: {job.response}")
        for run in runs:
            lines.append(
                f"Workflow {run.definition_name} [{run.workflow_id}]: {run.status.value} "
                f"stage={run.current_stage or '-'} progress={run.progress_percentage:.1f}%",
            )
        return lines

    def list_jobs(self, command: JobListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status = JobStatus(command.status) if command.status else None
        with _runtime(settings) as runtime:
            jobs = runtime.repository.list_jobs(
                status=status,
                session_id=command.session_id,
                limit=command.limit,
            )
        if not jobs:
            return ["No jobs found."]
        return [_job_line(job) for job in jobs]

    def events(self, command: JobInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            events = runtime.service.list_events(command.job_id)
        lines = [f"Events for {command.job_id}:"]
        for event in events:
            transition = (
                f"{event.status_from.value if event.status_from else '-'}"
                f" -> {event.status_to.value if event.status_to else '-'}"
            )
            details = json.dumps(event.details, ensure_ascii=False, sort_keys=True)
            lines.append(
                f"{event.created_at.isoformat()} {event.event_type} {transition} {details}",
            )
        return lines

    def cancel(self, command: JobCancelCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            changed = runtime.service.cancel(command.job_id, command.reason)
            job = runtime.service.get_status(command.job_id)
        if changed:
            return [f"Job canceled: {job.job_id}"]
        return [f"Job {job.job_id} already {job.status.value}; nothing to cancel."]

    def cancel_session(self, command: SessionCancelCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            result = runtime.service.cancel_session(command.session_id, command.reason)
        lines = [
            f"Session {result.session_id}: canceled={result.canceled_count} "
            f"skipped={result.skipped_count} failed={len(result.failed_cancellations)}",
        ]
        lines.extend(
            f"  failed to cancel {failure.job_id}: {failure.error}"
            for failure in result.failed_cancellations
        )
        return lines

    def retry_stage(self, command: StageRetryCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            retry_job_id = runtime.service.retry_workflow_stage(
                command.job_id,
                command.stage_name,
                priority=command.priority,
            )
            job = runtime.service.get_status(retry_job_id)
        return [
            f"Retry submitted: job_id={job.job_id} retry_of={command.job_id} "
            f"stage={command.stage_name} status={job.status.value}",
        ]

    def cleanup(self, command: CleanupCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            result = runtime.service.cleanup_finished(command.max_age_hours)
        return [
            f"Cleanup before {result.cutoff.isoformat()}: "
            f"jobs={result.deleted_job_count} workflow_runs={result.deleted_workflow_runs}",
        ]

    def run_worker(self, command: JobWorkerCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        if command.workers is not None:
            settings.jobs.worker_count = command.workers
        with _runtime(settings) as runtime:
            recovered = runtime.recover()
            if command.once:
                summary = runtime.pool.run_until_idle(max_jobs=command.max_jobs)
            else:
                summary = runtime.pool.serve_forever()

        lines = []
        if recovered:
            lines.append(f"Recovered interrupted jobs: {len(recovered)}")
        lines.append(
            "Worker summary: "
            f"processed={summary.processed} completed={summary.completed} "
            f"failed={summary.failed} canceled={summary.canceled} "
            f"skipped={summary.skipped} idle_polls={summary.idle_polls}",
        )
        return lines


@contextmanager
def _runtime(settings: Settings) -> Iterator[JobRuntime]:
    runtime = JobRuntime(settings)
    runtime.open()
    try:
        yield runtime
    finally:
        runtime.close()


def _job_line(job: JobView) -> str:
    progress = job.metadata.progress_percentage
    return (
        f"{job.job_id} session={job.session_id} task={job.task_type.value} "
        f"status={job.status.value} created={job.created_at.isoformat()} "
        f"progress={'-' if progress is None else f'{progress:.1f}%'}"
    )


def _format_time(value: datetime | None) -> str:
    if value is None:
        return "-"
    return value.isoformat()
