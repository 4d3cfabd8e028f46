"""CLI entrypoint for agent-jobs."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from agent_jobs import __version__
from agent_jobs.jobs.controllers import (
    CleanupCommand,
    JobCancelCommand,
    JobInspectCommand,
    JobListCommand,
    JobsCliController,
    JobSubmitCommand,
    JobWorkerCommand,
    SessionCancelCommand,
    StageRetryCommand,
)
from agent_jobs.jobs.echo import ECHO_JOB_TYPE
from agent_jobs.jobs.errors import JobError
from agent_jobs.jobs.models import ApiType, JobStatus, TaskType

click.rich_click.USE_MARKDOWN = True
JOBS_CONTROLLER = JobsCliController()


@click.group()
@click.version_option(version=__version__, prog_name="agent-jobs")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging level for engine messages.",
)
def agent_jobs(log_level: str) -> None:
    """Background job and workflow orchestration CLI."""

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@agent_jobs.group()
def jobs() -> None:
    """Job submission, inspection and worker commands."""


@jobs.command("submit")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--session-id", required=True, help="Owning session id.")
@click.option(
    "--task-type",
    type=click.Choice([item.value for item in TaskType]),
    default=TaskType.GENERIC.value,
    show_default=True,
    help="Kind of work the job performs.",
)
@click.option("--input", "raw_input", default="", help="Raw job input text.")
@click.option("--priority", type=int, default=None, help="Higher runs first.")
@click.option(
    "--job-type",
    default=ECHO_JOB_TYPE,
    show_default=True,
    help="Registered handler name, for example `echo` or `echo_workflow`.",
)
@click.option(
    "--api-type",
    type=click.Choice([item.value for item in ApiType]),
    default=None,
    help="Provider family used by the handler.",
)
@click.option(
    "--delay-seconds",
    type=click.FloatRange(min=0),
    default=0.0,
    show_default=True,
    help="Keep the job queued for at least this long.",
)
def jobs_submit(  # noqa: PLR0913
    db_path: Path | None,
    session_id: str,
    task_type: str,
    raw_input: str,
    priority: int | None,
    job_type: str,
    api_type: str | None,
    delay_seconds: float,
) -> None:
    """Create a job and put it on the queue."""

    _emit_lines(
        _run(
            lambda: JOBS_CONTROLLER.submit(
                JobSubmitCommand(
                    db_path=db_path,
                    session_id=session_id,
                    task_type=task_type,
                    raw_input=raw_input,
                    priority=priority,
                    job_type=job_type,
                    api_type=api_type,
                    delay_seconds=delay_seconds,
                ),
            ),
        ),
    )


@jobs.command("status")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("job_id")
def jobs_status(db_path: Path | None, job_id: str) -> None:
    """Show the current state of one job."""

    _emit_lines(
        _run(lambda: JOBS_CONTROLLER.status(JobInspectCommand(db_path=db_path, job_id=job_id))),
    )


@jobs.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--session-id", default=None, help="Only jobs of this session.")
@click.option(
    "--status",
    type=click.Choice([item.value for item in JobStatus]),
    default=None,
    help="Only jobs in this status.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max number of jobs to print.",
)
def jobs_list(
    db_path: Path | None,
    session_id: str | None,
    status: str | None,
    limit: int,
) -> None:
    """List recent jobs, newest first."""

    _emit_lines(
        _run(
            lambda: JOBS_CONTROLLER.list_jobs(
                JobListCommand(
                    db_path=db_path,
                    session_id=session_id,
                    status=status,
                    limit=limit,
                ),
            ),
        ),
    )


@jobs.command("events")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("job_id")
def jobs_events(db_path: Path | None, job_id: str) -> None:
    """Print the audit trail of one job."""

    _emit_lines(
        _run(lambda: JOBS_CONTROLLER.events(JobInspectCommand(db_path=db_path, job_id=job_id))),
    )


@jobs.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--reason", default=None, help="Stored as the job's error message.")
@click.argument("job_id")
def jobs_cancel(db_path: Path | None, reason: str | None, job_id: str) -> None:
    """Cancel one job. Finished jobs are left untouched."""

    _emit_lines(
        _run(
            lambda: JOBS_CONTROLLER.cancel(
                JobCancelCommand(db_path=db_path, job_id=job_id, reason=reason),
            ),
        ),
    )


@jobs.command("cancel-session")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--reason", default=None, help="Stored as each job's error message.")
@click.argument("session_id")
def jobs_cancel_session(db_path: Path | None, reason: str | None, session_id: str) -> None:
    """Cancel every created, queued or running job of a session."""

    _emit_lines(
        _run(
            lambda: JOBS_CONTROLLER.cancel_session(
                SessionCancelCommand(db_path=db_path, session_id=session_id, reason=reason),
            ),
        ),
    )


@jobs.command("retry-stage")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--priority", type=int, default=None, help="Defaults to the original priority.")
@click.argument("job_id")
@click.argument("stage_name")
def jobs_retry_stage(
    db_path: Path | None,
    priority: int | None,
    job_id: str,
    stage_name: str,
) -> None:
    """Resubmit a failed or canceled workflow job from one of its stages.

    Earlier stages are not run again; their stored outputs feed the new run.
    """

    _emit_lines(
        _run(
            lambda: JOBS_CONTROLLER.retry_stage(
                StageRetryCommand(
                    db_path=db_path,
                    job_id=job_id,
                    stage_name=stage_name,
                    priority=priority,
                ),
            ),
        ),
    )


@jobs.command("cleanup")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--max-age-hours",
    type=click.FloatRange(min=0),
    default=24.0,
    show_default=True,
    help="Delete finished jobs and workflow runs older than this.",
)
def jobs_cleanup(db_path: Path | None, max_age_hours: float) -> None:
    """Delete old finished jobs with their events and workflow runs."""

    _emit_lines(
        _run(
            lambda: JOBS_CONTROLLER.cleanup(
                CleanupCommand(db_path=db_path, max_age_hours=max_age_hours),
            ),
        ),
    )


@jobs.command("worker")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once/--loop",
    default=False,
    show_default=True,
    help="`--once` drains the queue in the foreground and exits; `--loop` serves until "
    "SIGINT/SIGTERM.",
)
@click.option(
    "--max-jobs",
    type=click.IntRange(min=1),
    default=None,
    help="With `--once`, stop after this many jobs.",
)
@click.option(
    "--workers",
    type=click.IntRange(min=1, max=64),
    default=None,
    help="Worker thread count (defaults to AGENT_JOBS_WORKER_COUNT).",
)
def jobs_worker(
    db_path: Path | None,
    once: bool,
    max_jobs: int | None,
    workers: int | None,
) -> None:
    """Run queued jobs with the built-in handler registry."""

    _emit_lines(
        _run(
            lambda: JOBS_CONTROLLER.run_worker(
                JobWorkerCommand(
                    db_path=db_path,
                    once=once,
                    max_jobs=max_jobs,
                    workers=workers,
                ),
            ),
        ),
    )


def _run(action: Callable[[], list[str]]) -> list[str]:
    try:
        return action()
    except (JobError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_jobs()
