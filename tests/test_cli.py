from __future__ import annotations

import re
from pathlib import Path

import allure
from click.testing import CliRunner

from agent_jobs.main import agent_jobs

pytestmark = [
    allure.epic("Job Engine"),
    allure.feature("CLI"),
]

_JOB_ID = re.compile(r"job_id=(\S+)")


def _invoke(db_path: Path, *args: str):
    runner = CliRunner()
    command, *rest = args
    return runner.invoke(agent_jobs, ["jobs", command, "--db-path", str(db_path), *rest])


def _submit(db_path: Path, *args: str) -> str:
    result = _invoke(db_path, "submit", "--session-id", "session-1", *args)
    assert result.exit_code == 0, result.output
    match = _JOB_ID.search(result.output)
    assert match is not None
    return match.group(1)


def test_submit_then_worker_once_completes_job(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    job_id = _submit(db_path, "--job-type", "echo", "--input", "hello cli", "--priority", "2")

    worker = _invoke(db_path, "worker", "--once", "--workers", "1")
    status = _invoke(db_path, "status", job_id)

    assert worker.exit_code == 0, worker.output
    assert "Worker summary: processed=1 completed=1 failed=0" in worker.output
    assert status.exit_code == 0, status.output
    assert f"Job: {job_id}" in status.output
    assert "Status: completed" in status.output
    assert "Response: hello cli" in status.output


def test_worker_once_runs_echo_workflow(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    job_id = _submit(
        db_path,
        "--job-type",
        "echo_workflow",
        "--task-type",
        "file_discovery",
        "--input",
        "find files",
    )

    worker = _invoke(db_path, "worker", "--once")
    status = _invoke(db_path, "status", job_id)

    assert worker.exit_code == 0, worker.output
    assert "Status: completed" in status.output
    assert "Progress: 100.0%" in status.output
    assert "Workflow echo_workflow" in status.output


def test_events_prints_audit_trail(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    job_id = _submit(db_path, "--job-type", "echo")

    result = _invoke(db_path, "events", job_id)

    assert result.exit_code == 0, result.output
    assert f"Events for {job_id}:" in result.output
    assert " created " in result.output
    assert " queued created -> queued " in result.output


def test_cancel_and_cancel_again(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    job_id = _submit(db_path, "--job-type", "echo")

    first = _invoke(db_path, "cancel", "--reason", "changed my mind", job_id)
    second = _invoke(db_path, "cancel", job_id)
    status = _invoke(db_path, "status", job_id)

    assert first.output.strip() == f"Job canceled: {job_id}"
    assert second.output.strip() == f"Job {job_id} already canceled; nothing to cancel."
    assert "Error: changed my mind" in status.output


def test_cancel_session_reports_counts(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    for _ in range(2):
        _submit(db_path, "--job-type", "echo")

    result = _invoke(db_path, "cancel-session", "session-1")
    listed = _invoke(db_path, "list", "--session-id", "session-1", "--status", "canceled")

    assert result.exit_code == 0, result.output
    assert "Session session-1: canceled=2 skipped=0 failed=0" in result.output
    assert len(listed.output.strip().splitlines()) == 2


def test_list_without_jobs(tmp_path: Path) -> None:
    result = _invoke(tmp_path / "empty.db", "list")

    assert result.exit_code == 0
    assert "No jobs found." in result.output


def test_unknown_job_exits_with_error(tmp_path: Path) -> None:
    result = _invoke(tmp_path / "cli.db", "status", "missing-job")

    assert result.exit_code != 0
    assert "Job not found: missing-job" in result.output


def test_submit_defaults_to_echo_handler(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    job_id = _submit(db_path, "--input", "default type")

    worker = _invoke(db_path, "worker", "--once")
    status = _invoke(db_path, "status", job_id)

    assert "completed=1 failed=0" in worker.output
    assert "Response: default type" in status.output


def test_submit_rejects_unregistered_job_type(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"

    result = _invoke(db_path, "submit", "--session-id", "session-1", "--job-type", "nope")
    listed = _invoke(db_path, "list")

    assert result.exit_code != 0
    assert "Unknown job type 'nope'" in result.output
    assert "No jobs found." in listed.output


def test_cleanup_removes_finished_jobs(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    _submit(db_path, "--job-type", "echo")
    _invoke(db_path, "worker", "--once")

    kept = _invoke(db_path, "cleanup")
    removed = _invoke(db_path, "cleanup", "--max-age-hours", "0")
    listed = _invoke(db_path, "list")

    assert "jobs=0 workflow_runs=0" in kept.output
    assert removed.exit_code == 0, removed.output
    assert "jobs=1 workflow_runs=0" in removed.output
    assert "No jobs found." in listed.output


def test_retry_stage_of_completed_job_is_refused(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    job_id = _submit(db_path, "--job-type", "echo_workflow", "--task-type", "file_discovery")
    _invoke(db_path, "worker", "--once")

    result = _invoke(db_path, "retry-stage", job_id, "path_correction")

    assert result.exit_code != 0
    assert "Only failed or canceled jobs can be retried" in result.output
