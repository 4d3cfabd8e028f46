from __future__ import annotations

import allure
import pytest

from agent_jobs.config import JobSettings, Settings
from agent_jobs.jobs.echo import (
    ECHO_JOB_TYPE,
    ECHO_WORKFLOW_JOB_TYPE,
    build_echo_workflow,
    default_registry,
)
from agent_jobs.jobs.errors import NotFoundError, ValidationError
from agent_jobs.jobs.models import ApiType, JobStatus, TaskType
from agent_jobs.jobs.queue import InMemoryJobQueue
from agent_jobs.runtime import JobRuntime

pytestmark = [
    allure.epic("Job Engine"),
    allure.feature("Job Service"),
]


def test_submit_creates_queued_job_with_payload_ids(runtime: JobRuntime) -> None:
    job_id = runtime.service.submit(
        "session-1",
        "implementation_plan",
        "plan the refactor",
        3,
        api_type="claude",
        payload={"extra": "value"},
        metadata={"model_used": "claude-test"},
    )

    job = runtime.service.get_status(job_id)
    assert job.status == JobStatus.QUEUED
    assert job.api_type == ApiType.CLAUDE
    assert job.task_type == TaskType.IMPLEMENTATION_PLAN
    assert job.metadata.job_type_for_worker == "implementation_plan"
    assert job.metadata.job_priority_for_worker == 3
    assert job.metadata.model_used == "claude-test"
    assert job.metadata.job_payload_for_worker == {
        "extra": "value",
        "rawInput": "plan the refactor",
        "backgroundJobId": job_id,
        "sessionId": "session-1",
    }


def test_submit_rejects_unknown_task_type(runtime: JobRuntime) -> None:
    with pytest.raises(ValidationError):
        runtime.service.submit("session-1", "not_a_task", "x")

    assert runtime.repository.list_jobs() == []


def test_submit_with_blank_job_type_fails_created_job(runtime: JobRuntime) -> None:
    with pytest.raises(ValidationError):
        runtime.service.submit("session-1", TaskType.GENERIC, "x", job_type=" ")

    jobs = runtime.repository.list_jobs()
    assert len(jobs) == 1
    assert jobs[0].status == JobStatus.FAILED
    assert runtime.queue.size() == 0


def test_list_jobs_hides_invisible_jobs_by_default(runtime: JobRuntime) -> None:
    visible = runtime.service.submit("session-1", TaskType.GENERIC, "a")
    hidden = runtime.service.submit("session-1", TaskType.GENERIC, "b", visible=False)
    runtime.service.submit("session-2", TaskType.GENERIC, "c")

    assert [job.job_id for job in runtime.service.list_jobs("session-1")] == [visible]
    assert [
        job.job_id for job in runtime.service.list_jobs("session-1", include_hidden=True)
    ] == [visible, hidden]


def test_active_jobs_excludes_finished(runtime: JobRuntime) -> None:
    active = runtime.service.submit("session-1", TaskType.GENERIC, "a")
    finished = runtime.service.submit("session-1", TaskType.GENERIC, "b")
    runtime.service.cancel(finished)

    assert [job.job_id for job in runtime.service.active_jobs("session-1")] == [active]


def test_inspecting_unknown_job_raises_not_found(runtime: JobRuntime) -> None:
    with pytest.raises(NotFoundError):
        runtime.service.list_events("missing")
    with pytest.raises(NotFoundError):
        runtime.service.cancel("missing")


def test_memory_backend_runtime_runs_jobs(settings: Settings) -> None:
    settings.jobs = JobSettings(queue_backend="memory", poll_interval_seconds=0.05)

    with JobRuntime(settings) as runtime:
        assert isinstance(runtime.queue, InMemoryJobQueue)
        job_id = runtime.service.submit(
            "session-1",
            TaskType.GENERIC,
            "hi",
            job_type=ECHO_JOB_TYPE,
        )
        summary = runtime.pool.run_until_idle()
        job = runtime.service.get_status(job_id)

    assert summary.completed == 1
    assert job.response == "hi"


def test_queued_jobs_survive_runtime_restart(settings: Settings) -> None:
    with JobRuntime(settings, registry=default_registry()) as first:
        job_id = first.service.submit("session-1", TaskType.GENERIC, "persisted", job_type="echo")

    with JobRuntime(settings, registry=default_registry()) as second:
        assert second.recover() == []
        second.pool.run_until_idle()
        job = second.service.get_status(job_id)

    assert job.status == JobStatus.COMPLETED
    assert job.response == "persisted"


def test_recovery_on_start_can_be_disabled(settings: Settings) -> None:
    settings.jobs.recover_on_start = False
    with JobRuntime(settings) as runtime:
        job_id = runtime.service.submit("session-1", TaskType.GENERIC, "x", job_type="echo")
        runtime.queue.pop_highest_priority()
        runtime.lifecycle.mark_running(job_id)

        assert runtime.recover() == []
        assert runtime.service.get_status(job_id).status == JobStatus.RUNNING


def test_cleanup_finished_deletes_old_terminal_jobs_only(runtime: JobRuntime) -> None:
    runtime.registry.register_workflow(
        ECHO_WORKFLOW_JOB_TYPE,
        build_echo_workflow(retry_delay_ms=0),
    )
    done_id = runtime.service.submit(
        "session-1",
        TaskType.FILE_DISCOVERY,
        "x",
        job_type=ECHO_WORKFLOW_JOB_TYPE,
    )
    runtime.pool.run_once()
    queued_id = runtime.service.submit("session-1", TaskType.GENERIC, "y", job_type=ECHO_JOB_TYPE)

    kept = runtime.service.cleanup_finished(24)

    assert kept.deleted_job_ids == []
    assert kept.deleted_workflow_runs == 0

    result = runtime.service.cleanup_finished(0)

    assert result.deleted_job_ids == [done_id]
    assert result.deleted_workflow_runs == 1
    with pytest.raises(NotFoundError):
        runtime.service.get_status(done_id)
    assert runtime.repository.list_events(done_id) == []
    assert runtime.repository.list_workflow_runs(done_id) == []
    assert runtime.service.get_status(queued_id).status == JobStatus.QUEUED


def test_cleanup_rejects_negative_age(runtime: JobRuntime) -> None:
    with pytest.raises(ValidationError, match=">= 0 hours"):
        runtime.service.cleanup_finished(-1)
