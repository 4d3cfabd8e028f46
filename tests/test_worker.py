from __future__ import annotations

import threading
import time
from collections.abc import Mapping
from typing import Any

import allure
import pytest

from agent_jobs.jobs.echo import ECHO_JOB_TYPE, echo_handler
from agent_jobs.jobs.errors import ConcurrentUpdateError, HandlerError
from agent_jobs.jobs.handlers import HandlerResult, JobContext
from agent_jobs.jobs.lifecycle import EMPTY_RESPONSE_PLACEHOLDER
from agent_jobs.jobs.models import JobStatus, QueueEntry, TaskType
from agent_jobs.jobs.worker import WorkerPool
from agent_jobs.runtime import JobRuntime
from agent_jobs.storage.common import utc_now

pytestmark = [
    allure.epic("Job Engine"),
    allure.feature("Worker Pool"),
]


def _submit(runtime: JobRuntime, raw_input: str = "hello world", **kwargs) -> str:
    kwargs.setdefault("job_type", ECHO_JOB_TYPE)
    return runtime.service.submit("session-1", TaskType.GENERIC, raw_input, **kwargs)


def test_pool_rejects_non_positive_size(runtime: JobRuntime) -> None:
    with pytest.raises(ValueError, match="must be > 0"):
        WorkerPool(
            lifecycle=runtime.lifecycle,
            queue=runtime.queue,
            registry=runtime.registry,
            runner=runtime.runner,
            cancellations=runtime.cancellations,
            size=0,
        )


def test_run_once_completes_echo_job(runtime: JobRuntime) -> None:
    runtime.registry.register(ECHO_JOB_TYPE, echo_handler)
    job_id = _submit(runtime)

    summary = runtime.pool.run_once(worker_id="worker-test")

    assert summary.processed == 1
    assert summary.completed == 1
    job = runtime.service.get_status(job_id)
    assert job.status == JobStatus.COMPLETED
    assert job.response == "hello world"
    assert job.metadata.worker_id == "worker-test"
    assert job.metadata.tokens_sent == 2
    assert job.metadata.model_used == "echo"
    assert job.start_time is not None
    assert job.end_time is not None
    assert runtime.queue.size() == 0


def test_run_once_on_empty_queue_counts_idle_poll(runtime: JobRuntime) -> None:
    summary = runtime.pool.run_once()

    assert summary.processed == 0
    assert summary.idle_polls == 1


def test_handler_exception_marks_job_failed(runtime: JobRuntime) -> None:
    runtime.registry.register(ECHO_JOB_TYPE, echo_handler)
    job_id = _submit(runtime, payload={"fail": "model refused"})

    summary = runtime.pool.run_once()

    assert summary.failed == 1
    job = runtime.service.get_status(job_id)
    assert job.status == JobStatus.FAILED
    assert job.error_message == "model refused"
    assert job.response is None


def test_unexpected_exception_does_not_kill_worker(runtime: JobRuntime) -> None:
    def _broken(payload: Mapping[str, Any], context: JobContext) -> HandlerResult:
        raise KeyError("missing field")

    runtime.registry.register("broken", _broken)
    runtime.registry.register(ECHO_JOB_TYPE, echo_handler)
    broken_id = _submit(runtime, job_type="broken", priority=5)
    echo_id = _submit(runtime)

    summary = runtime.pool.run_until_idle()

    assert summary.processed == 2
    assert summary.failed == 1
    assert summary.completed == 1
    assert runtime.service.get_status(broken_id).status == JobStatus.FAILED
    assert "missing field" in runtime.service.get_status(broken_id).error_message
    assert runtime.service.get_status(echo_id).status == JobStatus.COMPLETED


def test_entry_goes_back_to_queue_when_job_cannot_start(runtime: JobRuntime, monkeypatch) -> None:
    runtime.registry.register(ECHO_JOB_TYPE, echo_handler)
    job_id = _submit(runtime)
    mark_running = runtime.lifecycle.mark_running
    calls: list[str] = []

    def _conflicts_once(job_id: str, status_message: str | None = None, *, worker_id=None):
        calls.append(job_id)
        if len(calls) == 1:
            raise ConcurrentUpdateError("row kept changing")
        return mark_running(job_id, status_message, worker_id=worker_id)

    monkeypatch.setattr(runtime.lifecycle, "mark_running", _conflicts_once)

    first = runtime.pool.run_once()

    assert first.skipped == 1
    assert runtime.service.get_status(job_id).status == JobStatus.QUEUED
    assert runtime.queue.size() == 1

    second = runtime.pool.run_once()

    assert second.completed == 1
    assert runtime.service.get_status(job_id).status == JobStatus.COMPLETED
    assert runtime.queue.size() == 0


def test_unknown_job_type_fails_job(runtime: JobRuntime) -> None:
    job_id = _submit(runtime, job_type="does_not_exist")

    summary = runtime.pool.run_once()

    assert summary.failed == 1
    job = runtime.service.get_status(job_id)
    assert job.status == JobStatus.FAILED
    assert job.error_message == "No handler registered for job type 'does_not_exist'"


def test_none_result_stores_placeholder(runtime: JobRuntime) -> None:
    runtime.registry.register("silent", lambda payload, context: None)
    job_id = _submit(runtime, job_type="silent")

    runtime.pool.run_once()

    job = runtime.service.get_status(job_id)
    assert job.status == JobStatus.COMPLETED
    assert job.response == EMPTY_RESPONSE_PLACEHOLDER


def test_structured_result_is_rendered_as_json(runtime: JobRuntime) -> None:
    runtime.registry.register("structured", lambda payload, context: {"paths": ["a.py"]})
    job_id = _submit(runtime, job_type="structured")

    runtime.pool.run_once()

    assert runtime.service.get_status(job_id).response == '{"paths": ["a.py"]}'


def test_handler_cost_and_metadata_are_recorded(runtime: JobRuntime) -> None:
    def _priced(payload: Mapping[str, Any], context: JobContext) -> HandlerResult:
        return HandlerResult(text="ok", cost=0.75, metadata={"files_scanned": 12})

    runtime.registry.register("priced", _priced)
    job_id = _submit(runtime, job_type="priced")

    runtime.pool.run_once()

    job = runtime.service.get_status(job_id)
    assert job.metadata.actual_cost == 0.75
    assert job.metadata.extra["files_scanned"] == 12


def test_progress_reports_update_status_message(runtime: JobRuntime) -> None:
    seen: list[str] = []

    def _reporting(payload: Mapping[str, Any], context: JobContext) -> HandlerResult:
        context.progress("Reading repository")
        seen.append(runtime.service.get_status(context.job_id).status_message or "")
        return HandlerResult(text="ok")

    runtime.registry.register("reporting", _reporting)
    _submit(runtime, job_type="reporting")

    runtime.pool.run_once()

    assert seen == ["Reading repository"]


def test_canceled_entry_is_skipped(runtime: JobRuntime) -> None:
    calls: list[str] = []
    runtime.registry.register("tracked", lambda payload, context: calls.append("run") or "x")
    job_id = _submit(runtime, job_type="tracked")
    entry = runtime.queue.pop_highest_priority()
    assert entry is not None
    runtime.service.cancel(job_id)
    runtime.queue.push(
        QueueEntry(
            queue_job_id=entry.queue_job_id,
            job_type=entry.job_type,
            payload=entry.payload,
            priority=entry.priority,
            enqueued_at=utc_now(),
        ),
    )

    summary = runtime.pool.run_once()

    assert summary.skipped == 1
    assert calls == []
    assert runtime.service.get_status(job_id).status == JobStatus.CANCELED


def test_jobs_run_in_priority_order(runtime: JobRuntime) -> None:
    order: list[str] = []

    def _record(payload: Mapping[str, Any], context: JobContext) -> HandlerResult:
        order.append(str(payload["rawInput"]))
        return HandlerResult(text="ok")

    runtime.registry.register("record", _record)
    for name, priority in (("low", 1), ("high", 9), ("mid", 5), ("high-later", 9)):
        _submit(runtime, name, job_type="record", priority=priority)

    runtime.pool.run_until_idle()

    assert order == ["high", "high-later", "mid", "low"]


def test_run_until_idle_respects_max_jobs(runtime: JobRuntime) -> None:
    runtime.registry.register(ECHO_JOB_TYPE, echo_handler)
    for _ in range(3):
        _submit(runtime)

    summary = runtime.pool.run_until_idle(max_jobs=2)

    assert summary.processed == 2
    assert runtime.queue.size() == 1


def test_delayed_job_waits_until_due(runtime: JobRuntime) -> None:
    runtime.registry.register(ECHO_JOB_TYPE, echo_handler)
    job_id = _submit(runtime, delay_seconds=60)

    summary = runtime.pool.run_once()

    assert summary.processed == 0
    assert runtime.service.get_status(job_id).status == JobStatus.QUEUED


def test_started_pool_runs_each_job_exactly_once(runtime: JobRuntime, wait_for_status) -> None:
    counts: dict[str, int] = {}
    lock = threading.Lock()

    def _count(payload: Mapping[str, Any], context: JobContext) -> HandlerResult:
        with lock:
            counts[context.job_id] = counts.get(context.job_id, 0) + 1
        time.sleep(0.01)
        return HandlerResult(text="counted")

    runtime.registry.register("count", _count)
    job_ids = [_submit(runtime, job_type="count") for _ in range(12)]

    runtime.start()
    for job_id in job_ids:
        wait_for_status(job_id, JobStatus.COMPLETED)
    runtime.pool.stop(timeout=5)

    assert counts == {job_id: 1 for job_id in job_ids}
    assert runtime.pool.summary.completed == 12


def test_cancel_running_job_stops_handler(runtime: JobRuntime, wait_for_status) -> None:
    runtime.registry.register(ECHO_JOB_TYPE, echo_handler)
    job_id = _submit(runtime, payload={"sleepSeconds": 30})
    runtime.start()
    wait_for_status(job_id, JobStatus.RUNNING)

    started = time.monotonic()
    assert runtime.service.cancel(job_id, "stop now") is True
    job = wait_for_status(job_id, JobStatus.CANCELED)
    runtime.pool.stop(timeout=5)

    assert time.monotonic() - started < 5
    assert job.error_message == "stop now"
    assert runtime.cancellations.active_job_ids() == []
    assert runtime.pool.summary.canceled == 1


def test_cancel_after_handler_returns_keeps_job_canceled(runtime: JobRuntime) -> None:
    def _cancels_itself(payload: Mapping[str, Any], context: JobContext) -> HandlerResult:
        runtime.service.cancel(context.job_id)
        return HandlerResult(text="too late")

    runtime.registry.register("self_cancel", _cancels_itself)
    job_id = _submit(runtime, job_type="self_cancel")

    summary = runtime.pool.run_once()

    assert summary.canceled == 1
    job = runtime.service.get_status(job_id)
    assert job.status == JobStatus.CANCELED
    assert job.response is None


def test_handler_error_after_cancel_resolves_as_canceled(runtime: JobRuntime) -> None:
    def _fails_after_cancel(payload: Mapping[str, Any], context: JobContext) -> HandlerResult:
        runtime.service.cancel(context.job_id)
        raise HandlerError("connection dropped")

    runtime.registry.register("fails", _fails_after_cancel)
    job_id = _submit(runtime, job_type="fails")

    runtime.pool.run_once()

    assert runtime.service.get_status(job_id).status == JobStatus.CANCELED


def test_stop_returns_promptly_when_idle(runtime: JobRuntime) -> None:
    runtime.start()
    assert runtime.pool.running

    started = time.monotonic()
    runtime.pool.stop(timeout=5)

    assert time.monotonic() - started < 2
    assert not runtime.pool.running
