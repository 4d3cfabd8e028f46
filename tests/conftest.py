"""Shared test fixtures."""

from __future__ import annotations

import os
import time
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from agent_jobs.config import JobSettings, Settings, StageSettings
from agent_jobs.jobs.handlers import HandlerRegistry
from agent_jobs.jobs.models import JobStatus, JobView
from agent_jobs.jobs.repository import JobRepository
from agent_jobs.runtime import JobRuntime


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch) -> None:
    for name in list(os.environ):
        if name.startswith("AGENT_JOBS_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    """Fast settings: short polls, no backoff between stage attempts."""

    return Settings(
        db_path=tmp_path / "jobs.db",
        jobs=JobSettings(
            worker_count=2,
            poll_interval_seconds=0.05,
            graceful_shutdown_seconds=5.0,
        ),
        stages=StageSettings(
            retry_delay_ms=0,
            retry_max_delay_ms=0,
            cancel_check_interval_ms=10,
        ),
    )


@pytest.fixture()
def runtime(settings: Settings) -> Iterator[JobRuntime]:
    """Opened runtime with an empty handler registry and no running workers."""

    job_runtime = JobRuntime(settings, registry=HandlerRegistry())
    job_runtime.open()
    try:
        yield job_runtime
    finally:
        job_runtime.close(timeout=5.0)


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[JobRepository]:
    job_repository = JobRepository(tmp_path / "repository.db")
    job_repository.init_schema()
    try:
        yield job_repository
    finally:
        job_repository.close()


@pytest.fixture()
def wait_for_status(runtime: JobRuntime) -> Callable[..., JobView]:
    """Poll a job until it reaches one of the given statuses."""

    def _wait(job_id: str, *statuses: JobStatus, timeout: float = 10.0) -> JobView:
        deadline = time.monotonic() + timeout
        job = runtime.service.get_status(job_id)
        while job.status not in statuses:
            if time.monotonic() > deadline:
                raise AssertionError(
                    f"Job {job_id} stuck in {job.status.value}, expected {statuses}",
                )
            time.sleep(0.02)
            job = runtime.service.get_status(job_id)
        return job

    return _wait
