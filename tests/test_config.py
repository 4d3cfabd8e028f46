from __future__ import annotations

from pathlib import Path

import allure
import pytest

from agent_jobs.config import EventSettings, JobSettings, Settings, StageSettings

pytestmark = [
    allure.epic("Job Engine"),
    allure.feature("Configuration"),
]


def test_from_env_uses_defaults_without_environment() -> None:
    settings = Settings.from_env()

    assert settings.db_path == Path(".agent_jobs.db")
    assert settings.jobs.worker_count == 4
    assert settings.jobs.queue_backend == "sqlite"
    assert settings.jobs.recover_on_start is True
    assert settings.stages.timeout_ms == 300_000
    assert settings.stages.max_retries == 3
    assert settings.events.subscriber_queue_size == 1_000
    settings.validate()


def test_from_env_reads_overrides(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("AGENT_JOBS_DB_PATH", str(tmp_path / "env.db"))
    monkeypatch.setenv("AGENT_JOBS_WORKER_COUNT", "8")
    monkeypatch.setenv("AGENT_JOBS_QUEUE_BACKEND", " Memory ")
    monkeypatch.setenv("AGENT_JOBS_RECOVER_ON_START", "off")
    monkeypatch.setenv("AGENT_JOBS_STAGE_MAX_RETRIES", "5")
    monkeypatch.setenv("AGENT_JOBS_STAGE_RETRY_DELAY_MS", "250")

    settings = Settings.from_env()

    assert settings.db_path == tmp_path / "env.db"
    assert settings.jobs.worker_count == 8
    assert settings.jobs.queue_backend == "memory"
    assert settings.jobs.recover_on_start is False
    assert settings.stages.max_retries == 5
    assert settings.stages.retry_delay_ms == 250


def test_explicit_db_path_wins_over_environment(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("AGENT_JOBS_DB_PATH", str(tmp_path / "env.db"))

    settings = Settings.from_env(db_path=tmp_path / "cli.db")

    assert settings.db_path == tmp_path / "cli.db"


def test_from_env_rejects_invalid_boolean(monkeypatch) -> None:
    monkeypatch.setenv("AGENT_JOBS_RECOVER_ON_START", "maybe")

    with pytest.raises(ValueError, match="AGENT_JOBS_RECOVER_ON_START"):
        Settings.from_env()


@pytest.mark.parametrize(
    ("settings", "message"),
    [
        (Settings(jobs=JobSettings(worker_count=0)), "AGENT_JOBS_WORKER_COUNT"),
        (Settings(jobs=JobSettings(queue_backend="redis")), "AGENT_JOBS_QUEUE_BACKEND"),
        (Settings(jobs=JobSettings(poll_interval_seconds=0)), "AGENT_JOBS_POLL_INTERVAL_SECONDS"),
        (Settings(stages=StageSettings(timeout_ms=0)), "AGENT_JOBS_STAGE_TIMEOUT_MS"),
        (Settings(stages=StageSettings(max_retries=0)), "AGENT_JOBS_STAGE_MAX_RETRIES"),
        (
            Settings(stages=StageSettings(retry_delay_ms=5_000, retry_max_delay_ms=1_000)),
            "AGENT_JOBS_STAGE_RETRY_MAX_DELAY_MS",
        ),
        (
            Settings(events=EventSettings(subscriber_queue_size=0)),
            "AGENT_JOBS_EVENT_SUBSCRIBER_QUEUE_SIZE",
        ),
    ],
)
def test_validate_rejects_out_of_range_values(settings: Settings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        settings.validate()
