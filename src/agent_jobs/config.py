"""Runtime configuration for the job engine, worker pool and stage runner."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

QUEUE_BACKENDS = ("sqlite", "memory")


@dataclass(slots=True)
class JobSettings:
    """Queue and worker pool settings."""

    worker_count: int = 4
    queue_backend: str = "sqlite"
    poll_interval_seconds: float = 0.5
    default_priority: int = 0
    graceful_shutdown_seconds: float = 30.0
    recover_on_start: bool = True
    sqlite_busy_timeout_ms: int = 5_000


@dataclass(slots=True)
class StageSettings:
    """Defaults applied to workflow stages that do not set their own policy."""

    timeout_ms: int = 300_000
    max_retries: int = 3
    retry_delay_ms: int = 1_000
    retry_max_delay_ms: int = 30_000
    cancel_check_interval_ms: int = 100


@dataclass(slots=True)
class EventSettings:
    """In-process event publisher settings."""

    subscriber_queue_size: int = 1_000


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".agent_jobs.db")
    jobs: JobSettings = field(default_factory=JobSettings)
    stages: StageSettings = field(default_factory=StageSettings)
    events: EventSettings = field(default_factory=EventSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("AGENT_JOBS_DB_PATH", ".agent_jobs.db")),
            jobs=JobSettings(
                worker_count=int(os.getenv("AGENT_JOBS_WORKER_COUNT", "4")),
                queue_backend=os.getenv("AGENT_JOBS_QUEUE_BACKEND", "sqlite").strip().lower(),
                poll_interval_seconds=float(
                    os.getenv("AGENT_JOBS_POLL_INTERVAL_SECONDS", "0.5"),
                ),
                default_priority=int(os.getenv("AGENT_JOBS_DEFAULT_PRIORITY", "0")),
                graceful_shutdown_seconds=float(
                    os.getenv("AGENT_JOBS_GRACEFUL_SHUTDOWN_SECONDS", "30"),
                ),
                recover_on_start=_env_bool("AGENT_JOBS_RECOVER_ON_START", default=True),
                sqlite_busy_timeout_ms=int(
                    os.getenv("AGENT_JOBS_SQLITE_BUSY_TIMEOUT_MS", "5000"),
                ),
            ),
            stages=StageSettings(
                timeout_ms=int(os.getenv("AGENT_JOBS_STAGE_TIMEOUT_MS", "300000")),
                max_retries=int(os.getenv("AGENT_JOBS_STAGE_MAX_RETRIES", "3")),
                retry_delay_ms=int(os.getenv("AGENT_JOBS_STAGE_RETRY_DELAY_MS", "1000")),
                retry_max_delay_ms=int(
                    os.getenv("AGENT_JOBS_STAGE_RETRY_MAX_DELAY_MS", "30000"),
                ),
                cancel_check_interval_ms=int(
                    os.getenv("AGENT_JOBS_STAGE_CANCEL_CHECK_INTERVAL_MS", "100"),
                ),
            ),
            events=EventSettings(
                subscriber_queue_size=int(
                    os.getenv("AGENT_JOBS_EVENT_SUBSCRIBER_QUEUE_SIZE", "1000"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error if any setting is out of range."""

        if self.jobs.worker_count <= 0:
            raise ValueError("AGENT_JOBS_WORKER_COUNT must be > 0.")
        if self.jobs.queue_backend not in QUEUE_BACKENDS:
            raise ValueError(
                "AGENT_JOBS_QUEUE_BACKEND must be one of: " + ", ".join(QUEUE_BACKENDS) + ".",
            )
        if self.jobs.poll_interval_seconds <= 0:
            raise ValueError("AGENT_JOBS_POLL_INTERVAL_SECONDS must be > 0.")
        if self.jobs.graceful_shutdown_seconds < 0:
            raise ValueError("AGENT_JOBS_GRACEFUL_SHUTDOWN_SECONDS must be >= 0.")
        if self.jobs.sqlite_busy_timeout_ms <= 0:
            raise ValueError("AGENT_JOBS_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.stages.timeout_ms <= 0:
            raise ValueError("AGENT_JOBS_STAGE_TIMEOUT_MS must be > 0.")
        if self.stages.max_retries <= 0:
            raise ValueError("AGENT_JOBS_STAGE_MAX_RETRIES must be > 0.")
        if self.stages.retry_delay_ms < 0:
            raise ValueError("AGENT_JOBS_STAGE_RETRY_DELAY_MS must be >= 0.")
        if self.stages.retry_max_delay_ms < self.stages.retry_delay_ms:
            raise ValueError(
                "AGENT_JOBS_STAGE_RETRY_MAX_DELAY_MS must be >= AGENT_JOBS_STAGE_RETRY_DELAY_MS.",
            )
        if self.stages.cancel_check_interval_ms <= 0:
            raise ValueError("AGENT_JOBS_STAGE_CANCEL_CHECK_INTERVAL_MS must be > 0.")
        if self.events.subscriber_queue_size <= 0:
            raise ValueError("AGENT_JOBS_EVENT_SUBSCRIBER_QUEUE_SIZE must be > 0.")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
