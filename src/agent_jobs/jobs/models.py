"""Domain models for background jobs, queue entries and workflow runs."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Any

PAYLOAD_JOB_ID_KEY = "backgroundJobId"
PAYLOAD_SESSION_ID_KEY = "sessionId"
PAYLOAD_RESUME_KEY = "resumeFrom"
DEFAULT_PRIORITY = 0


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    CREATED = "created"
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_STATUSES


ACTIVE_STATUSES = frozenset({JobStatus.CREATED, JobStatus.QUEUED, JobStatus.RUNNING})
TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELED})


class ApiType(str, Enum):
    """Provider family that executes the job's model calls."""

    GEMINI = "gemini"
    CLAUDE = "claude"
    OPENAI = "openai"
    OPENROUTER = "openrouter"
    GROQ = "groq"
    REPLICATE = "replicate"
    LOCAL = "local"


class TaskType(str, Enum):
    """Kind of work a job performs."""

    IMPLEMENTATION_PLAN = "implementation_plan"
    FILE_DISCOVERY = "file_discovery"
    PATH_FINDER = "path_finder"
    REGEX_FILE_FILTER = "regex_file_filter"
    FILE_RELEVANCE_ASSESSMENT = "file_relevance_assessment"
    EXTENDED_PATH_FINDER = "extended_path_finder"
    PATH_CORRECTION = "path_correction"
    TRANSCRIPTION = "transcription"
    VIDEO_ANALYSIS = "video_analysis"
    TEXT_IMPROVEMENT = "text_improvement"
    GENERIC = "generic"


class WorkflowRunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"


@dataclass(slots=True)
class TokenUsage:
    """Token counters reported by a handler."""

    tokens_sent: int | None = None
    tokens_received: int | None = None
    total_tokens: int | None = None
    model_used: str | None = None

    def resolved_total(self) -> int | None:
        if self.total_tokens is not None:
            return self.total_tokens
        if self.tokens_sent is None and self.tokens_received is None:
            return None
        return (self.tokens_sent or 0) + (self.tokens_received or 0)

    def add(self, other: TokenUsage | None) -> TokenUsage:
        """Sum two usage reports, keeping the latest model name."""

        if other is None:
            return TokenUsage(
                tokens_sent=self.tokens_sent,
                tokens_received=self.tokens_received,
                total_tokens=self.total_tokens,
                model_used=self.model_used,
            )
        return TokenUsage(
            tokens_sent=_sum_optional(self.tokens_sent, other.tokens_sent),
            tokens_received=_sum_optional(self.tokens_received, other.tokens_received),
            total_tokens=_sum_optional(self.resolved_total(), other.resolved_total()),
            model_used=other.model_used or self.model_used,
        )


@dataclass(slots=True)
class JobMetadata:
    """Typed metadata accumulator stored with every job.

    Known keys are first-class fields; anything else a handler reports lands
    in `extra`. `merged()` overlays only the fields that are set, so repeated
    updates accumulate instead of replacing the whole map.
    """

    job_type_for_worker: str | None = None
    job_payload_for_worker: dict[str, Any] | None = None
    job_priority_for_worker: int | None = None
    queue_job_id: str | None = None
    queued_at: str | None = None
    started_at: str | None = None
    completed_at: str | None = None
    failed_at: str | None = None
    canceled_at: str | None = None
    worker_id: str | None = None
    running_update_count: int | None = None
    model_used: str | None = None
    tokens_sent: int | None = None
    tokens_received: int | None = None
    total_tokens: int | None = None
    actual_cost: float | None = None
    duration_ms: int | None = None
    workflow_id: str | None = None
    current_stage: str | None = None
    progress_percentage: float | None = None
    stage_retry_count: int | None = None
    error_details: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> JobMetadata:
        if not data:
            return cls()
        known = _known_metadata_keys()
        values: dict[str, Any] = {}
        extra: dict[str, Any] = {}
        for key, value in data.items():
            if key in known:
                values[key] = value
            elif key == "extra" and isinstance(value, Mapping):
                extra.update(value)
            else:
                extra[key] = value
        return cls(**values, extra=extra)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        for item in fields(self):
            if item.name == "extra":
                continue
            value = getattr(self, item.name)
            if value is not None:
                payload[item.name] = value
        if self.extra:
            payload["extra"] = dict(self.extra)
        return payload

    def merged(self, update: JobMetadata | Mapping[str, Any] | None) -> JobMetadata:
        """Return a copy with every set field of `update` applied on top."""

        if update is None:
            return JobMetadata.from_dict(self.to_dict())
        overlay = update if isinstance(update, JobMetadata) else JobMetadata.from_dict(update)
        combined = self.to_dict()
        extra = dict(self.extra)
        extra.update(overlay.extra)
        combined.update(overlay.to_dict())
        combined["extra"] = extra
        return JobMetadata.from_dict(combined)


@dataclass(slots=True)
class JobCreate:
    """Input payload for creating a job record."""

    session_id: str
    api_type: ApiType
    task_type: TaskType
    raw_input: str = ""
    metadata: JobMetadata = field(default_factory=JobMetadata)
    visible: bool = True
    job_id: str | None = None
    status_message: str | None = None


@dataclass(slots=True)
class JobView:
    """Readable job view returned to callers and workers."""

    job_id: str
    session_id: str
    api_type: ApiType
    task_type: TaskType
    status: JobStatus
    raw_input: str
    response: str | None
    error_message: str | None
    status_message: str | None
    metadata: JobMetadata
    visible: bool
    version: int
    start_time: datetime | None
    end_time: datetime | None
    created_at: datetime
    updated_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


@dataclass(slots=True)
class JobEventView:
    """Job event entry for audit trail."""

    event_id: int
    job_id: str
    event_type: str
    status_from: JobStatus | None
    status_to: JobStatus | None
    created_at: datetime
    details: dict[str, Any]


@dataclass(slots=True)
class QueueEntry:
    """One pending unit of work in the priority queue."""

    queue_job_id: str
    job_type: str
    payload: dict[str, Any]
    priority: int
    enqueued_at: datetime
    run_after: datetime | None = None
    seq: int | None = None

    @property
    def job_id(self) -> str:
        return str(self.payload.get(PAYLOAD_JOB_ID_KEY, ""))

    @property
    def session_id(self) -> str:
        return str(self.payload.get(PAYLOAD_SESSION_ID_KEY, ""))


@dataclass(slots=True)
class WorkflowRunView:
    """Persisted state of one multi-stage workflow execution."""

    workflow_id: str
    job_id: str
    definition_name: str
    status: WorkflowRunStatus
    stages: list[str]
    current_stage_index: int
    intermediate_data: dict[str, Any]
    stage_attempts: dict[str, int]
    config: dict[str, Any]
    progress_percentage: float
    total_actual_cost: float
    error_message: str | None
    started_at: datetime
    finished_at: datetime | None
    updated_at: datetime

    @property
    def current_stage(self) -> str | None:
        if 0 <= self.current_stage_index < len(self.stages):
            return self.stages[self.current_stage_index]
        return None


@dataclass(slots=True)
class FailedCancellation:
    job_id: str
    error: str


@dataclass(slots=True)
class CancellationResult:
    """Outcome of cancelling every active job of one session."""

    session_id: str
    canceled_job_ids: list[str] = field(default_factory=list)
    skipped_count: int = 0
    failed_cancellations: list[FailedCancellation] = field(default_factory=list)

    @property
    def canceled_count(self) -> int:
        return len(self.canceled_job_ids)


def _known_metadata_keys() -> frozenset[str]:
    return frozenset(item.name for item in fields(JobMetadata) if item.name != "extra")


def _sum_optional(left: int | None, right: int | None) -> int | None:
    if left is None and right is None:
        return None
    return (left or 0) + (right or 0)


@dataclass(slots=True)
class CleanupResult:
    """What an age-based cleanup of finished work removed."""

    cutoff: datetime
    deleted_job_ids: list[str] = field(default_factory=list)
    deleted_workflow_runs: int = 0

    @property
    def deleted_job_count(self) -> int:
        return len(self.deleted_job_ids)
