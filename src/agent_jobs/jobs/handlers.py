"""Handler contracts and the job-type registry used by workers."""

from __future__ import annotations

import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

from agent_jobs.jobs.cancellation import CancellationToken
from agent_jobs.jobs.models import ApiType, TaskType, TokenUsage
from agent_jobs.jobs.pipeline import WorkflowDefinition


@dataclass(slots=True)
class HandlerResult:
    """Outcome of a direct (single-call) handler."""

    text: str | None
    usage: TokenUsage | None = None
    cost: float | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class JobContext:
    """What a direct handler knows about the job it runs."""

    job_id: str
    session_id: str
    job_type: str
    api_type: ApiType
    task_type: TaskType
    token: CancellationToken
    worker_id: str
    report_progress: Callable[[str], None] | None = None

    def progress(self, message: str) -> None:
        if self.report_progress is not None:
            self.report_progress(message)


class DirectHandler(Protocol):
    def __call__(self, payload: Mapping[str, Any], context: JobContext) -> HandlerResult: ...


class HandlerRegistry:
    """Maps a queue entry's job type to a direct handler or a workflow."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handlers: dict[str, DirectHandler | WorkflowDefinition] = {}

    def register(self, job_type: str, handler: DirectHandler) -> None:
        self._store(job_type, handler)

    def register_workflow(self, job_type: str, definition: WorkflowDefinition) -> None:
        definition.validate()
        self._store(job_type, definition)

    def resolve(self, job_type: str) -> DirectHandler | WorkflowDefinition:
        with self._lock:
            target = self._handlers.get(job_type)
        if target is None:
            raise LookupError(f"No handler registered for job type '{job_type}'")
        return target

    def job_types(self) -> list[str]:
        with self._lock:
            return sorted(self._handlers)

    def __contains__(self, job_type: object) -> bool:
        with self._lock:
            return job_type in self._handlers

    def _store(self, job_type: str, target: DirectHandler | WorkflowDefinition) -> None:
        if not job_type or not job_type.strip():
            raise ValueError("Job type must be a non-empty string.")
        with self._lock:
            if job_type in self._handlers:
                raise ValueError(f"Handler already registered for job type '{job_type}'")
            self._handlers[job_type] = target
