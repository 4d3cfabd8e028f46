"""Exceptions raised by the job engine."""

from __future__ import annotations

from agent_jobs.jobs.models import JobStatus, TokenUsage


class JobError(RuntimeError):
    """Base class for job engine errors."""


class ValidationError(JobError, ValueError):
    """Caller supplied an invalid argument; nothing was persisted."""


class NotFoundError(JobError, LookupError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class InvalidTransitionError(JobError):
    """Requested transition is not allowed from the job's current state."""

    def __init__(self, job_id: str, current: JobStatus, target: JobStatus | None) -> None:
        target_name = target.value if target is not None else "update"
        super().__init__(
            f"Job {job_id} cannot move from {current.value} to {target_name}.",
        )
        self.job_id = job_id
        self.current = current
        self.target = target


class ConcurrentUpdateError(JobError):
    """Compare-and-set kept losing to concurrent writers."""


class HandlerError(JobError):
    """Failure reported by a handler, optionally carrying the cost already incurred."""

    def __init__(
        self,
        message: str,
        *,
        cost: float | None = None,
        usage: TokenUsage | None = None,
    ) -> None:
        super().__init__(message)
        self.cost = cost
        self.usage = usage


class StageTimeoutError(JobError, TimeoutError):
    def __init__(self, stage: str, timeout_ms: int) -> None:
        super().__init__(f"Stage '{stage}' timed out after {timeout_ms} ms")
        self.stage = stage
        self.timeout_ms = timeout_ms


class CancellationError(JobError):
    """Raised inside handlers and the runner once a job's token is cancelled."""

    def __init__(self, reason: str | None = None) -> None:
        super().__init__(reason or "Job was canceled.")
        self.reason = reason
