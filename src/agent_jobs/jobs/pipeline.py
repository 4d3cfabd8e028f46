"""Multi-stage workflow runner with per-stage timeout, retry and progress.

A workflow is an ordered list of stages. Each stage gets a deep copy of the
previous stage's output (the first one gets the workflow input), so a handler
can never mutate data another stage already produced. Every attempt runs in a
helper thread raced against the stage timeout; the runner polls the job's
cancellation token while it waits, and between retries it sleeps on the token
so a cancel interrupts the backoff immediately.
"""

from __future__ import annotations

import copy
import logging
import random
import time
from collections.abc import Callable, Mapping
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Literal

from agent_jobs.config import StageSettings
from agent_jobs.jobs.cancellation import CancellationToken
from agent_jobs.jobs.errors import (
    CancellationError,
    HandlerError,
    InvalidTransitionError,
    StageTimeoutError,
    ValidationError,
)
from agent_jobs.jobs.events import EventPublisher
from agent_jobs.jobs.lifecycle import JobLifecycleManager
from agent_jobs.jobs.models import JobMetadata, JobView, TokenUsage, WorkflowRunStatus
from agent_jobs.jobs.pricing import estimate_usage_cost
from agent_jobs.jobs.repository import JobRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class StageResult:
    """Output of one stage attempt plus what it cost."""

    output: Any
    cost: float | None = None
    usage: TokenUsage | None = None


@dataclass(slots=True)
class StageContext:
    """Read-only view of the run handed to a stage handler."""

    job_id: str
    session_id: str
    workflow_id: str
    stage_name: str
    stage_index: int
    attempt: int
    max_attempts: int
    token: CancellationToken
    config: Mapping[str, Any] = field(default_factory=dict)
    previous_outputs: Mapping[str, Any] = field(default_factory=dict)


StageHandler = Callable[[Any, StageContext], Any]


@dataclass(slots=True)
class StageDefinition:
    """One step of a workflow. Unset policy fields fall back to `StageSettings`.

    `max_retries` is the total number of attempts for the stage.
    """

    name: str
    handler: StageHandler
    timeout_ms: int | None = None
    max_retries: int | None = None
    retry_delay_ms: int | None = None
    retry_max_delay_ms: int | None = None
    weight: float = 1.0
    config: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class WorkflowDefinition:
    name: str
    stages: list[StageDefinition]

    def validate(self) -> None:
        """Raise `ValidationError` if the workflow cannot be executed."""

        if not self.name or not self.name.strip():
            raise ValidationError("Workflow name is required.")
        if not self.stages:
            raise ValidationError(f"Workflow '{self.name}' has no stages.")
        seen: set[str] = set()
        for stage in self.stages:
            if not stage.name or not stage.name.strip():
                raise ValidationError(f"Workflow '{self.name}' has a stage without a name.")
            if stage.name in seen:
                raise ValidationError(
                    f"Workflow '{self.name}' has duplicate stage '{stage.name}'.",
                )
            seen.add(stage.name)
            if not callable(stage.handler):
                raise ValidationError(f"Stage '{stage.name}' handler is not callable.")
            if stage.weight <= 0:
                raise ValidationError(f"Stage '{stage.name}' weight must be > 0.")
            if stage.timeout_ms is not None and stage.timeout_ms <= 0:
                raise ValidationError(f"Stage '{stage.name}' timeout_ms must be > 0.")
            if stage.max_retries is not None and stage.max_retries <= 0:
                raise ValidationError(f"Stage '{stage.name}' max_retries must be > 0.")
            if stage.retry_delay_ms is not None and stage.retry_delay_ms < 0:
                raise ValidationError(f"Stage '{stage.name}' retry_delay_ms must be >= 0.")
            if stage.retry_max_delay_ms is not None and stage.retry_max_delay_ms < 0:
                raise ValidationError(f"Stage '{stage.name}' retry_max_delay_ms must be >= 0.")

    def stage_names(self) -> list[str]:
        return [stage.name for stage in self.stages]


@dataclass(slots=True)
class WorkflowOutcome:
    """Final state of a workflow run as seen by the worker."""

    workflow_id: str
    status: WorkflowRunStatus
    final_output: Any = None
    intermediate_data: dict[str, Any] = field(default_factory=dict)
    stage_attempts: dict[str, int] = field(default_factory=dict)
    total_actual_cost: float = 0.0
    progress_percentage: float = 0.0
    usage: TokenUsage | None = None
    failed_stage: str | None = None
    error_message: str | None = None


@dataclass(slots=True)
class WorkflowResume:
    """Restart point for a new run: the earlier run and the stage to redo.

    Stages before `stage_name` are not executed again; their stored outputs
    are carried over. The stage itself and everything after it run fresh.
    """

    workflow_id: str
    stage_name: str


@dataclass(slots=True)
class _ResumeState:
    source_workflow_id: str
    start_index: int
    stage_input: Any
    intermediate_data: dict[str, Any]
    stage_attempts: dict[str, int]
    completed_weight: float


@dataclass(slots=True)
class _StagePolicy:
    timeout_ms: int
    max_attempts: int
    retry_delay_ms: int
    retry_max_delay_ms: int


@dataclass(slots=True)
class _StageOutcome:
    status: Literal["completed", "failed", "canceled"]
    attempts: int
    output: Any = None
    error_message: str | None = None


class StagePipelineRunner:
    """Runs a `WorkflowDefinition` for one job and records the run."""

    def __init__(
        self,
        *,
        repository: JobRepository,
        lifecycle: JobLifecycleManager,
        publisher: EventPublisher | None = None,
        defaults: StageSettings | None = None,
        random_source: random.Random | None = None,
    ) -> None:
        self.repository = repository
        self.lifecycle = lifecycle
        self.publisher = publisher
        self.defaults = defaults or StageSettings()
        self._random = random_source or random.Random()  # noqa: S311

    def run(
        self,
        *,
        job: JobView,
        definition: WorkflowDefinition,
        workflow_input: Any,
        token: CancellationToken,
        config: Mapping[str, Any] | None = None,
        resume: WorkflowResume | None = None,
    ) -> WorkflowOutcome:
        """Execute every stage in order and return how the run ended.

        `config` is merged over each stage's own config, keyed by stage name
        (`{"path_finder": {"excluded_paths": [...]}}`) or applied to all stages
        under the `"*"` key. With `resume`, execution starts at the given
        stage of an earlier run, fed by that run's stored outputs.
        """

        definition.validate()
        state = self._resume_state(definition, resume) if resume is not None else None
        run_config = dict(config or {})
        run = self.repository.create_workflow_run(
            job_id=job.job_id,
            definition_name=definition.name,
            stages=definition.stage_names(),
            config=run_config,
        )
        outcome = WorkflowOutcome(workflow_id=run.workflow_id, status=WorkflowRunStatus.RUNNING)
        total_weight = sum(stage.weight for stage in definition.stages)
        completed_weight = 0.0
        previous_output = copy.deepcopy(workflow_input)
        start_index = 0
        if state is not None:
            start_index = state.start_index
            if start_index > 0:
                previous_output = state.stage_input
            completed_weight = state.completed_weight
            outcome.intermediate_data = state.intermediate_data
            outcome.stage_attempts = state.stage_attempts
            outcome.progress_percentage = round(completed_weight / total_weight * 100, 2)
            logger.info(
                "Workflow %s resumes run %s of job %s at stage %s",
                run.workflow_id,
                state.source_workflow_id,
                job.job_id,
                definition.stages[start_index].name,
            )
        logger.info(
            "Workflow %s (%s) started for job %s with %d stage(s)",
            run.workflow_id,
            definition.name,
            job.job_id,
            len(definition.stages) - start_index,
        )

        for index, stage in enumerate(definition.stages):
            if index < start_index:
                continue
            if token.is_cancelled:
                return self._finish(job, outcome, WorkflowRunStatus.CANCELED, token.reason)

            self._record_stage_start(job, outcome, definition, index)
            stage_outcome = self._run_stage(
                job=job,
                outcome=outcome,
                stage=stage,
                stage_index=index,
                stage_input=previous_output,
                token=token,
                config=_stage_config(stage, run_config),
            )
            outcome.stage_attempts[stage.name] = stage_outcome.attempts

            if stage_outcome.status == "canceled":
                return self._finish(job, outcome, WorkflowRunStatus.CANCELED, token.reason)
            if stage_outcome.status == "failed":
                outcome.failed_stage = stage.name
                return self._finish(
                    job,
                    outcome,
                    WorkflowRunStatus.FAILED,
                    stage_outcome.error_message,
                )

            outcome.intermediate_data[stage.name] = copy.deepcopy(stage_outcome.output)
            previous_output = stage_outcome.output
            completed_weight += stage.weight
            outcome.progress_percentage = round(completed_weight / total_weight * 100, 2)
            self._record_stage_completion(job, outcome, definition, index)

        outcome.final_output = copy.deepcopy(previous_output)
        return self._finish(job, outcome, WorkflowRunStatus.COMPLETED, None)

    def _run_stage(  # noqa: PLR0913
        self,
        *,
        job: JobView,
        outcome: WorkflowOutcome,
        stage: StageDefinition,
        stage_index: int,
        stage_input: Any,
        token: CancellationToken,
        config: Mapping[str, Any],
    ) -> _StageOutcome:
        policy = self._policy(stage)
        last_error = "no attempt was made"
        for attempt in range(1, policy.max_attempts + 1):
            if token.is_cancelled:
                return _StageOutcome(status="canceled", attempts=attempt - 1)

            attempt_token = token.child()
            context = StageContext(
                job_id=job.job_id,
                session_id=job.session_id,
                workflow_id=outcome.workflow_id,
                stage_name=stage.name,
                stage_index=stage_index,
                attempt=attempt,
                max_attempts=policy.max_attempts,
                token=attempt_token,
                config=MappingProxyType(copy.deepcopy(dict(config))),
                previous_outputs=MappingProxyType(copy.deepcopy(outcome.intermediate_data)),
            )
            try:
                result = self._call_with_timeout(
                    stage=stage,
                    stage_input=copy.deepcopy(stage_input),
                    context=context,
                    timeout_ms=policy.timeout_ms,
                )
            except CancellationError as error:
                if token.is_cancelled:
                    return _StageOutcome(status="canceled", attempts=attempt)
                last_error = str(error)
            except StageTimeoutError as error:
                attempt_token.cancel(str(error))
                last_error = str(error)
            except HandlerError as error:
                self._add_cost(job, outcome, cost=error.cost, usage=error.usage)
                last_error = str(error)
            except Exception as error:  # noqa: BLE001
                logger.warning(
                    "Stage %s of job %s raised on attempt %d",
                    stage.name,
                    job.job_id,
                    attempt,
                    exc_info=True,
                )
                last_error = f"{type(error).__name__}: {error}"
            else:
                self._add_cost(job, outcome, cost=result.cost, usage=result.usage)
                if token.is_cancelled:
                    return _StageOutcome(status="canceled", attempts=attempt)
                return _StageOutcome(status="completed", attempts=attempt, output=result.output)

            logger.info(
                "Stage %s of job %s failed attempt %d/%d: %s",
                stage.name,
                job.job_id,
                attempt,
                policy.max_attempts,
                last_error,
            )
            if attempt >= policy.max_attempts:
                break
            self._publish(
                job,
                outcome,
                event_type="stage_retry",
                stage_name=stage.name,
                extra={"attempt": attempt, "error_message": last_error},
            )
            delay = self._compute_retry_delay(policy=policy, retry_number=attempt)
            if token.wait(delay):
                return _StageOutcome(status="canceled", attempts=attempt)

        return _StageOutcome(
            status="failed",
            attempts=policy.max_attempts,
            error_message=(
                f"Stage '{stage.name}' failed after {policy.max_attempts} attempts: "
                f"{last_error}"
            ),
        )

    def _call_with_timeout(
        self,
        *,
        stage: StageDefinition,
        stage_input: Any,
        context: StageContext,
        timeout_ms: int,
    ) -> StageResult:
        check_interval = self.defaults.cancel_check_interval_ms / 1000.0
        deadline = time.monotonic() + timeout_ms / 1000.0
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"stage-{stage.name}")
        try:
            future = executor.submit(stage.handler, stage_input, context)
            while True:
                remaining = deadline - time.monotonic()
                wait(
                    [future],
                    timeout=max(0.0, min(remaining, check_interval)),
                    return_when=FIRST_COMPLETED,
                )
                # A result that landed during the last poll wins over the deadline.
                if future.done():
                    return _as_stage_result(future.result())
                if time.monotonic() >= deadline:
                    raise StageTimeoutError(stage.name, timeout_ms)
                if context.token.is_cancelled:
                    raise CancellationError(context.token.reason)
        finally:
            # A handler that ignores its token keeps running detached; its result is dropped.
            executor.shutdown(wait=False, cancel_futures=True)

    def _resume_state(
        self,
        definition: WorkflowDefinition,
        resume: WorkflowResume,
    ) -> _ResumeState:
        previous = self.repository.get_workflow_run(resume.workflow_id)
        if previous is None:
            raise ValidationError(f"Workflow run not found: {resume.workflow_id}")
        if previous.definition_name != definition.name:
            raise ValidationError(
                f"Workflow run {resume.workflow_id} belongs to '{previous.definition_name}', "
                f"not '{definition.name}'.",
            )
        names = definition.stage_names()
        if resume.stage_name not in names:
            raise ValidationError(
                f"Workflow '{definition.name}' has no stage '{resume.stage_name}'.",
            )

        start_index = names.index(resume.stage_name)
        carried: dict[str, Any] = {}
        for name in names[:start_index]:
            if name not in previous.intermediate_data:
                raise ValidationError(
                    f"Stage '{name}' of run {resume.workflow_id} has no stored output.",
                )
            carried[name] = copy.deepcopy(previous.intermediate_data[name])

        stage_input = None
        if start_index > 0:
            stage_input = copy.deepcopy(carried[names[start_index - 1]])
        return _ResumeState(
            source_workflow_id=previous.workflow_id,
            start_index=start_index,
            stage_input=stage_input,
            intermediate_data=carried,
            stage_attempts={
                name: previous.stage_attempts[name]
                for name in names[:start_index]
                if name in previous.stage_attempts
            },
            completed_weight=sum(stage.weight for stage in definition.stages[:start_index]),
        )

    def _policy(self, stage: StageDefinition) -> _StagePolicy:
        defaults = self.defaults
        return _StagePolicy(
            timeout_ms=stage.timeout_ms if stage.timeout_ms is not None else defaults.timeout_ms,
            max_attempts=(
                stage.max_retries if stage.max_retries is not None else defaults.max_retries
            ),
            retry_delay_ms=(
                stage.retry_delay_ms
                if stage.retry_delay_ms is not None
                else defaults.retry_delay_ms
            ),
            retry_max_delay_ms=(
                stage.retry_max_delay_ms
                if stage.retry_max_delay_ms is not None
                else defaults.retry_max_delay_ms
            ),
        )

    def _compute_retry_delay(self, *, policy: _StagePolicy, retry_number: int) -> float:
        max_delay_ms = min(
            policy.retry_max_delay_ms,
            policy.retry_delay_ms * (2 ** max(retry_number - 1, 0)),
        )
        if max_delay_ms <= 0:
            return 0.0
        return self._random.uniform(0, max_delay_ms) / 1000.0

    def _add_cost(
        self,
        job: JobView,
        outcome: WorkflowOutcome,
        *,
        cost: float | None,
        usage: TokenUsage | None,
    ) -> None:
        if cost is None:
            cost = estimate_usage_cost(api_type=job.api_type.value, usage=usage)
        if cost is not None and cost > 0:
            outcome.total_actual_cost += cost
        if usage is not None:
            outcome.usage = usage if outcome.usage is None else outcome.usage.add(usage)

    def _record_stage_start(
        self,
        job: JobView,
        outcome: WorkflowOutcome,
        definition: WorkflowDefinition,
        index: int,
    ) -> None:
        stage_name = definition.stages[index].name
        self.repository.update_workflow_run(outcome.workflow_id, current_stage_index=index)
        self._signal_lifecycle(
            job,
            status_message=(
                f"Running stage {index + 1}/{len(definition.stages)}: {stage_name}"
            ),
            metadata=JobMetadata(
                workflow_id=outcome.workflow_id,
                current_stage=stage_name,
                progress_percentage=outcome.progress_percentage,
            ),
        )
        self._publish(job, outcome, event_type="stage_started", stage_name=stage_name)

    def _record_stage_completion(
        self,
        job: JobView,
        outcome: WorkflowOutcome,
        definition: WorkflowDefinition,
        index: int,
    ) -> None:
        stage_name = definition.stages[index].name
        self.repository.update_workflow_run(
            outcome.workflow_id,
            current_stage_index=index,
            intermediate_data=outcome.intermediate_data,
            stage_attempts=outcome.stage_attempts,
            progress_percentage=outcome.progress_percentage,
            total_actual_cost=outcome.total_actual_cost,
        )
        self._signal_lifecycle(
            job,
            status_message=f"Completed stage {index + 1}/{len(definition.stages)}: {stage_name}",
            metadata=JobMetadata(
                current_stage=stage_name,
                progress_percentage=outcome.progress_percentage,
                actual_cost=outcome.total_actual_cost,
            ),
        )
        self._publish(job, outcome, event_type="stage_completed", stage_name=stage_name)

    def _finish(
        self,
        job: JobView,
        outcome: WorkflowOutcome,
        status: WorkflowRunStatus,
        error_message: str | None,
    ) -> WorkflowOutcome:
        outcome.status = status
        if status == WorkflowRunStatus.CANCELED:
            outcome.error_message = error_message or "Workflow was canceled."
        else:
            outcome.error_message = error_message
        self.repository.update_workflow_run(
            outcome.workflow_id,
            status=status,
            intermediate_data=outcome.intermediate_data,
            stage_attempts=outcome.stage_attempts,
            progress_percentage=outcome.progress_percentage,
            total_actual_cost=outcome.total_actual_cost,
            error_message=outcome.error_message,
        )
        self._publish(
            job,
            outcome,
            event_type=f"workflow_{status.value}",
            stage_name=outcome.failed_stage,
            extra={"error_message": outcome.error_message},
        )
        logger.info(
            "Workflow %s for job %s finished as %s (cost %.6f)",
            outcome.workflow_id,
            job.job_id,
            status.value,
            outcome.total_actual_cost,
        )
        return outcome

    def _signal_lifecycle(
        self,
        job: JobView,
        *,
        status_message: str,
        metadata: JobMetadata,
    ) -> None:
        try:
            self.lifecycle.update_progress(
                job.job_id,
                status_message=status_message,
                metadata=metadata,
                event_type="workflow_progress",
            )
        except InvalidTransitionError:
            # Job already terminal (canceled); the token stops the run.
            logger.debug("Skipping progress update for finished job %s", job.job_id)

    def _publish(
        self,
        job: JobView,
        outcome: WorkflowOutcome,
        *,
        event_type: str,
        stage_name: str | None,
        extra: Mapping[str, Any] | None = None,
    ) -> None:
        if self.publisher is None:
            return
        payload: dict[str, Any] = {
            "event_type": event_type,
            "job_id": job.job_id,
            "session_id": job.session_id,
            "workflow_id": outcome.workflow_id,
            "current_stage": stage_name,
            "progress_percentage": outcome.progress_percentage,
            "total_actual_cost": outcome.total_actual_cost,
        }
        if extra:
            payload.update(extra)
        self.publisher.publish_for_job(job.job_id, job.session_id, payload)


def _stage_config(stage: StageDefinition, run_config: Mapping[str, Any]) -> dict[str, Any]:
    merged = dict(stage.config)
    shared = run_config.get("*")
    if isinstance(shared, Mapping):
        merged.update(shared)
    specific = run_config.get(stage.name)
    if isinstance(specific, Mapping):
        merged.update(specific)
    return merged


def _as_stage_result(value: Any) -> StageResult:
    if isinstance(value, StageResult):
        return value
    return StageResult(output=value)
