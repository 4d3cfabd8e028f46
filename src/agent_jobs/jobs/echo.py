"""Built-in handlers for smoke-testing a runtime without any model provider."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from agent_jobs.jobs.errors import CancellationError, HandlerError
from agent_jobs.jobs.handlers import HandlerRegistry, HandlerResult, JobContext
from agent_jobs.jobs.models import TokenUsage
from agent_jobs.jobs.pipeline import StageContext, StageDefinition, StageResult, WorkflowDefinition

ECHO_JOB_TYPE = "echo"
ECHO_WORKFLOW_JOB_TYPE = "echo_workflow"

# (attempts, retry delay ms) of the four file-discovery stages.
FILE_DISCOVERY_STAGES: dict[str, tuple[int, int]] = {
    "regex_file_filter": (3, 3_000),
    "file_relevance_assessment": (3, 4_000),
    "extended_path_finder": (2, 5_000),
    "path_correction": (2, 3_000),
}


def echo_handler(payload: Mapping[str, Any], context: JobContext) -> HandlerResult:
    """Return the raw input unchanged.

    Payload knobs: `sleepSeconds` waits on the cancellation token first,
    `fail` raises a `HandlerError` with the given message.
    """

    delay = float(payload.get("sleepSeconds") or 0)
    if delay > 0 and context.token.wait(delay):
        raise CancellationError(context.token.reason)
    failure = payload.get("fail")
    if failure:
        raise HandlerError(str(failure))

    text = str(payload.get("rawInput", ""))
    words = len(text.split())
    context.progress(f"Echoed {words} word(s)")
    return HandlerResult(
        text=text,
        usage=TokenUsage(tokens_sent=words, tokens_received=words, model_used="echo"),
    )


def echo_stage(stage_input: Any, context: StageContext) -> StageResult:
    """Append the stage name to a trail carried from stage to stage."""

    if isinstance(stage_input, dict) and "trail" in stage_input:
        original = stage_input.get("input")
        trail = list(stage_input["trail"])
    else:
        original = stage_input
        trail = []
    trail.append(context.stage_name)
    return StageResult(
        output={"input": original, "trail": trail, "config": dict(context.config)},
    )


def build_echo_workflow(
    *,
    retry_delay_ms: int | None = None,
    timeout_ms: int | None = None,
) -> WorkflowDefinition:
    """Four-stage file-discovery shaped workflow made of `echo_stage` steps."""

    stages = [
        StageDefinition(
            name=name,
            handler=echo_stage,
            timeout_ms=timeout_ms,
            max_retries=attempts,
            retry_delay_ms=delay_ms if retry_delay_ms is None else retry_delay_ms,
        )
        for name, (attempts, delay_ms) in FILE_DISCOVERY_STAGES.items()
    ]
    return WorkflowDefinition(name=ECHO_WORKFLOW_JOB_TYPE, stages=stages)


def default_registry() -> HandlerRegistry:
    registry = HandlerRegistry()
    registry.register(ECHO_JOB_TYPE, echo_handler)
    registry.register_workflow(ECHO_WORKFLOW_JOB_TYPE, build_echo_workflow())
    return registry
