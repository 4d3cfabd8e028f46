from __future__ import annotations

import allure

from agent_jobs.jobs.cancellation import CancellationRegistry, CancellationToken
from agent_jobs.jobs.models import (
    ACTIVE_STATUSES,
    CancellationResult,
    JobMetadata,
    JobStatus,
    TokenUsage,
)

pytestmark = [
    allure.epic("Job Engine"),
    allure.feature("Domain Models"),
]


def test_status_partition() -> None:
    assert {status for status in JobStatus if status.is_terminal} == {
        JobStatus.COMPLETED,
        JobStatus.FAILED,
        JobStatus.CANCELED,
    }
    assert ACTIVE_STATUSES == {JobStatus.CREATED, JobStatus.QUEUED, JobStatus.RUNNING}
    assert all(status.is_active != status.is_terminal for status in JobStatus)


def test_metadata_round_trip_keeps_unknown_keys_in_extra() -> None:
    metadata = JobMetadata.from_dict({"model_used": "flash", "ticket": "ABC-1", "total_tokens": 5})

    assert metadata.model_used == "flash"
    assert metadata.extra == {"ticket": "ABC-1"}
    assert metadata.to_dict() == {
        "model_used": "flash",
        "total_tokens": 5,
        "extra": {"ticket": "ABC-1"},
    }
    assert JobMetadata.from_dict(metadata.to_dict()) == metadata


def test_metadata_merge_overlays_only_set_fields() -> None:
    base = JobMetadata(queue_job_id="q-1", model_used="flash", extra={"a": 1})

    merged = base.merged({"model_used": "pro", "b": 2})

    assert merged.queue_job_id == "q-1"
    assert merged.model_used == "pro"
    assert merged.extra == {"a": 1, "b": 2}
    assert base.model_used == "flash"


def test_token_usage_totals() -> None:
    assert TokenUsage().resolved_total() is None
    assert TokenUsage(tokens_sent=3, tokens_received=4).resolved_total() == 7
    assert TokenUsage(tokens_sent=3, total_tokens=10).resolved_total() == 10

    combined = TokenUsage(tokens_sent=1, model_used="a").add(
        TokenUsage(tokens_sent=2, tokens_received=5, model_used="b"),
    )
    assert combined.tokens_sent == 3
    assert combined.tokens_received == 5
    assert combined.total_tokens == 8
    assert combined.model_used == "b"


def test_cancellation_result_counts() -> None:
    result = CancellationResult(session_id="s", canceled_job_ids=["a", "b"], skipped_count=1)

    assert result.canceled_count == 2


def test_cancelling_parent_token_cancels_children() -> None:
    parent = CancellationToken()
    child = parent.child()
    sibling = parent.child()

    sibling.cancel("just this one")
    assert not parent.is_cancelled
    assert not child.is_cancelled

    parent.cancel("everything")
    assert child.is_cancelled
    assert child.reason == "everything"
    assert parent.child().is_cancelled


def test_registry_cancel_reports_whether_token_existed() -> None:
    registry = CancellationRegistry()
    token = registry.register("job-1")

    assert registry.register("job-1") is token
    assert registry.cancel("job-1", "stop") is True
    assert token.is_cancelled
    assert registry.cancel("job-2") is False

    registry.release("job-1")
    assert registry.active_job_ids() == []
