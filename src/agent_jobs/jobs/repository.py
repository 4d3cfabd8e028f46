"""Durable job store backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Collection, Mapping
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, NamedTuple
from uuid import uuid4

from sqlalchemy import and_, or_
from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from agent_jobs.jobs.errors import ConcurrentUpdateError, InvalidTransitionError, NotFoundError
from agent_jobs.jobs.models import (
    TERMINAL_STATUSES,
    ApiType,
    JobCreate,
    JobEventView,
    JobMetadata,
    JobStatus,
    JobView,
    TaskType,
    WorkflowRunStatus,
    WorkflowRunView,
)
from agent_jobs.storage.alembic_runner import upgrade_head
from agent_jobs.storage.common import (
    build_sqlite_engine,
    dump_json,
    load_json_object,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from agent_jobs.storage.sqlmodel_models import BackgroundJob, JobEventRecord, WorkflowRun

logger = logging.getLogger(__name__)

_MAX_CAS_ATTEMPTS = 20

MetadataFactory = Callable[[JobView], JobMetadata | Mapping[str, Any] | None]


@dataclass(slots=True)
class JobPatch:
    """Partial update applied atomically to one job row.

    `metadata` is merged into the stored metadata. `metadata_from` is called
    with the current row inside the compare-and-set loop, for values derived
    from it (counters, durations).
    """

    status: JobStatus | None = None
    response: str | None = None
    error_message: str | None = None
    clear_error_message: bool = False
    status_message: str | None = None
    metadata: JobMetadata | Mapping[str, Any] | None = None
    metadata_from: MetadataFactory | None = None
    set_start_time: bool = False
    clear_end_time: bool = False
    set_end_time: bool = False


class PatchResult(NamedTuple):
    previous_status: JobStatus
    job: JobView


class JobRepository:
    """Job persistence facade with compare-and-set transitions."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def insert(self, payload: JobCreate) -> JobView:
        """Persist a new job in the created state."""

        now = utc_now()
        job_id = payload.job_id or str(uuid4())
        with Session(self.engine) as session:
            row = BackgroundJob(
                job_id=job_id,
                session_id=payload.session_id,
                api_type=payload.api_type.value,
                task_type=payload.task_type.value,
                status=JobStatus.CREATED.value,
                raw_input=payload.raw_input,
                status_message=payload.status_message,
                metadata_json=_dump_metadata(payload.metadata),
                visible=payload.visible,
                version=0,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="created",
                status_from=None,
                status_to=JobStatus.CREATED,
                details={
                    "api_type": payload.api_type.value,
                    "task_type": payload.task_type.value,
                },
            )
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def get(self, job_id: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(BackgroundJob).where(BackgroundJob.job_id == job_id),
            ).one_or_none()
            if row is None:
                return None
            return _to_job_view(row)

    def find_by_session_id(
        self,
        session_id: str,
        *,
        statuses: Collection[JobStatus] | None = None,
        include_hidden: bool = True,
    ) -> list[JobView]:
        """All jobs of a session, oldest first."""

        with Session(self.engine) as session:
            statement = (
                select(BackgroundJob)
                .where(BackgroundJob.session_id == session_id)
                .order_by(col(BackgroundJob.created_at).asc())
            )
            if statuses is not None:
                statement = statement.where(
                    col(BackgroundJob.status).in_([status.value for status in statuses]),
                )
            if not include_hidden:
                statement = statement.where(col(BackgroundJob.visible).is_(True))
            rows = session.exec(statement).all()
            return [_to_job_view(row) for row in rows]

    def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        session_id: str | None = None,
        limit: int = 50,
    ) -> list[JobView]:
        """List recent jobs, optionally filtered by status and session."""

        with Session(self.engine) as session:
            statement = select(BackgroundJob).order_by(col(BackgroundJob.created_at).desc())
            if status is not None:
                statement = statement.where(BackgroundJob.status == status.value)
            if session_id is not None:
                statement = statement.where(BackgroundJob.session_id == session_id)
            rows = session.exec(statement.limit(limit)).all()
            return [_to_job_view(row) for row in rows]

    def list_by_status(self, statuses: Collection[JobStatus]) -> list[JobView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(BackgroundJob)
                .where(col(BackgroundJob.status).in_([status.value for status in statuses]))
                .order_by(col(BackgroundJob.created_at).asc()),
            ).all()
            return [_to_job_view(row) for row in rows]

    def apply_patch(
        self,
        job_id: str,
        patch: JobPatch,
        *,
        allowed_from: Collection[JobStatus],
        event_type: str,
        event_details: Mapping[str, Any] | None = None,
    ) -> PatchResult:
        """Apply `patch` if the job is in one of `allowed_from`.

        The write is a compare-and-set on the row version; a lost race re-reads
        the row and re-checks the transition, so a concurrent terminal write
        turns into `InvalidTransitionError` instead of being overwritten.
        """

        for _ in range(_MAX_CAS_ATTEMPTS):
            with Session(self.engine) as session:
                row = session.exec(
                    select(BackgroundJob).where(BackgroundJob.job_id == job_id),
                ).one_or_none()
                if row is None:
                    raise NotFoundError(job_id)

                current = _to_job_view(row)
                if current.status not in allowed_from:
                    raise InvalidTransitionError(job_id, current.status, patch.status)

                values = _patch_values(current, patch)
                result = session.exec(
                    sa_update(BackgroundJob)
                    .where(
                        col(BackgroundJob.job_id) == job_id,
                        col(BackgroundJob.version) == current.version,
                    )
                    .values(**values),
                )
                if result.rowcount != 1:
                    session.rollback()
                    logger.debug("Version conflict on job %s, retrying patch", job_id)
                    continue

                self._add_event(
                    session=session,
                    job_id=job_id,
                    event_type=event_type,
                    status_from=current.status,
                    status_to=patch.status or current.status,
                    details=dict(event_details or {}),
                )
                session.commit()

                updated = session.exec(
                    select(BackgroundJob).where(BackgroundJob.job_id == job_id),
                ).one()
                return PatchResult(previous_status=current.status, job=_to_job_view(updated))

        raise ConcurrentUpdateError(
            f"Job {job_id} changed concurrently {_MAX_CAS_ATTEMPTS} times; giving up.",
        )

    def list_events(self, job_id: str) -> list[JobEventView]:
        """Return the audit trail of a job, oldest first."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(JobEventRecord)
                .where(JobEventRecord.job_id == job_id)
                .order_by(col(JobEventRecord.created_at).asc(), col(JobEventRecord.id).asc()),
            ).all()

        return [
            JobEventView(
                event_id=row.id or 0,
                job_id=row.job_id,
                event_type=row.event_type,
                status_from=JobStatus(row.status_from) if row.status_from is not None else None,
                status_to=JobStatus(row.status_to) if row.status_to is not None else None,
                created_at=to_utc_aware_datetime(row.created_at),
                details=load_json_object(row.details_json),
            )
            for row in rows
        ]

    def create_workflow_run(
        self,
        *,
        job_id: str,
        definition_name: str,
        stages: list[str],
        config: Mapping[str, Any] | None = None,
    ) -> WorkflowRunView:
        now = utc_now()
        with Session(self.engine) as session:
            row = WorkflowRun(
                workflow_id=str(uuid4()),
                job_id=job_id,
                definition_name=definition_name,
                status=WorkflowRunStatus.RUNNING.value,
                stages_json=dump_json(stages),
                current_stage_index=0,
                intermediate_json=dump_json({}),
                stage_attempts_json=dump_json({}),
                config_json=dump_json(dict(config or {})),
                progress_percentage=0.0,
                total_actual_cost=0.0,
                started_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_workflow_view(row)

    def update_workflow_run(  # noqa: PLR0913
        self,
        workflow_id: str,
        *,
        status: WorkflowRunStatus | None = None,
        current_stage_index: int | None = None,
        intermediate_data: Mapping[str, Any] | None = None,
        stage_attempts: Mapping[str, int] | None = None,
        progress_percentage: float | None = None,
        total_actual_cost: float | None = None,
        error_message: str | None = None,
    ) -> WorkflowRunView:
        now = utc_now()
        with Session(self.engine) as session:
            row = session.exec(
                select(WorkflowRun).where(WorkflowRun.workflow_id == workflow_id),
            ).one_or_none()
            if row is None:
                raise LookupError(f"Workflow run not found: {workflow_id}")
            if status is not None:
                row.status = status.value
                if status != WorkflowRunStatus.RUNNING:
                    row.finished_at = to_db_datetime(now)
            if current_stage_index is not None:
                row.current_stage_index = current_stage_index
            if intermediate_data is not None:
                row.intermediate_json = dump_json(dict(intermediate_data))
            if stage_attempts is not None:
                row.stage_attempts_json = dump_json(dict(stage_attempts))
            if progress_percentage is not None:
                row.progress_percentage = progress_percentage
            if total_actual_cost is not None:
                row.total_actual_cost = total_actual_cost
            if error_message is not None:
                row.error_message = error_message
            row.updated_at = to_db_datetime(now)
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_workflow_view(row)

    def get_workflow_run(self, workflow_id: str) -> WorkflowRunView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(WorkflowRun).where(WorkflowRun.workflow_id == workflow_id),
            ).one_or_none()
            return _to_workflow_view(row) if row is not None else None

    def list_workflow_runs(self, job_id: str) -> list[WorkflowRunView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(WorkflowRun)
                .where(WorkflowRun.job_id == job_id)
                .order_by(col(WorkflowRun.started_at).asc()),
            ).all()
            return [_to_workflow_view(row) for row in rows]

    def delete_finished_before(self, cutoff: datetime) -> tuple[list[str], int]:
        """Delete terminal jobs that ended before `cutoff`, with their events and runs.

        Finished workflow runs older than `cutoff` are dropped too, even when
        their job is kept. Returns the deleted job ids and the run count.
        """

        db_cutoff = to_db_datetime(cutoff)
        terminal = [status.value for status in TERMINAL_STATUSES]
        with Session(self.engine) as session:
            job_ids = list(
                session.exec(
                    select(BackgroundJob.job_id).where(
                        col(BackgroundJob.status).in_(terminal),
                        col(BackgroundJob.end_time) < db_cutoff,
                    ),
                ).all(),
            )
            runs = session.exec(
                sa_delete(WorkflowRun).where(
                    or_(
                        col(WorkflowRun.job_id).in_(job_ids),
                        and_(
                            col(WorkflowRun.status) != WorkflowRunStatus.RUNNING.value,
                            col(WorkflowRun.finished_at) < db_cutoff,
                        ),
                    ),
                ),
            )
            run_count = runs.rowcount or 0
            if job_ids:
                session.exec(
                    sa_delete(JobEventRecord).where(col(JobEventRecord.job_id).in_(job_ids)),
                )
                session.exec(
                    sa_delete(BackgroundJob).where(
                        col(BackgroundJob.job_id).in_(job_ids),
                        col(BackgroundJob.status).in_(terminal),
                    ),
                )
            session.commit()
        return job_ids, run_count

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        event_type: str,
        status_from: JobStatus | None,
        status_to: JobStatus | None,
        details: dict[str, Any],
    ) -> None:
        session.add(
            JobEventRecord(
                job_id=job_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=dump_json(details) if details else None,
                created_at=utc_now(),
            ),
        )


def _patch_values(current: JobView, patch: JobPatch) -> dict[str, Any]:
    now = utc_now()
    values: dict[str, Any] = {
        "version": current.version + 1,
        "updated_at": to_db_datetime(now),
    }
    if patch.status is not None:
        values["status"] = patch.status.value
    if patch.response is not None:
        values["response"] = patch.response
    if patch.clear_error_message:
        values["error_message"] = None
    if patch.error_message is not None:
        values["error_message"] = patch.error_message
    if patch.status_message is not None:
        values["status_message"] = patch.status_message
    if patch.set_start_time and current.start_time is None:
        values["start_time"] = to_db_datetime(now)
    if patch.clear_end_time:
        values["end_time"] = None
    if patch.set_end_time:
        values["end_time"] = to_db_datetime(now)

    if patch.metadata is not None or patch.metadata_from is not None:
        metadata = current.metadata.merged(patch.metadata)
        if patch.metadata_from is not None:
            metadata = metadata.merged(patch.metadata_from(current))
        values["metadata_json"] = _dump_metadata(metadata)
    return values


def _dump_metadata(metadata: JobMetadata) -> str | None:
    payload = metadata.to_dict()
    return dump_json(payload) if payload else None


def _to_job_view(row: BackgroundJob) -> JobView:
    return JobView(
        job_id=row.job_id,
        session_id=row.session_id,
        api_type=ApiType(row.api_type),
        task_type=TaskType(row.task_type),
        status=JobStatus(row.status),
        raw_input=row.raw_input,
        response=row.response,
        error_message=row.error_message,
        status_message=row.status_message,
        metadata=JobMetadata.from_dict(load_json_object(row.metadata_json)),
        visible=row.visible,
        version=row.version,
        start_time=optional_utc(row.start_time),
        end_time=optional_utc(row.end_time),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_workflow_view(row: WorkflowRun) -> WorkflowRunView:
    stages = []
    if row.stages_json:
        stages = [str(name) for name in _load_json_list(row.stages_json)]
    return WorkflowRunView(
        workflow_id=row.workflow_id,
        job_id=row.job_id,
        definition_name=row.definition_name,
        status=WorkflowRunStatus(row.status),
        stages=stages,
        current_stage_index=row.current_stage_index,
        intermediate_data=load_json_object(row.intermediate_json),
        stage_attempts={
            str(key): int(value)
            for key, value in load_json_object(row.stage_attempts_json).items()
        },
        config=load_json_object(row.config_json),
        progress_percentage=row.progress_percentage,
        total_actual_cost=row.total_actual_cost,
        error_message=row.error_message,
        started_at=to_utc_aware_datetime(row.started_at),
        finished_at=optional_utc(row.finished_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _load_json_list(raw: str) -> list[Any]:
    parsed = json.loads(raw)
    return parsed if isinstance(parsed, list) else []
