"""SQLModel ORM tables for job storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel


class BackgroundJob(SQLModel, table=True):
    __tablename__ = "background_jobs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_background_jobs_session_status", "session_id", "status"),)

    job_id: str = Field(primary_key=True)
    session_id: str = Field(index=True)
    api_type: str
    task_type: str = Field(index=True)
    status: str = Field(index=True)
    raw_input: str = Field(default="", sa_column=Column(Text, nullable=False, server_default=""))
    response: str | None = Field(default=None, sa_column=Column(Text))
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    status_message: str | None = Field(default=None, sa_column=Column(Text))
    metadata_json: str | None = Field(default=None, sa_column=Column(Text))
    visible: bool = Field(default=True)
    version: int = Field(default=0)
    start_time: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    end_time: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class JobEventRecord(SQLModel, table=True):
    __tablename__ = "job_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_job_events_job_time", "job_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("background_jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class JobQueueRecord(SQLModel, table=True):
    __tablename__ = "job_queue"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_job_queue_order", "priority", "enqueued_at", "seq"),)

    seq: int | None = Field(default=None, primary_key=True)
    queue_job_id: str = Field(unique=True, index=True)
    job_id: str = Field(index=True)
    job_type: str
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    priority: int = Field(default=0)
    enqueued_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    run_after: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class WorkflowRun(SQLModel, table=True):
    __tablename__ = "workflow_runs"  # type: ignore[bad-override]

    workflow_id: str = Field(primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("background_jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    definition_name: str
    status: str = Field(index=True)
    stages_json: str = Field(sa_column=Column(Text, nullable=False))
    current_stage_index: int = Field(default=0)
    intermediate_json: str | None = Field(default=None, sa_column=Column(Text))
    stage_attempts_json: str | None = Field(default=None, sa_column=Column(Text))
    config_json: str | None = Field(default=None, sa_column=Column(Text))
    progress_percentage: float = Field(default=0.0)
    total_actual_cost: float = Field(default=0.0)
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
