import sqlite3
from pathlib import Path

import allure

from agent_jobs.jobs.repository import JobRepository

pytestmark = [
    allure.epic("Job Engine"),
    allure.feature("Persistence"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    db_path = tmp_path / "migrations.db"
    repository = JobRepository(db_path)
    repository.init_schema()
    repository.close()

    connection = sqlite3.connect(db_path)
    connection.row_factory = sqlite3.Row
    try:
        row = connection.execute("SELECT version_num FROM alembic_version LIMIT 1").fetchone()
        assert row is not None
        assert str(row["version_num"]) == "20261019_0001"

        tables = connection.execute(
            """
            SELECT name
            FROM sqlite_master
            WHERE type = 'table'
              AND name IN ('background_jobs', 'job_events', 'job_queue', 'workflow_runs')
            ORDER BY name
            """
        ).fetchall()
        assert [str(row["name"]) for row in tables] == [
            "background_jobs",
            "job_events",
            "job_queue",
            "workflow_runs",
        ]
    finally:
        connection.close()


def test_init_schema_is_idempotent(tmp_path: Path) -> None:
    db_path = tmp_path / "twice.db"
    for _ in range(2):
        repository = JobRepository(db_path)
        repository.init_schema()
        repository.close()

    connection = sqlite3.connect(db_path)
    try:
        count = connection.execute("SELECT COUNT(*) FROM alembic_version").fetchone()[0]
    finally:
        connection.close()
    assert count == 1
