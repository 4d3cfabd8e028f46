"""Priority queue feeding the worker pool.

Two backends share one contract: `SQLiteJobQueue` keeps pending entries in the
job database so they survive a restart, `InMemoryJobQueue` is a heap for tests
and throwaway runtimes. Both order by priority (higher first), then by
enqueue time and insertion sequence, and both make pop-and-claim atomic so an
entry is handed to exactly one worker.
"""

from __future__ import annotations

import heapq
import itertools
import json
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path

from sqlalchemy import delete as sa_delete
from sqlalchemy import func
from sqlmodel import Session, col, select

from agent_jobs.jobs.models import QueueEntry
from agent_jobs.storage.alembic_runner import upgrade_head
from agent_jobs.storage.common import (
    build_sqlite_engine,
    dump_json,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from agent_jobs.storage.sqlmodel_models import JobQueueRecord

logger = logging.getLogger(__name__)


class JobQueue(ABC):
    """Contract shared by queue backends."""

    def __init__(self) -> None:
        self._wakeup = threading.Condition()
        self._closed = False

    @abstractmethod
    def push(self, entry: QueueEntry) -> QueueEntry:
        """Add an entry and wake one blocked worker."""

    @abstractmethod
    def pop_highest_priority(self) -> QueueEntry | None:
        """Remove and return the best eligible entry, or None."""

    @abstractmethod
    def remove(self, queue_job_id: str) -> bool:
        """Drop a pending entry; unknown ids are a no-op returning False."""

    @abstractmethod
    def size(self) -> int: ...

    @abstractmethod
    def contains(self, queue_job_id: str) -> bool: ...

    @abstractmethod
    def has_ready_entry(self) -> bool: ...

    @property
    def closed(self) -> bool:
        return self._closed

    def wait_for_entry(self, timeout: float, stop: threading.Event | None = None) -> bool:
        """Block until an eligible entry may be available, the timeout, or close.

        Returns True when an entry looks ready. A True result is only a hint:
        another worker can still win the pop.
        """

        def _ready() -> bool:
            if self._closed or (stop is not None and stop.is_set()):
                return True
            return self.has_ready_entry()

        with self._wakeup:
            if self._closed:
                return False
            self._wakeup.wait_for(_ready, timeout)
            return not self._closed and self.has_ready_entry()

    def close(self) -> None:
        with self._wakeup:
            self._closed = True
            self._wakeup.notify_all()

    def wake_all(self) -> None:
        """Wake every blocked waiter so it re-checks the queue and stop flags."""

        with self._wakeup:
            self._wakeup.notify_all()

    def _notify(self) -> None:
        with self._wakeup:
            self._wakeup.notify()


class InMemoryJobQueue(JobQueue):
    """Heap-backed queue guarded by a single lock."""

    def __init__(self) -> None:
        super().__init__()
        self._lock = threading.Lock()
        self._heap: list[tuple[int, datetime, int, str]] = []
        self._entries: dict[str, QueueEntry] = {}
        self._counter = itertools.count(1)

    def push(self, entry: QueueEntry) -> QueueEntry:
        with self._lock:
            if entry.queue_job_id in self._entries:
                raise ValueError(f"Queue entry already exists: {entry.queue_job_id}")
            seq = next(self._counter)
            stored = QueueEntry(
                queue_job_id=entry.queue_job_id,
                job_type=entry.job_type,
                payload=dict(entry.payload),
                priority=entry.priority,
                enqueued_at=entry.enqueued_at,
                run_after=entry.run_after,
                seq=seq,
            )
            self._entries[stored.queue_job_id] = stored
            heapq.heappush(
                self._heap,
                (-stored.priority, stored.enqueued_at, seq, stored.queue_job_id),
            )
        self._notify()
        return stored

    def pop_highest_priority(self) -> QueueEntry | None:
        now = utc_now()
        with self._lock:
            deferred: list[tuple[int, datetime, int, str]] = []
            selected: QueueEntry | None = None
            while self._heap:
                item = heapq.heappop(self._heap)
                entry = self._entries.get(item[3])
                if entry is None:
                    continue
                if entry.run_after is not None and entry.run_after > now:
                    deferred.append(item)
                    continue
                selected = self._entries.pop(item[3])
                break
            for item in deferred:
                heapq.heappush(self._heap, item)
            return selected

    def remove(self, queue_job_id: str) -> bool:
        # Heap items of removed entries are skipped lazily on pop.
        with self._lock:
            return self._entries.pop(queue_job_id, None) is not None

    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    def contains(self, queue_job_id: str) -> bool:
        with self._lock:
            return queue_job_id in self._entries

    def has_ready_entry(self) -> bool:
        now = utc_now()
        with self._lock:
            return any(
                entry.run_after is None or entry.run_after <= now
                for entry in self._entries.values()
            )


class SQLiteJobQueue(JobQueue):
    """Queue persisted in the `job_queue` table of the job database."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        super().__init__()
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def init_schema(self) -> None:
        upgrade_head(self.db_path)

    def close(self) -> None:
        super().close()
        self.engine.dispose()

    def push(self, entry: QueueEntry) -> QueueEntry:
        with Session(self.engine) as session:
            row = JobQueueRecord(
                queue_job_id=entry.queue_job_id,
                job_id=entry.job_id,
                job_type=entry.job_type,
                payload_json=dump_json(entry.payload),
                priority=entry.priority,
                enqueued_at=to_db_datetime(entry.enqueued_at),
                run_after=to_db_datetime(entry.run_after or entry.enqueued_at),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            stored = _to_entry(row)
        self._notify()
        return stored

    def pop_highest_priority(self) -> QueueEntry | None:
        while True:
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(JobQueueRecord)
                    .where(JobQueueRecord.run_after <= to_db_datetime(utc_now()))
                    .order_by(
                        col(JobQueueRecord.priority).desc(),
                        col(JobQueueRecord.enqueued_at).asc(),
                        col(JobQueueRecord.seq).asc(),
                    )
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None
                entry = _to_entry(candidate)

                result = session.exec(
                    sa_delete(JobQueueRecord).where(
                        col(JobQueueRecord.seq) == candidate.seq,
                    ),
                )
                if result.rowcount != 1:
                    # Another worker claimed it first.
                    session.rollback()
                    continue
                session.commit()
                return entry

    def remove(self, queue_job_id: str) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(JobQueueRecord).where(
                    col(JobQueueRecord.queue_job_id) == queue_job_id,
                ),
            )
            session.commit()
            return result.rowcount == 1

    def size(self) -> int:
        with Session(self.engine) as session:
            return int(session.exec(select(func.count()).select_from(JobQueueRecord)).one())

    def contains(self, queue_job_id: str) -> bool:
        with Session(self.engine) as session:
            row = session.exec(
                select(JobQueueRecord.seq).where(JobQueueRecord.queue_job_id == queue_job_id),
            ).first()
            return row is not None

    def has_ready_entry(self) -> bool:
        with Session(self.engine) as session:
            row = session.exec(
                select(JobQueueRecord.seq).where(
                    JobQueueRecord.run_after <= to_db_datetime(utc_now()),
                ),
            ).first()
            return row is not None


def _to_entry(row: JobQueueRecord) -> QueueEntry:
    payload = json.loads(row.payload_json)
    return QueueEntry(
        queue_job_id=row.queue_job_id,
        job_type=row.job_type,
        payload=payload if isinstance(payload, dict) else {},
        priority=row.priority,
        enqueued_at=to_utc_aware_datetime(row.enqueued_at),
        run_after=to_utc_aware_datetime(row.run_after),
        seq=row.seq,
    )
