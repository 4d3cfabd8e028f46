"""In-process job event publisher with bounded per-subscriber buffers."""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol
from uuid import uuid4

from agent_jobs.jobs.errors import ValidationError
from agent_jobs.jobs.models import JobStatus, JobView
from agent_jobs.storage.common import utc_now

logger = logging.getLogger(__name__)


def job_topic(job_id: str) -> str:
    return f"job:{job_id}"


def session_topic(session_id: str) -> str:
    return f"session:{session_id}"


@dataclass(slots=True)
class JobEvent:
    """Event delivered to subscribers."""

    topic: str
    event_type: str
    job_id: str | None
    session_id: str | None
    payload: dict[str, Any]
    created_at: datetime = field(default_factory=utc_now)


class EventSink(Protocol):
    """External destination for job events (websocket bridge, message bus, ...)."""

    def publish(self, topic: str, payload: Mapping[str, Any]) -> None: ...


class Subscription:
    """Bounded event buffer for one subscriber.

    When the buffer is full the oldest event is dropped. Iterating blocks until
    the next event and stops once the subscription is closed.
    """

    def __init__(self, topic: str, *, max_queue_size: int = 1_000) -> None:
        self.subscription_id = str(uuid4())
        self.topic = topic
        self.dropped_count = 0
        self._queue: queue.Queue[JobEvent | None] = queue.Queue(maxsize=max_queue_size)
        self._lock = threading.Lock()
        self._closed = False
        self._on_close: list[Callable[[Subscription], None]] = []

    @property
    def closed(self) -> bool:
        return self._closed

    def matches(self, event: JobEvent) -> bool:
        return event.topic == self.topic

    def deliver(self, event: JobEvent) -> None:
        with self._lock:
            if self._closed:
                return
            self._put_dropping_oldest(event)

    def get(self, timeout: float | None = None) -> JobEvent | None:
        """Next event, or None on timeout or after close."""

        if self._closed and self._queue.empty():
            return None
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> list[JobEvent]:
        """Return every buffered event without blocking."""

        events: list[JobEvent] = []
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return events
            if item is not None:
                events.append(item)

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._put_dropping_oldest(None)
        for callback in self._on_close:
            callback(self)

    def __iter__(self) -> Iterator[JobEvent]:
        while True:
            if self._closed and self._queue.empty():
                return
            item = self._queue.get()
            if item is None:
                return
            yield item

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def _put_dropping_oldest(self, item: JobEvent | None) -> None:
        while True:
            try:
                self._queue.put_nowait(item)
                return
            except queue.Full:
                try:
                    self._queue.get_nowait()
                    self.dropped_count += 1
                except queue.Empty:
                    continue


class EventPublisher:
    """Fan out job events to in-process subscribers and external sinks.

    Publishing never raises: a failing sink is logged and skipped so that a
    committed state transition is never reported as failed.
    """

    def __init__(
        self,
        *,
        max_queue_size: int = 1_000,
        sinks: tuple[EventSink, ...] | list[EventSink] = (),
    ) -> None:
        self.max_queue_size = max_queue_size
        self._sinks: list[EventSink] = list(sinks)
        self._subscriptions: dict[str, Subscription] = {}
        self._lock = threading.Lock()
        self._closed = False

    def add_sink(self, sink: EventSink) -> None:
        with self._lock:
            self._sinks.append(sink)

    def subscribe(
        self,
        *,
        job_id: str | None = None,
        session_id: str | None = None,
    ) -> Subscription:
        """Subscribe to exactly one job topic or one session topic."""

        if bool(job_id) == bool(session_id):
            raise ValidationError("Subscribe requires either a job id or a session id.")
        topic = job_topic(job_id) if job_id else session_topic(str(session_id))
        subscription = Subscription(topic, max_queue_size=self.max_queue_size)
        subscription._on_close.append(self.unsubscribe)
        with self._lock:
            closed = self._closed
            if not closed:
                self._subscriptions[subscription.subscription_id] = subscription
        if closed:
            subscription.close()
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            self._subscriptions.pop(subscription.subscription_id, None)

    def publish(self, topic: str, payload: Mapping[str, Any]) -> None:
        """Deliver one event; never raises."""

        try:
            event = JobEvent(
                topic=topic,
                event_type=str(payload.get("event_type", "update")),
                job_id=_optional_str(payload.get("job_id")),
                session_id=_optional_str(payload.get("session_id")),
                payload=dict(payload),
            )
            with self._lock:
                if self._closed:
                    return
                subscriptions = list(self._subscriptions.values())
                sinks = list(self._sinks)
        except Exception:  # noqa: BLE001
            logger.warning("Dropping malformed event on %s", topic, exc_info=True)
            return

        for subscription in subscriptions:
            if subscription.matches(event):
                subscription.deliver(event)
        for sink in sinks:
            try:
                sink.publish(topic, event.payload)
            except Exception:  # noqa: BLE001
                logger.warning("Event sink %r failed for %s", sink, topic, exc_info=True)

    def publish_job_update(
        self,
        job: JobView,
        *,
        event_type: str,
        previous_status: JobStatus | None = None,
        extra: Mapping[str, Any] | None = None,
    ) -> None:
        """Publish the current state of a job on its job and session topics."""

        payload: dict[str, Any] = {
            "event_type": event_type,
            "job_id": job.job_id,
            "session_id": job.session_id,
            "status": job.status.value,
            "previous_status": previous_status.value if previous_status is not None else None,
            "status_message": job.status_message,
            "error_message": job.error_message,
            "task_type": job.task_type.value,
            "progress_percentage": job.metadata.progress_percentage,
            "current_stage": job.metadata.current_stage,
            "actual_cost": job.metadata.actual_cost,
            "updated_at": job.updated_at.isoformat(),
        }
        if extra:
            payload.update(extra)
        self.publish_for_job(job.job_id, job.session_id, payload)

    def publish_for_job(self, job_id: str, session_id: str, payload: Mapping[str, Any]) -> None:
        """Publish one payload on both the job topic and the session topic."""

        self.publish(job_topic(job_id), payload)
        self.publish(session_topic(session_id), payload)

    def close(self) -> None:
        with self._lock:
            self._closed = True
            subscriptions = list(self._subscriptions.values())
            self._subscriptions.clear()
        for subscription in subscriptions:
            subscription.close()


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    return str(value)
