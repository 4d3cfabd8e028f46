"""Cooperative cancellation tokens shared between workers, runner and handlers."""

from __future__ import annotations

import threading

from agent_jobs.jobs.errors import CancellationError


class CancellationToken:
    """One-shot cancellation flag; cancelling a token cancels all its children."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._children: list[CancellationToken] = []
        self.reason: str | None = None

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str | None = None) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self.reason = reason
            self._event.set()
            children = list(self._children)
        for child in children:
            child.cancel(reason)

    def child(self) -> CancellationToken:
        """Token cancelled together with this one, but cancellable on its own."""

        token = CancellationToken()
        with self._lock:
            if not self._event.is_set():
                self._children.append(token)
                return token
        token.cancel(self.reason)
        return token

    def wait(self, timeout: float | None = None) -> bool:
        """Block up to `timeout` seconds; True if the token got cancelled."""

        return self._event.wait(timeout)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancellationError(self.reason)


class CancellationRegistry:
    """Tokens of the jobs currently held by workers, keyed by job id."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tokens: dict[str, CancellationToken] = {}

    def register(self, job_id: str) -> CancellationToken:
        with self._lock:
            token = self._tokens.get(job_id)
            if token is None:
                token = CancellationToken()
                self._tokens[job_id] = token
            return token

    def get(self, job_id: str) -> CancellationToken | None:
        with self._lock:
            return self._tokens.get(job_id)

    def cancel(self, job_id: str, reason: str | None = None) -> bool:
        """Trip the token of a job in flight. False if no worker holds the job."""

        token = self.get(job_id)
        if token is None:
            return False
        token.cancel(reason)
        return True

    def release(self, job_id: str) -> None:
        with self._lock:
            self._tokens.pop(job_id, None)

    def active_job_ids(self) -> list[str]:
        with self._lock:
            return list(self._tokens)
