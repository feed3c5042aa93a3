"""Executor interface for isolated per-job worker contexts."""

from __future__ import annotations

from concurrent.futures import Future
from typing import Protocol

from queue_agent.orchestrator.models import ExecutorOutcome, Job


class ExecutorError(RuntimeError):
    """Executor did not answer a request, or answered with garbage."""


class ExecutorClosedError(ExecutorError):
    """Executor context is gone; no further requests can be delivered."""


class ExecutorHandle(Protocol):
    """One isolated worker context bound to a single job instance.

    ``outcome`` resolves exactly once: with the reported success/failure,
    or with a CRASHED outcome when the context dies without reporting.
    """

    executor_id: str
    outcome: Future[ExecutorOutcome]

    def ping(self, *, timeout_seconds: float) -> bool:
        """Return True when the executor is ready to receive START."""

    def start(self, job: Job, *, timeout_seconds: float) -> bool:
        """Deliver the job payload once; return the acknowledgment flag."""

    def close(self) -> None:
        """Release the context after a terminal transition."""

    def terminate(self) -> None:
        """Force-destroy a possibly hung context."""


class ExecutorFactory(Protocol):
    """Creates an executor context targeting the job's URL."""

    def create(self, job: Job) -> ExecutorHandle:
        """Spawn a fresh context; raise ``ExecutorError`` if it cannot start."""
