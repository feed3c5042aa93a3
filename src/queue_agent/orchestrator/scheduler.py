"""Periodic poll trigger: one fetch-and-dispatch attempt per tick."""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from queue_agent.http.queue_client import HealthStatus, QueueClient, QueueClientError
from queue_agent.orchestrator.lifecycle import JobOrchestrator
from queue_agent.storage.state_store import StateStore

logger = logging.getLogger(__name__)

MIN_POLL_INTERVAL_SECONDS = 1.0


@dataclass(slots=True)
class TickResult:
    """What one scheduler tick did."""

    fetched: bool = False
    dispatched: bool = False
    skipped_reason: str | None = None
    error: str | None = None


@dataclass(slots=True)
class SchedulerRunSummary:
    """Aggregate scheduler counters for CLI reporting."""

    ticks: int = 0
    fetched: int = 0
    dispatched: int = 0
    rejected: int = 0
    idle_polls: int = 0
    skipped: int = 0
    errors: int = 0

    def add(self, result: TickResult) -> None:
        self.ticks += 1
        if result.error is not None:
            self.errors += 1
        elif result.skipped_reason is not None:
            self.skipped += 1
        elif not result.fetched:
            self.idle_polls += 1
        elif result.dispatched:
            self.fetched += 1
            self.dispatched += 1
        else:
            self.fetched += 1
            self.rejected += 1


class PollScheduler:
    """Asks the orchestrator to fetch-and-dispatch one job per period.

    Ticks run sequentially on the calling thread, so a tick never overlaps the
    previous one. Stopping halts new fetches only; jobs already in flight run
    to their own terminal transition.
    """

    def __init__(
        self,
        *,
        orchestrator: JobOrchestrator,
        queue_client: QueueClient,
        store: StateStore,
        poll_interval_seconds: float = 60.0,
        api_configured: bool = True,
    ) -> None:
        if poll_interval_seconds < MIN_POLL_INTERVAL_SECONDS:
            raise ValueError(
                f"poll_interval_seconds must be >= {MIN_POLL_INTERVAL_SECONDS:g}",
            )
        self.orchestrator = orchestrator
        self.queue_client = queue_client
        self.store = store
        self.poll_interval_seconds = poll_interval_seconds
        self.api_configured = api_configured
        self._stop_event = threading.Event()
        self._stop_signal_name: str | None = None

    def start(self) -> HealthStatus:
        """Verify the backend is reachable and enable polling.

        On a failed health check the enabled flag is cleared and the error is
        re-raised.
        """

        logger.info("Testing API connection before starting polling...")
        try:
            health = self.queue_client.health_check()
        except QueueClientError as error:
            logger.error("Failed to start polling: API health check failed: %s", error)
            self.store.set_enabled(False)
            raise
        logger.info("API health check successful (status=%s)", health.status)
        self.store.set_enabled(True)
        self._stop_event.clear()
        logger.info("Polling started (interval: %gs)", self.current_interval())
        return health

    def stop(self) -> None:
        """Disable polling and wake the loop."""

        self.store.set_enabled(False)
        self._stop_event.set()
        logger.info("Polling stopped")

    def request_stop(self, *, signal_name: str | None = None) -> None:
        """Stop the loop without touching the persisted enabled flag."""

        self._stop_signal_name = signal_name
        self._stop_event.set()

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    def current_interval(self) -> float:
        interval = self.store.poll_interval_seconds(self.poll_interval_seconds)
        return max(MIN_POLL_INTERVAL_SECONDS, interval)

    def tick(self) -> TickResult:
        """Run one fetch-and-dispatch attempt."""

        if not self.store.is_enabled():
            return TickResult(skipped_reason="disabled")
        if not self.api_configured:
            logger.warning("API configuration not set. Please configure API URL and key.")
            return TickResult(skipped_reason="not configured")

        logger.info("Checking for new jobs in the queue...")
        try:
            job = self.queue_client.fetch_next(self.store.client_id())
        except QueueClientError as error:
            logger.error("Polling failed: %s", error)
            return TickResult(error=str(error))
        except ValueError as error:
            logger.error("Polling failed: malformed job payload: %s", error)
            return TickResult(error=str(error))

        if job is None:
            logger.info("Queue is empty - no jobs available")
            return TickResult()

        logger.info(
            "Received new job: %r (price: %d, attempt %d)",
            job.title,
            job.price,
            job.attempts,
        )
        result = self.orchestrator.dispatch(job)
        return TickResult(fetched=True, dispatched=result.accepted)

    def run_loop(self, *, max_ticks: int | None = None) -> SchedulerRunSummary:
        """Tick immediately, then once per interval until stopped."""

        summary = SchedulerRunSummary()
        with self._signal_handlers():
            while not self._stop_event.is_set():
                try:
                    summary.add(self.tick())
                except Exception as error:
                    logger.exception("Scheduler tick failed")
                    summary.add(TickResult(error=str(error)))

                if max_ticks is not None and summary.ticks >= max_ticks:
                    break
                self._stop_event.wait(timeout=self.current_interval())

        if self._stop_signal_name is not None:
            logger.info("Scheduler stopped by %s", self._stop_signal_name)
        return summary

    def run_forever(self) -> SchedulerRunSummary:
        return self.run_loop()

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(signal_name=name)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
