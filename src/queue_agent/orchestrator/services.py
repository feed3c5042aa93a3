"""Use-case services for operator controls."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from queue_agent.http.queue_client import HealthStatus, QueueClient, QueueClientError
from queue_agent.orchestrator.lifecycle import JobOrchestrator
from queue_agent.orchestrator.models import (
    HandshakeSettings,
    HistoryItem,
    OperatorActionResult,
    Stats,
)
from queue_agent.orchestrator.recorder import StatsRecorder
from queue_agent.storage.state_store import StateStore

logger = logging.getLogger(__name__)

PAGE_LIMIT = 100
STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"


@dataclass(slots=True)
class AgentStatus:
    """Snapshot shown by the status command."""

    enabled: bool
    client_id: str
    stats: Stats
    handshake: HandshakeSettings
    poll_interval_seconds: float


@dataclass(slots=True)
class UpdateSettings:
    """Persisted settings overrides; ``None`` leaves a value untouched."""

    retry_attempts: int | None = None
    max_retry_delay_seconds: float | None = None
    poll_interval_seconds: float | None = None


class OperatorService:
    """Start/stop, inspection and queue maintenance for operators.

    Maintenance actions never touch a job this installation has in flight:
    the orchestrator's registry when running in-process, plus the in-flight
    job ids another process published to the shared stats.
    """

    def __init__(
        self,
        *,
        queue_client: QueueClient,
        store: StateStore,
        recorder: StatsRecorder,
        handshake_defaults: HandshakeSettings,
        poll_interval_seconds: float,
        orchestrator: JobOrchestrator | None = None,
    ) -> None:
        self.queue_client = queue_client
        self.store = store
        self.recorder = recorder
        self.handshake_defaults = handshake_defaults
        self.poll_interval_seconds = poll_interval_seconds
        self.orchestrator = orchestrator

    def start(self) -> HealthStatus:
        """Enable polling after a successful health check."""

        try:
            health = self.queue_client.health_check()
        except QueueClientError:
            self.store.set_enabled(False)
            raise
        self.store.set_enabled(True)
        logger.info("Polling enabled")
        return health

    def stop(self) -> None:
        self.store.set_enabled(False)
        logger.info("Polling disabled")

    def status(self) -> AgentStatus:
        return AgentStatus(
            enabled=self.store.is_enabled(),
            client_id=self.store.client_id(),
            stats=self.recorder.stats(),
            handshake=self.store.handshake_settings(self.handshake_defaults),
            poll_interval_seconds=self.store.poll_interval_seconds(self.poll_interval_seconds),
        )

    def history(self, *, limit: int | None = None) -> list[HistoryItem]:
        items = self.recorder.history()
        return items if limit is None else items[:limit]

    def reset_stats(self) -> None:
        self.recorder.reset()
        logger.info("Stats and history cleared")

    def update_settings(self, command: UpdateSettings) -> AgentStatus:
        if command.retry_attempts is not None or command.max_retry_delay_seconds is not None:
            current = self.store.handshake_settings(self.handshake_defaults)
            self.store.set_handshake_settings(
                attempts=(
                    command.retry_attempts
                    if command.retry_attempts is not None
                    else current.attempts
                ),
                max_delay_seconds=(
                    command.max_retry_delay_seconds
                    if command.max_retry_delay_seconds is not None
                    else current.max_delay_seconds
                ),
            )
        if command.poll_interval_seconds is not None:
            self.store.set_poll_interval_seconds(command.poll_interval_seconds)
        return self.status()

    def in_flight_job_ids(self) -> set[str]:
        job_ids: set[str] = set()
        if self.orchestrator is not None:
            job_ids |= self.orchestrator.active_job_ids()
        stats = self.recorder.stats()
        job_ids.update(stats.in_flight_job_ids)
        if stats.current_job is not None:
            job_ids.add(stats.current_job.id)
        return job_ids

    def reset_stuck_jobs(self) -> OperatorActionResult:
        """Move backend items stuck in ``processing`` back to ``pending``.

        The bulk cleanup endpoint cannot exclude items, so it is only used
        while nothing is in flight here; otherwise, or when it fails, items
        are reset one by one.
        """

        in_flight = self.in_flight_job_ids()
        if not in_flight:
            try:
                cleaned, message = self.queue_client.cleanup_stale_jobs()
            except QueueClientError as error:
                logger.warning("Cleanup endpoint failed, trying manual reset: %s", error)
            else:
                logger.info("Reset %d stuck job(s) via cleanup endpoint", cleaned)
                return OperatorActionResult(affected=cleaned, message=message or None)

        return self._sweep(
            status=STATUS_PROCESSING,
            in_flight=in_flight,
            action=lambda item_id: self.queue_client.update_queue_item_status(
                item_id,
                STATUS_PENDING,
            ),
            verb="reset",
        )

    def cancel_all_pending(self) -> OperatorActionResult:
        """Delete every ``pending`` backend item."""

        return self._sweep(
            status=STATUS_PENDING,
            in_flight=self.in_flight_job_ids(),
            action=self.queue_client.delete_queue_item,
            verb="cancel",
        )

    def _sweep(
        self,
        *,
        status: str,
        in_flight: set[str],
        action: Callable[[str], None],
        verb: str,
    ) -> OperatorActionResult:
        # Acted-on items normally leave the status filter, so the page only
        # advances when nothing on it changed. Items the backend keeps listing
        # after a successful action are acted on once.
        affected = 0
        skipped: list[str] = []
        failed: set[str] = set()
        acted: set[str] = set()
        page = 1
        while True:
            batch = self.queue_client.list_queue_items(status=status, page=page, limit=PAGE_LIMIT)
            if not batch.items:
                break

            changed = 0
            for item in batch.items:
                item_id = str(item.get("id", ""))
                if not item_id or item_id in failed or item_id in acted:
                    continue
                if item_id in in_flight:
                    if item_id not in skipped:
                        skipped.append(item_id)
                        logger.info("Skipping in-flight job %s", item_id)
                    continue
                try:
                    action(item_id)
                except QueueClientError as error:
                    failed.add(item_id)
                    logger.error("Failed to %s queue item %s: %s", verb, item_id, error)
                    continue
                acted.add(item_id)
                changed += 1
                logger.info("Queue item %s: %s done", item_id, verb)

            affected += changed
            if changed == 0:
                if len(batch.items) < PAGE_LIMIT:
                    break
                page += 1

        message = None
        if failed:
            message = f"{len(failed)} item(s) failed to {verb}"
        logger.info("Swept %s items: %s=%d skipped=%d", status, verb, affected, len(skipped))
        return OperatorActionResult(affected=affected, skipped=skipped, message=message)
