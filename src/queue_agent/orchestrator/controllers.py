"""Controllers for queue agent CLI commands."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from queue_agent.config import Settings
from queue_agent.http.queue_client import QueueClient
from queue_agent.orchestrator.executor import SubprocessExecutorFactory
from queue_agent.orchestrator.lifecycle import JobOrchestrator, LocalRetryCounters
from queue_agent.orchestrator.models import HandshakeSettings, OperatorActionResult, Stats
from queue_agent.orchestrator.recorder import StatsRecorder
from queue_agent.orchestrator.scheduler import PollScheduler
from queue_agent.orchestrator.services import AgentStatus, OperatorService, UpdateSettings
from queue_agent.storage.state_store import StateStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AgentRunCommand:
    """CLI input for the polling loop."""

    db_path: Path | None
    once: bool
    max_ticks: int | None = None


@dataclass(slots=True)
class AgentDbCommand:
    """CLI input for commands that only need the state database."""

    db_path: Path | None


@dataclass(slots=True)
class AgentHistoryCommand:
    """CLI input for history listing."""

    db_path: Path | None
    limit: int


@dataclass(slots=True)
class AgentSettingsCommand:
    """CLI input for persisted settings overrides."""

    db_path: Path | None
    retry_attempts: int | None
    max_retry_delay_seconds: float | None
    poll_interval_seconds: float | None


@dataclass(slots=True)
class _Runtime:
    settings: Settings
    store: StateStore
    queue_client: QueueClient
    recorder: StatsRecorder


class AgentCliController:
    """Coordinates polling, inspection and maintenance CLI operations."""

    def run(self, command: AgentRunCommand) -> list[str]:
        """Run the poll loop until stopped, or a single tick with ``once``."""

        settings = Settings.from_env(db_path=command.db_path)
        settings.validate_for_run()
        with _runtime(settings) as runtime:
            orchestrator = _build_orchestrator(runtime)
            scheduler = PollScheduler(
                orchestrator=orchestrator,
                queue_client=runtime.queue_client,
                store=runtime.store,
                poll_interval_seconds=settings.scheduler.poll_interval_seconds,
                api_configured=bool(settings.api.base_url and settings.api.api_key),
            )
            scheduler.start()
            max_ticks = 1 if command.once else command.max_ticks
            summary = scheduler.run_loop(max_ticks=max_ticks)

            drain_seconds = settings.orchestrator.job_timeout_seconds + (
                settings.orchestrator.crash_retry_delay_seconds
                * (settings.orchestrator.max_local_retries + 1)
            )
            if not orchestrator.wait_idle(timeout=drain_seconds):
                dropped = orchestrator.shutdown()
                logger.warning(
                    "Jobs still in flight after %.0fs were dropped: %s",
                    drain_seconds,
                    ", ".join(sorted(dropped)),
                )
            stats = runtime.recorder.stats()

        return [
            "Scheduler summary: "
            f"ticks={summary.ticks} dispatched={summary.dispatched} "
            f"rejected={summary.rejected} idle_polls={summary.idle_polls} "
            f"skipped={summary.skipped} errors={summary.errors}",
            *_stats_lines(stats),
        ]

    def start(self, command: AgentDbCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate_for_api()
        with _runtime(settings) as runtime:
            health = _service(runtime).start()
        return [f"Polling enabled (backend status={health.status})"]

    def stop(self, command: AgentDbCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            _service(runtime).stop()
        return ["Polling disabled; jobs already in flight run to completion."]

    def status(self, command: AgentDbCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            status = _service(runtime).status()
        return _status_lines(status)

    def history(self, command: AgentHistoryCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            items = _service(runtime).history(limit=command.limit)

        if not items:
            return ["No jobs processed yet."]
        lines = [f"Recent jobs: {len(items)}"]
        for item in items:
            price = f" price={item.price}" if item.price is not None else ""
            lines.append(
                f"  {item.timestamp.isoformat()} {item.status.value:<10} "
                f"id={item.id}{price} title={item.title!r}",
            )
        return lines

    def health(self, command: AgentDbCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate_for_api()
        with QueueClient(
            base_url=settings.api.base_url,
            api_key=settings.api.api_key,
            timeout_seconds=settings.api.request_timeout_seconds,
            connect_timeout_seconds=settings.api.connect_timeout_seconds,
        ) as client:
            health = client.health_check()
        return [f"API health: status={health.status} url={settings.api.base_url}"]

    def reset_stuck(self, command: AgentDbCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate_for_api()
        with _runtime(settings) as runtime:
            result = _service(runtime).reset_stuck_jobs()
        return _action_lines("Reset stuck jobs", result)

    def cancel_pending(self, command: AgentDbCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate_for_api()
        with _runtime(settings) as runtime:
            result = _service(runtime).cancel_all_pending()
        return _action_lines("Cancelled pending jobs", result)

    def reset_stats(self, command: AgentDbCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            _service(runtime).reset_stats()
        return ["Stats and history cleared."]

    def update_settings(self, command: AgentSettingsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            status = _service(runtime).update_settings(
                UpdateSettings(
                    retry_attempts=command.retry_attempts,
                    max_retry_delay_seconds=command.max_retry_delay_seconds,
                    poll_interval_seconds=command.poll_interval_seconds,
                ),
            )
        changed = any(
            value is not None
            for value in (
                command.retry_attempts,
                command.max_retry_delay_seconds,
                command.poll_interval_seconds,
            )
        )
        return ["Settings updated." if changed else "Settings:", *_settings_lines(status)]


def _build_orchestrator(runtime: _Runtime) -> JobOrchestrator:
    settings = runtime.settings
    limits = settings.orchestrator
    return JobOrchestrator(
        queue_client=runtime.queue_client,
        executor_factory=SubprocessExecutorFactory(
            settings.executor.command_template,
            close_grace_seconds=settings.executor.close_grace_seconds,
        ),
        recorder=runtime.recorder,
        store=runtime.store,
        job_timeout_seconds=limits.job_timeout_seconds,
        max_local_retries=limits.max_local_retries,
        crash_retry_delay_seconds=limits.crash_retry_delay_seconds,
        handshake_defaults=_handshake_defaults(settings),
        ping_timeout_seconds=limits.ping_timeout_seconds,
        ack_timeout_seconds=limits.ack_timeout_seconds,
        retry_counters=LocalRetryCounters(
            runtime.store if limits.persist_local_retries else None,
        ),
    )


def _service(runtime: _Runtime) -> OperatorService:
    return OperatorService(
        queue_client=runtime.queue_client,
        store=runtime.store,
        recorder=runtime.recorder,
        handshake_defaults=_handshake_defaults(runtime.settings),
        poll_interval_seconds=runtime.settings.scheduler.poll_interval_seconds,
    )


def _handshake_defaults(settings: Settings) -> HandshakeSettings:
    return HandshakeSettings(
        attempts=settings.orchestrator.readiness_attempts,
        base_delay_seconds=settings.orchestrator.readiness_interval_seconds,
        max_delay_seconds=settings.orchestrator.max_retry_delay_seconds,
    )


def _status_lines(status: AgentStatus) -> list[str]:
    return [
        f"Polling: {'enabled' if status.enabled else 'disabled'}",
        f"Client id: {status.client_id}",
        *_stats_lines(status.stats),
        *_settings_lines(status),
    ]


def _stats_lines(stats: Stats) -> list[str]:
    last = stats.last_processed_at.isoformat() if stats.last_processed_at else "never"
    lines = [
        "Stats: "
        f"processed={stats.processed} succeeded={stats.succeeded} "
        f"failed={stats.failed} last_processed_at={last}",
    ]
    if stats.current_job is not None:
        lines.append(f"Current job: id={stats.current_job.id} title={stats.current_job.title!r}")
    elif len(stats.in_flight_job_ids) > 1:
        lines.append(f"In flight: {', '.join(stats.in_flight_job_ids)}")
    return lines


def _settings_lines(status: AgentStatus) -> list[str]:
    return [
        f"Retry attempts: {status.handshake.attempts}",
        f"Max retry delay: {status.handshake.max_delay_seconds:g}s",
        f"Poll interval: {status.poll_interval_seconds:g}s",
    ]


def _action_lines(title: str, result: OperatorActionResult) -> list[str]:
    lines = [f"{title}: affected={result.affected}"]
    if result.skipped:
        lines.append(f"Skipped in-flight jobs: {', '.join(result.skipped)}")
    if result.message:
        lines.append(result.message)
    return lines


@contextmanager
def _runtime(settings: Settings) -> Iterator[_Runtime]:
    store = StateStore(settings.db_path)
    store.init_schema()
    queue_client = QueueClient(
        base_url=settings.api.base_url,
        api_key=settings.api.api_key,
        timeout_seconds=settings.api.request_timeout_seconds,
        connect_timeout_seconds=settings.api.connect_timeout_seconds,
    )
    try:
        yield _Runtime(
            settings=settings,
            store=store,
            queue_client=queue_client,
            recorder=StatsRecorder(store, history_capacity=settings.orchestrator.history_capacity),
        )
    finally:
        queue_client.close()
        store.close()
