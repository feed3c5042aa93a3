"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path
from typing import Any

import httpx
import pytest
from fakes import API_URL, FakeBackend, FakeExecutorFactory

from queue_agent.http.queue_client import QueueClient
from queue_agent.orchestrator.lifecycle import JobOrchestrator
from queue_agent.orchestrator.models import HandshakeSettings
from queue_agent.orchestrator.recorder import StatsRecorder
from queue_agent.storage.state_store import StateStore


@pytest.fixture()
def store(tmp_path: Path) -> Iterator[StateStore]:
    state = StateStore(tmp_path / "agent.db")
    state.init_schema()
    state.set_enabled(True)
    try:
        yield state
    finally:
        state.close()


@pytest.fixture()
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture()
def queue_client(backend: FakeBackend) -> Iterator[QueueClient]:
    client = QueueClient(
        base_url=API_URL,
        api_key="test-key",
        transport=httpx.MockTransport(backend.handler),
    )
    try:
        yield client
    finally:
        client.close()


@pytest.fixture()
def recorder(store: StateStore) -> StatsRecorder:
    return StatsRecorder(store)


@pytest.fixture()
def build_orchestrator(queue_client: QueueClient, recorder: StatsRecorder, store: StateStore):
    """Factory for orchestrators wired to the fake backend with no real sleeping."""

    built: list[JobOrchestrator] = []

    def _build(factory: FakeExecutorFactory, **overrides: Any) -> JobOrchestrator:
        options: dict[str, Any] = {
            "job_timeout_seconds": 30.0,
            "max_local_retries": 3,
            "crash_retry_delay_seconds": 0.0,
            "handshake_defaults": HandshakeSettings(
                attempts=3,
                base_delay_seconds=0.0,
                max_delay_seconds=0.0,
            ),
            "sleep": lambda _: None,
        }
        options.update(overrides)
        orchestrator = JobOrchestrator(
            queue_client=queue_client,
            executor_factory=factory,
            recorder=recorder,
            store=store,
            **options,
        )
        built.append(orchestrator)
        return orchestrator

    yield _build
    for orchestrator in built:
        orchestrator.shutdown()
