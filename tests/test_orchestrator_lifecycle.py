from __future__ import annotations

import logging
import time
from collections.abc import Callable

import allure
import pytest
from fakes import FakeBackend, FakeExecutor, FakeExecutorFactory, make_job

from queue_agent.orchestrator.lifecycle import LocalRetryCounters
from queue_agent.orchestrator.models import (
    ExecutorOutcome,
    HandshakeSettings,
    HistoryStatus,
    JobState,
)
from queue_agent.orchestrator.recorder import StatsRecorder
from queue_agent.storage.state_store import KEY_LOCAL_RETRIES, StateStore

pytestmark = [
    allure.epic("Job Lifecycle"),
    allure.feature("Orchestrator Transitions"),
]


def _wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        time.sleep(0.01)


def test_successful_job_reports_once_and_releases_executor(
    build_orchestrator,
    backend: FakeBackend,
    recorder: StatsRecorder,
) -> None:
    executor = FakeExecutor()
    orchestrator = build_orchestrator(FakeExecutorFactory([executor]))
    job = make_job("j1")

    result = orchestrator.dispatch(job)

    assert result.accepted is True
    assert result.executor_id == executor.executor_id
    entry = orchestrator.entry_for_job("j1")
    assert entry is not None
    assert entry.state is JobState.EXECUTING
    assert executor.started_jobs == [job]

    executor.succeed(job_id="j1")

    assert orchestrator.wait_idle(timeout=5)
    assert backend.calls_to("/complete") == [("POST", "/api/sale-queue/j1/complete", None)]
    assert backend.calls_to("/fail") == []
    assert executor.closed is True
    assert not orchestrator.is_active("j1")
    stats = recorder.stats()
    assert (stats.processed, stats.succeeded, stats.failed) == (1, 1, 0)
    assert stats.current_job is None
    assert [(item.id, item.status) for item in recorder.history()] == [
        ("j1", HistoryStatus.COMPLETED),
    ]


def test_executor_crashes_are_retried_locally_before_one_failure_report(
    build_orchestrator,
    backend: FakeBackend,
    recorder: StatsRecorder,
) -> None:
    executors = [FakeExecutor(auto_outcome=ExecutorOutcome.crashed()) for _ in range(3)]
    factory = FakeExecutorFactory(executors)
    orchestrator = build_orchestrator(factory, max_local_retries=2)

    assert orchestrator.dispatch(make_job("j2")).accepted is True
    assert orchestrator.wait_idle(timeout=5)

    assert factory.created == executors
    assert all(executor.closed for executor in executors)
    assert backend.calls_to("/complete") == []
    fail_calls = backend.calls_to("/fail")
    assert len(fail_calls) == 1
    _, path, body = fail_calls[0]
    assert path == "/api/sale-queue/j2/fail"
    assert body["errorMessage"].startswith("executor closed repeatedly")
    assert body["errorDetails"]["failure_class"] == "executor_crash"
    assert body["errorDetails"]["reason_code"] == "executor_crash_retries_exhausted"
    assert orchestrator.local_retry_count("j2") == 0
    stats = recorder.stats()
    assert (stats.processed, stats.failed) == (1, 1)
    assert [(item.id, item.status) for item in recorder.history()] == [
        ("j2", HistoryStatus.FAILED),
    ]


def test_crash_then_success_reports_success_only(
    build_orchestrator,
    backend: FakeBackend,
) -> None:
    first = FakeExecutor(auto_outcome=ExecutorOutcome.crashed())
    second = FakeExecutor(auto_outcome=ExecutorOutcome.succeeded("j2b"))
    orchestrator = build_orchestrator(FakeExecutorFactory([first, second]))

    orchestrator.dispatch(make_job("j2b"))

    assert orchestrator.wait_idle(timeout=5)
    assert len(backend.calls_to("/complete")) == 1
    assert backend.calls_to("/fail") == []
    assert orchestrator.local_retry_count("j2b") == 0


def test_missing_acknowledgment_fails_without_local_retry(
    build_orchestrator,
    backend: FakeBackend,
    recorder: StatsRecorder,
) -> None:
    executor = FakeExecutor(ack=False)
    factory = FakeExecutorFactory([executor])
    orchestrator = build_orchestrator(factory)

    result = orchestrator.dispatch(make_job("j3"))

    assert result.accepted is False
    assert result.reason is not None
    assert result.reason.startswith("no acknowledgment")
    assert len(factory.created) == 1
    assert orchestrator.local_retry_count("j3") == 0
    assert not orchestrator.is_active("j3")
    assert executor.closed is True
    fail_calls = backend.calls_to("/fail")
    assert len(fail_calls) == 1
    assert fail_calls[0][2]["errorDetails"]["failure_class"] == "delivery_failure"
    assert fail_calls[0][2]["errorDetails"]["reason_code"] == "delivery_no_acknowledgment"
    assert recorder.stats().failed == 1


def test_acknowledgment_timeout_is_delivery_failure(
    build_orchestrator,
    backend: FakeBackend,
) -> None:
    orchestrator = build_orchestrator(FakeExecutorFactory([FakeExecutor(ack=None)]))

    result = orchestrator.dispatch(make_job("j3b"))

    assert result.accepted is False
    assert "No ACK" in (result.reason or "")
    assert len(backend.calls_to("/fail")) == 1


def test_readiness_handshake_backs_off_then_gives_up(
    build_orchestrator,
    backend: FakeBackend,
) -> None:
    delays: list[float] = []
    executor = FakeExecutor(not_ready=100)
    orchestrator = build_orchestrator(
        FakeExecutorFactory([executor]),
        handshake_defaults=HandshakeSettings(
            attempts=4,
            base_delay_seconds=1.0,
            max_delay_seconds=5.0,
        ),
        sleep=delays.append,
    )

    result = orchestrator.dispatch(make_job("slow"))

    assert result.accepted is False
    assert result.reason == "executor not ready after 4 attempts"
    assert executor.pings == 4
    assert executor.started_jobs == []
    assert delays == [1.0, 2.0, 4.0, 5.0]
    assert len(backend.calls_to("/fail")) == 1


def test_readiness_handshake_uses_persisted_settings(
    build_orchestrator,
    store: StateStore,
) -> None:
    store.set_handshake_settings(attempts=2, max_delay_seconds=0)
    executor = FakeExecutor(not_ready=100)
    orchestrator = build_orchestrator(FakeExecutorFactory([executor]))

    orchestrator.dispatch(make_job("slow"))

    assert executor.pings == 2


def test_executor_ready_after_a_few_pings_is_dispatched(build_orchestrator) -> None:
    executor = FakeExecutor(not_ready=2)
    orchestrator = build_orchestrator(FakeExecutorFactory([executor]))

    result = orchestrator.dispatch(make_job("warmup"))

    assert result.accepted is True
    assert executor.pings == 3


def test_timeout_fails_job_and_tears_down_executor(
    build_orchestrator,
    backend: FakeBackend,
    recorder: StatsRecorder,
) -> None:
    executor = FakeExecutor()
    orchestrator = build_orchestrator(FakeExecutorFactory([executor]), job_timeout_seconds=0.05)

    assert orchestrator.dispatch(make_job("hung")).accepted is True
    assert orchestrator.wait_idle(timeout=5)

    assert executor.terminated is True
    assert not orchestrator.is_active("hung")
    fail_calls = backend.calls_to("/fail")
    assert len(fail_calls) == 1
    assert fail_calls[0][2]["errorMessage"] == "timed out after 0.05s"
    assert fail_calls[0][2]["errorDetails"]["failure_class"] == "timeout"
    assert orchestrator.local_retry_count("hung") == 0
    assert recorder.stats().failed == 1


def test_timeout_after_success_is_a_no_op(
    build_orchestrator,
    backend: FakeBackend,
    recorder: StatsRecorder,
) -> None:
    executor = FakeExecutor()
    orchestrator = build_orchestrator(FakeExecutorFactory([executor]))
    orchestrator.dispatch(make_job("race"))

    executor.succeed()

    assert orchestrator.timeout(executor.executor_id) is False
    assert backend.calls_to("/fail") == []
    assert len(backend.calls_to("/complete")) == 1
    assert executor.terminated is False
    assert recorder.stats().processed == 1


def test_finalize_is_idempotent(
    build_orchestrator,
    backend: FakeBackend,
    recorder: StatsRecorder,
) -> None:
    executor = FakeExecutor()
    orchestrator = build_orchestrator(FakeExecutorFactory([executor]))
    orchestrator.dispatch(make_job("once"))

    first = orchestrator.finalize(executor.executor_id, ExecutorOutcome.failed("Price rejected"))
    second = orchestrator.finalize(executor.executor_id, ExecutorOutcome.succeeded())
    executor.crash()

    assert (first, second) == (True, False)
    assert backend.calls_to("/complete") == []
    assert len(backend.calls_to("/fail")) == 1
    stats = recorder.stats()
    assert (stats.processed, stats.succeeded, stats.failed) == (1, 0, 1)


def test_executor_reported_failure_is_forwarded_verbatim(
    build_orchestrator,
    backend: FakeBackend,
) -> None:
    executor = FakeExecutor()
    backend.will_retry = False
    orchestrator = build_orchestrator(FakeExecutorFactory([executor]))
    orchestrator.dispatch(make_job("j4"))

    executor.fail("Sale form rejected the price", job_id="j4")

    assert orchestrator.wait_idle(timeout=5)
    _, _, body = backend.calls_to("/fail")[0]
    assert body["errorMessage"] == "Sale form rejected the price"
    assert body["errorDetails"]["failure_class"] == "execution_failure"
    assert orchestrator.local_retry_count("j4") == 0


def test_duplicate_dispatch_of_active_job_is_rejected(build_orchestrator) -> None:
    factory = FakeExecutorFactory()
    orchestrator = build_orchestrator(factory)
    assert orchestrator.dispatch(make_job("dup")).accepted is True

    result = orchestrator.dispatch(make_job("dup"))

    assert result.accepted is False
    assert result.reason == "already active"
    assert len(factory.created) == 1


def test_disabled_agent_skips_new_dispatch_but_finishes_in_flight_job(
    build_orchestrator,
    store: StateStore,
    backend: FakeBackend,
) -> None:
    executor = FakeExecutor()
    factory = FakeExecutorFactory([executor])
    orchestrator = build_orchestrator(factory)
    orchestrator.dispatch(make_job("running"))

    store.set_enabled(False)
    skipped = orchestrator.dispatch(make_job("next"))
    executor.succeed()

    assert skipped.accepted is False
    assert skipped.reason == "disabled"
    assert len(factory.created) == 1
    assert orchestrator.wait_idle(timeout=5)
    assert len(backend.calls_to("/complete")) == 1


def test_executor_that_cannot_start_is_reported_failed(
    build_orchestrator,
    backend: FakeBackend,
    recorder: StatsRecorder,
) -> None:
    orchestrator = build_orchestrator(FakeExecutorFactory(fail_with="browser binary missing"))

    result = orchestrator.dispatch(make_job("nostart"))

    assert result.accepted is False
    assert not orchestrator.is_active("nostart")
    _, _, body = backend.calls_to("/fail")[0]
    assert body["errorMessage"] == "executor failed to start: browser binary missing"
    assert body["errorDetails"]["failure_class"] == "delivery_failure"
    assert recorder.stats().failed == 1


def test_executor_closing_during_handshake_is_retried_locally(
    build_orchestrator,
    backend: FakeBackend,
) -> None:
    first = FakeExecutor(closed_on_ping=True)
    second = FakeExecutor()
    factory = FakeExecutorFactory([first, second])
    orchestrator = build_orchestrator(factory)

    result = orchestrator.dispatch(make_job("flaky"))

    assert result.accepted is False
    _wait_for(lambda: second.started_jobs != [])
    _wait_for(lambda: orchestrator.entry_for_job("flaky") is not None)
    second.succeed()
    assert orchestrator.wait_idle(timeout=5)
    assert len(backend.calls_to("/complete")) == 1
    assert backend.calls_to("/fail") == []


def test_backend_outage_does_not_block_local_transition(
    build_orchestrator,
    backend: FakeBackend,
    recorder: StatsRecorder,
    caplog: pytest.LogCaptureFixture,
) -> None:
    executor = FakeExecutor()
    orchestrator = build_orchestrator(FakeExecutorFactory([executor]))
    orchestrator.dispatch(make_job("offline"))
    backend.fail_status = 503

    with caplog.at_level(logging.ERROR, logger="queue_agent.orchestrator.lifecycle"):
        executor.succeed()

    assert not orchestrator.is_active("offline")
    assert recorder.stats().succeeded == 1
    assert "Failed to report completion of job offline" in caplog.text


def test_mismatched_job_id_in_outcome_is_logged(
    build_orchestrator,
    caplog: pytest.LogCaptureFixture,
) -> None:
    executor = FakeExecutor()
    orchestrator = build_orchestrator(FakeExecutorFactory([executor]))
    orchestrator.dispatch(make_job("mine"))

    with caplog.at_level(logging.WARNING, logger="queue_agent.orchestrator.lifecycle"):
        executor.succeed(job_id="someone-else")

    assert "reported job id someone-else while running job mine" in caplog.text


def test_processed_always_equals_succeeded_plus_failed(
    build_orchestrator,
    recorder: StatsRecorder,
) -> None:
    executors = [FakeExecutor() for _ in range(4)] + [FakeExecutor(ack=False)]
    orchestrator = build_orchestrator(FakeExecutorFactory(executors))
    for index in range(5):
        orchestrator.dispatch(make_job(f"mix-{index}"))
    executors[0].succeed()
    executors[1].fail("nope")
    executors[2].succeed()
    orchestrator.timeout(executors[3].executor_id)

    assert orchestrator.wait_idle(timeout=5)
    stats = recorder.stats()
    assert stats.processed == stats.succeeded + stats.failed == 5
    assert (stats.succeeded, stats.failed) == (2, 3)


def test_local_retry_counters_write_through_to_store(store: StateStore) -> None:
    counters = LocalRetryCounters(store)
    counters.increment("job-1")
    counters.increment("job-1")

    assert store.get(KEY_LOCAL_RETRIES) == {"job-1": 2}
    assert LocalRetryCounters(store).get("job-1") == 2

    counters.clear("job-1")

    assert store.get(KEY_LOCAL_RETRIES) == {}
    assert LocalRetryCounters().get("job-1") == 0


def test_shutdown_drops_in_flight_jobs_without_reporting(
    build_orchestrator,
    backend: FakeBackend,
) -> None:
    executor = FakeExecutor()
    orchestrator = build_orchestrator(FakeExecutorFactory([executor]))
    orchestrator.dispatch(make_job("left"))

    dropped = orchestrator.shutdown()

    assert dropped == ["left"]
    assert executor.terminated is True
    assert orchestrator.active_job_ids() == set()
    assert backend.calls_to("/fail") == []
    assert orchestrator.dispatch(make_job("late")).reason == "shut down"


class _UnkillableExecutor(FakeExecutor):
    def terminate(self) -> None:
        raise OSError("kill did not reap child")


def test_timeout_still_reports_when_terminate_fails(
    build_orchestrator,
    backend: FakeBackend,
    recorder: StatsRecorder,
) -> None:
    executor = _UnkillableExecutor()
    orchestrator = build_orchestrator(FakeExecutorFactory([executor]))
    orchestrator.dispatch(make_job("stuck"))

    assert orchestrator.timeout(executor.executor_id) is True

    fail_calls = backend.calls_to("/fail")
    assert len(fail_calls) == 1
    assert fail_calls[0][2]["errorMessage"] == "timed out after 30s"
    assert executor.closed is True
    assert not orchestrator.is_active("stuck")
    stats = recorder.stats()
    assert stats.failed == 1
    assert stats.current_job is None
    assert stats.in_flight_job_ids == []
    assert recorder.history()[0].status == HistoryStatus.FAILED


def test_current_job_follows_the_sole_job_in_flight(
    build_orchestrator,
    recorder: StatsRecorder,
) -> None:
    first, second = FakeExecutor(), FakeExecutor()
    orchestrator = build_orchestrator(FakeExecutorFactory([first, second]))

    orchestrator.dispatch(make_job("A"))
    stats = recorder.stats()
    assert stats.current_job is not None
    assert stats.current_job.id == "A"

    orchestrator.dispatch(make_job("B"))
    stats = recorder.stats()
    assert stats.current_job is None
    assert stats.in_flight_job_ids == ["A", "B"]

    first.succeed()
    stats = recorder.stats()
    assert stats.current_job is not None
    assert stats.current_job.id == "B"
    assert stats.in_flight_job_ids == ["B"]

    second.succeed()
    stats = recorder.stats()
    assert stats.current_job is None
    assert stats.in_flight_job_ids == []
    assert stats.succeeded == 2


def test_job_awaiting_local_retry_stays_published(
    build_orchestrator,
    recorder: StatsRecorder,
) -> None:
    executor = FakeExecutor()
    orchestrator = build_orchestrator(
        FakeExecutorFactory([executor, FakeExecutor()]),
        crash_retry_delay_seconds=30.0,
    )
    orchestrator.dispatch(make_job("again"))

    executor.crash()

    assert orchestrator.is_active("again")
    assert recorder.stats().in_flight_job_ids == ["again"]
    orchestrator.shutdown()
    assert recorder.stats().in_flight_job_ids == []


def test_executor_reported_text_does_not_select_delivery_class(
    build_orchestrator,
    backend: FakeBackend,
) -> None:
    executor = FakeExecutor()
    orchestrator = build_orchestrator(FakeExecutorFactory([executor]))
    orchestrator.dispatch(make_job("j5"))

    executor.fail("no acknowledgment from store checkout")

    _, _, body = backend.calls_to("/fail")[0]
    assert body["errorDetails"]["failure_class"] == "execution_failure"
    assert body["errorDetails"]["reason_code"] == "executor_reported_failure"
