"""Job lifecycle orchestrator: dispatch, finalize, timeout and crash recovery."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future
from dataclasses import dataclass
from datetime import datetime
from functools import partial

from queue_agent.http.queue_client import QueueClient, QueueClientError
from queue_agent.orchestrator.backoff import backoff
from queue_agent.orchestrator.executor.base import (
    ExecutorClosedError,
    ExecutorError,
    ExecutorFactory,
    ExecutorHandle,
)
from queue_agent.orchestrator.failure_classifier import (
    REASON_CLOSED_REPEATEDLY,
    REASON_EXECUTOR_START_FAILED,
    REASON_NO_ACKNOWLEDGMENT,
    REASON_NOT_READY,
    REASON_TIMED_OUT,
    FailureClassification,
    classify_failure,
    delivery_failure,
    executor_crash,
)
from queue_agent.orchestrator.models import (
    DispatchResult,
    ExecutorOutcome,
    HandshakeSettings,
    Job,
    JobState,
    OutcomeKind,
)
from queue_agent.orchestrator.recorder import StatsRecorder
from queue_agent.storage.common import utc_now
from queue_agent.storage.state_store import KEY_LOCAL_RETRIES, StateStore

logger = logging.getLogger(__name__)

DEFAULT_JOB_TIMEOUT_SECONDS = 120.0
DEFAULT_MAX_LOCAL_RETRIES = 3
DEFAULT_CRASH_RETRY_DELAY_SECONDS = 2.0


@dataclass(slots=True)
class ActiveJobEntry:
    """Registry entry for one dispatched job instance."""

    job: Job
    executor: ExecutorHandle
    dispatched_at: datetime
    timeout_timer: threading.Timer
    state: JobState = JobState.DISPATCHING


class LocalRetryCounters:
    """Per-job executor-crash retry counts.

    Volatile unless a store is given, in which case every change is written
    through so the budget survives a restart. Callers hold the orchestrator
    lock.
    """

    def __init__(self, store: StateStore | None = None) -> None:
        self._store = store
        self._counts: dict[str, int] = {}
        if store is not None:
            raw = store.get(KEY_LOCAL_RETRIES) or {}
            self._counts = {str(key): int(value) for key, value in raw.items()}

    def get(self, job_id: str) -> int:
        return self._counts.get(job_id, 0)

    def increment(self, job_id: str) -> int:
        self._counts[job_id] = self._counts.get(job_id, 0) + 1
        self._persist()
        return self._counts[job_id]

    def clear(self, job_id: str) -> None:
        if self._counts.pop(job_id, None) is not None:
            self._persist()

    def _persist(self) -> None:
        if self._store is not None:
            self._store.set(KEY_LOCAL_RETRIES, self._counts)


class JobOrchestrator:
    """Drives each job through FETCHED -> DISPATCHING -> EXECUTING -> terminal.

    Three event sources mutate the registry: scheduler ticks (``dispatch``),
    executor outcome callbacks and timeout timers. ``finalize`` removes the
    registry entry under the lock before any I/O, so whichever signal arrives
    first wins and every later one is a no-op.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        queue_client: QueueClient,
        executor_factory: ExecutorFactory,
        recorder: StatsRecorder,
        store: StateStore,
        job_timeout_seconds: float = DEFAULT_JOB_TIMEOUT_SECONDS,
        max_local_retries: int = DEFAULT_MAX_LOCAL_RETRIES,
        crash_retry_delay_seconds: float = DEFAULT_CRASH_RETRY_DELAY_SECONDS,
        handshake_defaults: HandshakeSettings | None = None,
        ping_timeout_seconds: float = 5.0,
        ack_timeout_seconds: float = 10.0,
        retry_counters: LocalRetryCounters | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.queue_client = queue_client
        self.executor_factory = executor_factory
        self.recorder = recorder
        self.store = store
        self.job_timeout_seconds = job_timeout_seconds
        self.max_local_retries = max_local_retries
        self.crash_retry_delay_seconds = crash_retry_delay_seconds
        self.handshake_defaults = handshake_defaults or HandshakeSettings()
        self.ping_timeout_seconds = ping_timeout_seconds
        self.ack_timeout_seconds = ack_timeout_seconds
        self._sleep = sleep
        self._lock = threading.RLock()
        self._changed = threading.Condition(self._lock)
        self._active: dict[str, ActiveJobEntry] = {}
        self._job_index: dict[str, str] = {}
        self._dispatching: set[str] = set()
        self._retrying: set[str] = set()
        # every job between dispatch and its terminal transition, retries included
        self._in_flight: dict[str, Job] = {}
        self._publish_lock = threading.Lock()
        self._retries = retry_counters or LocalRetryCounters()
        # terminal transitions whose report/stats I/O is still running
        self._finishing = 0
        self._shut_down = False

    # -- public API -----------------------------------------------------------

    def dispatch(self, job: Job, *, local_retry: bool = False) -> DispatchResult:
        """Open an executor for ``job`` and deliver the payload.

        Returns once delivery is confirmed or has failed; execution itself
        is observed asynchronously through the executor's outcome future.
        """

        if not local_retry and not self.store.is_enabled():
            logger.info("Dispatch skipped for job %s: agent is disabled", job.id)
            return DispatchResult(job_id=job.id, accepted=False, reason="disabled")

        with self._lock:
            if self._shut_down:
                return DispatchResult(job_id=job.id, accepted=False, reason="shut down")
            conflict = (
                job.id in self._job_index
                or job.id in self._dispatching
                or (job.id in self._retrying and not local_retry)
            )
            if conflict:
                logger.warning("Job %s is already in flight; dispatch rejected", job.id)
                return DispatchResult(job_id=job.id, accepted=False, reason="already active")
            self._retrying.discard(job.id)
            self._dispatching.add(job.id)
            self._in_flight[job.id] = job

        try:
            entry = self._open(job)
        except ExecutorError as error:
            logger.error("Failed to open executor for job %s: %s", job.id, error)
            with self._lock:
                self._retries.clear(job.id)
                self._in_flight.pop(job.id, None)
            self._fail(
                job=job,
                reason=f"{REASON_EXECUTOR_START_FAILED}: {error}",
                classification=delivery_failure("delivery_executor_failed_to_start"),
            )
            return DispatchResult(job_id=job.id, accepted=False, reason=str(error))
        except Exception:
            with self._lock:
                self._in_flight.pop(job.id, None)
            self._publish_in_flight()
            raise
        finally:
            with self._changed:
                self._dispatching.discard(job.id)
                self._changed.notify_all()

        return self._deliver(entry)

    def finalize(
        self,
        executor_id: str,
        outcome: ExecutorOutcome,
        *,
        timed_out: bool = False,
        classification: FailureClassification | None = None,
    ) -> bool:
        """Apply a terminal signal; return False if the entry is already gone.

        ``classification`` overrides the class derived from a FAILED
        outcome's reason text.
        """

        with self._changed:
            entry = self._active.pop(executor_id, None)
            if entry is None:
                return False
            job = entry.job
            self._job_index.pop(job.id, None)
            entry.timeout_timer.cancel()

            retry_attempt: int | None = None
            if outcome.kind is OutcomeKind.CRASHED:
                if self._retries.get(job.id) < self.max_local_retries:
                    retry_attempt = self._retries.increment(job.id)
                    self._retrying.add(job.id)
                else:
                    self._retries.clear(job.id)
            else:
                self._retries.clear(job.id)
            if retry_attempt is None:
                self._in_flight.pop(job.id, None)
            self._finishing += 1
            self._changed.notify_all()

        try:
            if outcome.job_id is not None and outcome.job_id != job.id:
                logger.warning(
                    "Executor %s reported job id %s while running job %s",
                    executor_id,
                    outcome.job_id,
                    job.id,
                )

            if timed_out:
                self._terminate(entry.executor)

            if outcome.kind is OutcomeKind.SUCCEEDED:
                self._complete(entry)
            elif outcome.kind is OutcomeKind.FAILED:
                self._fail(
                    job=job,
                    reason=outcome.reason or "executor reported failure",
                    executor=entry.executor,
                    timed_out=timed_out,
                    classification=classification,
                )
            elif retry_attempt is not None:
                self._schedule_local_retry(entry, retry_attempt)
            else:
                logger.error(
                    "Executor for job %s closed %d times. Reporting failure to backend.",
                    job.id,
                    self.max_local_retries + 1,
                )
                self._fail(
                    job=job,
                    reason=(
                        f"{REASON_CLOSED_REPEATEDLY} "
                        f"({self.max_local_retries + 1} times without reporting an outcome)"
                    ),
                    executor=entry.executor,
                    classification=executor_crash(),
                )
        finally:
            self._finished()
        return True

    def timeout(self, executor_id: str) -> bool:
        """Force-fail a job whose executor produced no terminal signal in time."""

        with self._lock:
            entry = self._active.get(executor_id)
        if entry is None:
            return False
        logger.warning(
            "Job %s timed out after %gs (executor %s)",
            entry.job.id,
            self.job_timeout_seconds,
            executor_id,
        )
        return self.finalize(
            executor_id,
            ExecutorOutcome.failed(f"{REASON_TIMED_OUT} after {self.job_timeout_seconds:g}s"),
            timed_out=True,
        )

    def active_job_ids(self) -> set[str]:
        """Job ids currently dispatching, executing, or waiting for a local retry."""

        with self._lock:
            return set(self._job_index) | self._dispatching | self._retrying

    def is_active(self, job_id: str) -> bool:
        return job_id in self.active_job_ids()

    def entry_for_job(self, job_id: str) -> ActiveJobEntry | None:
        with self._lock:
            executor_id = self._job_index.get(job_id)
            return self._active.get(executor_id) if executor_id else None

    def local_retry_count(self, job_id: str) -> int:
        with self._lock:
            return self._retries.get(job_id)

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until no job is in flight; return False on timeout."""

        with self._changed:
            return self._changed.wait_for(
                lambda: not (
                    self._active or self._dispatching or self._retrying or self._finishing
                ),
                timeout=timeout,
            )

    def shutdown(self) -> list[str]:
        """Drop every in-flight job without reporting and tear down executors.

        The backend still sees those jobs as processing; operators recover
        them with reset-stuck. Returns the dropped job ids.
        """

        with self._changed:
            self._shut_down = True
            entries = list(self._active.values())
            self._active.clear()
            self._job_index.clear()
            self._retrying.clear()
            self._in_flight.clear()
            for entry in entries:
                entry.timeout_timer.cancel()
            self._changed.notify_all()

        for entry in entries:
            logger.warning(
                "Dropping in-flight job %s on shutdown (executor %s)",
                entry.job.id,
                entry.executor.executor_id,
            )
            self._terminate(entry.executor)
        self._publish_in_flight()
        return [entry.job.id for entry in entries]

    # -- dispatch internals ---------------------------------------------------

    def _open(self, job: Job) -> ActiveJobEntry:
        self.recorder.mark_processing(job)
        self._publish_in_flight()
        logger.info("Opening executor for %r (%s)", job.title, job.target_url)
        executor = self.executor_factory.create(job)
        executor_id = executor.executor_id

        timer = threading.Timer(self.job_timeout_seconds, self.timeout, args=(executor_id,))
        timer.daemon = True
        entry = ActiveJobEntry(
            job=job,
            executor=executor,
            dispatched_at=utc_now(),
            timeout_timer=timer,
        )
        with self._lock:
            if executor_id in self._active:
                raise ExecutorError(f"Executor id {executor_id} is already registered.")
            self._active[executor_id] = entry
            self._job_index[job.id] = executor_id
        timer.start()
        executor.outcome.add_done_callback(partial(self._on_outcome, executor_id))
        return entry

    def _deliver(self, entry: ActiveJobEntry) -> DispatchResult:
        job = entry.job
        executor = entry.executor
        executor_id = executor.executor_id
        handshake = self.store.handshake_settings(self.handshake_defaults)

        ready = False
        last_error: str | None = None
        for attempt in range(1, handshake.attempts + 1):
            self._sleep(
                backoff(attempt, handshake.base_delay_seconds, handshake.max_delay_seconds),
            )
            if not self._is_registered(executor_id):
                return DispatchResult(
                    job_id=job.id,
                    accepted=False,
                    executor_id=executor_id,
                    reason="finalized during handshake",
                )
            try:
                ready = executor.ping(timeout_seconds=self.ping_timeout_seconds)
            except ExecutorClosedError:
                logger.warning("Executor %s closed during readiness handshake", executor_id)
                return DispatchResult(
                    job_id=job.id,
                    accepted=False,
                    executor_id=executor_id,
                    reason="executor closed during handshake",
                )
            except ExecutorError as error:
                last_error = str(error)
                ready = False
            if ready:
                break
            logger.warning(
                "Executor %s not ready for job %s (attempt %d/%d)",
                executor_id,
                job.id,
                attempt,
                handshake.attempts,
            )

        if not ready:
            reason = f"{REASON_NOT_READY} after {handshake.attempts} attempts"
            if last_error:
                reason = f"{reason}: {last_error}"
            self.finalize(
                executor_id,
                ExecutorOutcome.failed(reason),
                classification=delivery_failure("delivery_executor_not_ready"),
            )
            return DispatchResult(
                job_id=job.id,
                accepted=False,
                executor_id=executor_id,
                reason=reason,
            )

        logger.info("Sending job %s to executor %s", job.id, executor_id)
        detail = "executor rejected the job"
        try:
            received = executor.start(job, timeout_seconds=self.ack_timeout_seconds)
        except ExecutorClosedError:
            logger.warning("Executor %s closed before acknowledging job %s", executor_id, job.id)
            return DispatchResult(
                job_id=job.id,
                accepted=False,
                executor_id=executor_id,
                reason="executor closed during delivery",
            )
        except ExecutorError as error:
            received = False
            detail = str(error)

        if not received:
            reason = f"{REASON_NO_ACKNOWLEDGMENT}: {detail}"
            self.finalize(
                executor_id,
                ExecutorOutcome.failed(reason),
                classification=delivery_failure("delivery_no_acknowledgment"),
            )
            return DispatchResult(
                job_id=job.id,
                accepted=False,
                executor_id=executor_id,
                reason=reason,
            )

        with self._lock:
            if self._active.get(executor_id) is entry:
                entry.state = JobState.EXECUTING
        logger.info("Executor %s acknowledged job %s", executor_id, job.id)
        return DispatchResult(job_id=job.id, accepted=True, executor_id=executor_id)

    def _is_registered(self, executor_id: str) -> bool:
        with self._lock:
            return executor_id in self._active

    def _on_outcome(self, executor_id: str, future: Future[ExecutorOutcome]) -> None:
        try:
            outcome = future.result()
        except Exception as error:  # noqa: BLE001
            outcome = ExecutorOutcome.crashed(reason=f"executor signal error: {error}")
        self.finalize(executor_id, outcome)

    # -- terminal transitions -------------------------------------------------

    def _complete(self, entry: ActiveJobEntry) -> None:
        job = entry.job
        logger.info("Job %s completed successfully (%r)", job.id, job.title)
        try:
            try:
                self.queue_client.report_success(job.id)
            except QueueClientError as error:
                logger.error("Failed to report completion of job %s: %s", job.id, error)
            stats = self.recorder.record_success(job)
            logger.info("Total jobs completed: %d", stats.succeeded)
            self._publish_in_flight()
        finally:
            self._release(entry.executor)

    def _fail(
        self,
        *,
        job: Job,
        reason: str,
        executor: ExecutorHandle | None = None,
        timed_out: bool = False,
        classification: FailureClassification | None = None,
    ) -> None:
        if classification is None:
            classification = classify_failure(reason=reason, timed_out=timed_out)
        logger.error(
            "Job %s failed for %r: %s [%s/%s]",
            job.id,
            job.title,
            reason,
            classification.failure_class.value,
            classification.reason_code,
        )
        try:
            try:
                report = self.queue_client.report_failure(
                    job.id,
                    reason,
                    details=classification.to_log_details(
                        job_id=job.id,
                        executor_id=executor.executor_id if executor else None,
                    ),
                )
            except QueueClientError as error:
                logger.error("Failed to report failure of job %s: %s", job.id, error)
            else:
                if report.will_retry:
                    logger.info(
                        "Job %s will be retried by the backend (attempt %d)",
                        job.id,
                        job.attempts + 1,
                    )
                else:
                    logger.warning("Job %s permanently failed; backend will not retry", job.id)
            self.recorder.record_failure(job)
            self._publish_in_flight()
        finally:
            if executor is not None:
                self._release(executor)

    def _schedule_local_retry(self, entry: ActiveJobEntry, attempt: int) -> None:
        job = entry.job
        logger.warning(
            "Executor %s closed unexpectedly. Retrying job %s locally (attempt %d/%d)...",
            entry.executor.executor_id,
            job.id,
            attempt,
            self.max_local_retries,
        )
        self._release(entry.executor)
        timer = threading.Timer(
            self.crash_retry_delay_seconds,
            self._run_local_retry,
            args=(job,),
        )
        timer.daemon = True
        timer.start()

    def _run_local_retry(self, job: Job) -> None:
        try:
            self.dispatch(job, local_retry=True)
        except Exception as error:
            logger.exception("Local retry of job %s failed", job.id)
            with self._changed:
                self._retrying.discard(job.id)
                self._retries.clear(job.id)
                self._in_flight.pop(job.id, None)
                self._finishing += 1
            try:
                self._fail(
                    job=job,
                    reason=f"Failed to retry after executor closure: {error}",
                    classification=executor_crash("executor_crash_retry_failed"),
                )
            finally:
                self._finished()

    def _finished(self) -> None:
        with self._changed:
            self._finishing -= 1
            self._changed.notify_all()

    def _publish_in_flight(self) -> None:
        """Persist the in-flight job set; never called with ``_lock`` held."""

        with self._publish_lock:
            with self._lock:
                jobs = list(self._in_flight.values())
            self.recorder.set_in_flight(jobs)

    def _terminate(self, executor: ExecutorHandle) -> None:
        try:
            executor.terminate()
        except (ExecutorError, OSError) as error:
            logger.warning("Failed to terminate executor %s: %s", executor.executor_id, error)

    def _release(self, executor: ExecutorHandle) -> None:
        try:
            executor.close()
        except (ExecutorError, OSError) as error:
            logger.warning("Failed to release executor %s: %s", executor.executor_id, error)
