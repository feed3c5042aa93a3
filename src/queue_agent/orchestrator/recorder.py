"""Stats and bounded job history bookkeeping."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from queue_agent.orchestrator.models import CurrentJob, HistoryItem, HistoryStatus, Job, Stats
from queue_agent.storage.common import utc_now
from queue_agent.storage.state_store import KEY_JOB_HISTORY, KEY_STATS, StateStore

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_CAPACITY = 50


class StatsRecorder:
    """Mutates persisted stats/history on orchestrator transitions.

    The store is shared with operator surfaces that read it concurrently,
    so every change is a single read-modify-write through ``StateStore.update``.
    """

    def __init__(self, store: StateStore, *, history_capacity: int = DEFAULT_HISTORY_CAPACITY):
        if history_capacity < 1:
            raise ValueError("history_capacity must be >= 1")
        self.store = store
        self.history_capacity = history_capacity

    def stats(self) -> Stats:
        return Stats.from_dict(self.store.get(KEY_STATS))

    def history(self) -> list[HistoryItem]:
        raw = self.store.get(KEY_JOB_HISTORY) or []
        return [HistoryItem.from_dict(item) for item in raw]

    def mark_processing(self, job: Job) -> None:
        """Add the processing history record for ``job``."""

        self.store.update(KEY_JOB_HISTORY, lambda raw: self._add_processing(raw or [], job))

    def set_in_flight(self, jobs: Sequence[Job]) -> Stats:
        """Publish the jobs in flight; ``current_job`` only when exactly one is."""

        def _publish(raw: dict[str, Any] | None) -> dict[str, Any]:
            stats = Stats.from_dict(raw)
            stats.in_flight_job_ids = sorted(job.id for job in jobs)
            stats.current_job = (
                CurrentJob(id=jobs[0].id, title=jobs[0].title) if len(jobs) == 1 else None
            )
            return stats.to_dict()

        return Stats.from_dict(self.store.update(KEY_STATS, _publish))

    def record_success(self, job: Job) -> Stats:
        return self._record_terminal(job, succeeded=True)

    def record_failure(self, job: Job) -> Stats:
        return self._record_terminal(job, succeeded=False)

    def reset(self) -> None:
        """Zero counters and clear history; jobs in flight stay published."""

        def _clear(raw: dict[str, Any] | None) -> dict[str, Any]:
            current = Stats.from_dict(raw)
            return Stats(
                current_job=current.current_job,
                in_flight_job_ids=current.in_flight_job_ids,
            ).to_dict()

        self.store.update(KEY_STATS, _clear)
        self.store.set(KEY_JOB_HISTORY, [])

    def _record_terminal(self, job: Job, *, succeeded: bool) -> Stats:
        def _bump(raw: dict[str, Any] | None) -> dict[str, Any]:
            stats = Stats.from_dict(raw)
            stats.processed += 1
            if succeeded:
                stats.succeeded += 1
            else:
                stats.failed += 1
            stats.last_processed_at = utc_now()
            return stats.to_dict()

        stats = Stats.from_dict(self.store.update(KEY_STATS, _bump))
        status = HistoryStatus.COMPLETED if succeeded else HistoryStatus.FAILED
        self.store.update(
            KEY_JOB_HISTORY,
            lambda raw: self._set_status(raw or [], job, status),
        )
        return stats

    def _add_processing(self, raw: list[dict[str, Any]], job: Job) -> list[dict[str, Any]]:
        for entry in raw:
            if entry["id"] == job.id and entry["status"] == HistoryStatus.PROCESSING.value:
                # local re-dispatch of the same job keeps its original record
                return raw

        item = HistoryItem(
            id=job.id,
            title=job.title,
            url=job.target_url,
            status=HistoryStatus.PROCESSING,
            timestamp=utc_now(),
            price=job.price,
            thumbnail_url=job.thumbnail_url,
        )
        return [item.to_dict(), *raw][: self.history_capacity]

    def _set_status(
        self,
        raw: list[dict[str, Any]],
        job: Job,
        status: HistoryStatus,
    ) -> list[dict[str, Any]]:
        for entry in raw:
            if entry["id"] == job.id:
                entry["status"] = status.value
                entry["timestamp"] = utc_now().isoformat()
                return raw
        logger.debug("History record for job %s was evicted before its terminal update", job.id)
        return raw
