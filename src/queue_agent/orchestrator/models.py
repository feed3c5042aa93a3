"""Domain models for the job lifecycle orchestrator."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobState(str, Enum):
    """Lifecycle states of one job instance."""

    FETCHED = "fetched"
    DISPATCHING = "dispatching"
    EXECUTING = "executing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class OutcomeKind(str, Enum):
    """Terminal signal kinds an executor can produce."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CRASHED = "crashed"


class FailureClass(str, Enum):
    """Normalized failure classes used for logging and reporting."""

    DELIVERY_FAILURE = "delivery_failure"
    EXECUTION_FAILURE = "execution_failure"
    EXECUTOR_CRASH = "executor_crash"
    TIMEOUT = "timeout"
    NETWORK_FAILURE = "network_failure"


class HistoryStatus(str, Enum):
    """Status values stored in the recent-job history."""

    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class Job:
    """One unit of queued work, immutable once fetched."""

    id: str
    target_url: str
    price: int
    attempts: int
    title: str
    thumbnail_url: str | None = None
    currency: str | None = None
    deviation_id: str | None = None
    price_preset_id: str | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> Job:
        """Build a job from the backend JSON item.

        Accepts both the nested backend shape (``deviation`` / ``pricePreset``)
        and a flat ``targetUrl`` / ``title`` shape.
        """

        if not isinstance(payload, dict):
            raise ValueError(f"Job payload must be an object, got {type(payload).__name__}.")
        job_id = payload.get("id")
        if not job_id:
            raise ValueError("Job payload is missing 'id'.")

        deviation = payload.get("deviation") or {}
        preset = payload.get("pricePreset") or {}
        target_url = deviation.get("deviationUrl") or payload.get("targetUrl")
        if not target_url:
            raise ValueError(f"Job {job_id!r} has no target URL.")

        return cls(
            id=str(job_id),
            target_url=str(target_url),
            price=int(payload.get("price") or 0),
            attempts=int(payload.get("attempts") or 0),
            title=str(deviation.get("title") or payload.get("title") or ""),
            thumbnail_url=deviation.get("thumbnailUrl") or payload.get("thumbnailUrl"),
            currency=preset.get("currency"),
            deviation_id=payload.get("deviationId"),
            price_preset_id=payload.get("pricePresetId"),
        )

    def to_payload(self) -> dict[str, Any]:
        """Serialize for the executor START instruction."""

        return {
            "id": self.id,
            "targetUrl": self.target_url,
            "price": self.price,
            "attempts": self.attempts,
            "title": self.title,
            "thumbnailUrl": self.thumbnail_url,
            "currency": self.currency,
            "deviationId": self.deviation_id,
            "pricePresetId": self.price_preset_id,
        }


@dataclass(frozen=True, slots=True)
class ExecutorOutcome:
    """Terminal signal delivered by an executor, or synthesized for a crash."""

    kind: OutcomeKind
    job_id: str | None = None
    reason: str | None = None

    @classmethod
    def succeeded(cls, job_id: str | None = None) -> ExecutorOutcome:
        return cls(kind=OutcomeKind.SUCCEEDED, job_id=job_id)

    @classmethod
    def failed(cls, reason: str, job_id: str | None = None) -> ExecutorOutcome:
        return cls(kind=OutcomeKind.FAILED, job_id=job_id, reason=reason)

    @classmethod
    def crashed(cls, reason: str | None = None) -> ExecutorOutcome:
        return cls(kind=OutcomeKind.CRASHED, reason=reason)


@dataclass(slots=True)
class DispatchResult:
    """Result of one dispatch attempt, returned to the scheduler."""

    job_id: str
    accepted: bool
    executor_id: str | None = None
    reason: str | None = None


@dataclass(slots=True)
class CurrentJob:
    """Job currently in flight, as shown in stats."""

    id: str
    title: str


@dataclass(slots=True)
class Stats:
    """Processing counters plus the jobs currently in flight.

    ``current_job`` is set only while exactly one job is in flight;
    ``in_flight_job_ids`` always lists all of them.
    """

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    last_processed_at: datetime | None = None
    current_job: CurrentJob | None = None
    in_flight_job_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "lastProcessedAt": (
                self.last_processed_at.isoformat() if self.last_processed_at else None
            ),
            "currentJob": (
                {"id": self.current_job.id, "title": self.current_job.title}
                if self.current_job
                else None
            ),
            "inFlightJobIds": list(self.in_flight_job_ids),
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> Stats:
        if not raw:
            return cls()
        current = raw.get("currentJob")
        last = raw.get("lastProcessedAt")
        return cls(
            processed=int(raw.get("processed", 0)),
            succeeded=int(raw.get("succeeded", 0)),
            failed=int(raw.get("failed", 0)),
            last_processed_at=datetime.fromisoformat(last) if last else None,
            current_job=(
                CurrentJob(id=str(current["id"]), title=str(current.get("title", "")))
                if current
                else None
            ),
            in_flight_job_ids=[str(job_id) for job_id in raw.get("inFlightJobIds") or []],
        )


@dataclass(slots=True)
class HistoryItem:
    """One entry of the bounded recent-job history."""

    id: str
    title: str
    url: str
    status: HistoryStatus
    timestamp: datetime
    price: int | None = None
    thumbnail_url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "url": self.url,
            "status": self.status.value,
            "timestamp": self.timestamp.isoformat(),
            "price": self.price,
            "thumbnailUrl": self.thumbnail_url,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> HistoryItem:
        return cls(
            id=str(raw["id"]),
            title=str(raw.get("title", "")),
            url=str(raw.get("url", "")),
            status=HistoryStatus(raw["status"]),
            timestamp=datetime.fromisoformat(raw["timestamp"]),
            price=raw.get("price"),
            thumbnail_url=raw.get("thumbnailUrl"),
        )


@dataclass(slots=True)
class HandshakeSettings:
    """Readiness handshake bounds, persisted per installation."""

    attempts: int = 10
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0


@dataclass(slots=True)
class OperatorActionResult:
    """Outcome of an operator pass-through action."""

    affected: int
    skipped: list[str] = field(default_factory=list)
    message: str | None = None
