"""Deterministic failure classification for terminal FAILED transitions."""

from __future__ import annotations

from dataclasses import dataclass

from queue_agent.orchestrator.models import FailureClass

FAILURE_CLASSIFIER_VERSION = 2

REASON_NO_ACKNOWLEDGMENT = "no acknowledgment"
REASON_NOT_READY = "executor not ready"
REASON_TIMED_OUT = "timed out"
REASON_CLOSED_REPEATEDLY = "executor closed repeatedly"
REASON_EXECUTOR_START_FAILED = "executor failed to start"

_NETWORK_PATTERNS: tuple[str, ...] = (
    "network error",
    "connection reset",
    "connection refused",
    "could not resolve host",
    "temporarily unavailable",
)


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str

    def to_log_details(self, *, job_id: str, executor_id: str | None) -> dict[str, object]:
        """Serialize classifier diagnostics for structured log records."""

        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "job_id": job_id,
            "executor_id": executor_id,
            "failure_class": self.failure_class.value,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
        }


def delivery_failure(reason_code: str) -> FailureClassification:
    """Classification for a job that never reached the executor."""

    return FailureClassification(
        failure_class=FailureClass.DELIVERY_FAILURE,
        reason_code=reason_code,
        matched_rule="delivery",
    )


def executor_crash(reason_code: str = "executor_crash_retries_exhausted") -> FailureClassification:
    return FailureClassification(
        failure_class=FailureClass.EXECUTOR_CRASH,
        reason_code=reason_code,
        matched_rule="crash_exhausted",
    )


def classify_failure(*, reason: str, timed_out: bool = False) -> FailureClassification:
    """Classify an executor-reported failure, or a timeout, from its reason text.

    Failures the orchestrator raises itself (delivery, exhausted crash
    retries) carry an explicit classification and never reach here.
    """

    if timed_out:
        return FailureClassification(
            failure_class=FailureClass.TIMEOUT,
            reason_code="job_timed_out",
            matched_rule="timeout",
        )

    haystack = reason.strip().lower()
    for pattern in _NETWORK_PATTERNS:
        if pattern in haystack:
            return FailureClassification(
                failure_class=FailureClass.NETWORK_FAILURE,
                reason_code="executor_network_failure",
                matched_rule="network",
            )

    return FailureClassification(
        failure_class=FailureClass.EXECUTION_FAILURE,
        reason_code="executor_reported_failure",
        matched_rule="fallback_execution",
    )
