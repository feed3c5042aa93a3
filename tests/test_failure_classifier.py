from __future__ import annotations

import allure

from queue_agent.orchestrator.failure_classifier import (
    FAILURE_CLASSIFIER_VERSION,
    classify_failure,
    delivery_failure,
    executor_crash,
)
from queue_agent.orchestrator.models import FailureClass

pytestmark = [
    allure.epic("Job Lifecycle"),
    allure.feature("Failure Classification"),
]


def test_classifier_version_is_stable() -> None:
    assert FAILURE_CLASSIFIER_VERSION == 2


def test_timeout_flag_wins_over_reason_text() -> None:
    classified = classify_failure(reason="no acknowledgment: whatever", timed_out=True)
    assert classified.failure_class == FailureClass.TIMEOUT
    assert classified.reason_code == "job_timed_out"


def test_delivery_failure_carries_given_reason_code() -> None:
    classified = delivery_failure("delivery_no_acknowledgment")
    assert classified.failure_class == FailureClass.DELIVERY_FAILURE
    assert classified.reason_code == "delivery_no_acknowledgment"
    assert classified.matched_rule == "delivery"


def test_executor_crash_defaults_to_exhausted_retries() -> None:
    classified = executor_crash()
    assert classified.failure_class == FailureClass.EXECUTOR_CRASH
    assert classified.reason_code == "executor_crash_retries_exhausted"
    assert classified.matched_rule == "crash_exhausted"


def test_executor_reason_mentioning_delivery_words_stays_execution_failure() -> None:
    for reason in (
        "executor not ready: price field missing",
        "no acknowledgment from the store page",
        "executor closed repeatedly the sale dialog",
    ):
        classified = classify_failure(reason=reason)
        assert classified.failure_class == FailureClass.EXECUTION_FAILURE, reason


def test_network_hint_in_executor_reason() -> None:
    classified = classify_failure(reason="Network error while loading the sale form")
    assert classified.failure_class == FailureClass.NETWORK_FAILURE


def test_classifier_falls_back_to_execution_failure() -> None:
    classified = classify_failure(reason="Price field not found")
    assert classified.failure_class == FailureClass.EXECUTION_FAILURE
    assert classified.matched_rule == "fallback_execution"


def test_log_details_carry_ids_and_version() -> None:
    details = classify_failure(reason="Price field not found").to_log_details(
        job_id="job-1",
        executor_id="exec-1",
    )
    assert details == {
        "classifier_version": 2,
        "job_id": "job-1",
        "executor_id": "exec-1",
        "failure_class": "execution_failure",
        "reason_code": "executor_reported_failure",
        "matched_rule": "fallback_execution",
    }
