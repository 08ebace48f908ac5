from __future__ import annotations

import allure
import pytest

from transcode_orchestrator.orchestrator.errors import (
    StatusPermissionError,
    StatusQueryError,
    TaskNotFoundError,
)
from transcode_orchestrator.orchestrator.failure_classifier import (
    STATUS_FAILURE_CLASSIFIER_VERSION,
    StatusFailureClass,
    classify_status_failure,
    describe_launch_failure,
)

pytestmark = [
    allure.epic("Job Orchestration"),
    allure.feature("Failure Classification"),
]


def test_classifier_version_is_stable() -> None:
    assert STATUS_FAILURE_CLASSIFIER_VERSION == 1


def test_typed_errors_win_over_message_patterns() -> None:
    classified = classify_status_failure(TaskNotFoundError("access denied while looking"))
    assert classified.failure_class is StatusFailureClass.NOT_FOUND
    assert classified.matched_rule == "typed_not_found"

    classified = classify_status_failure(StatusPermissionError("whatever"))
    assert classified.failure_class is StatusFailureClass.PERMISSION


def test_error_codes_are_checked_before_patterns() -> None:
    classified = classify_status_failure(
        StatusQueryError("User is not allowed", code="AccessDeniedException"),
    )
    assert classified.failure_class is StatusFailureClass.PERMISSION
    assert classified.matched_rule == "permission_code"
    assert classified.matched_pattern == "AccessDeniedException"

    classified = classify_status_failure(StatusQueryError("gone", code="MISSING"))
    assert classified.failure_class is StatusFailureClass.NOT_FOUND


@pytest.mark.parametrize(
    ("message", "expected", "pattern"),
    [
        ("An error occurred (AccessDenied) when calling DescribeTasks", "permission", "accessdenied"),
        ("Task not found in cluster", "not_found", "task not found"),
        ("Rate exceeded", "transient", "rate exceeded"),
        ("read timed out", "transient", "timed out"),
    ],
)
def test_message_patterns(message: str, expected: str, pattern: str) -> None:
    classified = classify_status_failure(RuntimeError(message))
    assert classified.failure_class.value == expected
    assert classified.matched_pattern == pattern


def test_unknown_errors_fall_back_to_transient() -> None:
    classified = classify_status_failure(ValueError("weird"))
    assert classified.failure_class is StatusFailureClass.TRANSIENT
    assert classified.matched_rule == "fallback_transient"
    assert classified.to_log_details()["classifier_version"] == 1


@pytest.mark.parametrize(
    ("code", "message", "fragment"),
    [
        ("BlockedException", "account blocked", "Account is blocked"),
        ("InvalidParameterException", "AccountIDs mismatch", "Account ID mismatch"),
        ("InvalidParameterException", "Error retrieving subnet information", "Invalid subnet"),
        ("InvalidParameterException", "security group sg-1 is invalid", "Invalid security group"),
        (
            "InvalidParameterException",
            "Unable to describe task definition",
            "Task definition not found",
        ),
        (None, "quota exceeded", "Failed to start task: quota exceeded"),
    ],
)
def test_launch_failures_map_to_friendly_reasons(
    code: str | None,
    message: str,
    fragment: str,
) -> None:
    assert fragment in describe_launch_failure(code=code, message=message)
