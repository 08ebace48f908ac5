"""Deterministic classification of remote failures for monitor and launch policy."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from transcode_orchestrator.orchestrator.errors import (
    StatusPermissionError,
    StatusQueryError,
    TaskNotFoundError,
)

STATUS_FAILURE_CLASSIFIER_VERSION = 1


class StatusFailureClass(str, Enum):
    """Normalized status query failure classes."""

    PERMISSION = "permission"
    NOT_FOUND = "not_found"
    TRANSIENT = "transient"


_PERMISSION_CODES: tuple[str, ...] = (
    "AccessDeniedException",
    "AccessDenied",
    "UnauthorizedOperation",
    "UnrecognizedClientException",
    "InvalidClientTokenId",
    "ExpiredTokenException",
)
_NOT_FOUND_CODES: tuple[str, ...] = (
    "MISSING",
    "TaskNotFoundException",
    "ResourceNotFoundException",
)
_PERMISSION_PATTERNS: tuple[str, ...] = (
    "access denied",
    "accessdenied",
    "not authorized",
    "unauthorized",
    "forbidden",
    "permission",
    "security token",
)
_NOT_FOUND_PATTERNS: tuple[str, ...] = (
    "task not found",
    "could not find task",
    "no such task",
)
_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "throttl",
    "rate exceeded",
    "too many requests",
    "timed out",
    "timeout",
    "connection reset",
    "temporarily unavailable",
    "service unavailable",
)

_LAUNCH_REASON_RULES: tuple[tuple[str, str | None, str], ...] = (
    (
        "BlockedException",
        None,
        "Account is blocked. Contact the execution provider's support to resolve this issue.",
    ),
    (
        "InvalidParameterException",
        "accountids mismatch",
        "Account ID mismatch. Make sure the task definition belongs to the same account "
        "as the configured credentials.",
    ),
    (
        "InvalidParameterException",
        "subnet",
        "Invalid subnet configuration. Check the configured subnet IDs.",
    ),
    (
        "InvalidParameterException",
        "security group",
        "Invalid security group configuration. Check the configured security group IDs.",
    ),
    (
        "InvalidParameterException",
        "task definition",
        "Task definition not found. Register the task definition before submitting jobs.",
    ),
)


@dataclass(slots=True)
class StatusFailureClassification:
    """Normalized status failure classification result."""

    failure_class: StatusFailureClass
    matched_rule: str
    matched_pattern: str | None

    def to_log_details(self) -> dict[str, object]:
        return {
            "classifier_version": STATUS_FAILURE_CLASSIFIER_VERSION,
            "failure_class": self.failure_class.value,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_status_failure(error: BaseException) -> StatusFailureClassification:
    """Classify a failed status query into permission, not-found or transient."""

    if isinstance(error, StatusPermissionError):
        return StatusFailureClassification(
            failure_class=StatusFailureClass.PERMISSION,
            matched_rule="typed_permission",
            matched_pattern=None,
        )
    if isinstance(error, TaskNotFoundError):
        return StatusFailureClassification(
            failure_class=StatusFailureClass.NOT_FOUND,
            matched_rule="typed_not_found",
            matched_pattern=None,
        )

    code = _error_code(error)
    if code is not None:
        if code in _PERMISSION_CODES:
            return StatusFailureClassification(
                failure_class=StatusFailureClass.PERMISSION,
                matched_rule="permission_code",
                matched_pattern=code,
            )
        if code in _NOT_FOUND_CODES:
            return StatusFailureClassification(
                failure_class=StatusFailureClass.NOT_FOUND,
                matched_rule="not_found_code",
                matched_pattern=code,
            )

    haystack = str(error).lower()
    pattern = _first_match(haystack, _PERMISSION_PATTERNS)
    if pattern is not None:
        return StatusFailureClassification(
            failure_class=StatusFailureClass.PERMISSION,
            matched_rule="permission_pattern",
            matched_pattern=pattern,
        )
    pattern = _first_match(haystack, _NOT_FOUND_PATTERNS)
    if pattern is not None:
        return StatusFailureClassification(
            failure_class=StatusFailureClass.NOT_FOUND,
            matched_rule="not_found_pattern",
            matched_pattern=pattern,
        )
    pattern = _first_match(haystack, _TRANSIENT_PATTERNS)
    if pattern is not None:
        return StatusFailureClassification(
            failure_class=StatusFailureClass.TRANSIENT,
            matched_rule="transient_pattern",
            matched_pattern=pattern,
        )

    return StatusFailureClassification(
        failure_class=StatusFailureClass.TRANSIENT,
        matched_rule="fallback_transient",
        matched_pattern=None,
    )


def describe_launch_failure(*, code: str | None, message: str) -> str:
    """Map a raw launch failure onto an operator-facing reason."""

    lowered = message.lower()
    for rule_code, pattern, reason in _LAUNCH_REASON_RULES:
        if code != rule_code:
            continue
        if pattern is None or pattern in lowered:
            return reason
    return f"Failed to start task: {message}"


def _error_code(error: BaseException) -> str | None:
    if isinstance(error, StatusQueryError) and error.code:
        return error.code
    code = getattr(error, "code", None)
    if isinstance(code, str) and code:
        return code
    return None


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
