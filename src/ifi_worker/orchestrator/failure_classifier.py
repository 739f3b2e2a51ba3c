"""Deterministic classification of collaborator failure messages."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

FAILURE_CLASSIFIER_VERSION = 1


class FailureClass(str, Enum):
    RATE_LIMITED = "rate_limited"
    ACCESS_OR_AUTH = "access_or_auth"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    TRANSIENT = "transient"
    NON_RETRYABLE = "non_retryable"


# Most specific first: the first match is reported.
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "secondary rate",
    "abuse detection",
    "rate limit",
    "rate-limit",
    "too many requests",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "bad credentials",
    "unauthorized",
    "forbidden",
    "permission denied",
    "resource not accessible",
    "invalid api key",
    "authentication",
)
_NOT_FOUND_PATTERNS: tuple[str, ...] = (
    "not found",
    "no such",
    "does not exist",
)
_CONFLICT_PATTERNS: tuple[str, ...] = (
    "already exists",
    "conflict",
    "does not match",
    "no commits between",
)
_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "timed out",
    "timeout",
    "temporarily unavailable",
    "connection reset",
    "connection refused",
    "network error",
    "bad gateway",
    "service unavailable",
)

_STATUS_CLASSES: dict[int, FailureClass] = {
    401: FailureClass.ACCESS_OR_AUTH,
    403: FailureClass.ACCESS_OR_AUTH,
    404: FailureClass.NOT_FOUND,
    409: FailureClass.CONFLICT,
    429: FailureClass.RATE_LIMITED,
    502: FailureClass.TRANSIENT,
    503: FailureClass.TRANSIENT,
    504: FailureClass.TRANSIENT,
}


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    matched_rule: str
    matched_pattern: str | None

    def to_event_details(self) -> dict[str, object]:
        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "failure_class": self.failure_class.value,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_failure(message: str, status_code: int | None = None) -> FailureClassification:
    """Classify a failure message, optionally with its HTTP status code.

    Message patterns win over the status code: GitHub reports secondary rate
    limits as 403 with a "rate limit" message.
    """

    haystack = message.lower()
    rules: tuple[tuple[str, FailureClass, tuple[str, ...]], ...] = (
        ("rate_limited", FailureClass.RATE_LIMITED, _RATE_LIMIT_PATTERNS),
        ("access_or_auth", FailureClass.ACCESS_OR_AUTH, _ACCESS_OR_AUTH_PATTERNS),
        ("not_found", FailureClass.NOT_FOUND, _NOT_FOUND_PATTERNS),
        ("conflict", FailureClass.CONFLICT, _CONFLICT_PATTERNS),
        ("transient", FailureClass.TRANSIENT, _TRANSIENT_PATTERNS),
    )
    for rule, failure_class, patterns in rules:
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return FailureClassification(
                failure_class=failure_class,
                matched_rule=rule,
                matched_pattern=pattern,
            )

    if status_code is not None:
        by_status = _STATUS_CLASSES.get(status_code)
        if by_status is None and status_code >= 500:
            by_status = FailureClass.TRANSIENT
        if by_status is not None:
            return FailureClassification(
                failure_class=by_status,
                matched_rule="status_code",
                matched_pattern=str(status_code),
            )

    return FailureClassification(
        failure_class=FailureClass.NON_RETRYABLE,
        matched_rule="fallback_non_retryable",
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
