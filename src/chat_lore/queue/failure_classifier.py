"""Deterministic failure classification for queue retry policy."""

from __future__ import annotations

import re
from dataclasses import dataclass

from chat_lore.queue.models import FailureClass

FAILURE_CLASSIFIER_VERSION = 1

_STATUS_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\((\d{3})\)"),
    re.compile(r"\bhttp\s+(\d{3})\b"),
    re.compile(r"\bstatus(?:\s+code)?[:=\s]+(\d{3})\b"),
)
_RETRYABLE_CLIENT_STATUSES = frozenset({408, 429})

_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "invalid api key",
    "incorrect api key",
    "authentication failed",
    "authentication error",
)
_BAD_REQUEST_PATTERNS: tuple[str, ...] = (
    "bad request",
    "invalid request",
)


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str
    status_code: int | None = None
    matched_pattern: str | None = None

    @property
    def permanent(self) -> bool:
        return self.failure_class == FailureClass.PERMANENT


def classify_failure(error: str | None) -> FailureClassification:
    """Classify an error message into a permanent or transient failure."""

    haystack = (error or "").lower()

    status_code = _extract_status_code(haystack)
    if status_code is not None:
        if 400 <= status_code <= 499 and status_code not in _RETRYABLE_CLIENT_STATUSES:
            return FailureClassification(
                failure_class=FailureClass.PERMANENT,
                reason_code=f"http_{status_code}",
                matched_rule="client_error_status",
                status_code=status_code,
            )
        return FailureClassification(
            failure_class=FailureClass.TRANSIENT,
            reason_code=f"http_{status_code}",
            matched_rule="retryable_status",
            status_code=status_code,
        )

    pattern = _first_match(haystack, _ACCESS_OR_AUTH_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_class=FailureClass.PERMANENT,
            reason_code="access_or_auth",
            matched_rule="access_or_auth",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _BAD_REQUEST_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_class=FailureClass.PERMANENT,
            reason_code="bad_request",
            matched_rule="bad_request",
            matched_pattern=pattern,
        )

    # Unrecognized errors (including JSON parse failures) stay retryable.
    return FailureClassification(
        failure_class=FailureClass.TRANSIENT,
        reason_code="unclassified",
        matched_rule="fallback_transient",
    )


def is_permanent_failure(error: str | None) -> bool:
    """Return True when the error should go straight to the dead-letter queue."""

    return classify_failure(error).permanent


def _extract_status_code(haystack: str) -> int | None:
    for pattern in _STATUS_PATTERNS:
        match = pattern.search(haystack)
        if match is not None:
            return int(match.group(1))
    return None


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
