"""Deterministic attempt failure classification for engine retry policy."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

from agent_runner.errors import AgentExecutionError, FailureClass

FAILURE_CLASSIFIER_VERSION = 1

_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota",
    "resource_exhausted",
    "insufficient",
    "billing",
    "payment",
    "credits",
    "usage limit",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "authentication",
    "restricted token",
)
_MODEL_NOT_AVAILABLE_PATTERNS: tuple[str, ...] = (
    "model not found",
    "unknown model",
    "unsupported model",
    "invalid model",
    "model is not available",
    "not available in your region",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "429",
    "please retry",
    "try again later",
)
_GENERIC_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "temporary failure",
    "connection reset",
    "network error",
    "could not resolve host",
    "service unavailable",
    "dns",
)


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    def to_event_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for issue events."""

        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "failure_class": self.failure_class.value,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_failure(error: BaseException) -> FailureClassification:
    """Classify an attempt failure into a deterministic retry class.

    An explicit class on :class:`AgentExecutionError` always wins; otherwise
    timeouts, message patterns and connection errors are checked in that order.
    """

    if isinstance(error, AgentExecutionError) and error.failure_class != FailureClass.UNCLASSIFIED:
        return FailureClassification(
            failure_class=error.failure_class,
            reason_code=error.failure_class.value,
            matched_rule="explicit",
            matched_pattern=None,
        )

    if isinstance(error, (TimeoutError, asyncio.TimeoutError)):
        return FailureClassification(
            failure_class=FailureClass.TIMEOUT,
            reason_code="timeout",
            matched_rule="timeout_error",
            matched_pattern=None,
        )

    haystack = str(error).lower()
    for failure_class, rule, patterns in (
        (FailureClass.BILLING_OR_QUOTA, "billing_or_quota", _BILLING_OR_QUOTA_PATTERNS),
        (FailureClass.ACCESS_OR_AUTH, "access_or_auth", _ACCESS_OR_AUTH_PATTERNS),
        (FailureClass.MODEL_NOT_AVAILABLE, "model_not_available", _MODEL_NOT_AVAILABLE_PATTERNS),
        (FailureClass.RATE_LIMITED, "rate_limit", _RATE_LIMIT_PATTERNS),
        (FailureClass.BACKEND_TRANSIENT, "generic_transient", _GENERIC_TRANSIENT_PATTERNS),
    ):
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return FailureClassification(
                failure_class=failure_class,
                reason_code=failure_class.value,
                matched_rule=rule,
                matched_pattern=pattern,
            )

    if isinstance(error, ConnectionError):
        return FailureClassification(
            failure_class=FailureClass.BACKEND_TRANSIENT,
            reason_code=FailureClass.BACKEND_TRANSIENT.value,
            matched_rule="connection_error",
            matched_pattern=None,
        )

    return FailureClassification(
        failure_class=FailureClass.UNCLASSIFIED,
        reason_code=type(error).__name__,
        matched_rule="fallback_unclassified",
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
