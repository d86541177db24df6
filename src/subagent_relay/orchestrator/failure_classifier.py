"""Deterministic diagnosis of failed worker invocations."""

from __future__ import annotations

from dataclasses import dataclass

from subagent_relay.orchestrator.models import FailureClass

FAILURE_CLASSIFIER_VERSION = 1

_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota",
    "resource_exhausted",
    "insufficient",
    "billing",
    "payment",
    "credits",
    "usage limit",
    "exceeded",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "authentication",
    "no api key",
)
_MODEL_NOT_AVAILABLE_PATTERNS: tuple[str, ...] = (
    "model not found",
    "unknown model",
    "unsupported model",
    "invalid model",
    "model is not available",
)
_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "429",
    "overloaded",
    "temporarily unavailable",
    "connection reset",
    "network error",
    "timed out",
)

_RULES: tuple[tuple[str, FailureClass, tuple[str, ...]], ...] = (
    ("billing_or_quota", FailureClass.BILLING_OR_QUOTA, _BILLING_OR_QUOTA_PATTERNS),
    ("access_or_auth", FailureClass.ACCESS_OR_AUTH, _ACCESS_OR_AUTH_PATTERNS),
    ("model_not_available", FailureClass.MODEL_NOT_AVAILABLE, _MODEL_NOT_AVAILABLE_PATTERNS),
    ("transient", FailureClass.BACKEND_TRANSIENT, _TRANSIENT_PATTERNS),
)


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    matched_rule: str
    matched_pattern: str | None


def classify_failure(
    *,
    exit_code: int,
    stderr: str,
    error_message: str | None,
    transient_exit_codes: tuple[int, ...] = (137, 143),
) -> FailureClassification:
    """Classify a finished-but-failed invocation from its diagnostics."""

    haystack = f"{error_message or ''}\n{stderr}".lower()
    for rule, failure_class, patterns in _RULES:
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return FailureClassification(
                failure_class=failure_class,
                matched_rule=rule,
                matched_pattern=pattern,
            )

    if exit_code in transient_exit_codes:
        return FailureClassification(
            failure_class=FailureClass.BACKEND_TRANSIENT,
            matched_rule="transient_exit_code",
            matched_pattern=None,
        )
    return FailureClassification(
        failure_class=FailureClass.BACKEND_NON_RETRYABLE,
        matched_rule="fallback_non_retryable",
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
