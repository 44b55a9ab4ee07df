"""Deterministic failure classification for terminal job errors."""

from __future__ import annotations

import re
from dataclasses import dataclass

from agent_jobs.jobs.models import FailureClass

JOB_FAILURE_CLASSIFIER_VERSION = 1

_RATE_LIMIT_RE = re.compile(r"429|rate.limit|503|overloaded", re.IGNORECASE)

_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota",
    "insufficient",
    "billing",
    "payment",
    "credit balance",
    "usage limit",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "invalid x-api-key",
    "authentication",
)
_MODEL_NOT_AVAILABLE_PATTERNS: tuple[str, ...] = (
    "model not found",
    "unknown model",
    "unsupported model",
    "invalid model",
    "not_found_error",
)


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    rate_limited: bool
    matched_rule: str
    matched_pattern: str | None


def is_rate_limited(*texts: str | None) -> bool:
    """True when any text mentions provider throttling or overload."""

    return any(text and _RATE_LIMIT_RE.search(text) for text in texts)


def classify_failure(*, error: str, stderr: str = "") -> FailureClassification:
    """Classify a collaborator failure message plus its stderr tail."""

    match = _RATE_LIMIT_RE.search(error) or _RATE_LIMIT_RE.search(stderr)
    if match is not None:
        return FailureClassification(
            failure_class=FailureClass.RATE_LIMITED,
            rate_limited=True,
            matched_rule="rate_limit",
            matched_pattern=match.group(0).lower(),
        )

    haystack = f"{stderr}\n{error}".lower()
    for failure_class, rule, patterns in (
        (FailureClass.BILLING_OR_QUOTA, "billing_or_quota", _BILLING_OR_QUOTA_PATTERNS),
        (FailureClass.ACCESS_OR_AUTH, "access_or_auth", _ACCESS_OR_AUTH_PATTERNS),
        (FailureClass.MODEL_NOT_AVAILABLE, "model_not_available", _MODEL_NOT_AVAILABLE_PATTERNS),
    ):
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return FailureClassification(
                failure_class=failure_class,
                rate_limited=False,
                matched_rule=rule,
                matched_pattern=pattern,
            )

    return FailureClassification(
        failure_class=FailureClass.EXECUTION_FAILURE,
        rate_limited=False,
        matched_rule="fallback_execution_failure",
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
