"""Deterministic failure classification for the scheduler retry policy."""

from __future__ import annotations

from dataclasses import dataclass

import httpx
from sqlalchemy.exc import DBAPIError, OperationalError

from agent_tasks.engine.errors import AgentTaskError, TransportError
from agent_tasks.engine.models import ErrorKind
from agent_tasks.sanitization import sanitize_message

FAILURE_CLASSIFIER_VERSION = 1

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
)


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    kind: ErrorKind
    transient: bool
    message: str
    reason_code: str
    matched_rule: str
    matched_pattern: str | None = None

    def to_event_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for task events."""

        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "error_kind": self.kind.value,
            "transient": self.transient,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_failure(error: BaseException) -> FailureClassification:
    """Map an exception raised by one execution attempt to kind and retryability."""

    if isinstance(error, TransportError):
        return _classify_transport(error)

    if isinstance(error, AgentTaskError):
        return FailureClassification(
            kind=error.kind,
            transient=error.transient,
            message=sanitize_message(str(error)) or error.kind.value,
            reason_code=error.kind.value,
            matched_rule="error_kind",
        )

    if isinstance(error, OperationalError) or (
        isinstance(error, DBAPIError) and error.connection_invalidated
    ):
        return FailureClassification(
            kind=ErrorKind.TRANSPORT,
            transient=True,
            message="Task store is temporarily unavailable.",
            reason_code="store_unavailable",
            matched_rule="store_operational_error",
        )

    if isinstance(error, httpx.TransportError):
        return FailureClassification(
            kind=ErrorKind.TRANSPORT,
            transient=True,
            message=f"Inference transport failed: {type(error).__name__}",
            reason_code="http_transport",
            matched_rule="http_transport_error",
        )

    return FailureClassification(
        kind=ErrorKind.INTERNAL,
        transient=False,
        message=f"Unexpected internal error ({type(error).__name__}).",
        reason_code="internal",
        matched_rule="fallback_internal",
    )


def _classify_transport(error: TransportError) -> FailureClassification:
    message = sanitize_message(str(error)) or "Inference transport failed."
    haystack = message.lower()

    for rule, patterns in (
        ("billing_or_quota", _BILLING_OR_QUOTA_PATTERNS),
        ("access_or_auth", _ACCESS_OR_AUTH_PATTERNS),
        ("model_not_available", _MODEL_NOT_AVAILABLE_PATTERNS),
    ):
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return FailureClassification(
                kind=ErrorKind.TRANSPORT,
                transient=False,
                message=message,
                reason_code=f"transport_{rule}",
                matched_rule=rule,
                matched_pattern=pattern,
            )

    if not error.transient:
        return FailureClassification(
            kind=ErrorKind.TRANSPORT,
            transient=False,
            message=message,
            reason_code="transport_rejected",
            matched_rule="request_rejected",
        )

    return FailureClassification(
        kind=ErrorKind.TRANSPORT,
        transient=True,
        message=message,
        reason_code="transport_transient",
        matched_rule="transient_transport",
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
