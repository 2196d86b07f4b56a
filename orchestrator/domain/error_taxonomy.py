from __future__ import annotations

from collections.abc import Mapping
from typing import Literal

from orchestrator.domain.outcomes import OutcomeClass

# Canonical error vocabulary for the orchestrator.
ErrorKind = Literal[
    "transient_transport",
    "remote_retryable",
    "remote_terminal_failure",
    "deadline_exceeded",
    "artifact_fetch_failure",
    "caller_misuse",
]

RetryClassification = Literal["recoverable", "terminal"]

CANONICAL_ERROR_KINDS: tuple[ErrorKind, ...] = (
    "transient_transport",
    "remote_retryable",
    "remote_terminal_failure",
    "deadline_exceeded",
    "artifact_fetch_failure",
    "caller_misuse",
)

# Handled internally up to their bounds; everything else surfaces to the caller.
RECOVERABLE_ERROR_KINDS: frozenset[ErrorKind] = frozenset(
    {
        "transient_transport",
        "remote_retryable",
    }
)

# Persisted failure_reason values for FailedTerminal / Expired / Cancelled.
FailureReason = Literal[
    "attempts-exhausted",
    "entity-not-found",
    "system-error",
    "unknown-code",
    "deadline-exceeded",
    "cancelled",
]

OUTCOME_FAILURE_REASONS: Mapping[OutcomeClass, FailureReason] = {
    OutcomeClass.ENTITY_NOT_FOUND: "entity-not-found",
    OutcomeClass.SYSTEM_ERROR: "system-error",
    OutcomeClass.UNKNOWN: "unknown-code",
}


def is_canonical_error_kind(kind: str) -> bool:
    return kind in CANONICAL_ERROR_KINDS


def classify_error(kind: ErrorKind) -> RetryClassification:
    if kind in RECOVERABLE_ERROR_KINDS:
        return "recoverable"
    return "terminal"


def error_kind_for_outcome(outcome: OutcomeClass) -> ErrorKind | None:
    if outcome in (OutcomeClass.RETRYABLE_TIMEOUT, OutcomeClass.RETRYABLE_ATTEMPTS_EXCEEDED):
        return "remote_retryable"
    if outcome in OUTCOME_FAILURE_REASONS:
        return "remote_terminal_failure"
    return None


def failure_reason_for_outcome(outcome: OutcomeClass) -> FailureReason:
    # Anything not explicitly mapped is surfaced as an unknown remote code.
    return OUTCOME_FAILURE_REASONS.get(outcome, "unknown-code")
