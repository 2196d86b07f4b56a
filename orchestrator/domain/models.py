from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from types import MappingProxyType

from orchestrator.domain.error_taxonomy import ErrorKind, FailureReason
from orchestrator.domain.outcomes import OutcomeClass, classify

SubjectKey = tuple[str, tuple[tuple[str, str], ...]]


# Canonical transaction phases.
#
# IMPORTANT:
# - Keep this enum synchronized with orchestrator/domain/lifecycle.py
#   (TERMINAL_PHASES and ALLOWED_TRANSITIONS).
class TransactionPhase(StrEnum):
    # Waiting for a trigger to be sent.
    PENDING = "pending"

    # Network operation owned by the remote side.
    TRIGGERING = "triggering"
    POLLING = "polling"

    # Last trigger never reached the remote side; retried by the scheduler.
    FAILED_RETRYABLE = "failed_retryable"

    # Terminal states.
    SUCCEEDED = "succeeded"
    FAILED_TERMINAL = "failed_terminal"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class RiskVerdict(StrEnum):
    GREEN = "green"
    AMBER = "amber"
    RED = "red"
    # Empty indicator set; never the same thing as a clean verdict.
    NO_VERDICT = "no_verdict"


@dataclass(frozen=True)
class Subject:
    endpoint: str
    params: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "params", MappingProxyType(dict(self.params)))

    @property
    def key(self) -> SubjectKey:
        return (self.endpoint, tuple(sorted(self.params.items())))

    def __hash__(self) -> int:
        return hash(self.key)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Subject):
            return NotImplemented
        return self.key == other.key


@dataclass(frozen=True)
class TransactionHandle:
    local_request_id: str
    subject: Subject
    remote_uid: str | None = None


@dataclass(frozen=True)
class RiskIndicator:
    source: str
    # Kept as the raw remote string; validated only by the aggregator.
    indicator: str


@dataclass(frozen=True)
class TransactionUpdate:
    code: int
    status_text: str | None = None
    status_name: str | None = None
    remote_uid: str | None = None
    message: str | None = None
    timestamp: str | None = None
    elapsed_ms: int | None = None
    result_payload: object | None = None
    has_pdf: bool = False
    pdf_url: str | None = None
    original_files_url: str | None = None
    risk_indicators: tuple[RiskIndicator, ...] = ()
    cost_credits: float | None = None
    balance_credits: float | None = None

    @property
    def outcome(self) -> OutcomeClass:
        return classify(self.code)

    def fingerprint(self) -> tuple[object, ...]:
        # Identity of a remote response; result_payload is opaque and left out.
        return (
            self.code,
            self.remote_uid,
            self.timestamp,
            self.elapsed_ms,
            self.message,
            self.status_name,
        )


@dataclass(frozen=True)
class TransactionSnapshot:
    local_request_id: str
    subject: Subject
    phase: TransactionPhase
    remote_uid: str | None
    attempt_count: int
    poll_count: int
    created_at: datetime
    deadline_at: datetime
    updated_at: datetime
    artifacts_fetched: bool
    last_update: TransactionUpdate | None = None
    outcome: OutcomeClass | None = None
    failure_reason: FailureReason | None = None
    error_kind: ErrorKind | None = None
    last_error: str | None = None
    warnings: tuple[str, ...] = ()
    billed_credits: Mapping[str, float] = field(default_factory=dict)

    @property
    def handle(self) -> TransactionHandle:
        return TransactionHandle(
            local_request_id=self.local_request_id,
            subject=self.subject,
            remote_uid=self.remote_uid,
        )

    @property
    def total_cost_credits(self) -> float:
        return sum(self.billed_credits.values())


@dataclass(frozen=True)
class TerminalRecord:
    snapshot: TransactionSnapshot
    update: TransactionUpdate | None
    # None when no verdict could be derived (not terminal success, or invalid indicators).
    verdict: RiskVerdict | None
