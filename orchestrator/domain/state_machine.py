from __future__ import annotations

from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from types import MappingProxyType
import logging

from orchestrator.domain.error_taxonomy import (
    ErrorKind,
    FailureReason,
    classify_error,
    error_kind_for_outcome,
    failure_reason_for_outcome,
    is_canonical_error_kind,
)
from orchestrator.domain.errors import (
    CallerMisuseError,
    DomainInvariantError,
    DomainValidationError,
    UnknownTransactionError,
)
from orchestrator.domain.lifecycle import can_transition, is_terminal
from orchestrator.domain.models import (
    Subject,
    TransactionPhase,
    TransactionSnapshot,
    TransactionUpdate,
)
from orchestrator.domain.outcomes import OutcomeClass, required_action

logger = logging.getLogger("orchestrator.state_machine")


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


@dataclass(frozen=True)
class Transition:
    local_request_id: str
    previous: TransactionPhase
    current: TransactionPhase
    applied: bool
    entered_terminal: bool = False
    detail: str = ""


@dataclass
class _TransactionRow:
    local_request_id: str
    subject: Subject
    phase: TransactionPhase
    created_at: datetime
    deadline_at: datetime
    updated_at: datetime
    remote_uid: str | None = None
    attempt_count: int = 0
    poll_count: int = 0
    last_update: TransactionUpdate | None = None
    outcome: OutcomeClass | None = None
    failure_reason: FailureReason | None = None
    error_kind: ErrorKind | None = None
    last_error: str | None = None
    warnings: list[str] = field(default_factory=list)
    artifacts_fetched: bool = False
    artifact_fetch_claimed: bool = False
    released: bool = False
    billed_credits: dict[str, float] = field(default_factory=dict)
    seen_updates: set[tuple[object, ...]] = field(default_factory=set)


@dataclass
class TransactionStateMachine:
    """Sole owner of per-transaction state.

    Every method is synchronous, so a transition is never observed half-applied.
    Responses that no longer apply (duplicates, stale UIDs, anything after a terminal
    phase) are ignored and reported back as a non-applied Transition.

    Terminal rows stay readable after release until ``max_retained_terminal`` newer
    ones have been released; the oldest are then evicted.
    """

    max_trigger_attempts: int = 3
    max_retained_terminal: int = 1000
    clock: Callable[[], datetime] = _utc_now
    _rows: dict[str, _TransactionRow] = field(default_factory=dict)
    _released: deque[str] = field(default_factory=deque)

    def create(self, *, local_request_id: str, subject: Subject, deadline_at: datetime) -> TransactionSnapshot:
        existing = self._rows.get(local_request_id)
        if existing is not None:
            if existing.subject != subject:
                raise CallerMisuseError(
                    f"transaction {local_request_id} already exists for a different subject"
                )
            return self._snapshot(existing)

        now = self.clock()
        row = _TransactionRow(
            local_request_id=local_request_id,
            subject=subject,
            phase=TransactionPhase.PENDING,
            created_at=now,
            deadline_at=deadline_at,
            updated_at=now,
        )
        self._rows[local_request_id] = row
        return self._snapshot(row)

    def exists(self, local_request_id: str) -> bool:
        return local_request_id in self._rows

    def get(self, local_request_id: str) -> TransactionSnapshot:
        return self._snapshot(self._row(local_request_id))

    @property
    def tracked_count(self) -> int:
        return len(self._rows)

    def find_active_by_subject(self, subject: Subject) -> TransactionSnapshot | None:
        for row in self._rows.values():
            if row.subject == subject and not is_terminal(row.phase):
                return self._snapshot(row)
        return None

    def active_ids(self) -> list[str]:
        return [row.local_request_id for row in self._rows.values() if not is_terminal(row.phase)]

    def begin_trigger(self, local_request_id: str, *, subject: Subject | None = None) -> Transition:
        row = self._row(local_request_id)
        if subject is not None and subject != row.subject:
            raise CallerMisuseError(
                f"subject parameters of transaction {local_request_id} cannot change between attempts"
            )
        if row.phase not in (TransactionPhase.PENDING, TransactionPhase.FAILED_RETRYABLE):
            return self._ignored(row, f"trigger not allowed from {row.phase}")

        if row.attempt_count >= self.max_trigger_attempts:
            row.failure_reason = "attempts-exhausted"
            return self._move(row, TransactionPhase.FAILED_TERMINAL, detail="attempts-exhausted")

        row.attempt_count += 1
        return self._move(row, TransactionPhase.TRIGGERING, detail=f"attempt {row.attempt_count}")

    def apply_trigger_response(self, local_request_id: str, update: TransactionUpdate) -> Transition:
        row = self._row(local_request_id)
        if row.phase is not TransactionPhase.TRIGGERING:
            return self._ignored(row, f"trigger response while {row.phase}")
        seen_key = ("trigger", row.attempt_count, update.fingerprint())
        if seen_key in row.seen_updates:
            return self._ignored(row, "duplicate trigger response")

        outcome = update.outcome
        action = required_action(outcome)
        if action == "poll_again" and not update.remote_uid:
            # Nothing to poll; treated like a trigger that never got through.
            return self.record_trigger_transport_failure(
                local_request_id,
                error="in-progress trigger response carries no remote uid",
            )

        self._record(row, update, seen_key=seen_key, billing_uid=update.remote_uid)

        if action == "poll_again":
            row.remote_uid = update.remote_uid
            return self._move(row, TransactionPhase.POLLING)
        if action == "complete":
            row.remote_uid = update.remote_uid
            return self._move(row, TransactionPhase.SUCCEEDED)
        return self._fail(row, outcome)

    def apply_poll_response(
        self,
        local_request_id: str,
        update: TransactionUpdate,
        *,
        remote_uid: str,
    ) -> Transition:
        row = self._row(local_request_id)
        if row.phase is not TransactionPhase.POLLING:
            return self._ignored(row, f"poll response while {row.phase}")
        if row.remote_uid != remote_uid:
            return self._ignored(row, f"poll response for stale uid {remote_uid}")
        seen_key = ("poll", row.attempt_count, update.fingerprint())
        if seen_key in row.seen_updates:
            return self._ignored(row, "duplicate poll response")

        row.poll_count += 1
        self._record(row, update, seen_key=seen_key, billing_uid=remote_uid)
        outcome = update.outcome
        action = required_action(outcome)

        if action == "poll_again":
            return self._move(row, TransactionPhase.POLLING)
        if action == "complete":
            return self._move(row, TransactionPhase.SUCCEEDED)
        return self._fail(row, outcome)

    def record_trigger_transport_failure(self, local_request_id: str, *, error: str) -> Transition:
        row = self._row(local_request_id)
        if row.phase is not TransactionPhase.TRIGGERING:
            return self._ignored(row, f"transport failure while {row.phase}")
        row.last_error = error
        row.error_kind = "transient_transport"
        return self._move(row, TransactionPhase.FAILED_RETRYABLE, detail=error)

    def record_poll_transport_failure(self, local_request_id: str, *, error: str) -> Transition:
        row = self._row(local_request_id)
        if row.phase is not TransactionPhase.POLLING:
            return self._ignored(row, f"transport failure while {row.phase}")
        row.last_error = error
        row.error_kind = "transient_transport"
        row.updated_at = self.clock()
        return self._ignored(row, error)

    def expire(self, local_request_id: str) -> Transition:
        row = self._row(local_request_id)
        if is_terminal(row.phase):
            return self._ignored(row, f"already {row.phase}")
        row.failure_reason = "deadline-exceeded"
        row.error_kind = "deadline_exceeded"
        return self._move(row, TransactionPhase.EXPIRED, detail="deadline-exceeded")

    def expire_if_due(self, local_request_id: str, *, now: datetime | None = None) -> Transition | None:
        row = self._row(local_request_id)
        current = now or self.clock()
        if is_terminal(row.phase) or current < row.deadline_at:
            return None
        return self.expire(local_request_id)

    def cancel(self, local_request_id: str) -> Transition:
        row = self._row(local_request_id)
        if is_terminal(row.phase):
            return self._ignored(row, f"already {row.phase}")
        row.failure_reason = "cancelled"
        return self._move(row, TransactionPhase.CANCELLED, detail="cancelled")

    def claim_artifact_fetch(self, local_request_id: str) -> bool:
        row = self._row(local_request_id)
        if row.phase is not TransactionPhase.SUCCEEDED:
            return False
        if row.artifact_fetch_claimed or row.artifacts_fetched:
            return False
        row.artifact_fetch_claimed = True
        return True

    def mark_artifacts_fetched(self, local_request_id: str) -> None:
        row = self._row(local_request_id)
        if not row.artifact_fetch_claimed:
            raise DomainInvariantError("artifact fetch was never claimed")
        row.artifacts_fetched = True
        row.updated_at = self.clock()

    def add_warning(
        self,
        local_request_id: str,
        warning: str,
        *,
        error_kind: ErrorKind | None = None,
    ) -> None:
        row = self._row(local_request_id)
        if error_kind is not None:
            if not is_canonical_error_kind(error_kind):
                raise DomainValidationError(f"unknown error kind: {error_kind}")
            row.error_kind = error_kind
        row.warnings.append(warning)
        row.updated_at = self.clock()

    def release(self, local_request_id: str) -> list[str]:
        """Mark a finished transaction as evictable.

        Returns the ids evicted because more than ``max_retained_terminal`` released
        transactions are now held.
        """
        row = self._row(local_request_id)
        if not is_terminal(row.phase):
            raise DomainInvariantError(f"transaction {local_request_id} is still {row.phase.value}")
        if row.released:
            return []
        row.released = True
        # Terminal rows ignore every response on phase alone.
        row.seen_updates.clear()
        self._released.append(local_request_id)

        evicted: list[str] = []
        while len(self._released) > self.max_retained_terminal:
            oldest = self._released.popleft()
            self._rows.pop(oldest, None)
            evicted.append(oldest)
        return evicted

    def _fail(self, row: _TransactionRow, outcome: OutcomeClass) -> Transition:
        kind = error_kind_for_outcome(outcome) or "remote_terminal_failure"
        row.error_kind = kind
        if classify_error(kind) == "terminal":
            row.failure_reason = failure_reason_for_outcome(outcome)
            return self._move(row, TransactionPhase.FAILED_TERMINAL, detail=row.failure_reason)
        return self._retry_or_exhaust(row)

    def _retry_or_exhaust(self, row: _TransactionRow) -> Transition:
        if row.attempt_count >= self.max_trigger_attempts:
            row.failure_reason = "attempts-exhausted"
            return self._move(row, TransactionPhase.FAILED_TERMINAL, detail="attempts-exhausted")
        # The remote side makes no progress guarantee for an abandoned uid.
        row.remote_uid = None
        return self._move(row, TransactionPhase.PENDING, detail="retrigger")

    def _record(
        self,
        row: _TransactionRow,
        update: TransactionUpdate,
        *,
        seen_key: tuple[object, ...],
        billing_uid: str | None,
    ) -> None:
        row.seen_updates.add(seen_key)
        row.last_update = update
        row.outcome = update.outcome
        row.last_error = None
        row.error_kind = None
        if update.cost_credits is not None:
            # Every trigger is billed on its own; a fresh uid never overwrites an older charge.
            key = billing_uid or f"attempt-{row.attempt_count}"
            row.billed_credits[key] = update.cost_credits

    def _move(self, row: _TransactionRow, to_phase: TransactionPhase, *, detail: str = "") -> Transition:
        previous = row.phase
        if not can_transition(previous, to_phase):
            raise DomainInvariantError(f"invalid transition {previous} -> {to_phase}")
        row.phase = to_phase
        row.updated_at = self.clock()
        entered_terminal = is_terminal(to_phase)
        if previous is not to_phase:
            logger.info(
                "transaction transition",
                extra={
                    "local_request_id": row.local_request_id,
                    "remote_uid": row.remote_uid,
                    "phase": to_phase.value,
                    "previous_phase": previous.value,
                    "detail": detail,
                },
            )
        return Transition(
            local_request_id=row.local_request_id,
            previous=previous,
            current=to_phase,
            applied=True,
            entered_terminal=entered_terminal,
            detail=detail,
        )

    def _ignored(self, row: _TransactionRow, detail: str) -> Transition:
        return Transition(
            local_request_id=row.local_request_id,
            previous=row.phase,
            current=row.phase,
            applied=False,
            detail=detail,
        )

    def _row(self, local_request_id: str) -> _TransactionRow:
        row = self._rows.get(local_request_id)
        if row is None:
            raise UnknownTransactionError(f"unknown transaction: {local_request_id}")
        return row

    def _snapshot(self, row: _TransactionRow) -> TransactionSnapshot:
        return TransactionSnapshot(
            local_request_id=row.local_request_id,
            subject=row.subject,
            phase=row.phase,
            remote_uid=row.remote_uid,
            attempt_count=row.attempt_count,
            poll_count=row.poll_count,
            created_at=row.created_at,
            deadline_at=row.deadline_at,
            updated_at=row.updated_at,
            artifacts_fetched=row.artifacts_fetched,
            last_update=row.last_update,
            outcome=row.outcome,
            failure_reason=row.failure_reason,
            error_kind=row.error_kind,
            last_error=row.last_error,
            warnings=tuple(row.warnings),
            billed_credits=MappingProxyType(dict(row.billed_credits)),
        )
