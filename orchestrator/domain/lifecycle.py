from __future__ import annotations

from orchestrator.domain.models import TransactionPhase

TERMINAL_PHASES: frozenset[TransactionPhase] = frozenset(
    {
        TransactionPhase.SUCCEEDED,
        TransactionPhase.FAILED_TERMINAL,
        TransactionPhase.EXPIRED,
        TransactionPhase.CANCELLED,
    }
)

# Phases in which the remote side holds a live UID for the transaction.
UID_BEARING_PHASES: frozenset[TransactionPhase] = frozenset(
    {
        TransactionPhase.POLLING,
        TransactionPhase.SUCCEEDED,
    }
)

_ALWAYS_ALLOWED_FROM_ACTIVE = {TransactionPhase.EXPIRED, TransactionPhase.CANCELLED}

ALLOWED_TRANSITIONS: dict[TransactionPhase, set[TransactionPhase]] = {
    TransactionPhase.PENDING: {TransactionPhase.TRIGGERING, TransactionPhase.FAILED_TERMINAL}
    | _ALWAYS_ALLOWED_FROM_ACTIVE,
    TransactionPhase.TRIGGERING: {
        TransactionPhase.POLLING,
        TransactionPhase.PENDING,
        TransactionPhase.SUCCEEDED,
        TransactionPhase.FAILED_TERMINAL,
        TransactionPhase.FAILED_RETRYABLE,
    }
    | _ALWAYS_ALLOWED_FROM_ACTIVE,
    TransactionPhase.FAILED_RETRYABLE: {TransactionPhase.TRIGGERING, TransactionPhase.FAILED_TERMINAL}
    | _ALWAYS_ALLOWED_FROM_ACTIVE,
    TransactionPhase.POLLING: {
        TransactionPhase.POLLING,
        TransactionPhase.PENDING,
        TransactionPhase.SUCCEEDED,
        TransactionPhase.FAILED_TERMINAL,
    }
    | _ALWAYS_ALLOWED_FROM_ACTIVE,
    TransactionPhase.SUCCEEDED: set(),
    TransactionPhase.FAILED_TERMINAL: set(),
    TransactionPhase.EXPIRED: set(),
    TransactionPhase.CANCELLED: set(),
}


def is_terminal(phase: TransactionPhase) -> bool:
    return phase in TERMINAL_PHASES


def can_transition(from_phase: TransactionPhase, to_phase: TransactionPhase) -> bool:
    return to_phase in ALLOWED_TRANSITIONS[from_phase]
