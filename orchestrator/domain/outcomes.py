from __future__ import annotations

from enum import StrEnum
from typing import Literal


class OutcomeClass(StrEnum):
    """Canonical meaning of a remote status code.

    The remote protocol reports each status twice, once PascalCase for humans and once
    snake_case for machines. Both are projections of this enum and logic never branches
    on either string.
    """

    SUCCESS = "success"
    SUCCESS_WITH_REMARKS = "success_with_remarks"
    IN_PROGRESS = "in_progress"
    ENTITY_NOT_FOUND = "entity_not_found"
    RETRYABLE_TIMEOUT = "retryable_timeout"
    RETRYABLE_ATTEMPTS_EXCEEDED = "retryable_attempts_exceeded"
    SYSTEM_ERROR = "system_error"
    UNKNOWN = "unknown"

    @property
    def snake_name(self) -> str:
        return self.value

    @property
    def pascal_name(self) -> str:
        return "".join(part.capitalize() for part in self.value.split("_"))


RequiredAction = Literal["poll_again", "retrigger", "complete", "fail"]

CODE_TO_OUTCOME: dict[int, OutcomeClass] = {
    1: OutcomeClass.SUCCESS,
    2: OutcomeClass.SUCCESS_WITH_REMARKS,
    5: OutcomeClass.ENTITY_NOT_FOUND,
    9: OutcomeClass.RETRYABLE_TIMEOUT,
    10: OutcomeClass.RETRYABLE_ATTEMPTS_EXCEEDED,
    12: OutcomeClass.IN_PROGRESS,
    255: OutcomeClass.SYSTEM_ERROR,
}

SUCCESS_OUTCOMES: frozenset[OutcomeClass] = frozenset(
    {OutcomeClass.SUCCESS, OutcomeClass.SUCCESS_WITH_REMARKS}
)
RETRYABLE_OUTCOMES: frozenset[OutcomeClass] = frozenset(
    {OutcomeClass.RETRYABLE_TIMEOUT, OutcomeClass.RETRYABLE_ATTEMPTS_EXCEEDED}
)
# Terminal failures that need a human to look at the remote side.
ESCALATION_OUTCOMES: frozenset[OutcomeClass] = frozenset({OutcomeClass.SYSTEM_ERROR})


def classify(code: int) -> OutcomeClass:
    return CODE_TO_OUTCOME.get(code, OutcomeClass.UNKNOWN)


def required_action(outcome: OutcomeClass) -> RequiredAction:
    if outcome is OutcomeClass.IN_PROGRESS:
        return "poll_again"
    if outcome in RETRYABLE_OUTCOMES:
        return "retrigger"
    if outcome in SUCCESS_OUTCOMES:
        return "complete"
    return "fail"


def is_terminal_success(outcome: OutcomeClass) -> bool:
    return outcome in SUCCESS_OUTCOMES


def requires_escalation(outcome: OutcomeClass) -> bool:
    return outcome in ESCALATION_OUTCOMES
