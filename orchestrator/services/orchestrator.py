from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import timedelta
import logging

from orchestrator.domain.errors import CallerMisuseError
from orchestrator.domain.ids import new_local_request_id
from orchestrator.domain.lifecycle import is_terminal
from orchestrator.domain.models import (
    Subject,
    TerminalRecord,
    TransactionHandle,
    TransactionPhase,
    TransactionSnapshot,
)
from orchestrator.domain.state_machine import TransactionStateMachine
from orchestrator.services.notifications import TerminalListener, TerminalNotifier
from orchestrator.workers.scheduler import PollScheduler

logger = logging.getLogger("orchestrator.api")


@dataclass
class TransactionOrchestrator:
    """Caller-facing entry point: submit, observe, cancel, subscribe."""

    machine: TransactionStateMachine
    scheduler: PollScheduler
    notifier: TerminalNotifier

    async def submit(
        self,
        subject: Subject,
        *,
        deadline: timedelta | None = None,
        local_request_id: str | None = None,
    ) -> TransactionHandle:
        if local_request_id is None:
            active = self.machine.find_active_by_subject(subject)
            if active is not None:
                return active.handle
            local_request_id = new_local_request_id()
        elif self.machine.exists(local_request_id):
            existing = self.machine.get(local_request_id)
            if existing.subject != subject:
                raise CallerMisuseError(
                    f"transaction {local_request_id} already exists for a different subject"
                )
            return existing.handle

        window = deadline if deadline is not None else timedelta(
            seconds=self.scheduler.settings.default_deadline_seconds
        )
        if window <= timedelta(0):
            raise CallerMisuseError("deadline must be in the future")

        snapshot = self.machine.create(
            local_request_id=local_request_id,
            subject=subject,
            deadline_at=self.machine.clock() + window,
        )
        logger.info(
            "transaction submitted",
            extra={
                "local_request_id": local_request_id,
                "phase": snapshot.phase.value,
                "endpoint": subject.endpoint,
                "deadline_at": snapshot.deadline_at.isoformat(),
            },
        )
        self.scheduler.enroll(local_request_id)
        self.scheduler.fire(local_request_id)
        return snapshot.handle

    def status(self, handle: TransactionHandle | str) -> TransactionSnapshot:
        return self.machine.get(_local_id(handle))

    async def cancel(self, handle: TransactionHandle | str) -> TransactionSnapshot:
        local_request_id = _local_id(handle)
        transition = self.machine.cancel(local_request_id)
        if transition.applied:
            # Cooperative: an in-flight call completes and its result is discarded.
            await self.scheduler.finish(local_request_id)
        return self.machine.get(local_request_id)

    def poll_now(self, handle: TransactionHandle | str) -> bool:
        local_request_id = _local_id(handle)
        snapshot = self.machine.get(local_request_id)
        if is_terminal(snapshot.phase):
            raise CallerMisuseError(f"transaction {local_request_id} is {snapshot.phase.value}; polling is closed")
        if snapshot.phase is not TransactionPhase.POLLING:
            raise CallerMisuseError(f"transaction {local_request_id} has no remote uid to poll yet")
        return self.scheduler.fire(local_request_id)

    def subscribe(self, listener: TerminalListener) -> Callable[[], None]:
        return self.notifier.subscribe(listener)

    async def wait_for_terminal(self, handle: TransactionHandle | str) -> TerminalRecord:
        local_request_id = _local_id(handle)
        # Raises for unknown ids instead of waiting forever.
        self.machine.get(local_request_id)
        return await self.notifier.wait_for(local_request_id)


def _local_id(handle: TransactionHandle | str) -> str:
    if isinstance(handle, TransactionHandle):
        return handle.local_request_id
    return handle
