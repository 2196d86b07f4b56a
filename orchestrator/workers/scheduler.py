from __future__ import annotations

from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any
import asyncio
import logging
import random

from orchestrator.domain.contracts import RemoteGateway
from orchestrator.domain.errors import TransientTransportError, UnknownRiskIndicatorError
from orchestrator.domain.lifecycle import is_terminal
from orchestrator.domain.models import (
    RiskVerdict,
    TerminalRecord,
    TransactionPhase,
    TransactionUpdate,
)
from orchestrator.domain.outcomes import requires_escalation
from orchestrator.domain.risk import aggregate
from orchestrator.domain.state_machine import TransactionStateMachine, Transition
from orchestrator.lib.artifacts import ArtifactFetcher
from orchestrator.lib.budget import DispatchBudget
from orchestrator.lib.env import env_int, env_non_negative_int
from orchestrator.services.audit import BufferedAuditDispatcher
from orchestrator.services.notifications import TerminalNotifier

logger = logging.getLogger("orchestrator.scheduler")


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


@dataclass(frozen=True)
class SchedulerSettings:
    poll_interval_seconds: int = 30
    retrigger_jitter_min_ms: int = 1000
    retrigger_jitter_max_ms: int = 5000
    max_trigger_attempts: int = 3
    max_concurrency: int = 8
    min_dispatch_interval_ms: int = 0
    transport_retry_delay_seconds: int = 30
    default_deadline_seconds: int = 900
    max_retained_terminal: int = 1000


def scheduler_settings_from_env() -> SchedulerSettings:
    return SchedulerSettings(
        poll_interval_seconds=env_int("SCHEDULER_POLL_INTERVAL_SECONDS", 30),
        retrigger_jitter_min_ms=env_int("SCHEDULER_RETRIGGER_JITTER_MIN_MS", 1000),
        retrigger_jitter_max_ms=env_int("SCHEDULER_RETRIGGER_JITTER_MAX_MS", 5000),
        max_trigger_attempts=env_int("SCHEDULER_MAX_TRIGGER_ATTEMPTS", 3),
        max_concurrency=env_int("SCHEDULER_MAX_CONCURRENCY", 8),
        min_dispatch_interval_ms=env_non_negative_int("SCHEDULER_MIN_DISPATCH_INTERVAL_MS", 0),
        transport_retry_delay_seconds=env_int("SCHEDULER_TRANSPORT_RETRY_DELAY_SECONDS", 30),
        default_deadline_seconds=env_int("SCHEDULER_DEFAULT_DEADLINE_SECONDS", 900),
        max_retained_terminal=env_int("SCHEDULER_MAX_RETAINED_TERMINAL", 1000),
    )


@dataclass
class SchedulerMetrics:
    ticks_total: int = 0
    sweeps_total: int = 0
    triggers_total: int = 0
    polls_total: int = 0
    dropped_firings_total: int = 0
    transport_failures_total: int = 0
    expired_total: int = 0
    completed_total: int = 0
    errors_total: int = 0


class PollScheduler:
    """Decides when each live transaction makes its next network call.

    Timing lives here as a due-time table keyed by local request id; phase lives in
    the state machine. No transaction keeps a suspended call stack between polls:
    every firing reads a snapshot, performs one operation and re-enrolls.
    """

    def __init__(
        self,
        *,
        machine: TransactionStateMachine,
        gateway: RemoteGateway,
        fetcher: ArtifactFetcher,
        audit: BufferedAuditDispatcher,
        notifier: TerminalNotifier,
        budget: DispatchBudget,
        settings: SchedulerSettings,
        clock: Callable[[], datetime] = _utc_now,
        rng: random.Random | None = None,
    ) -> None:
        self.machine = machine
        self.gateway = gateway
        self.fetcher = fetcher
        self.audit = audit
        self.notifier = notifier
        self.budget = budget
        self.settings = settings
        self.clock = clock
        self.metrics = SchedulerMetrics()
        self._rng = rng or random.Random()
        self._due: dict[str, datetime] = {}
        self._in_flight_uids: set[str] = set()
        self._in_flight_triggers: set[str] = set()
        self._tasks: set[asyncio.Task[None]] = set()

    def enroll(self, local_request_id: str, *, delay_seconds: float = 0.0) -> datetime:
        due_at = self.clock() + timedelta(seconds=delay_seconds)
        self._due[local_request_id] = due_at
        return due_at

    def forget(self, local_request_id: str) -> None:
        self._due.pop(local_request_id, None)

    def next_due_at(self, local_request_id: str) -> datetime | None:
        return self._due.get(local_request_id)

    def is_in_flight(self, local_request_id: str) -> bool:
        if local_request_id in self._in_flight_triggers:
            return True
        snapshot = self.machine.get(local_request_id)
        return snapshot.remote_uid is not None and snapshot.remote_uid in self._in_flight_uids

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight_uids) + len(self._in_flight_triggers)

    def retrigger_delay_seconds(self) -> float:
        low = min(self.settings.retrigger_jitter_min_ms, self.settings.retrigger_jitter_max_ms)
        high = max(self.settings.retrigger_jitter_min_ms, self.settings.retrigger_jitter_max_ms)
        return self._rng.uniform(low, high) / 1000

    async def tick(self) -> int:
        self.metrics.ticks_total += 1
        now = self.clock()
        due_ids = [local_request_id for local_request_id, due_at in self._due.items() if due_at <= now]
        dispatched = 0
        for local_request_id in due_ids:
            if await self._expire_if_due(local_request_id, now=now):
                continue
            if self.fire(local_request_id):
                dispatched += 1
        return dispatched

    async def sweep(self, *, now: datetime | None = None) -> int:
        """Expire every live transaction past its deadline, timers or not."""
        self.metrics.sweeps_total += 1
        current = now or self.clock()
        expired = 0
        for local_request_id in self.machine.active_ids():
            if await self._expire_if_due(local_request_id, now=current):
                expired += 1
        return expired

    def fire(self, local_request_id: str) -> bool:
        """Start the next operation for one transaction.

        Returns False when the firing is dropped: the transaction is terminal, or an
        operation for it (a poll of the same uid, or a trigger) is already in flight.
        Dropped firings are not queued.
        """
        snapshot = self.machine.get(local_request_id)
        if is_terminal(snapshot.phase):
            self.forget(local_request_id)
            return False

        if snapshot.phase is TransactionPhase.POLLING and snapshot.remote_uid is not None:
            remote_uid = snapshot.remote_uid
            if remote_uid in self._in_flight_uids:
                return self._drop(local_request_id, remote_uid=remote_uid)
            self._in_flight_uids.add(remote_uid)
            self.forget(local_request_id)
            self._spawn(self._run_poll(local_request_id, endpoint=snapshot.subject.endpoint, remote_uid=remote_uid))
            return True

        if snapshot.phase in (TransactionPhase.PENDING, TransactionPhase.FAILED_RETRYABLE):
            if local_request_id in self._in_flight_triggers:
                return self._drop(local_request_id, remote_uid=None)
            self._in_flight_triggers.add(local_request_id)
            self.forget(local_request_id)
            self._spawn(self._run_trigger(local_request_id))
            return True

        return self._drop(local_request_id, remote_uid=snapshot.remote_uid)

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self._tasks.clear()

    async def finish(self, local_request_id: str, update: TransactionUpdate | None = None) -> TerminalRecord:
        """Run terminal side effects once and publish the terminal record."""
        self.forget(local_request_id)
        snapshot = self.machine.get(local_request_id)
        verdict: RiskVerdict | None = None

        if snapshot.phase is TransactionPhase.SUCCEEDED and update is not None:
            verdict = self._verdict(local_request_id, update)
            await self.fetcher.fetch_once(local_request_id=local_request_id, update=update)
            snapshot = self.machine.get(local_request_id)
        elif snapshot.outcome is not None and requires_escalation(snapshot.outcome):
            logger.error(
                "remote system error, manual escalation required",
                extra={
                    "local_request_id": local_request_id,
                    "remote_uid": snapshot.remote_uid,
                    "phase": snapshot.phase.value,
                    "code": snapshot.last_update.code if snapshot.last_update else None,
                },
            )

        self.metrics.completed_total += 1
        logger.info(
            "transaction finished",
            extra={
                "local_request_id": local_request_id,
                "remote_uid": snapshot.remote_uid,
                "phase": snapshot.phase.value,
                "failure_reason": snapshot.failure_reason,
                "verdict": verdict.value if verdict else None,
            },
        )
        record = TerminalRecord(
            snapshot=snapshot,
            update=update or snapshot.last_update,
            verdict=verdict,
        )
        await self.notifier.publish(record)
        for evicted in self.machine.release(local_request_id):
            self.notifier.forget(evicted)
        return record

    async def _run_trigger(self, local_request_id: str) -> None:
        try:
            exhausted = False
            async with self.budget.slot():
                if not self.machine.exists(local_request_id):
                    return
                if await self._expire_if_due(local_request_id):
                    return
                snapshot = self.machine.get(local_request_id)
                started = self.machine.begin_trigger(local_request_id, subject=snapshot.subject)
                if not started.applied:
                    return
                exhausted = started.entered_terminal
                if not exhausted:
                    self.metrics.triggers_total += 1
                    try:
                        update = await self.gateway.trigger(
                            endpoint=snapshot.subject.endpoint,
                            subject_params=snapshot.subject.params,
                        )
                    except TransientTransportError as exc:
                        self.metrics.transport_failures_total += 1
                        if not self.machine.exists(local_request_id):
                            return
                        failed = self.machine.record_trigger_transport_failure(local_request_id, error=str(exc))
                        if failed.applied:
                            self.enroll(local_request_id, delay_seconds=self.settings.transport_retry_delay_seconds)
                        return

            if exhausted:
                await self.finish(local_request_id)
                return
            self.audit.record(local_request_id=local_request_id, update=update)
            if not self.machine.exists(local_request_id):
                # Evicted while the call was in flight.
                return
            transition = self.machine.apply_trigger_response(local_request_id, update)
            await self._after_response(transition, update)
        finally:
            self._in_flight_triggers.discard(local_request_id)

    async def _run_poll(self, local_request_id: str, *, endpoint: str, remote_uid: str) -> None:
        try:
            async with self.budget.slot():
                if not self.machine.exists(local_request_id):
                    return
                if await self._expire_if_due(local_request_id):
                    return
                if self.machine.get(local_request_id).phase is not TransactionPhase.POLLING:
                    return
                self.metrics.polls_total += 1
                try:
                    update = await self.gateway.poll(endpoint=endpoint, remote_uid=remote_uid)
                except TransientTransportError as exc:
                    self.metrics.transport_failures_total += 1
                    if not self.machine.exists(local_request_id):
                        return
                    self.machine.record_poll_transport_failure(local_request_id, error=str(exc))
                    if self.machine.get(local_request_id).phase is TransactionPhase.POLLING:
                        self.enroll(local_request_id, delay_seconds=self.settings.transport_retry_delay_seconds)
                    return

            self.audit.record(local_request_id=local_request_id, update=update)
            if not self.machine.exists(local_request_id):
                # Evicted while the call was in flight.
                return
            transition = self.machine.apply_poll_response(local_request_id, update, remote_uid=remote_uid)
            await self._after_response(transition, update)
        finally:
            self._in_flight_uids.discard(remote_uid)

    async def _after_response(self, transition: Transition, update: TransactionUpdate) -> None:
        local_request_id = transition.local_request_id
        if not transition.applied:
            # Duplicate or stale response; a live poll loop must keep its timer.
            current = self.machine.get(local_request_id)
            if current.phase is TransactionPhase.POLLING and local_request_id not in self._due:
                self.enroll(local_request_id, delay_seconds=self.settings.poll_interval_seconds)
            logger.info(
                "transaction update ignored",
                extra={
                    "local_request_id": local_request_id,
                    "remote_uid": update.remote_uid,
                    "phase": current.phase.value,
                    "code": update.code,
                    "detail": transition.detail,
                },
            )
            return

        if transition.entered_terminal:
            await self.finish(local_request_id, update)
        elif transition.current is TransactionPhase.POLLING:
            self.enroll(local_request_id, delay_seconds=self.settings.poll_interval_seconds)
        elif transition.current is TransactionPhase.PENDING:
            self.enroll(local_request_id, delay_seconds=self.retrigger_delay_seconds())
        elif transition.current is TransactionPhase.FAILED_RETRYABLE:
            self.enroll(local_request_id, delay_seconds=self.settings.transport_retry_delay_seconds)

    async def _expire_if_due(self, local_request_id: str, *, now: datetime | None = None) -> bool:
        transition = self.machine.expire_if_due(local_request_id, now=now or self.clock())
        if transition is None or not transition.applied:
            return False
        self.metrics.expired_total += 1
        await self.finish(local_request_id)
        return True

    def _verdict(self, local_request_id: str, update: TransactionUpdate) -> RiskVerdict | None:
        try:
            return aggregate(update.risk_indicators)
        except UnknownRiskIndicatorError as exc:
            self.machine.add_warning(local_request_id, f"risk_indicator_invalid: {exc}")
            logger.error(
                "risk indicators could not be classified",
                extra={"local_request_id": local_request_id, "remote_uid": update.remote_uid, "error": str(exc)},
            )
            return None

    def _drop(self, local_request_id: str, *, remote_uid: str | None) -> bool:
        self.metrics.dropped_firings_total += 1
        logger.debug(
            "firing dropped, operation already in flight",
            extra={"local_request_id": local_request_id, "remote_uid": remote_uid},
        )
        return False

    def _spawn(self, coroutine: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coroutine)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.metrics.errors_total += 1
            logger.error("scheduled operation failed", exc_info=exc)
