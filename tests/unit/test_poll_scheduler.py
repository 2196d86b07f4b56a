import asyncio
import logging
from datetime import timedelta

import pytest

from orchestrator.clients.stub import StubRemoteGateway
from orchestrator.domain.errors import TransientTransportError, UnknownTransactionError
from orchestrator.domain.models import RiskVerdict, Subject, TransactionPhase
from orchestrator.workers.scheduler import SchedulerSettings
from tests.unit.harness import build_harness, update

SUBJECT = Subject("ondemand/cpf", {"cpf": "12345678900"})
PDF_URL = "https://files.example/u1.pdf"


async def _advance(container, clock, seconds: float) -> int:
    clock.advance(seconds)
    dispatched = await container.scheduler.tick()
    await container.scheduler.wait_idle()
    return dispatched


@pytest.mark.unit
def test_trigger_poll_success_flow_with_artifacts_and_verdict() -> None:
    success = update(
        1,
        "u1",
        elapsed_ms=1800,
        has_pdf=True,
        pdf_url=PDF_URL,
        indicators=[("a", "green"), ("b", "red")],
    )
    gateway = StubRemoteGateway(
        trigger_responses=[update(12, "u1", elapsed_ms=10)],
        poll_responses={"u1": [update(12, "u1", elapsed_ms=900), success]},
        artifacts={PDF_URL: b"%PDF"},
    )

    async def _run():
        container, sink, archive, clock = build_harness(gateway)
        handle = await container.orchestrator.submit(SUBJECT)
        await container.scheduler.wait_idle()
        assert container.orchestrator.status(handle).phase is TransactionPhase.POLLING

        await _advance(container, clock, 30)
        assert container.orchestrator.status(handle).phase is TransactionPhase.POLLING
        await _advance(container, clock, 30)

        record = await container.orchestrator.wait_for_terminal(handle)

        # Redelivering the final update changes nothing and fetches nothing.
        transition = container.machine.apply_poll_response(handle.local_request_id, success, remote_uid="u1")
        repeat = await container.fetcher.fetch_once(local_request_id=handle.local_request_id, update=success)
        await container.audit.flush()
        return container, sink, archive, record, transition, repeat

    container, sink, archive, record, transition, repeat = asyncio.run(_run())

    assert record.snapshot.phase is TransactionPhase.SUCCEEDED
    assert record.snapshot.remote_uid == "u1"
    assert record.snapshot.artifacts_fetched
    assert record.verdict is RiskVerdict.RED
    assert not transition.applied
    assert repeat.status == "skipped"
    assert gateway.artifact_calls == [PDF_URL]
    assert len(archive.writes) == 1
    assert [item.code for _, item in sink.records] == [12, 12, 1]
    assert len(gateway.trigger_calls) == 1
    assert len(gateway.poll_calls) == 2


@pytest.mark.unit
def test_retryable_poll_retriggers_with_same_params_and_new_uid() -> None:
    gateway = StubRemoteGateway(
        trigger_responses=[update(12, "u1"), update(12, "u2")],
        poll_responses={"u1": [update(9, "u1")], "u2": [update(1, "u2")]},
    )
    settings = SchedulerSettings(retrigger_jitter_min_ms=1000, retrigger_jitter_max_ms=5000)

    async def _run():
        container, _, _, clock = build_harness(gateway, settings=settings)
        handle = await container.orchestrator.submit(SUBJECT)
        await container.scheduler.wait_idle()
        await _advance(container, clock, 30)

        waiting = container.orchestrator.status(handle)
        due_at = container.scheduler.next_due_at(handle.local_request_id)
        assert due_at is not None
        jitter = (due_at - clock()).total_seconds()

        await _advance(container, clock, 5)
        retriggered = container.orchestrator.status(handle)
        await _advance(container, clock, 30)
        return waiting, jitter, retriggered, container.orchestrator.status(handle)

    waiting, jitter, retriggered, final = asyncio.run(_run())

    assert waiting.phase is TransactionPhase.PENDING
    assert waiting.remote_uid is None
    assert 1.0 <= jitter <= 5.0
    assert retriggered.phase is TransactionPhase.POLLING
    assert retriggered.remote_uid == "u2"
    assert retriggered.attempt_count == 2
    assert final.phase is TransactionPhase.SUCCEEDED
    assert gateway.trigger_calls == [
        ("ondemand/cpf", {"cpf": "12345678900"}),
        ("ondemand/cpf", {"cpf": "12345678900"}),
    ]
    assert gateway.poll_calls == [("ondemand/cpf", "u1"), ("ondemand/cpf", "u2")]


@pytest.mark.unit
def test_retryable_trigger_responses_exhaust_attempts() -> None:
    gateway = StubRemoteGateway(trigger_responses=[update(9, None), update(10, None)])
    settings = SchedulerSettings(max_trigger_attempts=2)

    async def _run():
        container, _, _, clock = build_harness(gateway, settings=settings)
        handle = await container.orchestrator.submit(SUBJECT)
        await container.scheduler.wait_idle()
        await _advance(container, clock, 5)
        return await container.orchestrator.wait_for_terminal(handle)

    record = asyncio.run(_run())

    assert record.snapshot.phase is TransactionPhase.FAILED_TERMINAL
    assert record.snapshot.failure_reason == "attempts-exhausted"
    assert record.snapshot.attempt_count == 2
    assert record.verdict is None
    assert len(gateway.trigger_calls) == 2


@pytest.mark.unit
def test_concurrent_firings_share_one_poll() -> None:
    gateway = StubRemoteGateway(trigger_responses=[update(12, "u1")])

    async def _run():
        container, _, _, _ = build_harness(gateway)
        gateway.poll_gate = asyncio.Event()
        handle = await container.orchestrator.submit(SUBJECT)
        await container.scheduler.wait_idle()

        first = container.scheduler.fire(handle.local_request_id)
        second = container.scheduler.fire(handle.local_request_id)
        third = container.orchestrator.poll_now(handle)
        await asyncio.sleep(0)
        in_flight = container.scheduler.is_in_flight(handle.local_request_id)
        gateway.poll_gate.set()
        await container.scheduler.wait_idle()
        return container, first, second, third, in_flight

    container, first, second, third, in_flight = asyncio.run(_run())

    assert (first, second, third) == (True, False, False)
    assert in_flight
    assert len(gateway.poll_calls) == 1
    assert container.scheduler.metrics.dropped_firings_total == 2
    assert container.scheduler.in_flight_count == 0


@pytest.mark.unit
def test_sweep_expires_transaction_without_timer() -> None:
    gateway = StubRemoteGateway(trigger_responses=[update(12, "u1")])

    async def _run():
        container, _, _, clock = build_harness(gateway)
        handle = await container.orchestrator.submit(SUBJECT, deadline=timedelta(seconds=60))
        await container.scheduler.wait_idle()
        # Timer lost: only the sweep can still notice the deadline.
        container.scheduler.forget(handle.local_request_id)

        clock.advance(59)
        early = await container.scheduler.sweep()
        clock.advance(2)
        expired = await container.scheduler.sweep()
        record = await container.orchestrator.wait_for_terminal(handle)
        return container, early, expired, record

    container, early, expired, record = asyncio.run(_run())

    assert (early, expired) == (0, 1)
    assert record.snapshot.phase is TransactionPhase.EXPIRED
    assert record.snapshot.failure_reason == "deadline-exceeded"
    assert gateway.poll_calls == []
    assert container.scheduler.metrics.expired_total == 1


@pytest.mark.unit
def test_due_transaction_past_deadline_expires_instead_of_polling() -> None:
    gateway = StubRemoteGateway(trigger_responses=[update(12, "u1")])

    async def _run():
        container, _, _, clock = build_harness(gateway)
        handle = await container.orchestrator.submit(SUBJECT, deadline=timedelta(seconds=20))
        await container.scheduler.wait_idle()
        dispatched = await _advance(container, clock, 30)
        return dispatched, container.orchestrator.status(handle)

    dispatched, snapshot = asyncio.run(_run())

    assert dispatched == 0
    assert snapshot.phase is TransactionPhase.EXPIRED
    assert gateway.poll_calls == []


@pytest.mark.unit
def test_cancel_discards_in_flight_poll_result() -> None:
    gateway = StubRemoteGateway(trigger_responses=[update(12, "u1")])

    async def _run():
        container, sink, _, clock = build_harness(gateway)
        gateway.poll_gate = asyncio.Event()
        handle = await container.orchestrator.submit(SUBJECT)
        await container.scheduler.wait_idle()
        container.scheduler.fire(handle.local_request_id)
        await asyncio.sleep(0)

        cancelled = await container.orchestrator.cancel(handle)
        gateway.poll_gate.set()
        await container.scheduler.wait_idle()
        after = await _advance(container, clock, 30)
        await container.audit.flush()
        return cancelled, container.orchestrator.status(handle), after, sink

    cancelled, final, after, sink = asyncio.run(_run())

    assert cancelled.phase is TransactionPhase.CANCELLED
    assert final.phase is TransactionPhase.CANCELLED
    assert final.failure_reason == "cancelled"
    assert after == 0
    assert len(gateway.poll_calls) == 1
    # The discarded response is still audited.
    assert [item.code for _, item in sink.records] == [12, 1]


@pytest.mark.unit
def test_trigger_transport_failure_is_retried_later() -> None:
    gateway = StubRemoteGateway(
        trigger_responses=[TransientTransportError("connect timeout", attempts=4), update(12, "u1")],
    )

    async def _run():
        container, _, _, clock = build_harness(gateway)
        handle = await container.orchestrator.submit(SUBJECT)
        await container.scheduler.wait_idle()
        failed = container.orchestrator.status(handle)
        await _advance(container, clock, 30)
        return container, failed, container.orchestrator.status(handle)

    container, failed, recovered = asyncio.run(_run())

    assert failed.phase is TransactionPhase.FAILED_RETRYABLE
    assert failed.last_error == "connect timeout"
    assert recovered.phase is TransactionPhase.POLLING
    assert recovered.remote_uid == "u1"
    assert recovered.last_error is None
    assert container.scheduler.metrics.transport_failures_total == 1


@pytest.mark.unit
def test_poll_transport_failure_keeps_polling() -> None:
    gateway = StubRemoteGateway(
        trigger_responses=[update(12, "u1")],
        poll_responses={"u1": [TransientTransportError("read timeout"), update(1, "u1")]},
    )

    async def _run():
        container, _, _, clock = build_harness(gateway)
        handle = await container.orchestrator.submit(SUBJECT)
        await container.scheduler.wait_idle()
        await _advance(container, clock, 30)
        failed = container.orchestrator.status(handle)
        await _advance(container, clock, 30)
        return failed, container.orchestrator.status(handle)

    failed, final = asyncio.run(_run())

    assert failed.phase is TransactionPhase.POLLING
    assert failed.last_error == "read timeout"
    assert final.phase is TransactionPhase.SUCCEEDED


@pytest.mark.unit
def test_unknown_risk_indicator_keeps_success_without_verdict(caplog: pytest.LogCaptureFixture) -> None:
    gateway = StubRemoteGateway(
        trigger_responses=[update(1, "u1", indicators=[("a", "green"), ("b", "purple")])],
    )

    async def _run():
        container, _, _, _ = build_harness(gateway)
        handle = await container.orchestrator.submit(SUBJECT)
        await container.scheduler.wait_idle()
        return await container.orchestrator.wait_for_terminal(handle)

    with caplog.at_level(logging.ERROR, logger="orchestrator.scheduler"):
        record = asyncio.run(_run())

    assert record.snapshot.phase is TransactionPhase.SUCCEEDED
    assert record.verdict is None
    assert record.snapshot.warnings[0].startswith("risk_indicator_invalid")
    assert any(item.getMessage() == "risk indicators could not be classified" for item in caplog.records)


@pytest.mark.unit
def test_system_error_is_logged_for_escalation(caplog: pytest.LogCaptureFixture) -> None:
    gateway = StubRemoteGateway(trigger_responses=[update(255, "u1")])

    async def _run():
        container, _, _, _ = build_harness(gateway)
        handle = await container.orchestrator.submit(SUBJECT)
        await container.scheduler.wait_idle()
        return await container.orchestrator.wait_for_terminal(handle)

    with caplog.at_level(logging.ERROR, logger="orchestrator.scheduler"):
        record = asyncio.run(_run())

    assert record.snapshot.phase is TransactionPhase.FAILED_TERMINAL
    assert record.snapshot.failure_reason == "system-error"
    assert any("manual escalation" in item.getMessage() for item in caplog.records)


@pytest.mark.unit
def test_many_transactions_respect_concurrency_budget() -> None:
    gateway = StubRemoteGateway()
    settings = SchedulerSettings(max_concurrency=2)

    async def _run():
        container, _, _, clock = build_harness(gateway, settings=settings)
        handles = [
            await container.orchestrator.submit(Subject("ondemand/cpf", {"cpf": str(index)}))
            for index in range(6)
        ]
        await container.scheduler.wait_idle()
        await _advance(container, clock, 30)
        return container, [container.orchestrator.status(handle) for handle in handles]

    container, snapshots = asyncio.run(_run())

    assert {snapshot.phase for snapshot in snapshots} == {TransactionPhase.SUCCEEDED}
    assert container.budget.peak_in_use <= 2
    assert container.budget.dispatched_total == 12


@pytest.mark.unit
def test_in_progress_trigger_without_uid_is_retriggered_later() -> None:
    gateway = StubRemoteGateway(trigger_responses=[update(12, None, cost=2.0), update(12, "u1")])

    async def _run():
        container, sink, _, clock = build_harness(gateway)
        handle = await container.orchestrator.submit(SUBJECT)
        await container.scheduler.wait_idle()
        failed = container.orchestrator.status(handle)
        due_at = container.scheduler.next_due_at(handle.local_request_id)
        await _advance(container, clock, 30)
        await container.audit.flush()
        return container, sink, failed, due_at, container.orchestrator.status(handle)

    container, sink, failed, due_at, recovered = asyncio.run(_run())

    assert failed.phase is TransactionPhase.FAILED_RETRYABLE
    assert failed.last_update is None
    assert failed.billed_credits == {}
    assert failed.error_kind == "transient_transport"
    assert due_at is not None
    assert recovered.phase is TransactionPhase.POLLING
    assert recovered.remote_uid == "u1"
    assert recovered.attempt_count == 2
    assert container.scheduler.metrics.errors_total == 0
    # The raw response is audited even though it was not applied.
    assert [item.code for _, item in sink.records] == [12, 12]


@pytest.mark.unit
def test_finished_transactions_beyond_retention_are_forgotten() -> None:
    gateway = StubRemoteGateway()
    settings = SchedulerSettings(max_retained_terminal=2)

    async def _run():
        container, _, _, clock = build_harness(gateway, settings=settings)
        handles = [
            await container.orchestrator.submit(Subject("ondemand/cpf", {"cpf": str(index)}))
            for index in range(5)
        ]
        await container.scheduler.wait_idle()
        await _advance(container, clock, 30)
        return container, handles

    container, handles = asyncio.run(_run())

    assert container.scheduler.metrics.completed_total == 5
    assert container.machine.tracked_count == 2
    assert len(container.notifier.published) == 2
    with pytest.raises(UnknownTransactionError):
        container.orchestrator.status(handles[0])
    assert container.orchestrator.status(handles[-1]).phase is TransactionPhase.SUCCEEDED


@pytest.mark.unit
def test_expired_transaction_reports_deadline_error_kind() -> None:
    gateway = StubRemoteGateway(trigger_responses=[update(12, "u1")])

    async def _run():
        container, _, _, clock = build_harness(gateway)
        handle = await container.orchestrator.submit(SUBJECT, deadline=timedelta(seconds=10))
        await container.scheduler.wait_idle()
        clock.advance(11)
        await container.scheduler.sweep()
        return container.orchestrator.status(handle)

    snapshot = asyncio.run(_run())

    assert snapshot.phase is TransactionPhase.EXPIRED
    assert snapshot.error_kind == "deadline_exceeded"


@pytest.mark.unit
def test_cancel_while_waiting_for_a_slot_never_triggers() -> None:
    gateway = StubRemoteGateway(trigger_responses=[update(12, "u1")])
    settings = SchedulerSettings(max_concurrency=1)

    async def _run():
        container, _, _, _ = build_harness(gateway, settings=settings)
        first = await container.orchestrator.submit(SUBJECT)
        await container.scheduler.wait_idle()
        gateway.poll_gate = asyncio.Event()
        container.scheduler.fire(first.local_request_id)
        await asyncio.sleep(0)

        second = await container.orchestrator.submit(Subject("ondemand/cpf", {"cpf": "99999999999"}))
        await asyncio.sleep(0)
        cancelled = await container.orchestrator.cancel(second)
        gateway.poll_gate.set()
        await container.scheduler.wait_idle()
        return container, cancelled, container.orchestrator.status(second)

    container, cancelled, final = asyncio.run(_run())

    assert cancelled.phase is TransactionPhase.CANCELLED
    assert final.phase is TransactionPhase.CANCELLED
    assert final.attempt_count == 0
    assert len(gateway.trigger_calls) == 1
    assert container.scheduler.metrics.triggers_total == 1
