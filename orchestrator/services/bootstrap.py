from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime

from orchestrator.clients.gateway import HttpRemoteGateway, gateway_settings_from_env
from orchestrator.clients.stub import InMemoryArtifactArchive, StubRemoteGateway
from orchestrator.domain.contracts import ArtifactArchive, AuditSink, RemoteGateway
from orchestrator.domain.state_machine import TransactionStateMachine
from orchestrator.lib.artifacts import ArtifactFetcher
from orchestrator.lib.budget import DispatchBudget
from orchestrator.lib.env import env_int
from orchestrator.services.audit import BufferedAuditDispatcher, LoggingAuditSink
from orchestrator.services.notifications import TerminalNotifier
from orchestrator.services.orchestrator import TransactionOrchestrator
from orchestrator.workers.scheduler import PollScheduler, SchedulerSettings, scheduler_settings_from_env


@dataclass
class RuntimeContainer:
    machine: TransactionStateMachine
    gateway: RemoteGateway
    archive: ArtifactArchive
    audit: BufferedAuditDispatcher
    notifier: TerminalNotifier
    budget: DispatchBudget
    fetcher: ArtifactFetcher
    scheduler: PollScheduler
    orchestrator: TransactionOrchestrator
    on_startup: Callable[[], Awaitable[None]] | None
    on_shutdown: Callable[[], Awaitable[None]] | None


def build_runtime_container(
    *,
    settings: SchedulerSettings | None = None,
    gateway: RemoteGateway | None = None,
    audit_sink: AuditSink | None = None,
    archive: ArtifactArchive | None = None,
    clock: Callable[[], datetime] | None = None,
) -> RuntimeContainer:
    settings = settings or scheduler_settings_from_env()
    close_gateway: Callable[[], Awaitable[None]] | None = None
    if gateway is None:
        gateway_settings = gateway_settings_from_env()
        if gateway_settings.base_url:
            http_gateway = HttpRemoteGateway(gateway_settings)
            close_gateway = http_gateway.aclose
            gateway = http_gateway
        else:
            gateway = StubRemoteGateway()

    archive = archive or InMemoryArtifactArchive()
    audit = BufferedAuditDispatcher(
        audit_sink or LoggingAuditSink(),
        max_queue_size=env_int("AUDIT_QUEUE_SIZE", 1000),
    )
    machine = (
        TransactionStateMachine(
            max_trigger_attempts=settings.max_trigger_attempts,
            max_retained_terminal=settings.max_retained_terminal,
            clock=clock,
        )
        if clock is not None
        else TransactionStateMachine(
            max_trigger_attempts=settings.max_trigger_attempts,
            max_retained_terminal=settings.max_retained_terminal,
        )
    )
    budget = DispatchBudget(
        max_concurrency=settings.max_concurrency,
        min_interval_ms=settings.min_dispatch_interval_ms,
    )
    fetcher = ArtifactFetcher(machine=machine, gateway=gateway, archive=archive, budget=budget)
    notifier = TerminalNotifier()
    scheduler = PollScheduler(
        machine=machine,
        gateway=gateway,
        fetcher=fetcher,
        audit=audit,
        notifier=notifier,
        budget=budget,
        settings=settings,
        clock=machine.clock,
    )
    orchestrator = TransactionOrchestrator(machine=machine, scheduler=scheduler, notifier=notifier)

    async def _on_startup() -> None:
        audit.start()

    async def _on_shutdown() -> None:
        await audit.stop()
        if close_gateway is not None:
            await close_gateway()

    return RuntimeContainer(
        machine=machine,
        gateway=gateway,
        archive=archive,
        audit=audit,
        notifier=notifier,
        budget=budget,
        fetcher=fetcher,
        scheduler=scheduler,
        orchestrator=orchestrator,
        on_startup=_on_startup,
        on_shutdown=_on_shutdown,
    )
