import asyncio

import pytest

from orchestrator.clients.gateway import HttpRemoteGateway
from orchestrator.clients.stub import InMemoryArtifactArchive, InMemoryAuditSink, StubRemoteGateway
from orchestrator.domain.contracts import ArtifactArchive, AuditSink, RemoteGateway
from orchestrator.domain.models import TransactionUpdate
from orchestrator.services.audit import LoggingAuditSink
from orchestrator.services.bootstrap import build_runtime_container
from orchestrator.workers.scheduler import SchedulerSettings


@pytest.mark.unit
def test_stubs_satisfy_collaborator_protocols() -> None:
    assert isinstance(StubRemoteGateway(), RemoteGateway)
    assert isinstance(InMemoryAuditSink(), AuditSink)
    assert isinstance(LoggingAuditSink(), AuditSink)
    assert isinstance(InMemoryArtifactArchive(), ArtifactArchive)


@pytest.mark.unit
def test_runtime_container_falls_back_to_stub_gateway(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("GATEWAY_BASE_URL", raising=False)

    container = build_runtime_container(settings=SchedulerSettings(max_trigger_attempts=4, max_concurrency=3))

    assert isinstance(container.gateway, StubRemoteGateway)
    assert isinstance(container.audit.sink, LoggingAuditSink)
    assert container.machine.max_trigger_attempts == 4
    assert container.budget.max_concurrency == 3
    assert container.scheduler.machine is container.machine
    assert container.orchestrator.scheduler is container.scheduler


@pytest.mark.unit
def test_runtime_container_uses_http_gateway_when_configured(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GATEWAY_BASE_URL", "https://remote.example")
    monkeypatch.setenv("AUDIT_QUEUE_SIZE", "5")

    async def _run() -> None:
        container = build_runtime_container()
        assert isinstance(container.gateway, HttpRemoteGateway)
        assert isinstance(container.gateway, RemoteGateway)
        assert container.on_startup is not None and container.on_shutdown is not None
        await container.on_startup()
        for index in range(6):
            container.audit.record(local_request_id=f"txn-{index}", update=_in_progress(index))
        assert container.audit.metrics.dropped_total >= 1
        await container.on_shutdown()

    asyncio.run(_run())


def _in_progress(index: int) -> TransactionUpdate:
    return TransactionUpdate(code=12, remote_uid=f"u{index}")
