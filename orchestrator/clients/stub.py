from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
import asyncio

from orchestrator.domain.contracts import ArtifactKind
from orchestrator.domain.errors import DomainDependencyError, TransientTransportError
from orchestrator.domain.models import TransactionUpdate

ScriptedResponse = TransactionUpdate | Exception


@dataclass
class StubRemoteGateway:
    """Scripted gateway for tests and for running without a remote service.

    Unscripted triggers answer in-progress with a fresh uid; unscripted polls answer
    success, so the default runtime completes every transaction.
    """

    trigger_responses: list[ScriptedResponse] = field(default_factory=list)
    poll_responses: dict[str, list[ScriptedResponse]] = field(default_factory=dict)
    artifacts: dict[str, bytes] = field(default_factory=dict)
    trigger_calls: list[tuple[str, dict[str, str]]] = field(default_factory=list)
    poll_calls: list[tuple[str, str]] = field(default_factory=list)
    artifact_calls: list[str] = field(default_factory=list)
    # Polls block on this event when set, which keeps them in flight for tests.
    poll_gate: asyncio.Event | None = None
    next_uid: int = 1

    async def trigger(self, *, endpoint: str, subject_params: Mapping[str, str]) -> TransactionUpdate:
        self.trigger_calls.append((endpoint, dict(subject_params)))
        if not self.trigger_responses:
            uid = f"stub-{self.next_uid}"
            self.next_uid += 1
            return TransactionUpdate(code=12, status_text="InProgress", status_name="in_progress", remote_uid=uid)
        return _unwrap(self.trigger_responses.pop(0))

    async def poll(self, *, endpoint: str, remote_uid: str) -> TransactionUpdate:
        self.poll_calls.append((endpoint, remote_uid))
        if self.poll_gate is not None:
            await self.poll_gate.wait()
        scripted = self.poll_responses.get(remote_uid)
        if not scripted:
            return TransactionUpdate(
                code=1,
                status_text="Success",
                status_name="success",
                remote_uid=remote_uid,
                message="stub result",
            )
        return _unwrap(scripted.pop(0))

    async def fetch_artifact(self, *, url: str) -> bytes:
        self.artifact_calls.append(url)
        payload = self.artifacts.get(url)
        if payload is None:
            raise TransientTransportError(f"artifact not found: {url}")
        return payload


@dataclass
class InMemoryAuditSink:
    records: list[tuple[str, TransactionUpdate]] = field(default_factory=list)
    fail_with: Exception | None = None

    async def record(self, *, local_request_id: str, update: TransactionUpdate) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.records.append((local_request_id, update))


@dataclass
class InMemoryArtifactArchive:
    objects: dict[tuple[str, ArtifactKind], bytes] = field(default_factory=dict)
    writes: list[tuple[str, ArtifactKind]] = field(default_factory=list)

    def store(self, *, local_request_id: str, artifact_bytes: bytes, kind: ArtifactKind) -> str:
        key = (local_request_id, kind)
        if key in self.objects:
            raise DomainDependencyError(f"artifact already archived: {kind} for {local_request_id}")
        self.writes.append(key)
        self.objects[key] = artifact_bytes
        return f"memory://{kind}/{local_request_id}"


def _unwrap(item: ScriptedResponse) -> TransactionUpdate:
    if isinstance(item, Exception):
        raise item
    return item
