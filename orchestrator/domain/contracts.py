from __future__ import annotations

from collections.abc import Mapping
from typing import Literal, Protocol, runtime_checkable

from orchestrator.domain.models import TransactionUpdate

ArtifactKind = Literal["pdf", "original_files"]


@runtime_checkable
class RemoteGateway(Protocol):
    """Transport boundary towards the remote data-source service.

    Implementations retry transport failures themselves and raise
    TransientTransportError once their own budget is spent. Remote status codes are
    returned as TransactionUpdate values and never raised.
    """

    async def trigger(self, *, endpoint: str, subject_params: Mapping[str, str]) -> TransactionUpdate: ...

    async def poll(self, *, endpoint: str, remote_uid: str) -> TransactionUpdate: ...

    async def fetch_artifact(self, *, url: str) -> bytes: ...


@runtime_checkable
class AuditSink(Protocol):
    """Compliance log of every raw update; backend is external."""

    async def record(self, *, local_request_id: str, update: TransactionUpdate) -> None: ...


@runtime_checkable
class ArtifactArchive(Protocol):
    def store(self, *, local_request_id: str, artifact_bytes: bytes, kind: ArtifactKind) -> str: ...
