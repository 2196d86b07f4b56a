from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal
import logging

from orchestrator.domain.contracts import ArtifactArchive, ArtifactKind, RemoteGateway
from orchestrator.domain.errors import ArtifactFetchError
from orchestrator.domain.models import TransactionUpdate
from orchestrator.domain.outcomes import is_terminal_success
from orchestrator.domain.state_machine import TransactionStateMachine
from orchestrator.lib.budget import DispatchBudget

logger = logging.getLogger("orchestrator.artifacts")

FetchStatus = Literal["fetched", "skipped", "degraded"]


@dataclass(frozen=True)
class ArtifactFetchResult:
    status: FetchStatus
    refs: dict[ArtifactKind, str] = field(default_factory=dict)
    warning: str | None = None


def artifact_urls(update: TransactionUpdate) -> list[tuple[ArtifactKind, str]]:
    if not update.has_pdf:
        return []
    if not update.pdf_url:
        raise ArtifactFetchError("update reports a pdf but carries no pdf url")
    urls: list[tuple[ArtifactKind, str]] = [("pdf", update.pdf_url)]
    if update.original_files_url:
        urls.append(("original_files", update.original_files_url))
    return urls


@dataclass
class ArtifactFetcher:
    """Retrieves evidence artifacts once per successful transaction.

    The claim on the state machine is taken before the first await, so concurrent or
    repeated calls for the same transaction never fetch twice. A failed fetch leaves
    the transaction succeeded and records a degraded-success warning.
    """

    machine: TransactionStateMachine
    gateway: RemoteGateway
    archive: ArtifactArchive
    budget: DispatchBudget | None = None

    async def fetch_once(self, *, local_request_id: str, update: TransactionUpdate) -> ArtifactFetchResult:
        if not update.has_pdf or not is_terminal_success(update.outcome):
            return ArtifactFetchResult(status="skipped")
        if not self.machine.claim_artifact_fetch(local_request_id):
            return ArtifactFetchResult(status="skipped")

        refs: dict[ArtifactKind, str] = {}
        try:
            for kind, url in artifact_urls(update):
                payload = await self._fetch(url)
                refs[kind] = self.archive.store(
                    local_request_id=local_request_id,
                    artifact_bytes=payload,
                    kind=kind,
                )
        except Exception as exc:  # archive and transport failures both degrade
            warning = f"artifact_fetch_failed: {exc}"
            self.machine.add_warning(local_request_id, warning, error_kind="artifact_fetch_failure")
            logger.warning(
                "artifact fetch failed, success degraded",
                extra={
                    "local_request_id": local_request_id,
                    "remote_uid": update.remote_uid,
                    "error": str(exc),
                },
            )
            return ArtifactFetchResult(status="degraded", refs=refs, warning=warning)

        self.machine.mark_artifacts_fetched(local_request_id)
        logger.info(
            "artifacts archived",
            extra={"local_request_id": local_request_id, "remote_uid": update.remote_uid},
        )
        return ArtifactFetchResult(status="fetched", refs=refs)

    async def _fetch(self, url: str) -> bytes:
        if self.budget is None:
            return await self.gateway.fetch_artifact(url=url)
        async with self.budget.slot():
            return await self.gateway.fetch_artifact(url=url)
