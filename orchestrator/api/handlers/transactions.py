from __future__ import annotations

from datetime import timedelta

from orchestrator.api.schemas import (
    CreateTransactionRequest,
    RiskIndicatorResponse,
    TransactionResponse,
    TransactionUpdateResponse,
)
from orchestrator.domain.errors import UnknownRiskIndicatorError
from orchestrator.domain.models import (
    RiskVerdict,
    Subject,
    TransactionPhase,
    TransactionSnapshot,
    TransactionUpdate,
)
from orchestrator.domain.risk import aggregate
from orchestrator.services.orchestrator import TransactionOrchestrator

COMPONENT_ID_SUBMIT = "api.submit_transaction"
COMPONENT_ID_STATUS = "api.get_transaction_status"
COMPONENT_ID_CANCEL = "api.cancel_transaction"


async def submit_transaction_handler(
    *,
    request: CreateTransactionRequest,
    orchestrator: TransactionOrchestrator,
) -> TransactionResponse:
    deadline = timedelta(seconds=request.deadline_seconds) if request.deadline_seconds is not None else None
    handle = await orchestrator.submit(
        Subject(endpoint=request.endpoint, params=request.params),
        deadline=deadline,
        local_request_id=request.local_request_id,
    )
    return to_transaction_response(orchestrator.status(handle))


async def get_transaction_status_handler(
    *,
    local_request_id: str,
    orchestrator: TransactionOrchestrator,
) -> TransactionResponse:
    return to_transaction_response(orchestrator.status(local_request_id))


async def cancel_transaction_handler(
    *,
    local_request_id: str,
    orchestrator: TransactionOrchestrator,
) -> TransactionResponse:
    return to_transaction_response(await orchestrator.cancel(local_request_id))


def to_transaction_response(snapshot: TransactionSnapshot) -> TransactionResponse:
    return TransactionResponse(
        local_request_id=snapshot.local_request_id,
        endpoint=snapshot.subject.endpoint,
        params=dict(snapshot.subject.params),
        phase=snapshot.phase.value,
        remote_uid=snapshot.remote_uid,
        attempt_count=snapshot.attempt_count,
        poll_count=snapshot.poll_count,
        created_at=snapshot.created_at,
        deadline_at=snapshot.deadline_at,
        updated_at=snapshot.updated_at,
        artifacts_fetched=snapshot.artifacts_fetched,
        failure_reason=snapshot.failure_reason,
        last_error=snapshot.last_error,
        error_kind=snapshot.error_kind,
        warnings=list(snapshot.warnings),
        risk_verdict=_verdict_for(snapshot),
        total_cost_credits=snapshot.total_cost_credits,
        last_update=to_update_response(snapshot.last_update) if snapshot.last_update else None,
    )


def to_update_response(update: TransactionUpdate) -> TransactionUpdateResponse:
    return TransactionUpdateResponse(
        code=update.code,
        outcome=update.outcome.snake_name,
        outcome_label=update.outcome.pascal_name,
        status_text=update.status_text,
        status_name=update.status_name,
        remote_uid=update.remote_uid,
        message=update.message,
        timestamp=update.timestamp,
        elapsed_ms=update.elapsed_ms,
        result=update.result_payload,
        has_pdf=update.has_pdf,
        pdf_url=update.pdf_url,
        original_files_url=update.original_files_url,
        risk_indicators=[
            RiskIndicatorResponse(source=item.source, indicator=item.indicator) for item in update.risk_indicators
        ],
        cost_credits=update.cost_credits,
        balance_credits=update.balance_credits,
    )


def _verdict_for(snapshot: TransactionSnapshot) -> str | None:
    if snapshot.phase is not TransactionPhase.SUCCEEDED or snapshot.last_update is None:
        return None
    try:
        verdict: RiskVerdict = aggregate(snapshot.last_update.risk_indicators)
    except UnknownRiskIndicatorError:
        return None
    return verdict.value
