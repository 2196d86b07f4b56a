from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

LOCAL_REQUEST_ID_PATTERN = r"^[A-Za-z0-9_\-:.]{1,128}$"


class ErrorResponse(BaseModel):
    detail: str


class SchedulerMetrics(BaseModel):
    started: bool
    stopped: bool
    ticks_total: int
    dispatched_total: int
    idle_ticks_total: int
    sweeps_total: int
    errors_total: int
    in_flight: int
    dropped_firings_total: int
    expired_total: int


class AuditMetrics(BaseModel):
    enqueued_total: int
    delivered_total: int
    dropped_total: int
    failed_total: int
    pending: int


class HealthResponse(BaseModel):
    status: str
    service: str


class ReadyResponse(BaseModel):
    status: str
    service: str
    scheduler_ready: bool
    scheduler_metrics: SchedulerMetrics
    audit_metrics: AuditMetrics


class CreateTransactionRequest(BaseModel):
    endpoint: str = Field(min_length=1, max_length=256)
    params: dict[str, str] = Field(default_factory=dict)
    deadline_seconds: int | None = Field(default=None, ge=1)
    local_request_id: str | None = Field(default=None, pattern=LOCAL_REQUEST_ID_PATTERN)


class RiskIndicatorResponse(BaseModel):
    source: str
    indicator: str


class TransactionUpdateResponse(BaseModel):
    code: int
    outcome: str
    outcome_label: str
    status_text: str | None = None
    status_name: str | None = None
    remote_uid: str | None = None
    message: str | None = None
    timestamp: str | None = None
    elapsed_ms: int | None = None
    result: Any = None
    has_pdf: bool
    pdf_url: str | None = None
    original_files_url: str | None = None
    risk_indicators: list[RiskIndicatorResponse]
    cost_credits: float | None = None
    balance_credits: float | None = None


class TransactionResponse(BaseModel):
    local_request_id: str
    endpoint: str
    params: dict[str, str]
    phase: str
    remote_uid: str | None = None
    attempt_count: int
    poll_count: int
    created_at: datetime
    deadline_at: datetime
    updated_at: datetime
    artifacts_fetched: bool
    failure_reason: str | None = None
    last_error: str | None = None
    error_kind: str | None = None
    warnings: list[str]
    risk_verdict: str | None = None
    total_cost_credits: float
    last_update: TransactionUpdateResponse | None = None
