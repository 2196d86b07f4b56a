from __future__ import annotations

from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from orchestrator.domain.errors import TransientTransportError
from orchestrator.domain.models import RiskIndicator, TransactionUpdate
from orchestrator.domain.outcomes import SUCCESS_OUTCOMES, OutcomeClass, classify

# The remote service emits each key in PascalCase and snake_case depending on the
# endpoint; both spellings decode to the same field.


def _aliases(snake: str, pascal: str) -> AliasChoices:
    return AliasChoices(snake, pascal)


class RiskIndicatorPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    source: str = Field(validation_alias=_aliases("source", "Source"))
    indicator: str = Field(validation_alias=_aliases("indicator", "Indicator"))

    @field_validator("indicator")
    @classmethod
    def _normalize_indicator(cls, value: str) -> str:
        return value.strip().lower()


class RemoteResponsePayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    code: int = Field(validation_alias=_aliases("code", "Code"))
    # Human-readable ("Success") and machine-readable ("success") status strings.
    code_message: str | None = Field(default=None, validation_alias=_aliases("code_message", "CodeMessage"))
    status: str | None = Field(default=None, validation_alias=_aliases("status", "Status"))
    uid: str | None = Field(default=None, validation_alias=_aliases("uid", "Uid"))
    message: str | None = Field(default=None, validation_alias=_aliases("message", "Message"))
    date: str | None = Field(default=None, validation_alias=_aliases("date", "Date"))
    elapsed_time_in_milliseconds: int | None = Field(
        default=None,
        validation_alias=_aliases("elapsed_time_in_milliseconds", "ElapsedTimeInMilliseconds"),
    )
    result: Any = Field(default=None, validation_alias=_aliases("result", "Result"))
    has_pdf: bool = Field(default=False, validation_alias=_aliases("has_pdf", "HasPdf"))
    pdf_url: str | None = Field(default=None, validation_alias=_aliases("pdf_url", "PdfUrl"))
    original_files_url: str | None = Field(
        default=None,
        validation_alias=_aliases("original_files_url", "OriginalFilesUrl"),
    )
    risk_indicators: list[RiskIndicatorPayload] = Field(
        default_factory=list,
        validation_alias=_aliases("risk_indicators", "RiskIndicators"),
    )
    cost: float | None = Field(default=None, validation_alias=_aliases("cost", "Cost"))
    balance: float | None = Field(default=None, validation_alias=_aliases("balance", "Balance"))


def decode_update(payload: bytes, *, fallback_uid: str | None = None) -> TransactionUpdate:
    try:
        decoded = RemoteResponsePayload.model_validate_json(payload)
    except ValidationError as exc:
        raise TransientTransportError(f"malformed remote response: {exc.error_count()} error(s)") from exc
    return to_update(decoded, fallback_uid=fallback_uid)


def to_update(decoded: RemoteResponsePayload, *, fallback_uid: str | None = None) -> TransactionUpdate:
    outcome = classify(decoded.code)
    return TransactionUpdate(
        code=decoded.code,
        status_text=decoded.code_message,
        status_name=decoded.status,
        remote_uid=decoded.uid or fallback_uid,
        message=decoded.message,
        timestamp=decoded.date,
        elapsed_ms=decoded.elapsed_time_in_milliseconds,
        # Payload is opaque and only meaningful on success codes.
        result_payload=decoded.result if outcome in SUCCESS_OUTCOMES else None,
        has_pdf=decoded.has_pdf,
        pdf_url=decoded.pdf_url,
        original_files_url=decoded.original_files_url,
        risk_indicators=tuple(
            RiskIndicator(source=item.source, indicator=item.indicator) for item in decoded.risk_indicators
        ),
        cost_credits=decoded.cost,
        balance_credits=decoded.balance,
    )


def require_uid_for_in_progress(update: TransactionUpdate) -> TransactionUpdate:
    if update.outcome is OutcomeClass.IN_PROGRESS and not update.remote_uid:
        raise TransientTransportError("in-progress response without uid")
    return update
