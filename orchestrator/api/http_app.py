from __future__ import annotations

from contextlib import asynccontextmanager
import asyncio
import logging

from fastapi import FastAPI, HTTPException

from orchestrator.api.handlers.transactions import (
    cancel_transaction_handler,
    get_transaction_status_handler,
    submit_transaction_handler,
)
from orchestrator.api.schemas import (
    AuditMetrics,
    CreateTransactionRequest,
    ErrorResponse,
    HealthResponse,
    ReadyResponse,
    SchedulerMetrics,
    TransactionResponse,
)
from orchestrator.domain.errors import CallerMisuseError, UnknownTransactionError
from orchestrator.services.bootstrap import RuntimeContainer
from orchestrator.workers.runner import (
    RunnerSettings,
    RunnerState,
    run_scheduler_until_stopped,
    runner_settings_from_env,
)

SERVICE_NAME = "transaction-orchestrator"


def build_app(
    *,
    run_id: str,
    container: RuntimeContainer,
    runner_settings: RunnerSettings | None = None,
    run_scheduler: bool = True,
) -> FastAPI:
    logger = logging.getLogger("runtime")
    runner_state: RunnerState | None = None
    runner_task: asyncio.Task[None] | None = None
    orchestrator = container.orchestrator

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        nonlocal runner_task, runner_state
        del app
        stop_event: asyncio.Event | None = None

        logger.info(
            "service started",
            extra={"service": SERVICE_NAME, "run_id": run_id},
        )

        if container.on_startup is not None:
            await container.on_startup()

        if run_scheduler:
            settings = runner_settings or runner_settings_from_env()
            runner_state = RunnerState()
            stop_event = asyncio.Event()
            runner_task = asyncio.create_task(
                run_scheduler_until_stopped(
                    scheduler=container.scheduler,
                    run_id=run_id,
                    stop_event=stop_event,
                    settings=settings,
                    logger=logger,
                    state=runner_state,
                )
            )

        yield

        if stop_event is not None and runner_task is not None:
            stop_event.set()
            await runner_task

        if container.on_shutdown is not None:
            await container.on_shutdown()

        logger.info(
            "service stopped",
            extra={"service": SERVICE_NAME, "run_id": run_id},
        )

    app = FastAPI(title=SERVICE_NAME, version="0.1.0", lifespan=lifespan)

    @app.get("/health", response_model=HealthResponse, tags=["System"])
    async def health() -> HealthResponse:
        return HealthResponse(status="ok", service=SERVICE_NAME)

    @app.get("/ready", response_model=ReadyResponse, tags=["System"])
    async def ready() -> ReadyResponse:
        scheduler_ready = (
            runner_state is not None
            and runner_state.started
            and runner_task is not None
            and not runner_task.done()
        )
        state = runner_state or RunnerState()
        scheduler = container.scheduler
        audit = container.audit
        return ReadyResponse(
            status="ready",
            service=SERVICE_NAME,
            scheduler_ready=scheduler_ready,
            scheduler_metrics=SchedulerMetrics(
                started=state.started,
                stopped=state.stopped,
                ticks_total=state.ticks_total,
                dispatched_total=state.dispatched_total,
                idle_ticks_total=state.idle_ticks_total,
                sweeps_total=state.sweeps_total,
                errors_total=state.errors_total + scheduler.metrics.errors_total,
                in_flight=scheduler.in_flight_count,
                dropped_firings_total=scheduler.metrics.dropped_firings_total,
                expired_total=scheduler.metrics.expired_total,
            ),
            audit_metrics=AuditMetrics(
                enqueued_total=audit.metrics.enqueued_total,
                delivered_total=audit.metrics.delivered_total,
                dropped_total=audit.metrics.dropped_total,
                failed_total=audit.metrics.failed_total,
                pending=audit.pending,
            ),
        )

    @app.post(
        "/transactions",
        response_model=TransactionResponse,
        responses={409: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
        tags=["Transactions"],
    )
    async def submit_transaction(request: CreateTransactionRequest) -> TransactionResponse:
        try:
            return await submit_transaction_handler(request=request, orchestrator=orchestrator)
        except CallerMisuseError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc

    @app.get(
        "/transactions/{local_request_id}",
        response_model=TransactionResponse,
        responses={404: {"model": ErrorResponse}},
        tags=["Transactions"],
    )
    async def get_transaction_status(local_request_id: str) -> TransactionResponse:
        try:
            return await get_transaction_status_handler(
                local_request_id=local_request_id,
                orchestrator=orchestrator,
            )
        except UnknownTransactionError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc

    @app.post(
        "/transactions/{local_request_id}/cancel",
        response_model=TransactionResponse,
        responses={404: {"model": ErrorResponse}},
        tags=["Transactions"],
    )
    async def cancel_transaction(local_request_id: str) -> TransactionResponse:
        try:
            return await cancel_transaction_handler(
                local_request_id=local_request_id,
                orchestrator=orchestrator,
            )
        except UnknownTransactionError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc

    return app
