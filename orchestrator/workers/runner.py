from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from orchestrator.lib.env import env_int
from orchestrator.workers.scheduler import PollScheduler


@dataclass(frozen=True)
class RunnerSettings:
    tick_interval_ms: int = 200
    sweep_interval_ms: int = 5000
    error_backoff_ms: int = 2000


@dataclass
class RunnerState:
    started: bool = False
    stopped: bool = False
    ticks_total: int = 0
    dispatched_total: int = 0
    idle_ticks_total: int = 0
    sweeps_total: int = 0
    errors_total: int = 0


def runner_settings_from_env() -> RunnerSettings:
    return RunnerSettings(
        tick_interval_ms=env_int("RUNNER_TICK_INTERVAL_MS", 200),
        sweep_interval_ms=env_int("RUNNER_SWEEP_INTERVAL_MS", 5000),
        error_backoff_ms=env_int("RUNNER_ERROR_BACKOFF_MS", 2000),
    )


async def run_scheduler_until_stopped(
    *,
    scheduler: PollScheduler,
    run_id: str,
    stop_event: asyncio.Event,
    settings: RunnerSettings,
    logger: logging.Logger,
    state: RunnerState | None = None,
) -> None:
    if state is not None:
        state.started = True

    logger.info(
        "scheduler loop started",
        extra={"service": "scheduler", "run_id": run_id},
    )

    loop = asyncio.get_running_loop()
    last_sweep_at = loop.time()

    while not stop_event.is_set():
        delay_ms = settings.tick_interval_ms
        try:
            # Sweep keeps deadlines live for transactions that have no timer.
            if (loop.time() - last_sweep_at) * 1000 >= settings.sweep_interval_ms:
                expired = await scheduler.sweep()
                last_sweep_at = loop.time()
                if state is not None:
                    state.sweeps_total += 1
                if expired:
                    logger.info(
                        "deadline sweep expired transactions",
                        extra={"service": "scheduler", "run_id": run_id, "expired": expired},
                    )

            dispatched = await scheduler.tick()
            if state is not None:
                state.ticks_total += 1
                state.dispatched_total += dispatched
                if not dispatched:
                    state.idle_ticks_total += 1
        except Exception:
            if state is not None:
                state.ticks_total += 1
                state.errors_total += 1
            delay_ms = settings.error_backoff_ms
            logger.exception(
                "scheduler tick error",
                extra={"service": "scheduler", "run_id": run_id},
            )

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=delay_ms / 1000)
        except TimeoutError:
            continue

    await scheduler.shutdown()
    logger.info(
        "scheduler loop stopped",
        extra={"service": "scheduler", "run_id": run_id},
    )
    if state is not None:
        state.stopped = True
