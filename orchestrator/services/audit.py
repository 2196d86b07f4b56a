from __future__ import annotations

from dataclasses import dataclass
import asyncio
import logging

from orchestrator.domain.contracts import AuditSink
from orchestrator.domain.models import TransactionUpdate

logger = logging.getLogger("orchestrator.audit")


@dataclass
class AuditMetrics:
    enqueued_total: int = 0
    delivered_total: int = 0
    dropped_total: int = 0
    failed_total: int = 0


class BufferedAuditDispatcher:
    """Hands updates to the audit sink without blocking the polling path.

    ``record`` only enqueues. A background task drains the queue into the sink.
    A full queue or a failing sink loses the record; both are counted and logged at
    error level so the loss is visible.
    """

    def __init__(self, sink: AuditSink, *, max_queue_size: int = 1000) -> None:
        self.sink = sink
        self.metrics = AuditMetrics()
        self._queue: asyncio.Queue[tuple[str, TransactionUpdate]] = asyncio.Queue(maxsize=max_queue_size)
        self._drain_task: asyncio.Task[None] | None = None

    def record(self, *, local_request_id: str, update: TransactionUpdate) -> None:
        try:
            self._queue.put_nowait((local_request_id, update))
        except asyncio.QueueFull:
            self.metrics.dropped_total += 1
            logger.error(
                "audit record dropped: queue full",
                extra={"local_request_id": local_request_id, "remote_uid": update.remote_uid, "code": update.code},
            )
            return
        self.metrics.enqueued_total += 1

    def start(self) -> None:
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.create_task(self._drain_forever())

    async def stop(self) -> None:
        await self.flush()
        # Wait for the item the drain task may already be delivering.
        await self._queue.join()
        if self._drain_task is not None:
            self._drain_task.cancel()
            try:
                await self._drain_task
            except asyncio.CancelledError:
                pass
            self._drain_task = None

    async def flush(self) -> None:
        """Deliver everything queued so far; usable without the background task."""
        while not self._queue.empty():
            item = self._queue.get_nowait()
            try:
                await self._deliver(*item)
            finally:
                self._queue.task_done()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def _drain_forever(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                await self._deliver(*item)
            finally:
                self._queue.task_done()

    async def _deliver(self, local_request_id: str, update: TransactionUpdate) -> None:
        try:
            await self.sink.record(local_request_id=local_request_id, update=update)
        except asyncio.CancelledError:
            self.metrics.failed_total += 1
            logger.error(
                "audit record lost: delivery cancelled",
                extra={"local_request_id": local_request_id, "remote_uid": update.remote_uid, "code": update.code},
            )
            raise
        except Exception:
            self.metrics.failed_total += 1
            logger.exception(
                "audit record lost: sink failed",
                extra={"local_request_id": local_request_id, "remote_uid": update.remote_uid, "code": update.code},
            )
            return
        self.metrics.delivered_total += 1


@dataclass
class LoggingAuditSink:
    """Default sink: writes each raw update to the ``audit`` logger as one JSON line."""

    logger_name: str = "audit"

    async def record(self, *, local_request_id: str, update: TransactionUpdate) -> None:
        logging.getLogger(self.logger_name).info(
            "transaction update",
            extra={
                "local_request_id": local_request_id,
                "remote_uid": update.remote_uid,
                "code": update.code,
                "status_text": update.status_text,
                "status_name": update.status_name,
                "remote_message": update.message,
                "timestamp": update.timestamp,
                "elapsed_ms": update.elapsed_ms,
                "has_pdf": update.has_pdf,
                "pdf_url": update.pdf_url,
                "original_files_url": update.original_files_url,
                "cost_credits": update.cost_credits,
                "balance_credits": update.balance_credits,
            },
        )
