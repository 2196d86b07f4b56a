from __future__ import annotations

from collections.abc import Awaitable, Callable
import asyncio
import logging

from orchestrator.domain.models import TerminalRecord

TerminalListener = Callable[[TerminalRecord], Awaitable[None]]

logger = logging.getLogger("orchestrator.notifications")


class TerminalNotifier:
    """Fan-out of terminal records to subscribers and per-transaction waiters."""

    def __init__(self) -> None:
        self._listeners: list[TerminalListener] = []
        self._waiters: dict[str, list[asyncio.Future[TerminalRecord]]] = {}
        self.published: dict[str, TerminalRecord] = {}

    def subscribe(self, listener: TerminalListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    async def wait_for(self, local_request_id: str) -> TerminalRecord:
        record = self.published.get(local_request_id)
        if record is not None:
            return record
        future: asyncio.Future[TerminalRecord] = asyncio.get_running_loop().create_future()
        waiters = self._waiters.setdefault(local_request_id, [])
        waiters.append(future)
        try:
            return await future
        finally:
            if future in waiters:
                waiters.remove(future)
            if not waiters and self._waiters.get(local_request_id) is waiters:
                del self._waiters[local_request_id]

    @property
    def waiting_count(self) -> int:
        return sum(len(waiters) for waiters in self._waiters.values())

    async def publish(self, record: TerminalRecord) -> None:
        local_request_id = record.snapshot.local_request_id
        if local_request_id in self.published:
            return
        self.published[local_request_id] = record

        for future in self._waiters.pop(local_request_id, []):
            if not future.done():
                future.set_result(record)

        for listener in list(self._listeners):
            try:
                await listener(record)
            except Exception:
                # A broken subscriber must not stall the scheduler.
                logger.exception(
                    "terminal listener failed",
                    extra={"local_request_id": local_request_id, "phase": record.snapshot.phase.value},
                )

    def forget(self, local_request_id: str) -> None:
        self.published.pop(local_request_id, None)
