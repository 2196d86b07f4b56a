from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import TypeVar
import asyncio
import logging
import os

import httpx

from orchestrator.clients.wire import decode_update, require_uid_for_in_progress
from orchestrator.domain.errors import TransientTransportError
from orchestrator.domain.models import TransactionUpdate
from orchestrator.lib.env import env_int

logger = logging.getLogger("orchestrator.gateway")

Sleep = Callable[[float], Awaitable[None]]
T = TypeVar("T")


@dataclass(frozen=True)
class GatewaySettings:
    base_url: str = ""
    token: str = ""
    token_header: str = "AccessToken"
    timeout_seconds: int = 30
    transport_max_retries: int = 3
    backoff_base_ms: int = 500
    backoff_max_ms: int = 8000


def gateway_settings_from_env() -> GatewaySettings:
    return GatewaySettings(
        base_url=os.getenv("GATEWAY_BASE_URL", ""),
        token=os.getenv("GATEWAY_TOKEN", ""),
        token_header=os.getenv("GATEWAY_TOKEN_HEADER", "AccessToken"),
        timeout_seconds=env_int("GATEWAY_TIMEOUT_SECONDS", 30),
        transport_max_retries=env_int("GATEWAY_TRANSPORT_MAX_RETRIES", 3),
        backoff_base_ms=env_int("GATEWAY_BACKOFF_BASE_MS", 500),
        backoff_max_ms=env_int("GATEWAY_BACKOFF_MAX_MS", 8000),
    )


def transport_backoff_seconds(*, attempt: int, base_ms: int, max_ms: int) -> float:
    delay_ms = min(base_ms * (2 ** max(attempt - 1, 0)), max_ms)
    return delay_ms / 1000


class HttpRemoteGateway:
    """httpx-backed gateway for the remote data-source service.

    Trigger is a POST of the subject parameters to the data-source endpoint; poll is a
    GET of ``{endpoint}/{uid}``. Connection errors, non-2xx responses and bodies that
    do not decode are retried with exponential backoff before surfacing as
    TransientTransportError. Remote status codes are never interpreted here.
    """

    def __init__(
        self,
        settings: GatewaySettings,
        *,
        client: httpx.AsyncClient | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.settings = settings
        self._client = client or httpx.AsyncClient(
            base_url=settings.base_url,
            timeout=float(settings.timeout_seconds),
        )
        self._sleep = sleep

    async def trigger(self, *, endpoint: str, subject_params: Mapping[str, str]) -> TransactionUpdate:
        return await self._send(
            "POST",
            endpoint,
            json=dict(subject_params),
            decode=lambda response: require_uid_for_in_progress(decode_update(response.content)),
        )

    async def poll(self, *, endpoint: str, remote_uid: str) -> TransactionUpdate:
        return await self._send(
            "GET",
            f"{endpoint.rstrip('/')}/{remote_uid}",
            decode=lambda response: require_uid_for_in_progress(
                decode_update(response.content, fallback_uid=remote_uid)
            ),
        )

    async def fetch_artifact(self, *, url: str) -> bytes:
        return await self._send("GET", url, decode=lambda response: response.content)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _send(
        self,
        method: str,
        url: str,
        *,
        decode: Callable[[httpx.Response], T],
        json: dict[str, str] | None = None,
    ) -> T:
        headers = {self.settings.token_header: self.settings.token} if self.settings.token else {}
        max_attempts = self.settings.transport_max_retries + 1
        last_error = ""
        for attempt in range(1, max_attempts + 1):
            try:
                response = await self._client.request(method, url, json=json, headers=headers)
                response.raise_for_status()
                return decode(response)
            except (httpx.HTTPError, TransientTransportError) as exc:
                last_error = f"{type(exc).__name__}: {exc}"

            if attempt < max_attempts:
                delay = transport_backoff_seconds(
                    attempt=attempt,
                    base_ms=self.settings.backoff_base_ms,
                    max_ms=self.settings.backoff_max_ms,
                )
                logger.warning(
                    "gateway transport error, retrying",
                    extra={"method": method, "url": url, "attempt": attempt, "error": last_error},
                )
                await self._sleep(delay)

        logger.error(
            "gateway transport retries exhausted",
            extra={"method": method, "url": url, "attempt": max_attempts, "error": last_error},
        )
        raise TransientTransportError(last_error, attempts=max_attempts)
