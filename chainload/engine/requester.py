"""HTTP transport for request descriptors.

``send`` never raises for network trouble: timeouts, connection errors and
HTTP error statuses come back as a ``RequestFailure`` inside the outcome so
workers can branch on a plain value. The engine does not retry.
"""

import asyncio
import itertools
import time
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

import httpx
import structlog

from chainload.engine.models import (
    EngineConfig,
    FailureKind,
    RequestDescriptor,
    RequestFailure,
    RequestOutcome,
    TransportKind,
)

logger = structlog.get_logger()


class Requester(Protocol):
    async def send(self, descriptor: RequestDescriptor) -> RequestOutcome: ...


class RequestPacer:
    """Spaces request starts at least ``1 / max_per_second`` apart, across all callers."""

    def __init__(
        self,
        max_per_second: int,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_per_second <= 0:
            raise ValueError(f"max_per_second must be > 0, got {max_per_second}")
        self._interval = 1.0 / max_per_second
        self._clock = clock
        self._sleep = sleep
        self._next_slot = 0.0
        self._lock = asyncio.Lock()

    async def wait(self) -> None:
        async with self._lock:
            now = self._clock()
            delay = self._next_slot - now
            if delay > 0:
                await self._sleep(delay)
            self._next_slot = max(now, self._next_slot) + self._interval


def _parse_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


class HttpRequester:
    """Requester backed by a shared ``httpx.AsyncClient``."""

    def __init__(
        self,
        config: EngineConfig,
        client: httpx.AsyncClient | None = None,
        pacer: RequestPacer | None = None,
    ) -> None:
        self._config = config
        self._client = client
        self._owns_client = client is None
        self._pacer = pacer or RequestPacer(config.max_requests_per_second)
        self._rpc_ids = itertools.count(1)

    async def __aenter__(self) -> "HttpRequester":
        self._ensure_client()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            limit = max(self._config.concurrency * 5, 10)
            transport = httpx.AsyncHTTPTransport(
                retries=0,
                limits=httpx.Limits(
                    max_connections=limit,
                    max_keepalive_connections=limit // 2,
                ),
            )
            self._client = httpx.AsyncClient(
                transport=transport,
                timeout=httpx.Timeout(self._config.request_timeout_seconds),
            )
            self._owns_client = True
            logger.debug("http_client_opened", max_connections=limit)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._config.auth_token:
            headers["Authorization"] = f"Bearer {self._config.auth_token}"
        return headers

    def rpc_payload(self, descriptor: RequestDescriptor) -> dict[str, Any]:
        return {
            "jsonrpc": "2.0",
            "id": next(self._rpc_ids),
            "method": descriptor.target,
            "params": descriptor.rpc_params(),
        }

    async def _dispatch(self, descriptor: RequestDescriptor) -> httpx.Response:
        client = self._ensure_client()
        headers = self._headers()
        if descriptor.transport is TransportKind.JSON_RPC:
            return await client.post(
                self._config.evm_endpoint or self._config.base_endpoint,
                json=self.rpc_payload(descriptor),
                headers=headers,
            )
        url = f"{self._config.base_endpoint.rstrip('/')}{descriptor.target}"
        if descriptor.transport is TransportKind.REST_POST:
            return await client.post(
                url, params=descriptor.query_params(), json=descriptor.body, headers=headers
            )
        return await client.get(url, params=descriptor.query_params(), headers=headers)

    async def send(self, descriptor: RequestDescriptor) -> RequestOutcome:
        await self._pacer.wait()
        t0 = time.perf_counter()
        try:
            response = await self._dispatch(descriptor)
        except httpx.TimeoutException as exc:
            return RequestOutcome(
                duration_ms=(time.perf_counter() - t0) * 1000.0,
                failure=RequestFailure(FailureKind.TIMEOUT, str(exc) or "request timed out"),
            )
        except httpx.TransportError as exc:
            return RequestOutcome(
                duration_ms=(time.perf_counter() - t0) * 1000.0,
                failure=RequestFailure(FailureKind.CONNECTION_ERROR, str(exc) or type(exc).__name__),
            )
        duration_ms = (time.perf_counter() - t0) * 1000.0

        body = _parse_body(response)
        failure = None
        if response.status_code >= 400:
            failure = RequestFailure(
                FailureKind.HTTP_ERROR,
                f"HTTP {response.status_code} {response.reason_phrase}",
                status=response.status_code,
            )
        return RequestOutcome(
            duration_ms=duration_ms,
            status=response.status_code,
            headers=dict(response.headers),
            body=body,
            failure=failure,
        )
