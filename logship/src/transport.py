"""
Non-blocking HTTP transport for the PostgREST uploader.

Requests are started as asyncio tasks and handed back immediately as a
:class:`PendingRequest`. The scheduler polls ``ready`` on later ticks and
reads the :class:`RequestResult` once the task has finished, so no tick ever
waits on the network.

A request that never produced an HTTP response (connection refused, DNS
failure, timeout, dropped connection) is reported with ``status_code = -1``
and the error text; the scheduler retries it like any other failure but
surfaces a different status message.

TLS certificate verification is always enabled.

Operations:
- is_connected(): Connectivity callable (injectable, e.g. ConnectivityMonitor).
- get(path, params): Start a GET.
- post(path, body, content_type): Start a POST.
- aclose(): Cancel an in-flight request and connectivity check.
- ConnectivityMonitor: Non-blocking cached TCP check of the PostgREST host.

CHANGELOG:
- 2026-10-17: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from typing import Any

import httpx

logger = logging.getLogger(__name__)

TRANSPORT_ERROR_CODE = -1
"""Status code reported when no HTTP response was received."""

_DEFAULT_TIMEOUT_S = 10.0


@dataclass(frozen=True)
class RequestResult:
    """Outcome of a finished request.

    Attributes:
        status_code: HTTP status, or ``TRANSPORT_ERROR_CODE``.
        text: Response body (empty on transport errors).
        error: Transport error description, ``None`` when a response arrived.
    """

    status_code: int
    text: str = ""
    error: str | None = None

    @property
    def transport_failed(self) -> bool:
        return self.error is not None


class PendingRequest:
    """Handle on an in-flight request.

    Args:
        task: The asyncio task performing the request.
    """

    def __init__(self, task: asyncio.Task[RequestResult]) -> None:
        self._task = task

    @property
    def ready(self) -> bool:
        """True once the request has finished (successfully or not)."""
        return self._task.done()

    def result(self) -> RequestResult:
        """Return the outcome of a finished request.

        A cancelled request is reported as a transport failure.

        Raises:
            RuntimeError: If the request is still in flight.
        """
        if not self._task.done():
            raise RuntimeError("Request still in flight")
        if self._task.cancelled():
            return RequestResult(TRANSPORT_ERROR_CODE, error="request cancelled")
        return self._task.result()

    def cancel(self) -> None:
        self._task.cancel()


class ConnectivityMonitor:
    """Cached TCP reachability check of the PostgREST host.

    Calling the monitor never blocks: it returns the outcome of the most recent
    check and, once that outcome is older than *interval_s*, starts a new
    check in the background. The host counts as unreachable until the first
    check has finished.

    Args:
        host: Host name or address to connect to.
        port: TCP port to connect to.
        timeout_s: Connect timeout per check.
        interval_s: Minimum time between two checks.
        clock: Monotonic clock deciding when a result is stale.
    """

    def __init__(
        self,
        host: str,
        port: int,
        *,
        timeout_s: float = 1.0,
        interval_s: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._host = host
        self._port = port
        self._timeout_s = timeout_s
        self._interval_s = interval_s
        self._clock = clock
        self._online = False
        self._checked_at: float | None = None
        self._task: asyncio.Task[bool] | None = None

    def __call__(self) -> bool:
        stale = self._checked_at is None or self._clock() - self._checked_at >= self._interval_s
        if stale and (self._task is None or self._task.done()):
            self._task = asyncio.ensure_future(self.check())
        return self._online

    async def check(self) -> bool:
        """Open and close one TCP connection; record whether it succeeded."""
        try:
            _reader, writer = await asyncio.wait_for(
                asyncio.open_connection(self._host, self._port),
                timeout=self._timeout_s,
            )
        except (OSError, TimeoutError) as exc:
            if self._online or self._checked_at is None:
                logger.warning("PostgREST host %s:%d unreachable: %r", self._host, self._port, exc)
            self._online = False
        else:
            writer.close()
            with contextlib.suppress(OSError):
                await writer.wait_closed()
            if not self._online:
                logger.info("PostgREST host %s:%d reachable", self._host, self._port)
            self._online = True
        self._checked_at = self._clock()
        return self._online

    async def aclose(self) -> None:
        """Cancel a check still in progress."""
        task = self._task
        self._task = None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)


class HttpTransport:
    """Starts PostgREST requests without waiting for them.

    Args:
        base_url: PostgREST service root, e.g. ``https://db.example.com``.
        token: Optional JWT sent as ``Authorization: Bearer <token>``.
        timeout_s: Per-request timeout in seconds.
        connectivity: Callable reporting whether the network is up.
            Defaults to always connected.

    Usage::

        transport = HttpTransport("https://db.example.com", token="jwt")
        request = transport.get("/readings", {"limit": "1"})
        ...  # later tick
        if request.ready:
            result = request.result()
    """

    def __init__(
        self,
        base_url: str,
        *,
        token: str | None = None,
        timeout_s: float = _DEFAULT_TIMEOUT_S,
        connectivity: Callable[[], bool] | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._timeout_s = timeout_s
        self._connectivity = connectivity
        self._in_flight: PendingRequest | None = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def is_connected(self) -> bool:
        if self._connectivity is None:
            return True
        return self._connectivity()

    def get(self, path: str, params: dict[str, str] | None = None) -> PendingRequest:
        """Start a GET of ``base_url + path``."""
        return self._start(
            self._send("GET", path, params=params, headers=self._headers()),
        )

    def post(self, path: str, body: str, content_type: str) -> PendingRequest:
        """Start a POST of *body* to ``base_url + path``.

        PostgREST is asked not to echo the inserted rows back.
        """
        headers = self._headers()
        headers["Content-Type"] = content_type
        headers["Prefer"] = "return=minimal"
        return self._start(
            self._send("POST", path, content=body.encode("utf-8"), headers=headers),
        )

    async def aclose(self) -> None:
        """Cancel the in-flight request and any running connectivity check."""
        pending = self._in_flight
        self._in_flight = None
        if pending is not None and not pending.ready:
            pending.cancel()
            await asyncio.gather(pending._task, return_exceptions=True)
        if isinstance(self._connectivity, ConnectivityMonitor):
            await self._connectivity.aclose()

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    def _start(self, coro: Coroutine[Any, Any, RequestResult]) -> PendingRequest:
        pending = PendingRequest(asyncio.ensure_future(coro))
        self._in_flight = pending
        return pending

    async def _send(self, method: str, path: str, **kwargs: Any) -> RequestResult:
        url = f"{self._base_url}{path}"
        try:
            async with httpx.AsyncClient(verify=True, timeout=self._timeout_s) as client:
                response = await client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            logger.warning("%s %s failed (network error): %s", method, path, exc)
            return RequestResult(
                TRANSPORT_ERROR_CODE,
                error=str(exc) or type(exc).__name__,
            )
        return RequestResult(response.status_code, response.text)
