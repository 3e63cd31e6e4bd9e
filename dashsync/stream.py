"""Push-event stream client with bounded reconnect.

The server holds ``GET <stream>?token=<bearer>`` open and writes one JSON
frame per line (bare NDJSON or SSE ``data:`` lines). Each frame is parsed
and dispatched on the event loop in arrival order.

Lifecycle::

    IDLE -> CONNECTING -> OPEN -> CLOSED -> (backoff) -> CONNECTING ...
                                        \\-> FAILED   (retry budget spent)

``disconnect()`` returns the client to ``IDLE`` from any state.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

import httpx

from dashsync.config import (
    MAX_RECONNECT_ATTEMPTS,
    RECONNECT_BASE_DELAY_SECONDS,
    RECONNECT_MAX_DELAY_SECONDS,
    REQUEST_TIMEOUT_SECONDS,
)
from dashsync.errors import MalformedFrameError, StreamError
from dashsync.events import DispatchBus, EventHandler, EventKind, parse_frame

logger = logging.getLogger(__name__)

# Auth and routing failures will not fix themselves on retry.
NON_RETRYABLE_STATUS_CODES = {401, 403, 404}

ConnectionListener = Callable[[bool], None]
FailureListener = Callable[[StreamError], None]
Sleep = Callable[[float], Awaitable[Any]]


class ConnectionState(Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"
    FAILED = "failed"


class StreamClient:
    """Owns one logical push connection and feeds it into a ``DispatchBus``."""

    def __init__(
        self,
        bus: DispatchBus | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
        base_delay: float = RECONNECT_BASE_DELAY_SECONDS,
        max_attempts: int = MAX_RECONNECT_ATTEMPTS,
        max_delay: float | None = RECONNECT_MAX_DELAY_SECONDS,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        if max_attempts < 0:
            raise ValueError("max_attempts must be >= 0")

        self.bus = bus or DispatchBus()
        self.base_delay = base_delay
        self.max_attempts = max_attempts
        self.max_delay = max_delay
        self.state = ConnectionState.IDLE
        self.reconnect_attempts = 0

        self._owns_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(REQUEST_TIMEOUT_SECONDS, read=None)
        )
        self._sleep = sleep
        self._endpoint_url: str | None = None
        self._auth_token: str | None = None
        self._task: asyncio.Task[None] | None = None
        self._connection_listeners: dict[ConnectionListener, None] = {}
        self._failure_listeners: dict[FailureListener, None] = {}

    async def __aenter__(self) -> "StreamClient":
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.aclose()

    @property
    def is_connected(self) -> bool:
        return self.state is ConnectionState.OPEN

    def connect(self, endpoint_url: str, auth_token: str | None = None) -> None:
        """Start streaming from ``endpoint_url``.

        No-op while a connection is open or being (re)established; a given
        token is still recorded so the next reconnect uses it. Must be
        called from a running event loop.
        """
        if auth_token is not None:
            self._auth_token = auth_token
        if self._task is not None and not self._task.done():
            return

        self._endpoint_url = endpoint_url
        self.reconnect_attempts = 0
        self.state = ConnectionState.CONNECTING
        self._task = asyncio.get_running_loop().create_task(self._run())

    def update_token(self, auth_token: str) -> None:
        """Use ``auth_token`` for every subsequent (re)connect."""
        self._auth_token = auth_token

    async def join(self) -> None:
        """Wait until the connection task stops (terminal failure or disconnect)."""
        task = self._task
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def disconnect(self) -> None:
        """Tear down the connection and all listener state. Safe to repeat."""
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            if task is not asyncio.current_task():
                await asyncio.gather(task, return_exceptions=True)

        if self.state is not ConnectionState.IDLE:
            logger.info("Stream disconnected from %s", self._endpoint_url)
        self.state = ConnectionState.IDLE
        self.reconnect_attempts = 0
        self._auth_token = None
        self.bus.clear()
        self._connection_listeners.clear()
        self._failure_listeners.clear()

    async def aclose(self) -> None:
        await self.disconnect()
        if self._owns_client:
            await self._http_client.aclose()

    # -- subscriptions -----------------------------------------------------

    def subscribe(self, kind: EventKind | str, handler: EventHandler) -> None:
        self.bus.subscribe(kind, handler)

    def unsubscribe(self, kind: EventKind | str, handler: EventHandler) -> None:
        self.bus.unsubscribe(kind, handler)

    def add_connection_listener(self, listener: ConnectionListener) -> None:
        """Call ``listener(True)`` on every open and ``listener(False)`` on every drop.

        A drop that exhausts the retry budget (or is not retryable) also gets
        a plain ``False``; the terminal error itself goes to the failure
        listeners, after ``state`` has become ``FAILED``.
        """
        self._connection_listeners[listener] = None

    def remove_connection_listener(self, listener: ConnectionListener) -> None:
        self._connection_listeners.pop(listener, None)

    def add_failure_listener(self, listener: FailureListener) -> None:
        """Call ``listener(error)`` once when the connection fails for good."""
        self._failure_listeners[listener] = None

    def remove_failure_listener(self, listener: FailureListener) -> None:
        self._failure_listeners.pop(listener, None)

    def backoff_delay(self, attempt: int) -> float:
        """Linear backoff: ``base_delay * attempt``, capped at ``max_delay`` if set."""
        delay = self.base_delay * attempt
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return delay

    # -- connection loop ---------------------------------------------------

    async def _run(self) -> None:
        while True:
            self.state = ConnectionState.CONNECTING
            try:
                await self._consume()
                error = StreamError("Stream closed by server")
            except StreamError as exc:
                error = exc
            except httpx.HTTPError as exc:
                error = StreamError(f"Stream transport failed: {exc}")

            self.state = ConnectionState.CLOSED
            logger.warning("Stream to %s dropped: %s", self._endpoint_url, error)
            self._notify_connection(False)

            if not error.retryable or self.reconnect_attempts >= self.max_attempts:
                self._fail(error)
                return

            self.reconnect_attempts += 1
            delay = self.backoff_delay(self.reconnect_attempts)
            logger.info(
                "Reconnecting in %.1fs (%d/%d)",
                delay,
                self.reconnect_attempts,
                self.max_attempts,
            )
            await self._sleep(delay)

    async def _consume(self) -> None:
        assert self._endpoint_url is not None
        params = {"token": self._auth_token} if self._auth_token else None

        async with self._http_client.stream(
            "GET",
            self._endpoint_url,
            params=params,
            headers={"Accept": "text/event-stream, application/x-ndjson"},
            timeout=httpx.Timeout(REQUEST_TIMEOUT_SECONDS, read=None),
        ) as response:
            if response.status_code >= 400:
                raise StreamError(
                    "Stream endpoint rejected connection",
                    status_code=response.status_code,
                    retryable=response.status_code not in NON_RETRYABLE_STATUS_CODES,
                )

            self.reconnect_attempts = 0
            self.state = ConnectionState.OPEN
            logger.info("Stream connected to %s", self._endpoint_url)
            self._notify_connection(True)

            async for line in response.aiter_lines():
                self._handle_line(line)

    def _handle_line(self, line: str) -> None:
        try:
            envelope = parse_frame(line)
        except MalformedFrameError as exc:
            logger.warning("Dropping malformed stream frame: %s", exc)
            return
        if envelope is not None:
            self.bus.dispatch(envelope)

    def _fail(self, error: StreamError) -> None:
        self.state = ConnectionState.FAILED
        logger.error(
            "Stream to %s failed permanently after %d reconnect attempts: %s",
            self._endpoint_url,
            self.reconnect_attempts,
            error,
        )
        for listener in list(self._failure_listeners):
            try:
                listener(error)
            except Exception:
                logger.exception("Error in stream failure listener %r", listener)

    def _notify_connection(self, connected: bool) -> None:
        for listener in list(self._connection_listeners):
            try:
                listener(connected)
            except Exception:
                logger.exception("Error in connection state listener %r", listener)
