"""Streaming NDJSON ingress client with automatic reconnect."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from enum import Enum
from typing import Any, Awaitable, Callable

import aiohttp

from .events import EventParseError, InboundEvent, parse_event

logger = logging.getLogger(__name__)

EventHandler = Callable[[InboundEvent], Awaitable[None] | None]


class IngressConnectionError(ConnectionError):
    """Raised when the event stream handshake is rejected or unreachable."""


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class ExponentialBackoff:
    """Bounded, increasing, capped reconnect delays."""

    def __init__(self, initial: float = 1.0, maximum: float = 60.0, factor: float = 2.0) -> None:
        if initial <= 0 or maximum < initial or factor < 1:
            raise ValueError("Backoff requires 0 < initial <= maximum and factor >= 1")
        self.initial = initial
        self.maximum = maximum
        self.factor = factor
        self.attempts = 0

    def next_delay(self) -> float:
        delay = min(self.maximum, self.initial * (self.factor ** self.attempts))
        self.attempts += 1
        return delay

    def reset(self) -> None:
        self.attempts = 0


class NdjsonClient:
    """Maintain one streaming connection and push decoded events to a handler.

    The connection moves ``DISCONNECTED -> CONNECTING -> CONNECTED`` and back
    to ``DISCONNECTED`` when the transport drops. A single background task
    reads the stream and, after a drop, keeps reconnecting with backoff until
    :meth:`disconnect` is called.

    ``read_timeout`` bounds the silence between stream chunks; it should exceed
    the proxy heartbeat interval so an idle but healthy stream is not dropped.
    """

    def __init__(
        self,
        url: str,
        *,
        token: str | None = None,
        backoff: ExponentialBackoff | None = None,
        session: aiohttp.ClientSession | None = None,
        connect_timeout: float = 30.0,
        read_timeout: float | None = 90.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._url = url
        self._token = token
        self._backoff = backoff or ExponentialBackoff()
        self._session = session
        self._owns_session = session is None
        self._timeout = aiohttp.ClientTimeout(
            total=None, sock_connect=connect_timeout, sock_read=read_timeout
        )
        self._sleep = sleep
        self._handlers: list[EventHandler] = []
        self._state = ConnectionState.DISCONNECTED
        self._task: asyncio.Task[None] | None = None
        self._closing = False
        self.reconnect_attempts = 0

    @property
    def url(self) -> str:
        return self._url

    @property
    def state(self) -> ConnectionState:
        return self._state

    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    def on_event(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/x-ndjson"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    async def connect(self) -> None:
        """Open the stream; raises :class:`IngressConnectionError` if the handshake fails."""

        if self._task is not None and not self._task.done():
            return
        self._closing = False
        response = await self._open()
        self._task = asyncio.create_task(self._run(response), name="ndjson-ingress")

    async def _open(self) -> aiohttp.ClientResponse:
        self._state = ConnectionState.CONNECTING
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        try:
            response = await self._session.get(
                self._url, headers=self._headers(), timeout=self._timeout
            )
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
            self._state = ConnectionState.DISCONNECTED
            raise IngressConnectionError(f"Failed to reach event stream {self._url}: {exc}") from exc

        if response.status != 200:
            response.release()
            self._state = ConnectionState.DISCONNECTED
            raise IngressConnectionError(
                f"Event stream {self._url} rejected connection with HTTP {response.status}"
            )

        self._state = ConnectionState.CONNECTED
        self._backoff.reset()
        logger.info("Connected to event stream", extra={"url": self._url})
        return response

    async def _run(self, response: aiohttp.ClientResponse) -> None:
        current: aiohttp.ClientResponse | None = response
        while not self._closing:
            if current is not None:
                try:
                    await self._consume(current)
                    logger.warning("Event stream closed by server", extra={"url": self._url})
                except (aiohttp.ClientError, asyncio.TimeoutError, OSError, ValueError) as exc:
                    logger.warning(
                        "Event stream dropped",
                        extra={"url": self._url, "error": str(exc)},
                    )
                finally:
                    current.release()
                    current = None
                    self._state = ConnectionState.DISCONNECTED
            if self._closing:
                break
            current = await self._reconnect()

    async def _reconnect(self) -> aiohttp.ClientResponse | None:
        while not self._closing:
            delay = self._backoff.next_delay()
            self.reconnect_attempts += 1
            logger.info(
                "Reconnecting to event stream",
                extra={"url": self._url, "delay": delay, "attempt": self.reconnect_attempts},
            )
            await self._sleep(delay)
            if self._closing:
                break
            try:
                return await self._open()
            except IngressConnectionError as exc:
                logger.warning("Reconnect failed", extra={"url": self._url, "error": str(exc)})
        return None

    async def _consume(self, response: aiohttp.ClientResponse) -> None:
        async for raw_line in response.content:
            line = raw_line.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            try:
                event = parse_event(json.loads(line))
            except json.JSONDecodeError:
                logger.warning("Skipping undecodable stream line", extra={"line": line[:200]})
                continue
            except EventParseError as exc:
                logger.warning("Skipping malformed event", extra={"error": str(exc)})
                continue
            if event is None:
                continue
            await self._dispatch(event)

    async def _dispatch(self, event: InboundEvent) -> None:
        for handler in list(self._handlers):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(
                    "Event handler failed",
                    extra={"kind": event.kind.value, "session_id": event.session_id},
                )

    async def disconnect(self) -> None:
        """Release the connection and stop reconnecting; safe if never connected."""

        self._closing = True
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None if self._owns_session else self._session
        if self._state is not ConnectionState.DISCONNECTED:
            logger.info("Disconnected from event stream", extra={"url": self._url})
        self._state = ConnectionState.DISCONNECTED


__all__ = [
    "ConnectionState",
    "EventHandler",
    "ExponentialBackoff",
    "IngressConnectionError",
    "NdjsonClient",
]
