"""Transport registry.

Owns every live chat socket. Callers refer to sockets by integer id only; the
registry demultiplexes inbound text into per-socket frame channels, runs the
keepalive supervisor, and intercepts protocol control frames before they reach
the caller.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

import aiohttp

from chatrelay.backoff import backoff_delay
from chatrelay.config import RelayConfig
from chatrelay.errors import ParseError, RateLimitError, TransportError
from chatrelay.transport import framing
from chatrelay.transport.channel import FrameChannel
from chatrelay.transport.keepalive import KeepaliveSupervisor
from chatrelay.transport.ratelimit import SlidingWindowRateLimiter

log = logging.getLogger("transport")

Connector = Callable[[str, dict[str, str]], Awaitable[Any]]

# Handshake headers aiohttp computes itself.
_HANDSHAKE_HEADERS = {
    "upgrade",
    "connection",
    "sec-websocket-key",
    "sec-websocket-version",
    "sec-websocket-protocol",
    "sec-websocket-extensions",
}


class SocketState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


@dataclass
class SocketHandle:
    id: int
    url: str
    generation: int
    channel: FrameChannel
    state: SocketState = SocketState.CONNECTING
    ws: Any = None
    last_activity: float = 0.0
    keepalive: KeepaliveSupervisor | None = None
    reader: asyncio.Task | None = None
    frames_in: int = 0
    created_at: float = field(default_factory=time.monotonic)


@dataclass(frozen=True)
class ReceiveResult:
    frame: str | None
    state: SocketState
    buffered: int = 0
    generation: int = 0

    @property
    def is_open(self) -> bool:
        return self.state == SocketState.OPEN


class AiohttpWebSocketConnector:
    """Opens chat sockets with aiohttp's websocket client."""

    def __init__(
        self,
        *,
        protocols: tuple[str, ...] = ("chat",),
        session: aiohttp.ClientSession | None = None,
    ):
        self.protocols = protocols
        self._session = session
        self._owns_session = session is None

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def __call__(
        self, url: str, headers: dict[str, str]
    ) -> aiohttp.ClientWebSocketResponse:
        clean = {k: v for k, v in headers.items() if k.lower() not in _HANDSHAKE_HEADERS}
        session = self._ensure_session()
        return await session.ws_connect(url, headers=clean, protocols=self.protocols)

    async def close(self) -> None:
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        self._session = None


class TransportRegistry:
    def __init__(
        self,
        *,
        connector: Connector | None = None,
        rate_limiter: SlidingWindowRateLimiter | None = None,
        config: RelayConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._config = config or RelayConfig()
        self._connector = connector or AiohttpWebSocketConnector()
        self._rate_limiter = rate_limiter or SlidingWindowRateLimiter(
            max_requests=self._config.rate_max_requests,
            window_s=self._config.rate_window_s,
            retry_delay_s=self._config.rate_retry_delay_s,
        )
        self._clock = clock
        # Live handles only; ids come from a counter and are never handed out twice.
        self._slots: dict[int, SocketHandle] = {}
        self._next_id = 0
        self._generation = 0

    # -----------------
    # Lookup
    # -----------------

    def _get(self, socket_id: int) -> SocketHandle:
        handle = self._slots.get(socket_id) if isinstance(socket_id, int) else None
        if handle is None:
            raise TransportError(
                TransportError.NOT_FOUND, f"websocket {socket_id} not available"
            )
        return handle

    def state_of(self, socket_id: int) -> SocketState:
        return self._get(socket_id).state

    def live_ids(self) -> list[int]:
        return list(self._slots)

    # -----------------
    # Open
    # -----------------

    async def _wait_for_admission(self) -> None:
        while True:
            try:
                self._rate_limiter.consume()
                return
            except RateLimitError as e:
                log.info(f"Rate limit exceeded, waiting {e.retry_in:.1f}s")
                await asyncio.sleep(e.retry_in)

    async def open(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        initial_frame: str | None = None,
    ) -> int:
        retries = max(0, int(self._config.open_retries))
        last_exc: BaseException | None = None
        for attempt in range(retries + 1):
            # Every creation attempt counts against the shared window.
            await self._wait_for_admission()
            try:
                return await self._open_once(url, dict(headers or {}), initial_frame)
            except asyncio.CancelledError:
                raise
            except (aiohttp.ClientError, asyncio.TimeoutError, OSError, TransportError) as e:
                last_exc = e
                if attempt >= retries:
                    break
                delay = backoff_delay(
                    attempt,
                    self._config.open_backoff_base_s,
                    self._config.open_backoff_cap_s,
                )
                log.warning(
                    f"WebSocket creation failed ({type(e).__name__}: {e}); "
                    f"retrying in {delay:.1f}s ({retries - attempt} attempts left)"
                )
                await asyncio.sleep(delay)

        detail = f"{type(last_exc).__name__}: {last_exc}" if last_exc else None
        raise TransportError(TransportError.CREATION_FAILED, detail) from last_exc

    async def _open_once(
        self, url: str, headers: dict[str, str], initial_frame: str | None
    ) -> int:
        self._generation += 1
        handle = SocketHandle(
            id=self._next_id,
            url=url,
            generation=self._generation,
            channel=FrameChannel(maxsize=self._config.channel_size),
        )
        self._next_id += 1
        self._slots[handle.id] = handle
        log.debug(f"Creating WebSocket {handle.id}: {url.split('?', 1)[0]}")

        try:
            handle.ws = await asyncio.wait_for(
                self._connector(url, headers), timeout=self._config.connect_timeout_s
            )
            handle.state = SocketState.OPEN
            handle.last_activity = self._clock()
            if initial_frame:
                log.debug(f"Sending initial frame on {handle.id}")
                await handle.ws.send_str(initial_frame)
        except BaseException:
            self._slots.pop(handle.id, None)
            handle.state = SocketState.CLOSED
            handle.channel.close()
            if handle.ws is not None and not handle.ws.closed:
                await handle.ws.close()
            raise

        handle.reader = asyncio.create_task(self._read_loop(handle))
        handle.keepalive = KeepaliveSupervisor(
            name=f"socket {handle.id}",
            is_open=lambda: handle.state == SocketState.OPEN,
            idle_for=lambda: self._clock() - handle.last_activity,
            send_ping=lambda: handle.ws.send_str(framing.encode_frame({"event": "ping"})),
            force_close=lambda: self._close_connection(handle, message=b"Keepalive timeout"),
            interval_s=self._config.keepalive_interval_s,
            idle_s=self._config.keepalive_idle_s,
        )
        handle.keepalive.start()
        log.info(f"WebSocket created with ID {handle.id}")
        return handle.id

    # -----------------
    # Inbound
    # -----------------

    async def _read_loop(self, handle: SocketHandle) -> None:
        ws = handle.ws
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    data = msg.data
                elif msg.type == aiohttp.WSMsgType.BINARY:
                    data = msg.data.decode("utf-8", errors="replace")
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    log.warning(f"WebSocket {handle.id} error: {ws.exception()}")
                    break
                else:
                    continue

                handle.last_activity = self._clock()
                if not await self._dispatch_inbound(handle, data):
                    break
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.warning(f"WebSocket {handle.id} reader failed: {type(e).__name__}: {e}")
        finally:
            self._mark_closed(handle)

    async def _dispatch_inbound(self, handle: SocketHandle, data: str) -> bool:
        """Buffer caller-visible frames. Returns False once the socket is closing."""
        for fragment in framing.split_fragments(data):
            try:
                frame = framing.parse_fragment(fragment)
            except ParseError as e:
                # Not ours to interpret; hand it over unchanged.
                log.debug(f"Forwarding unparsed fragment on {handle.id}: {e}")
                frame = None

            if frame is not None:
                kind = framing.classify_frame(frame)
                if kind == framing.PONG:
                    log.debug(f"Received pong on {handle.id}")
                    continue
                if kind == framing.DISCONNECT:
                    log.info(f"Server requested disconnect on {handle.id}")
                    await self._close_connection(
                        handle, message=b"Server requested disconnect"
                    )
                    return False
                if kind == framing.TOKEN_ERROR:
                    log.warning(f"Token error on {handle.id}")

            handle.frames_in += 1
            await handle.channel.put(fragment)
        return True

    def _mark_closed(self, handle: SocketHandle) -> None:
        if handle.state != SocketState.CLOSED:
            log.debug(f"WebSocket {handle.id} closed")
        handle.state = SocketState.CLOSED
        if handle.keepalive:
            handle.keepalive.cancel()
        handle.channel.close()

    async def _close_connection(self, handle: SocketHandle, *, message: bytes) -> None:
        if handle.state in (SocketState.CLOSING, SocketState.CLOSED):
            return
        handle.state = SocketState.CLOSING
        if handle.keepalive:
            handle.keepalive.cancel()
        try:
            await handle.ws.close(code=1000, message=message)
        except Exception as e:
            log.debug(f"Close on {handle.id} raised: {e}")
        if handle.ws.closed:
            self._mark_closed(handle)

    # -----------------
    # Caller operations
    # -----------------

    async def send(self, socket_id: int, frame: str) -> str:
        handle = self._get(socket_id)

        if framing.is_close_directive(frame):
            log.debug(f"Closing WebSocket {socket_id}")
            await self.close(socket_id)
            return "Closed"

        if handle.state != SocketState.OPEN:
            raise TransportError(
                TransportError.NOT_OPEN, f"websocket {socket_id} is {handle.state.value}"
            )

        log.debug(f"Sending frame on {socket_id}: {frame[:100]}")
        try:
            await handle.ws.send_str(frame)
        except (aiohttp.ClientError, ConnectionError, RuntimeError) as e:
            raise TransportError(TransportError.CONNECTION_LOST, str(e)) from e
        return "Success"

    async def receive(self, socket_id: int) -> ReceiveResult:
        handle = self._get(socket_id)
        frame = await handle.channel.get()
        return ReceiveResult(
            frame=frame,
            state=handle.state,
            buffered=handle.channel.qsize(),
            generation=handle.generation,
        )

    async def close(self, socket_id: int) -> None:
        handle = self._get(socket_id)
        # Free the slot first so the caller may ask for a new socket right away.
        self._slots.pop(socket_id, None)
        if handle.keepalive:
            handle.keepalive.cancel()

        closer: asyncio.Task | None = None
        if handle.state not in (SocketState.CLOSING, SocketState.CLOSED):
            handle.state = SocketState.CLOSING
            closer = asyncio.create_task(
                handle.ws.close(code=1000, message=b"Intentional close")
            )

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._config.close_max_wait_s
        while handle.ws is not None and not handle.ws.closed:
            if loop.time() >= deadline:
                log.warning(f"WebSocket {socket_id} did not close within {self._config.close_max_wait_s}s")
                break
            await asyncio.sleep(self._config.close_poll_interval_s)

        if closer is not None:
            if not closer.done():
                closer.cancel()
            try:
                await closer
            except asyncio.CancelledError:
                pass
            except Exception as e:
                log.debug(f"Close on {socket_id} raised: {e}")

        if handle.reader and not handle.reader.done() and not handle.ws.closed:
            handle.reader.cancel()
        self._mark_closed(handle)
        log.debug(f"WebSocket {socket_id} released")

    async def close_all(self) -> None:
        for socket_id in self.live_ids():
            try:
                await self.close(socket_id)
            except TransportError:
                continue
        closer = getattr(self._connector, "close", None)
        if closer is not None:
            await closer()
