"""Transport endpoint RPC surface.

Maps bus messages onto the transport registries:

    {"action": "socket", "url", "headers"?, "initialFrame"?}   -> {"socketID"}
    {"action": "socket", "socketID", "toSend"}                 -> {"status"}
    {"action": "socket", "socketID"}                           -> {"packet", "readyState", "buffered"}
    {"action": "event-stream", "url", "body", "headers"?}      -> {"id"}
    {"action": "event-stream", "id"}                           -> {"done", "packet"}
    {"action": "event-stream", "id", "close": true}            -> {"status": "Closed"}

Failures come back as ``{"error": ...}``; transport failures also carry
``kind`` so the caller can rebuild the TransportError.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable

from chatrelay.errors import ChatRelayError, TransportError
from chatrelay.transport.registry import TransportRegistry
from chatrelay.transport.streams import EventStreamRegistry

log = logging.getLogger("relay")

Module = Callable[[dict], Awaitable[dict]]


def error_response(exc: BaseException) -> dict:
    response: dict = {"error": str(exc) or type(exc).__name__}
    if isinstance(exc, TransportError):
        response["kind"] = exc.kind
        response["detail"] = exc.detail
    return response


class EndpointDispatcher:
    def __init__(
        self,
        *,
        sockets: TransportRegistry | None = None,
        streams: EventStreamRegistry | None = None,
    ):
        self.sockets = sockets
        self.streams = streams
        self._available: dict[str, Module] = {}
        if sockets is not None:
            self._available["socket"] = self._socket
        if streams is not None:
            self._available["event-stream"] = self._event_stream
        self._installed: dict[str, Module] = {}

    @property
    def installed(self) -> list[str]:
        return list(self._installed)

    def install(self, modules: list[str]) -> list[str]:
        for name in modules:
            module = self._available.get(name)
            if module is None:
                log.warning(f"Unknown capability module {name!r}")
                continue
            self._installed[name] = module
        log.debug(f"Installed modules: {self.installed}")
        return self.installed

    async def handle(self, message: dict) -> dict:
        action = message.get("action")
        module = self._installed.get(action)
        if module is None:
            return {"error": f"Unknown action: {action}"}
        try:
            return await module(message)
        except ChatRelayError as e:
            log.debug(f"{action} request failed: {e}")
            return error_response(e)

    async def _socket(self, message: dict) -> dict:
        socket_id = message.get("socketID")
        if socket_id is None:
            socket_id = await self.sockets.open(
                message["url"],
                message.get("headers") or {},
                message.get("initialFrame"),
            )
            return {"socketID": socket_id}

        if "toSend" in message:
            status = await self.sockets.send(socket_id, message["toSend"])
            return {"status": status}

        result = await self.sockets.receive(socket_id)
        return {
            "packet": result.frame,
            "readyState": result.state.value,
            "buffered": result.buffered,
            "generation": result.generation,
        }

    async def _event_stream(self, message: dict) -> dict:
        stream_id = message.get("id")
        if stream_id is None:
            stream_id = await self.streams.open(
                message["url"], message.get("body"), message.get("headers")
            )
            return {"id": stream_id}

        if message.get("close"):
            await self.streams.close(stream_id)
            return {"status": "Closed"}

        done, packet = await self.streams.read(stream_id)
        return {"done": done, "packet": packet}
