"""Controller-side clients for the endpoint RPC surface.

They implement SocketPort / StreamPort on top of MessageBus.call, so the
conversation drivers never know the transport lives behind two context hops.
"""

from __future__ import annotations

from chatrelay.errors import TransportError
from chatrelay.relay.bus import MessageBus
from chatrelay.transport import framing
from chatrelay.transport.registry import ReceiveResult, SocketState


def raise_for_error(response: object, *, default_kind: str) -> dict:
    if not isinstance(response, dict):
        raise TransportError(default_kind, f"unexpected response {response!r}")
    if "error" in response:
        kind = response.get("kind")
        if kind:
            raise TransportError(kind, response.get("detail"))
        raise TransportError(default_kind, str(response["error"]))
    return response


class RemoteSocketClient:
    def __init__(self, bus: MessageBus, *, timeout: float | None = None):
        self._bus = bus
        self._timeout = timeout

    async def _call(self, message: dict, *, default_kind: str) -> dict:
        response = await self._bus.call(message, timeout=self._timeout)
        return raise_for_error(response, default_kind=default_kind)

    async def open(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        initial_frame: str | None = None,
    ) -> int:
        message = {"action": "socket", "url": url, "headers": dict(headers or {})}
        if initial_frame is not None:
            message["initialFrame"] = initial_frame
        response = await self._call(message, default_kind=TransportError.CREATION_FAILED)
        return int(response["socketID"])

    async def send(self, socket_id: int, frame: str) -> str:
        response = await self._call(
            {"action": "socket", "socketID": socket_id, "toSend": frame},
            default_kind=TransportError.NOT_OPEN,
        )
        return str(response.get("status"))

    async def receive(self, socket_id: int) -> ReceiveResult:
        response = await self._call(
            {"action": "socket", "socketID": socket_id},
            default_kind=TransportError.NOT_FOUND,
        )
        return ReceiveResult(
            frame=response.get("packet"),
            state=SocketState(response.get("readyState", SocketState.CLOSED.value)),
            buffered=int(response.get("buffered") or 0),
            generation=int(response.get("generation") or 0),
        )

    async def close(self, socket_id: int) -> None:
        try:
            await self.send(socket_id, framing.CLOSE_FRAME)
        except TransportError as e:
            if e.kind != TransportError.NOT_FOUND:
                raise


class RemoteStreamClient:
    def __init__(self, bus: MessageBus, *, timeout: float | None = None):
        self._bus = bus
        self._timeout = timeout

    async def _call(self, message: dict, *, default_kind: str) -> dict:
        response = await self._bus.call(message, timeout=self._timeout)
        return raise_for_error(response, default_kind=default_kind)

    async def open(
        self, url: str, body: dict | None, headers: dict[str, str] | None = None
    ) -> int:
        message = {"action": "event-stream", "url": url, "body": body}
        if headers:
            message["headers"] = dict(headers)
        response = await self._call(message, default_kind=TransportError.CREATION_FAILED)
        return int(response["id"])

    async def read(self, stream_id: int) -> tuple[bool, str]:
        response = await self._call(
            {"action": "event-stream", "id": stream_id},
            default_kind=TransportError.CONNECTION_LOST,
        )
        return bool(response.get("done")), response.get("packet") or ""

    async def close(self, stream_id: int) -> None:
        await self._call(
            {"action": "event-stream", "id": stream_id, "close": True},
            default_kind=TransportError.NOT_FOUND,
        )

