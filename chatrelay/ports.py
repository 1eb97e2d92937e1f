"""Ports (interfaces) for the conversation engine.

The conversation drivers depend on these contracts rather than on the
concrete registry, message bus or token manager, so they can be exercised
with in-memory fakes.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from chatrelay.conversation.models import Session
    from chatrelay.transport.registry import ReceiveResult


Event = tuple[str, object]


class EventSinkPort(Protocol):
    async def emit(self, event: Event) -> None: ...


class SocketPort(Protocol):
    async def open(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        initial_frame: str | None = None,
    ) -> int: ...

    async def send(self, socket_id: int, frame: str) -> str: ...

    async def receive(self, socket_id: int) -> "ReceiveResult": ...

    async def close(self, socket_id: int) -> None: ...


class StreamPort(Protocol):
    async def open(
        self, url: str, body: dict | None, headers: dict[str, str] | None = None
    ) -> int: ...

    async def read(self, stream_id: int) -> tuple[bool, str]: ...

    async def close(self, stream_id: int) -> None: ...


class AuthPort(Protocol):
    async def request(self, message: dict) -> dict: ...


class SessionStorePort(Protocol):
    def persist(self, session: "Session") -> None: ...

    def restore(self, conversation_id: str | None = None) -> "Session | None": ...

    def remove(self) -> None: ...


class LoginSurfacePort(Protocol):
    async def open(self, url: str) -> None: ...

    async def close(self) -> None: ...

    def is_open(self) -> bool: ...
