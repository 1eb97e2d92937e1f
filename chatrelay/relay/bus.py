"""Cross-context message bus.

Three isolated execution contexts talk only by posting envelopes into each
other's inbox:

    Controller  ->  Relay Host  ->  Transport Endpoint

Handshake: the relay host announces ``relay-host-ready``; the controller
answers with the capability modules to install; the relay host forwards them
to the endpoint, which installs them and announces ``endpoint-ready`` once.

Requests are correlated hop by hop. Every hop tags the forwarded message
with a fresh id and relays the single reply back under the id it received,
so each call yields exactly one response (or none, on timeout).
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Protocol

log = logging.getLogger("relay")

RELAY_HOST_READY = "relay-host-ready"
ENDPOINT_READY = "endpoint-ready"

DEFAULT_ENDPOINT_ORIGIN = "chatrelay://endpoint"


@dataclass(frozen=True)
class Envelope:
    origin: str
    data: Any


@dataclass
class PendingCorrelation:
    id: str
    future: asyncio.Future
    created_at: float = field(default_factory=time.monotonic)


def new_correlation_id() -> str:
    return secrets.token_hex(8)


class CorrelationTable:
    """Single-shot futures keyed by correlation id."""

    def __init__(self, name: str):
        self.name = name
        self._pending: dict[str, PendingCorrelation] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, correlation_id: str) -> bool:
        return correlation_id in self._pending

    def new(self) -> PendingCorrelation:
        correlation_id = new_correlation_id()
        while correlation_id in self._pending:
            correlation_id = new_correlation_id()
        pending = PendingCorrelation(
            id=correlation_id, future=asyncio.get_running_loop().create_future()
        )
        self._pending[correlation_id] = pending
        return pending

    def resolve(self, correlation_id: Any, value: Any) -> bool:
        pending = self._pending.pop(correlation_id, None)
        if pending is None:
            log.debug(f"{self.name}: ignoring reply for unknown id {correlation_id!r}")
            return False
        if not pending.future.done():
            pending.future.set_result(value)
        return True

    def discard(self, correlation_id: str) -> None:
        pending = self._pending.pop(correlation_id, None)
        if pending is not None and not pending.future.done():
            pending.future.cancel()

    def cancel_all(self) -> None:
        for correlation_id in list(self._pending):
            self.discard(correlation_id)


class EndpointHandler(Protocol):
    def install(self, modules: list[str]) -> list[str]: ...

    async def handle(self, message: dict) -> dict: ...


class ExecutionContext:
    """An isolated context with its own inbox and run loop."""

    def __init__(self, name: str, origin: str):
        self.name = name
        self.origin = origin
        self.inbox: asyncio.Queue[Envelope] = asyncio.Queue()
        self._task: asyncio.Task | None = None
        self._jobs: set[asyncio.Task] = set()

    def post(self, target: "ExecutionContext", data: Any) -> None:
        target.inbox.put_nowait(Envelope(origin=self.origin, data=data))

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name=f"context:{self.name}")

    def spawn(self, coro: Awaitable[None]) -> asyncio.Task:
        """Run a handler off the inbox loop so slow calls never block delivery."""
        task = asyncio.ensure_future(coro)
        self._jobs.add(task)
        task.add_done_callback(self._jobs.discard)
        return task

    async def _run(self) -> None:
        while True:
            envelope = await self.inbox.get()
            try:
                await self.handle(envelope)
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception(f"{self.name}: failed to handle message")

    async def handle(self, envelope: Envelope) -> None:
        raise NotImplementedError

    async def stop(self) -> None:
        tasks = [t for t in [self._task, *self._jobs] if t is not None and not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._task = None
        self._jobs.clear()


class ControllerContext(ExecutionContext):
    def __init__(self, *, origin: str, modules: tuple[str, ...]):
        super().__init__("controller", origin)
        self.modules = list(modules)
        self.host: ExecutionContext | None = None
        self.correlations = CorrelationTable("controller")

    async def call(self, message: dict, timeout: float | None = None) -> Any:
        if self.host is None:
            raise RuntimeError("controller is not connected to a relay host")
        pending = self.correlations.new()
        self.post(self.host, {"message": message, "messageId": pending.id})
        try:
            return await asyncio.wait_for(pending.future, timeout=timeout)
        except asyncio.TimeoutError:
            self.correlations.discard(pending.id)
            self.post(self.host, {"discard": pending.id})
            raise

    async def handle(self, envelope: Envelope) -> None:
        data = envelope.data
        if data == RELAY_HOST_READY:
            log.debug(f"Relay host ready, sending modules {self.modules}")
            self.post(self.host, {"modules": self.modules})
        elif isinstance(data, dict) and "messageId" in data:
            self.correlations.resolve(data["messageId"], data.get("response"))
        else:
            log.debug(f"controller: ignoring message {data!r}")


class RelayHostContext(ExecutionContext):
    """Bridges the controller and the endpoint; holds requests until the endpoint is ready."""

    def __init__(self, *, origin: str, controller_origin: str):
        super().__init__("relay-host", origin)
        self.controller_origin = controller_origin
        self.controller: ExecutionContext | None = None
        self.endpoint: ExecutionContext | None = None
        self.correlations = CorrelationTable("relay-host")
        self.endpoint_ready = asyncio.Event()
        # Forwarding tasks keyed by the controller's correlation id.
        self.forwards: dict[str, asyncio.Task] = {}

    def announce(self) -> None:
        self.post(self.controller, RELAY_HOST_READY)

    async def handle(self, envelope: Envelope) -> None:
        data = envelope.data
        if envelope.origin == self.controller_origin:
            if isinstance(data, dict) and "modules" in data:
                self.post(self.endpoint, {"modules": list(data["modules"])})
            elif isinstance(data, dict) and "messageId" in data:
                controller_id = data["messageId"]
                task = self.spawn(self._forward(data.get("message"), controller_id))
                self.forwards[controller_id] = task
                task.add_done_callback(lambda _: self.forwards.pop(controller_id, None))
            elif isinstance(data, dict) and "discard" in data:
                task = self.forwards.pop(data["discard"], None)
                if task is not None:
                    log.debug(f"relay-host: caller gave up on {data['discard']}")
                    task.cancel()
            return

        if data == ENDPOINT_READY:
            if self.endpoint_ready.is_set():
                log.debug("Duplicate endpoint-ready ignored")
                return
            log.info("Transport endpoint ready")
            self.endpoint_ready.set()
        elif isinstance(data, dict) and "messageId" in data:
            self.correlations.resolve(data["messageId"], data.get("response"))

    async def _forward(self, message: Any, controller_id: str) -> None:
        await self.endpoint_ready.wait()
        pending = self.correlations.new()
        try:
            self.post(self.endpoint, {"message": message, "messageId": pending.id})
            response = await pending.future
        finally:
            self.correlations.discard(pending.id)
        self.post(self.controller, {"messageId": controller_id, "response": response})


class TransportEndpointContext(ExecutionContext):
    def __init__(
        self,
        handler: EndpointHandler,
        *,
        origin: str,
        expected_origin: str,
    ):
        super().__init__("endpoint", origin)
        self.handler = handler
        self.expected_origin = expected_origin
        self.host: ExecutionContext | None = None
        self.installed: list[str] = []
        self._ready_sent = False

    async def handle(self, envelope: Envelope) -> None:
        if envelope.origin != self.expected_origin:
            log.warning(f"endpoint: dropping message from unexpected origin {envelope.origin!r}")
            return

        data = envelope.data
        if isinstance(data, dict) and "modules" in data:
            self.installed = self.handler.install(list(data["modules"]))
            if not self._ready_sent:
                self._ready_sent = True
                self.post(self.host, ENDPOINT_READY)
        elif isinstance(data, dict) and "messageId" in data:
            self.spawn(self._dispatch(data.get("message"), data["messageId"]))
        else:
            log.debug(f"endpoint: ignoring message {data!r}")

    async def _dispatch(self, message: Any, message_id: str) -> None:
        if not isinstance(message, dict):
            response: dict = {"error": "Malformed request"}
        else:
            try:
                response = await self.handler.handle(message)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.exception("endpoint: request failed")
                response = {"error": str(e) or type(e).__name__}
        self.post(self.host, {"messageId": message_id, "response": response})


class MessageBus:
    """Wires the three contexts together and exposes the controller's ``call``."""

    def __init__(
        self,
        handler: EndpointHandler,
        *,
        controller_origin: str = "chatrelay://controller",
        modules: tuple[str, ...] = ("socket", "event-stream"),
        host_origin: str | None = None,
        endpoint_origin: str = DEFAULT_ENDPOINT_ORIGIN,
    ):
        # The relay host is trusted by the endpoint, so by default it shares
        # the controller's origin.
        host_origin = host_origin or controller_origin
        self.controller = ControllerContext(origin=controller_origin, modules=modules)
        self.host = RelayHostContext(origin=host_origin, controller_origin=controller_origin)
        self.endpoint = TransportEndpointContext(
            handler, origin=endpoint_origin, expected_origin=controller_origin
        )
        self.controller.host = self.host
        self.host.controller = self.controller
        self.host.endpoint = self.endpoint
        self.endpoint.host = self.host
        self._started = False

    @property
    def ready(self) -> bool:
        return self.host.endpoint_ready.is_set()

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        for context in (self.controller, self.host, self.endpoint):
            context.start()
        self.host.announce()

    async def wait_ready(self, timeout: float | None = None) -> None:
        await asyncio.wait_for(self.host.endpoint_ready.wait(), timeout=timeout)

    async def call(self, message: dict, timeout: float | None = None) -> Any:
        if not self._started:
            await self.start()
        return await self.controller.call(message, timeout=timeout)

    async def close(self) -> None:
        for table in (self.controller.correlations, self.host.correlations):
            table.cancel_all()
        for context in (self.endpoint, self.host, self.controller):
            await context.stop()
        self._started = False

