"""Cross-context message bus: handshake, correlation, origin checks."""

from __future__ import annotations

import asyncio

import pytest

from chatrelay.relay.bus import CorrelationTable, ExecutionContext, MessageBus


class EchoHandler:
    def __init__(self) -> None:
        self.modules: list[str] = []
        self.seen: list[dict] = []

    def install(self, modules: list[str]) -> list[str]:
        self.modules = list(modules)
        return self.modules

    async def handle(self, message: dict) -> dict:
        self.seen.append(message)
        delay = message.get("delay")
        if delay:
            await asyncio.sleep(delay)
        return {"echo": message.get("value")}


def test_handshake_installs_modules_and_signals_ready() -> None:
    async def _run():
        handler = EchoHandler()
        bus = MessageBus(handler)
        await bus.start()
        try:
            await bus.wait_ready(timeout=1.0)
            return handler.modules, bus.ready
        finally:
            await bus.close()

    modules, ready = asyncio.run(_run())
    assert modules == ["socket", "event-stream"]
    assert ready


def test_call_round_trip_leaves_no_pending_correlations() -> None:
    async def _run():
        bus = MessageBus(EchoHandler())
        await bus.start()
        try:
            response = await bus.call({"value": 1}, timeout=1.0)
            return response, len(bus.controller.correlations), len(bus.host.correlations)
        finally:
            await bus.close()

    assert asyncio.run(_run()) == ({"echo": 1}, 0, 0)


def test_concurrent_calls_get_their_own_replies() -> None:
    async def _run():
        bus = MessageBus(EchoHandler())
        await bus.start()
        try:
            return await asyncio.gather(
                bus.call({"value": "slow", "delay": 0.05}, timeout=1.0),
                bus.call({"value": "fast"}, timeout=1.0),
            )
        finally:
            await bus.close()

    assert asyncio.run(_run()) == [{"echo": "slow"}, {"echo": "fast"}]


def test_requests_wait_for_endpoint_ready() -> None:
    async def _run():
        handler = EchoHandler()
        bus = MessageBus(handler)
        bus.controller.start()
        bus.host.start()
        bus.host.announce()
        try:
            call = asyncio.create_task(bus.controller.call({"value": "queued"}, timeout=1.0))
            await asyncio.sleep(0.05)
            queued = not call.done() and handler.seen == []
            bus.endpoint.start()
            return queued, await call
        finally:
            await bus.close()

    queued, response = asyncio.run(_run())
    assert queued
    assert response == {"echo": "queued"}


def test_endpoint_drops_messages_from_unexpected_origin() -> None:
    async def _run():
        handler = EchoHandler()
        bus = MessageBus(handler)
        await bus.start()
        try:
            await bus.wait_ready(timeout=1.0)
            rogue = ExecutionContext("rogue", "https://evil.test")
            rogue.post(bus.endpoint, {"message": {"value": "x"}, "messageId": "abc"})
            rogue.post(bus.endpoint, {"modules": ["socket"]})
            await asyncio.sleep(0.05)
            return handler.seen, handler.modules, rogue.inbox.qsize()
        finally:
            await bus.close()

    seen, modules, replies = asyncio.run(_run())
    assert seen == []
    assert modules == ["socket", "event-stream"]
    assert replies == 0


def test_call_timeout_discards_correlation() -> None:
    async def _run():
        bus = MessageBus(EchoHandler())
        await bus.start()
        try:
            with pytest.raises(asyncio.TimeoutError):
                await bus.call({"value": 1, "delay": 1.0}, timeout=0.05)
            return len(bus.controller.correlations)
        finally:
            await bus.close()

    assert asyncio.run(_run()) == 0


def test_correlation_ids_resolve_once() -> None:
    async def _run():
        table = CorrelationTable("test")
        pending = table.new()
        first = table.resolve(pending.id, "one")
        second = table.resolve(pending.id, "two")
        unknown = table.resolve("nope", "three")
        return first, second, unknown, await pending.future

    assert asyncio.run(_run()) == (True, False, False, "one")


def test_call_timeout_releases_the_relay_host_entry() -> None:
    async def _run():
        bus = MessageBus(EchoHandler())
        await bus.start()
        try:
            with pytest.raises(asyncio.TimeoutError):
                await bus.call({"value": 1, "delay": 0.3}, timeout=0.05)
            await asyncio.sleep(0.02)
            parked = len(bus.host.correlations), dict(bus.host.forwards)
            # A late endpoint reply for the abandoned request is ignored.
            await asyncio.sleep(0.35)
            after = await bus.call({"value": 2}, timeout=1.0)
            return parked, after, len(bus.host.correlations)
        finally:
            await bus.close()

    parked, after, remaining = asyncio.run(_run())
    assert parked == (0, {})
    assert after == {"echo": 2}
    assert remaining == 0
