"""Keepalive supervision for one socket.

Every interval, while the socket is open: force-close it if nothing has been
received for longer than the idle threshold, otherwise send a ping. This keeps
a silently-stalled connection from parking a receive forever.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

log = logging.getLogger("keepalive")


class KeepaliveSupervisor:
    def __init__(
        self,
        *,
        name: str,
        is_open: Callable[[], bool],
        idle_for: Callable[[], float],
        send_ping: Callable[[], Awaitable[None]],
        force_close: Callable[[], Awaitable[None]],
        interval_s: float = 15.0,
        idle_s: float = 30.0,
    ):
        self.name = name
        self._is_open = is_open
        self._idle_for = idle_for
        self._send_ping = send_ping
        self._force_close = force_close
        self.interval_s = interval_s
        self.idle_s = idle_s
        self._task: asyncio.Task | None = None
        self.pings_sent = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        log.debug(f"Starting keepalive for {self.name}")
        self._task = asyncio.create_task(self._run())

    def cancel(self) -> None:
        task = self._task
        self._task = None
        if task and not task.done():
            log.debug(f"Stopping keepalive for {self.name}")
            task.cancel()

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_s)
            if not self._is_open():
                continue

            idle = self._idle_for()
            if idle > self.idle_s:
                log.info(f"No frames on {self.name} for {idle:.1f}s, closing")
                self._task = None
                await self._force_close()
                return

            try:
                await self._send_ping()
                self.pings_sent += 1
            except Exception as e:
                log.warning(f"Keepalive ping failed on {self.name}: {e}")
