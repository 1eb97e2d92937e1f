"""Pull-based HTTP event streams.

The alternate backend answers a POST with a long-lived ``text/event-stream``
body. Each stream is registered under an integer id and read one raw chunk
at a time; parsing lives in the conversation layer.
"""

from __future__ import annotations

import codecs
import logging
from dataclasses import dataclass, field
from typing import Any

import aiohttp

from chatrelay.errors import TransportError

log = logging.getLogger("streams")


@dataclass
class _Stream:
    id: int
    url: str
    response: aiohttp.ClientResponse
    decoder: Any = field(
        default_factory=lambda: codecs.getincrementaldecoder("utf-8")(errors="replace")
    )
    done: bool = False


class EventStreamRegistry:
    def __init__(
        self,
        *,
        session: aiohttp.ClientSession | None = None,
        connect_timeout_s: float = 10.0,
    ):
        self._session = session
        self._owns_session = session is None
        self._connect_timeout_s = connect_timeout_s
        self._streams: dict[int, _Stream] = {}
        self._next_id = 0

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    def _get(self, stream_id: int) -> _Stream:
        stream = self._streams.get(stream_id)
        if stream is None:
            raise TransportError(
                TransportError.NOT_FOUND, f"event stream {stream_id} not available"
            )
        return stream

    async def open(
        self,
        url: str,
        body: dict | None,
        headers: dict[str, str] | None = None,
    ) -> int:
        session = self._ensure_session()
        request_headers = {"Accept": "text/event-stream", **(headers or {})}
        timeout = aiohttp.ClientTimeout(total=None, sock_connect=self._connect_timeout_s)
        try:
            resp = await session.post(url, json=body, headers=request_headers, timeout=timeout)
        except (aiohttp.ClientError, OSError) as e:
            raise TransportError(
                TransportError.CREATION_FAILED, f"{type(e).__name__}: {e}"
            ) from e

        if resp.status >= 400:
            detail = (await resp.text()).strip() or resp.reason
            resp.release()
            raise TransportError(
                TransportError.CREATION_FAILED, f"HTTP {resp.status}: {detail}"
            )

        stream_id = self._next_id
        self._next_id += 1
        self._streams[stream_id] = _Stream(id=stream_id, url=url, response=resp)
        log.debug(f"Event stream {stream_id} opened: {url}")
        return stream_id

    async def read(self, stream_id: int) -> tuple[bool, str]:
        """Return ``(done, packet)`` for the next chunk of the body."""
        stream = self._get(stream_id)
        if stream.done:
            return True, ""

        try:
            chunk = await stream.response.content.readany()
        except (aiohttp.ClientError, ConnectionError) as e:
            stream.done = True
            stream.response.release()
            raise TransportError(TransportError.CONNECTION_LOST, str(e)) from e

        if not chunk:
            stream.done = True
            tail = stream.decoder.decode(b"", final=True)
            stream.response.release()
            log.debug(f"Event stream {stream_id} ended")
            return True, tail
        return False, stream.decoder.decode(chunk)

    async def close(self, stream_id: int) -> None:
        stream = self._streams.pop(stream_id, None)
        if stream is None:
            return
        stream.done = True
        stream.response.close()

    async def close_all(self) -> None:
        for stream_id in list(self._streams):
            await self.close(stream_id)
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        self._session = None
