"""Conversation driver for the pull-based event-stream backend.

The prompt is POSTed once and the ``text/event-stream`` body is pulled chunk
by chunk through a StreamPort. Each record carries the full message text so
far; only the new suffix is published.
"""

from __future__ import annotations

import json
import logging
import uuid

from chatrelay.config import RelayConfig
from chatrelay.conversation import state as st
from chatrelay.conversation.models import Turn
from chatrelay.conversation.state import ConversationState
from chatrelay.errors import (
    ChatRelayError,
    ConversationBusyError,
    ParseError,
    SessionError,
    TransportError,
)
from chatrelay.ports import AuthPort, Event, EventSinkPort, StreamPort

log = logging.getLogger("conversation")

DONE_SENTINEL = "[DONE]"


class EventStreamDecoder:
    """Incremental SSE decoder.

    Events are separated by a blank line. Anything after the last separator
    is kept until more data arrives.
    """

    def __init__(self, *, max_buffer: int = 4 * 1024 * 1024):
        self._buf = ""
        self._max_buffer = max_buffer
        self._json = json.JSONDecoder()
        self.finished = False

    @property
    def pending(self) -> str:
        return self._buf

    @staticmethod
    def _split_event(buf: str) -> tuple[str | None, int]:
        """Return (event_text, consumed_chars) for the next event, if any."""
        idx_nl = buf.find("\n\n")
        idx_crlf = buf.find("\r\n\r\n")
        if idx_nl == -1 and idx_crlf == -1:
            return None, 0
        if idx_crlf != -1 and (idx_nl == -1 or idx_crlf < idx_nl):
            return buf[:idx_crlf], idx_crlf + 4
        return buf[:idx_nl], idx_nl + 2

    def _decode_event(self, event_text: str) -> dict | None:
        data_lines: list[str] = []
        for line in event_text.splitlines():
            line = line.rstrip("\r")
            if not line or line.startswith(":"):
                continue
            if line.startswith("data:"):
                data_lines.append(line[len("data:") :].lstrip())

        if not data_lines:
            return None

        payload = "\n".join(data_lines)
        if payload.strip() == DONE_SENTINEL:
            self.finished = True
            return None

        start = payload.find("{")
        if start == -1:
            log.debug(f"Dropping non-JSON event: {payload[:80]!r}")
            return None
        try:
            record, _ = self._json.raw_decode(payload, start)
        except json.JSONDecodeError as e:
            log.warning(f"Dropping malformed event ({e}): {payload[:80]!r}")
            return None
        if not isinstance(record, dict):
            return None
        return record

    def feed(self, packet: str) -> list[dict]:
        self._buf += packet
        if len(self._buf) > self._max_buffer:
            raise ParseError(f"event-stream buffer too big ({len(self._buf)} chars)")

        records: list[dict] = []
        while not self.finished:
            event_text, consumed = self._split_event(self._buf)
            if event_text is None:
                break
            self._buf = self._buf[consumed:]
            if not event_text.strip():
                continue
            record = self._decode_event(event_text)
            if record is not None:
                records.append(record)
        return records

    def flush(self) -> list[dict]:
        """Decode whatever is left once the stream has ended."""
        rest, self._buf = self._buf, ""
        if not rest.strip() or self.finished:
            return []
        record = self._decode_event(rest)
        return [record] if record is not None else []


class EventStreamConversation:
    def __init__(
        self,
        *,
        streams: StreamPort,
        auth: AuthPort,
        events: EventSinkPort,
        config: RelayConfig | None = None,
    ):
        self._streams = streams
        self._auth = auth
        self._events = events
        self._config = config or RelayConfig()

        self.state = ConversationState.IDLE
        self.access_token: str | None = None
        self.conversation_id: str | None = None
        self.parent_message_id: str | None = None
        self.stream_id: int | None = None
        self.turn: Turn | None = None

    @property
    def sending_allowed(self) -> bool:
        return self.state == ConversationState.IDLE

    async def _emit(self, event: Event) -> None:
        await self._events.emit(event)

    async def _move(self, trigger: str) -> None:
        previous = self.state
        self.state = st.transition(self.state, trigger)
        if self.state != previous:
            await self._emit(("state", self.state.value))

    def build_request(self, prompt: str) -> dict:
        body = {
            "action": "next",
            "model": self._config.stream_model,
            "parent_message_id": self.parent_message_id or str(uuid.uuid4()),
            "messages": [
                {
                    "id": str(uuid.uuid4()),
                    "role": "user",
                    "content": {"content_type": "text", "parts": [prompt]},
                }
            ],
        }
        if self.conversation_id:
            body["conversation_id"] = self.conversation_id
        return body

    def _apply_text_update(self, text: str, turn: Turn) -> Event | None:
        if not text:
            return None

        # Records carry the full text so far; publish only the new part.
        if text.startswith(turn.text):
            delta = text[len(turn.text) :]
            turn.text = text
            if delta:
                return ("text", delta)
            return None

        turn.text = text
        return ("text", text)

    def _handle_record(self, record: dict, turn: Turn) -> Event | None:
        conversation_id = record.get("conversation_id")
        if isinstance(conversation_id, str) and conversation_id:
            self.conversation_id = conversation_id

        message = record.get("message")
        if not isinstance(message, dict):
            return None
        message_id = message.get("id")
        if isinstance(message_id, str) and message_id:
            self.parent_message_id = message_id

        content = message.get("content")
        parts = content.get("parts") if isinstance(content, dict) else None
        if isinstance(parts, list) and parts and isinstance(parts[0], str):
            return self._apply_text_update(parts[0], turn)
        return None

    def _session_error(self, text: str) -> SessionError:
        return SessionError(
            "EVENT_STREAM_SESSION",
            text,
            url=self._config.resolve_stream_url(),
            action="window",
        )

    async def _fail(self, trigger: str, exc: ChatRelayError) -> Turn:
        turn = self.turn
        turn.error = exc
        turn.status = "fatal"
        await self._close_stream()
        await self._move(trigger)
        await self._emit(("error", exc))
        log.warning(f"Event-stream turn failed: {exc}")
        await self._move(st.RESET)
        return turn

    async def _close_stream(self) -> None:
        stream_id, self.stream_id = self.stream_id, None
        if stream_id is None:
            return
        try:
            await self._streams.close(stream_id)
        except TransportError as e:
            log.debug(f"Closing event stream {stream_id}: {e}")

    async def send(self, prompt: str) -> Turn:
        if not self.sending_allowed:
            raise ConversationBusyError(f"conversation is {self.state.value}")
        turn = Turn(prompt=prompt)
        self.turn = turn

        if self.access_token:
            await self._move(st.SEND_WITH_SESSION)
        else:
            await self._move(st.SEND_NO_SESSION)
            response = await self._auth.request({"action": self._config.auth_action})
            token = (response.get("data") or {}).get("accessToken") if response.get("success") else None
            if not token:
                error = str(response.get("error") or "No access token in response")
                return await self._fail(st.AUTH_FAILED, self._session_error(error))
            self.access_token = token
            await self._move(st.AUTH_OK)

        headers = {"Authorization": f"Bearer {self.access_token}"}
        try:
            self.stream_id = await self._streams.open(
                self._config.resolve_stream_url(), self.build_request(prompt), headers
            )
        except TransportError as e:
            self.access_token = None
            return await self._fail(st.CONNECT_FAILED, self._session_error(str(e)))
        await self._move(st.CONNECTED)
        turn.status = "streaming"

        decoder = EventStreamDecoder()
        while True:
            try:
                done, packet = await self._streams.read(self.stream_id)
            except TransportError as e:
                # Event streams cannot be resumed; a lost stream ends the turn.
                return await self._fail(st.RETRIES_EXHAUSTED, e)

            try:
                records = decoder.feed(packet) if packet else []
                if done or not packet:
                    records.extend(decoder.flush())
            except ParseError as e:
                return await self._fail(st.PROTOCOL_ERROR, e)
            for record in records:
                turn.frames += 1
                event = self._handle_record(record, turn)
                if event is not None:
                    await self._move(st.TEXT)
                    await self._emit(event)

            if done or not packet or decoder.finished:
                break

        await self._close_stream()
        await self._move(st.DONE)
        turn.status = "done"
        await self._emit(("done", turn.summary()))
        await self._move(st.RESET)
        log.info(f"Event-stream turn complete ({len(turn.text)} chars)")
        return turn

    def remove_conversation(self) -> None:
        self.conversation_id = None
        self.parent_message_id = None
