"""Chat frame processing.

The conversation driver owns sockets, retries and state changes. This module
only maps one decoded frame to a state-machine trigger plus the event to
publish, updating the Turn as it goes.
"""

from __future__ import annotations

import logging

from chatrelay.conversation import state as st
from chatrelay.conversation.models import Turn
from chatrelay.errors import ProtocolError
from chatrelay.ports import Event
from chatrelay.transport import framing

log = logging.getLogger("conversation")

# Triggers that prove the backend is answering this turn.
CONTENT_TRIGGERS = frozenset({st.TEXT, st.SUGGESTIONS, st.DONE})


class FrameProcessor:
    def _handle_text(self, frame: dict, turn: Turn) -> Event | None:
        text = frame.get("text")
        if not isinstance(text, str) or not text:
            return None
        turn.text += text
        return ("text", text)

    def _handle_suggestions(self, frame: dict, turn: Turn) -> Event | None:
        raw = frame.get("suggestions")
        if not isinstance(raw, list):
            return None
        suggestions = []
        for item in raw:
            if isinstance(item, str):
                suggestions.append(item)
            elif isinstance(item, dict) and isinstance(item.get("text"), str):
                suggestions.append(item["text"])
        turn.suggestions = suggestions
        return ("suggestions", list(suggestions))

    def _handle_error(self, frame: dict, turn: Turn) -> Event:
        exc = ProtocolError(frame)
        turn.error = exc
        return ("error", exc)

    def process(self, frame: dict, turn: Turn) -> tuple[str | None, Event | None]:
        kind = framing.classify_frame(frame)

        if kind == framing.TEXT:
            return st.TEXT, self._handle_text(frame, turn)
        if kind == framing.SUGGESTIONS:
            return st.SUGGESTIONS, self._handle_suggestions(frame, turn)
        if kind == framing.DONE:
            return st.DONE, None
        if kind == framing.TOKEN_ERROR:
            return st.TOKEN_ERROR, None
        if kind == framing.ERROR:
            return st.PROTOCOL_ERROR, self._handle_error(frame, turn)
        if kind == framing.DISCONNECT:
            return st.DISCONNECT, None

        log.debug(f"Ignoring {frame.get('event')!r} frame")
        return None, None
