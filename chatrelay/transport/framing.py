"""Record-separator framing for the chat socket.

A connection carries UTF-8 text where each JSON record is terminated by 0x1E.
One websocket message may hold several records; whitespace-only fragments
between separators are dropped silently.
"""

from __future__ import annotations

import json
import logging

from chatrelay.errors import ParseError

log = logging.getLogger("framing")

RECORD_SEPARATOR = "\x1e"

CLOSE_DIRECTIVE = '"event":"close"'
CLOSE_FRAME = '{"event":"close"}' + RECORD_SEPARATOR

# Event kinds produced by classify_frame().
TEXT = "text"
SUGGESTIONS = "suggestions"
TOKEN_ERROR = "token_error"
ERROR = "error"
DISCONNECT = "disconnect"
DONE = "done"
PING = "ping"
PONG = "pong"
UNKNOWN = "unknown"


def encode_frame(body: dict) -> str:
    """Serialize one record, compact separators, terminated by 0x1E."""
    return json.dumps(body, separators=(",", ":")) + RECORD_SEPARATOR


def split_fragments(data: str) -> list[str]:
    """Split raw socket text into non-empty record fragments."""
    return [part for part in data.split(RECORD_SEPARATOR) if part.strip()]


def parse_fragment(fragment: str) -> dict:
    try:
        obj = json.loads(fragment)
    except json.JSONDecodeError as e:
        raise ParseError(str(e), payload_preview=fragment[:120]) from e
    if not isinstance(obj, dict):
        raise ParseError("record is not an object", payload_preview=fragment[:120])
    return obj


def decode_frames(data: str) -> list[dict]:
    """Parse every record in ``data``, in order.

    Malformed fragments are logged and dropped; they never abort the batch.
    """
    frames: list[dict] = []
    for fragment in split_fragments(data):
        try:
            frames.append(parse_fragment(fragment))
        except ParseError as e:
            log.debug(f"Dropping fragment: {e}")
    return frames


def is_token_error(frame: dict) -> bool:
    error = frame.get("error")
    return frame.get("event") == "error" and isinstance(error, str) and "token" in error


def is_close_directive(frame: str) -> bool:
    return CLOSE_DIRECTIVE in frame.replace(" ", "")


def classify_frame(frame: dict) -> str:
    event = frame.get("event")
    if event == "appendText":
        return TEXT
    if event == "suggestedFollowups":
        return SUGGESTIONS
    if event == "error":
        return TOKEN_ERROR if is_token_error(frame) else ERROR
    if event == "disconnect":
        return DISCONNECT
    if event == "done":
        return DONE
    if event == "ping":
        return PING
    if event == "pong":
        return PONG
    return UNKNOWN
