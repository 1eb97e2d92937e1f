"""Conversation state machine.

The legal moves live in TRANSITIONS so the driver never hand-codes a state
change; anything not listed raises InvalidTransition.
"""

from __future__ import annotations

from enum import Enum

from chatrelay.errors import InvalidTransition


class ConversationState(str, Enum):
    IDLE = "idle"
    AUTHENTICATING = "authenticating"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    RECONNECTING = "reconnecting"
    DONE = "done"
    FATAL = "fatal"


# Triggers
SEND_NO_SESSION = "send_no_session"
SEND_WITH_SESSION = "send_with_session"
AUTH_OK = "auth_ok"
AUTH_REQUIRED = "auth_required"
AUTH_FAILED = "auth_failed"
CONNECTED = "connected"
CONNECT_FAILED = "connect_failed"
TEXT = "text"
SUGGESTIONS = "suggestions"
TOKEN_ERROR = "token_error"
DISCONNECT = "disconnect"
RETRIES_EXHAUSTED = "retries_exhausted"
DONE = "done"
PROTOCOL_ERROR = "protocol_error"
BACKOFF_ELAPSED = "backoff_elapsed"
RESET = "reset"

S = ConversationState

TRANSITIONS: dict[tuple[ConversationState, str], ConversationState] = {
    (S.IDLE, SEND_NO_SESSION): S.AUTHENTICATING,
    (S.IDLE, SEND_WITH_SESSION): S.CONNECTING,
    (S.AUTHENTICATING, AUTH_OK): S.CONNECTING,
    (S.AUTHENTICATING, AUTH_REQUIRED): S.AUTHENTICATING,
    (S.AUTHENTICATING, AUTH_FAILED): S.FATAL,
    (S.AUTHENTICATING, RESET): S.IDLE,
    (S.CONNECTING, CONNECTED): S.STREAMING,
    (S.CONNECTING, CONNECT_FAILED): S.FATAL,
    (S.STREAMING, TEXT): S.STREAMING,
    (S.STREAMING, SUGGESTIONS): S.STREAMING,
    (S.STREAMING, TOKEN_ERROR): S.AUTHENTICATING,
    (S.STREAMING, DISCONNECT): S.RECONNECTING,
    (S.STREAMING, RETRIES_EXHAUSTED): S.FATAL,
    (S.STREAMING, DONE): S.DONE,
    (S.STREAMING, PROTOCOL_ERROR): S.FATAL,
    (S.RECONNECTING, BACKOFF_ELAPSED): S.CONNECTING,
    (S.DONE, RESET): S.IDLE,
    (S.FATAL, RESET): S.IDLE,
}

TERMINAL_STATES = frozenset({S.DONE, S.FATAL})


def transition(state: ConversationState, trigger: str) -> ConversationState:
    try:
        return TRANSITIONS[(state, trigger)]
    except KeyError:
        raise InvalidTransition(state.value, trigger) from None


def allowed_triggers(state: ConversationState) -> list[str]:
    return [trigger for (src, trigger) in TRANSITIONS if src == state]
