"""Transition table for the conversation state machine."""

from __future__ import annotations

import pytest

from chatrelay.conversation import state as st
from chatrelay.conversation.state import ConversationState as S
from chatrelay.errors import InvalidTransition


@pytest.mark.parametrize(
    "start,trigger,end",
    [
        (S.IDLE, st.SEND_NO_SESSION, S.AUTHENTICATING),
        (S.IDLE, st.SEND_WITH_SESSION, S.CONNECTING),
        (S.AUTHENTICATING, st.AUTH_REQUIRED, S.AUTHENTICATING),
        (S.STREAMING, st.TOKEN_ERROR, S.AUTHENTICATING),
        (S.STREAMING, st.DISCONNECT, S.RECONNECTING),
        (S.RECONNECTING, st.BACKOFF_ELAPSED, S.CONNECTING),
        (S.STREAMING, st.RETRIES_EXHAUSTED, S.FATAL),
        (S.FATAL, st.RESET, S.IDLE),
    ],
)
def test_listed_transitions(start: S, trigger: str, end: S) -> None:
    assert st.transition(start, trigger) == end


def test_unlisted_transition_raises() -> None:
    with pytest.raises(InvalidTransition) as info:
        st.transition(S.IDLE, st.TEXT)
    assert info.value.state == "idle"
    assert info.value.trigger == "text"


def test_sending_only_starts_from_idle() -> None:
    for state in S:
        if state == S.IDLE:
            continue
        assert st.SEND_NO_SESSION not in st.allowed_triggers(state)
        assert st.SEND_WITH_SESSION not in st.allowed_triggers(state)


def test_terminal_states_only_reset() -> None:
    for state in st.TERMINAL_STATES:
        assert st.allowed_triggers(state) == [st.RESET]
