"""Unit tests for record-separator framing."""

from __future__ import annotations

import pytest

from chatrelay.errors import ParseError
from chatrelay.transport import framing


def test_encode_frame_is_compact_and_terminated() -> None:
    assert framing.encode_frame({"event": "ping"}) == '{"event":"ping"}\x1e'


def test_decode_frames_yields_every_record_in_order() -> None:
    data = "".join(framing.encode_frame({"event": "appendText", "text": str(i)}) for i in range(5))
    frames = framing.decode_frames(data)
    assert [f["text"] for f in frames] == ["0", "1", "2", "3", "4"]


def test_empty_and_whitespace_fragments_are_dropped() -> None:
    data = '\x1e  \x1e{"event":"done"}\x1e\n\x1e\x1e'
    assert framing.split_fragments(data) == ['{"event":"done"}']
    assert framing.decode_frames(data) == [{"event": "done"}]


def test_unterminated_last_record_is_still_decoded() -> None:
    frames = framing.decode_frames('{"event":"appendText","text":"a"}\x1e{"event":"done"}')
    assert [f["event"] for f in frames] == ["appendText", "done"]


def test_malformed_fragment_is_dropped_not_raised() -> None:
    frames = framing.decode_frames('{"event":"appendText","text":"a"}\x1e{not json\x1e{"event":"done"}\x1e')
    assert [f["event"] for f in frames] == ["appendText", "done"]


def test_parse_fragment_rejects_non_objects() -> None:
    with pytest.raises(ParseError):
        framing.parse_fragment("[1, 2]")
    with pytest.raises(ParseError) as exc_info:
        framing.parse_fragment("{oops")
    assert exc_info.value.payload_preview == "{oops"


def test_classify_frame() -> None:
    assert framing.classify_frame({"event": "appendText", "text": "x"}) == framing.TEXT
    assert framing.classify_frame({"event": "suggestedFollowups"}) == framing.SUGGESTIONS
    assert framing.classify_frame({"event": "done"}) == framing.DONE
    assert framing.classify_frame({"event": "pong"}) == framing.PONG
    assert framing.classify_frame({"event": "disconnect"}) == framing.DISCONNECT
    assert framing.classify_frame({"event": "somethingNew"}) == framing.UNKNOWN


def test_token_errors_are_distinguished_from_other_errors() -> None:
    assert framing.classify_frame({"event": "error", "error": "invalid token"}) == framing.TOKEN_ERROR
    assert framing.classify_frame({"event": "error", "error": "overloaded"}) == framing.ERROR
    assert framing.classify_frame({"event": "error"}) == framing.ERROR


def test_close_directive_detection() -> None:
    assert framing.is_close_directive('{"event":"close"}\x1e')
    assert framing.is_close_directive('{"event": "close"}')
    assert not framing.is_close_directive('{"event":"send"}\x1e')
