"""Relay exceptions.

These exception types let the conversation layer classify failures
(retryable vs. fatal vs. auth-required) without scraping strings.
"""

from __future__ import annotations


class ChatRelayError(RuntimeError):
    """Base class for relay errors."""


class SessionError(ChatRelayError):
    """The backend session could not be established.

    Surfaced to the caller with a retry affordance; never retried automatically.
    """

    def __init__(
        self,
        code: str,
        text: str,
        *,
        url: str | None = None,
        action: str | None = None,
    ):
        self.code = code
        self.text = text
        self.url = url
        self.action = action
        super().__init__(self.__str__())

    def __str__(self) -> str:
        return f"{self.code}: {self.text}"


class AuthError(ChatRelayError):
    """Authentication could not complete right now."""

    reason = "auth"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message()
        super().__init__(self.message)

    @classmethod
    def default_message(cls) -> str:
        return "Authentication failed"


class AuthRequiredError(AuthError):
    """A login surface was opened; wait for the completion signal."""

    reason = "required"

    @classmethod
    def default_message(cls) -> str:
        return "Authentication required"


class AuthInProgressError(AuthError):
    """Another caller already opened the login surface."""

    reason = "in-progress"

    @classmethod
    def default_message(cls) -> str:
        return "Authentication in progress"


class TransportError(ChatRelayError):
    """Socket-level failure from the transport registry."""

    NOT_OPEN = "not-open"
    NOT_FOUND = "not-found"
    CREATION_FAILED = "creation-failed"
    CONNECTION_LOST = "connection-lost"

    def __init__(self, kind: str, detail: str | None = None):
        self.kind = kind
        self.detail = detail
        super().__init__(self.__str__())

    def __str__(self) -> str:
        detail = (self.detail or "").strip()
        if detail:
            return f"Transport {self.kind}: {detail}"
        return f"Transport {self.kind}"


class ParseError(ChatRelayError):
    """Malformed frame fragment."""

    def __init__(self, message: str, *, payload_preview: str | None = None):
        self.message = message
        self.payload_preview = payload_preview
        super().__init__(self.__str__())

    def __str__(self) -> str:
        if self.payload_preview:
            return f"Frame parse error: {self.message} (payload={self.payload_preview!r})"
        return f"Frame parse error: {self.message}"


class RateLimitError(ChatRelayError):
    """Socket creation refused by the sliding-window limiter."""

    def __init__(self, *, limit: int, window_s: float, retry_in: float):
        self.limit = limit
        self.window_s = window_s
        self.retry_in = retry_in
        super().__init__(
            f"Rate limit of {limit} per {window_s:g}s exceeded; retry in {retry_in:.1f}s"
        )


class ProtocolError(ChatRelayError):
    """An error event the engine does not know how to recover from."""

    def __init__(self, event: dict):
        self.event = event
        message = event.get("error") or event.get("message") or event.get("event")
        super().__init__(str(message or "Unknown protocol error"))


class InvalidTransition(ChatRelayError):
    def __init__(self, state: str, trigger: str):
        self.state = state
        self.trigger = trigger
        super().__init__(f"No transition from {state!r} on {trigger!r}")


class ConversationBusyError(ChatRelayError):
    """send() called while a turn is still in flight."""
