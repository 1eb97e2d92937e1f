"""Conversation driver for the chat socket.

This is the single place that owns:
- the conversation state (transitions come from conversation.state)
- the session and the socket reference
- reconnect budget and backoff
- turning frames into caller events

It depends only on ports: sockets, auth and session storage are injected.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable
from urllib.parse import urlencode

from chatrelay.backoff import backoff_delay
from chatrelay.config import RelayConfig
from chatrelay.conversation import state as st
from chatrelay.conversation.models import Session, Turn, new_conversation_id
from chatrelay.conversation.processor import CONTENT_TRIGGERS, FrameProcessor
from chatrelay.conversation.state import ConversationState
from chatrelay.errors import (
    AuthInProgressError,
    AuthRequiredError,
    ChatRelayError,
    ConversationBusyError,
    SessionError,
    TransportError,
)
from chatrelay.ports import AuthPort, Event, EventSinkPort, SessionStorePort, SocketPort
from chatrelay.transport import framing

log = logging.getLogger("conversation")

NEGOTIATION_FRAME = {
    "event": "setOptions",
    "supportedCards": ["image"],
    "ads": {
        "supportedTypes": [
            "multimedia",
            "product",
            "tourActivity",
            "propertyPromotion",
            "text",
        ]
    },
}

# Auth failures that park the turn until out-of-band completion.
_PARKING_ERRORS = {
    AuthRequiredError.default_message(),
    AuthInProgressError.default_message(),
}


def build_chat_url(base_url: str, access_token: str) -> str:
    sep = "&" if "?" in base_url else "?"
    return f"{base_url}{sep}{urlencode({'accessToken': access_token})}"


def content_frame(conversation_id: str, prompt: str) -> dict:
    return {
        "event": "send",
        "conversationId": conversation_id,
        "content": [{"type": "text", "text": prompt}],
        "mode": "chat",
    }


class Conversation:
    def __init__(
        self,
        *,
        sockets: SocketPort,
        auth: AuthPort,
        events: EventSinkPort,
        store: SessionStorePort | None = None,
        config: RelayConfig | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._sockets = sockets
        self._auth = auth
        self._events = events
        self._store = store
        self._config = config or RelayConfig()
        self._sleep = sleep
        self._processor = FrameProcessor()

        self.state = ConversationState.IDLE
        self.conversation_id = new_conversation_id()
        self.session: Session | None = None
        self.socket_id: int | None = None
        self.turn: Turn | None = None

        # retry_count drives the backoff exponent; disconnect_count is the budget.
        self.retry_count = 0
        self.disconnect_count = 0
        self._generation = 0

        self._needs_prompt = False
        self._invalidate_token = False
        self._drive_lock = asyncio.Lock()

    @property
    def sending_allowed(self) -> bool:
        return self.state == ConversationState.IDLE

    @property
    def generation(self) -> int:
        return self._generation

    # -----------------
    # Events / state
    # -----------------

    async def _emit(self, event: Event) -> None:
        await self._events.emit(event)

    async def _move(self, trigger: str) -> None:
        previous = self.state
        self.state = st.transition(self.state, trigger)
        if self.state != previous:
            log.debug(f"{previous.value} -> {self.state.value} on {trigger}")
            await self._emit(("state", self.state.value))

    def _session_error(self, text: str) -> SessionError:
        provider = self._config.provider.upper()
        return SessionError(
            f"{provider}_SESSION",
            text,
            url=self._config.resolve_login_url(),
            action="window",
        )

    # -----------------
    # Public operations
    # -----------------

    async def send(self, prompt: str) -> Turn:
        if not self.sending_allowed:
            raise ConversationBusyError(f"conversation is {self.state.value}")

        turn = Turn(prompt=prompt)
        self.turn = turn
        self._needs_prompt = True
        self.disconnect_count = 0
        self.retry_count = 0

        trigger = st.SEND_WITH_SESSION if self.session else st.SEND_NO_SESSION
        log.info(f"Sending prompt ({len(prompt)} chars), session={'yes' if self.session else 'no'}")
        async with self._drive_lock:
            await self._move(trigger)
            return await self._drive()

    async def resume_after_auth(self, token: str | None = None) -> Turn | None:
        """Continue a turn parked on authentication."""
        async with self._drive_lock:
            if self.state != ConversationState.AUTHENTICATING or self.turn is None:
                log.debug("No parked turn to resume")
                return None

            if token:
                self._adopt_token(token)
                await self._move(st.AUTH_OK)
            log.info("Resuming after authentication")
            return await self._drive()

    def restore_session(self) -> Session | None:
        if self._store is None:
            return None
        session = self._store.restore(conversation_id=self.conversation_id)
        if session is not None:
            self.session = session
        return session

    async def remove_conversation(self) -> None:
        if self.state not in (
            ConversationState.IDLE,
            ConversationState.AUTHENTICATING,
        ):
            raise ConversationBusyError(f"conversation is {self.state.value}")

        await self._release_socket()
        if self._store is not None:
            self._store.remove()
        self.session = None
        self.retry_count = 0
        self.disconnect_count = 0
        self.conversation_id = new_conversation_id()

        if self.state == ConversationState.AUTHENTICATING:
            if self.turn is not None:
                self.turn.status = "fatal"
            await self._move(st.RESET)
        log.info("Conversation removed")

    # -----------------
    # Driver loop
    # -----------------

    async def _drive(self) -> Turn:
        turn = self.turn
        while True:
            if self.state == ConversationState.AUTHENTICATING:
                if not await self._authenticate():
                    break
            elif self.state == ConversationState.CONNECTING:
                await self._connect()
            elif self.state == ConversationState.STREAMING:
                await self._stream()
            elif self.state == ConversationState.RECONNECTING:
                delay = backoff_delay(
                    self.retry_count,
                    self._config.reconnect_base_s,
                    self._config.reconnect_cap_s,
                )
                log.info(f"Reconnecting in {delay:.1f}s (attempt {self.disconnect_count})")
                await self._sleep(delay)
                await self._move(st.BACKOFF_ELAPSED)
            elif self.state in st.TERMINAL_STATES:
                await self._finish()
                break
            else:
                break
        return turn

    async def _finish(self) -> None:
        turn = self.turn
        if self.state == ConversationState.DONE:
            turn.status = "done"
            await self._emit(("done", turn.summary()))
            log.info(f"Turn complete ({len(turn.text)} chars, {turn.duration_s:.1f}s)")
        else:
            turn.status = "fatal"
            log.warning(f"Turn failed: {turn.error}")
        await self._move(st.RESET)

    async def _fail(self, trigger: str, exc: ChatRelayError) -> None:
        self.turn.error = exc
        await self._release_socket()
        await self._move(trigger)
        await self._emit(("error", exc))

    def _adopt_token(self, token: str) -> None:
        self.session = Session(access_token=token, conversation_id=self.conversation_id)
        if self._store is not None:
            self._store.persist(self.session)

    async def _authenticate(self) -> bool:
        message: dict = {"action": self._config.auth_action}
        if self._invalidate_token:
            message["invalidate"] = True
            self._invalidate_token = False

        response = await self._auth.request(message)
        if response.get("success"):
            token = (response.get("data") or {}).get("accessToken")
            if not token:
                await self._fail(st.AUTH_FAILED, self._session_error("No access token in response"))
                return True
            self._adopt_token(token)
            await self._move(st.AUTH_OK)
            return True

        error = str(response.get("error") or "")
        if error in _PARKING_ERRORS:
            self.turn.status = "auth_required"
            await self._move(st.AUTH_REQUIRED)
            provider = self._config.provider.upper()
            await self._emit(
                (
                    "auth_required",
                    {
                        "code": f"{provider}_AUTH",
                        "text": error,
                        "url": self._config.resolve_login_url(),
                    },
                )
            )
            log.info(f"Waiting for authentication: {error}")
            return False

        await self._fail(st.AUTH_FAILED, self._session_error(error or "Authentication failed"))
        return True

    async def _connect(self) -> None:
        if self.session is None or not self.session.access_token:
            await self._fail(st.CONNECT_FAILED, self._session_error("No access token available"))
            return

        url = build_chat_url(self._config.resolve_chat_url(), self.session.access_token)
        headers = {
            "Origin": self._config.resolve_origin(),
            "Sec-WebSocket-Protocol": "chat",
        }
        try:
            socket_id = await self._sockets.open(
                url, headers, framing.encode_frame(NEGOTIATION_FRAME)
            )
        except TransportError as e:
            log.warning(f"Socket creation failed: {e}")
            self.session = None
            await self._fail(st.CONNECT_FAILED, self._session_error(str(e)))
            return

        self.socket_id = socket_id
        self._generation += 1
        self.retry_count = 0
        await self._move(st.CONNECTED)

        if self._needs_prompt:
            body = content_frame(self.session.conversation_id, self.turn.prompt)
            try:
                await self._sockets.send(socket_id, framing.encode_frame(body))
            except TransportError as e:
                log.warning(f"Sending prompt failed: {e}")
                await self._on_disconnect()
                return
            self.session.is_start_of_session = False
            self.turn.status = "streaming"

    async def _stream(self) -> None:
        generation = self._generation
        socket_id = self.socket_id
        try:
            result = await self._sockets.receive(socket_id)
        except TransportError as e:
            if generation != self._generation:
                return
            log.info(f"Receive failed: {e}")
            await self._on_disconnect()
            return

        if generation != self._generation:
            log.debug(f"Discarding result from superseded socket {socket_id}")
            return

        frames = framing.decode_frames(result.frame) if result.frame else []
        for frame in frames:
            trigger, event = self._processor.process(frame, self.turn)
            if trigger is None:
                continue
            self.turn.frames += 1
            if trigger in CONTENT_TRIGGERS:
                self.disconnect_count = 0
                self._needs_prompt = False

            if trigger == st.DONE:
                await self._release_socket()
                await self._move(st.DONE)
                return
            if trigger == st.TOKEN_ERROR:
                log.info("Token rejected, re-authenticating")
                await self._release_socket()
                self.session = None
                self._invalidate_token = True
                await self._move(st.TOKEN_ERROR)
                return
            if trigger == st.PROTOCOL_ERROR:
                await self._fail(st.PROTOCOL_ERROR, self.turn.error)
                return
            if trigger == st.DISCONNECT:
                await self._on_disconnect()
                return

            await self._move(trigger)
            if event is not None:
                await self._emit(event)

        if not result.is_open and (result.frame is None or result.buffered == 0):
            log.info(f"Socket {socket_id} is {result.state.value}")
            await self._on_disconnect()

    async def _on_disconnect(self) -> None:
        await self._release_socket()
        self.disconnect_count += 1
        self.retry_count += 1

        if self.disconnect_count > self._config.max_retries:
            self.session = None
            await self._fail(
                st.RETRIES_EXHAUSTED,
                TransportError(
                    TransportError.CONNECTION_LOST,
                    f"gave up after {self._config.max_retries} reconnects",
                ),
            )
            return

        self.turn.reconnects += 1
        await self._move(st.DISCONNECT)

    async def _release_socket(self) -> None:
        socket_id = self.socket_id
        if socket_id is None:
            return
        self.socket_id = None
        # Anything still in flight for the old socket is stale from here on.
        self._generation += 1
        try:
            await self._sockets.close(socket_id)
        except TransportError as e:
            log.debug(f"Closing socket {socket_id}: {e}")
