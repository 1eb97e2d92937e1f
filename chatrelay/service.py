"""Engine wiring.

Builds the transport registries behind the message bus, the token manager
and both conversation drivers from one RelayConfig.
"""

from __future__ import annotations

import asyncio
import logging

import aiohttp
from yarl import URL

from chatrelay.auth import (
    AuthCache,
    ConsoleLoginSurface,
    CookieCredentialCheck,
    HttpTokenRefresher,
    TokenManager,
)
from chatrelay.config import RelayConfig
from chatrelay.conversation.engine import Conversation
from chatrelay.conversation.eventstream import EventStreamConversation
from chatrelay.ports import AuthPort, EventSinkPort, LoginSurfacePort
from chatrelay.relay.bus import MessageBus
from chatrelay.relay.client import RemoteSocketClient, RemoteStreamClient
from chatrelay.relay.endpoint import EndpointDispatcher
from chatrelay.store import SessionSnapshotRepository, TokenRepository, init_db
from chatrelay.transport.registry import AiohttpWebSocketConnector, Connector, TransportRegistry
from chatrelay.transport.streams import EventStreamRegistry

log = logging.getLogger("chatrelay")


class RelayEngine:
    def __init__(
        self,
        config: RelayConfig | None = None,
        *,
        events: EventSinkPort,
        login_surface: LoginSurfacePort | None = None,
        connector: Connector | None = None,
        stream_auth: AuthPort | None = None,
        auto_resume: bool = True,
    ):
        self.config = config or RelayConfig()
        self._events = events
        self._login_surface = login_surface or ConsoleLoginSurface()
        self._connector = connector
        self._stream_auth = stream_auth
        self._auto_resume = auto_resume

        self.http: aiohttp.ClientSession | None = None
        self.conn = None
        self.registry: TransportRegistry | None = None
        self.streams: EventStreamRegistry | None = None
        self.bus: MessageBus | None = None
        self.tokens: TokenManager | None = None
        self.conversation: Conversation | None = None
        self.stream_conversation: EventStreamConversation | None = None
        self._refresh_task: asyncio.Task | None = None

    def seed_auth_cookie(self, value: str) -> None:
        """Put a known auth cookie into the jar (for headless use)."""
        if self.http is None:
            raise RuntimeError("engine not started")
        self.http.cookie_jar.update_cookies(
            {self.config.resolve_auth_cookie(): value}, URL(self.config.resolve_origin())
        )

    async def start(self) -> None:
        cfg = self.config
        self.http = aiohttp.ClientSession(
            cookie_jar=aiohttp.CookieJar(),
            timeout=aiohttp.ClientTimeout(total=cfg.resolve_http_timeout_s()),
        )
        self.conn = init_db(cfg.resolve_db_path())

        self.registry = TransportRegistry(
            connector=self._connector or AiohttpWebSocketConnector(session=self.http),
            config=cfg,
        )
        self.streams = EventStreamRegistry(
            session=self.http, connect_timeout_s=cfg.connect_timeout_s
        )
        dispatcher = EndpointDispatcher(sockets=self.registry, streams=self.streams)
        self.bus = MessageBus(
            dispatcher,
            controller_origin=cfg.controller_origin,
            modules=cfg.capability_modules,
        )
        await self.bus.start()
        await self.bus.wait_ready(timeout=cfg.connect_timeout_s)

        self.tokens = TokenManager(
            provider=cfg.provider,
            refresher=HttpTokenRefresher(self.http, cfg.resolve_token_url()),
            login_surface=self._login_surface,
            login_url=cfg.resolve_login_url(),
            has_credential=CookieCredentialCheck(
                self.http.cookie_jar, cfg.resolve_origin(), cfg.resolve_auth_cookie()
            ),
            cache=AuthCache(ttl_s=cfg.token_ttl_s, repository=TokenRepository(self.conn)),
            snapshots=SessionSnapshotRepository(self.conn),
            ttl_s=cfg.token_ttl_s,
        )

        self.conversation = Conversation(
            sockets=RemoteSocketClient(self.bus),
            auth=self.tokens,
            events=self._events,
            store=self.tokens,
            config=cfg,
        )
        if self._auto_resume:
            self.tokens.add_listener(self.conversation.resume_after_auth)
        if self.conversation.restore_session():
            log.info("Restored saved session")

        self.stream_conversation = EventStreamConversation(
            streams=RemoteStreamClient(self.bus),
            auth=self._stream_auth or self.tokens,
            events=self._events,
            config=cfg,
        )

        self._refresh_task = asyncio.create_task(
            self.tokens.run_refresh_loop(
                interval_s=cfg.refresh_check_interval_s,
                refresh_after_s=cfg.refresh_after_s,
            )
        )
        log.info("Relay engine started")

    async def close(self) -> None:
        if self._refresh_task is not None:
            self._refresh_task.cancel()
            try:
                await self._refresh_task
            except asyncio.CancelledError:
                pass
            self._refresh_task = None

        if self.tokens is not None and self.conversation is not None:
            self.tokens.remove_listener(self.conversation.resume_after_auth)
        if self.bus is not None:
            await self.bus.close()
        if self.registry is not None:
            await self.registry.close_all()
        if self.streams is not None:
            await self.streams.close_all()
        if self.http is not None and not self.http.closed:
            await self.http.close()
        if self.conn is not None:
            self.conn.close()
            self.conn = None
        log.info("Relay engine closed")

    async def __aenter__(self) -> "RelayEngine":
        await self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()
