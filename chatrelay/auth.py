"""Token and session lifecycle.

Acquisition order:
1. a cached token younger than the TTL, trusted only while the companion
   auth cookie is still present
2. a silent refresh using the stored cookies
3. a login surface for the human, reported as AuthRequiredError

Only one login surface may be open at a time; callers arriving while it is
open get AuthInProgressError. Concurrent silent refreshes share one request.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
import webbrowser
from dataclasses import dataclass
from typing import Awaitable, Callable

import aiohttp
from yarl import URL

from chatrelay.conversation.models import Session, new_conversation_id
from chatrelay.errors import AuthError, AuthInProgressError, AuthRequiredError
from chatrelay.ports import LoginSurfacePort
from chatrelay.store import SessionSnapshotRepository, TokenRepository

log = logging.getLogger("auth")

TokenRefresher = Callable[[], Awaitable["str | None"]]
AuthListener = Callable[[str], Awaitable[None]]


@dataclass
class CacheEntry:
    token: str
    timestamp: float


class AuthCache:
    """Provider-keyed token cache; entries at or past the TTL are never returned."""

    def __init__(
        self,
        *,
        ttl_s: float = 3600.0,
        now_fn: Callable[[], float] = time.time,
        repository: TokenRepository | None = None,
    ):
        self.ttl_s = ttl_s
        self._now = now_fn
        self._repository = repository
        self._entries: dict[str, CacheEntry] = {}

    def peek(self, provider: str) -> CacheEntry | None:
        entry = self._entries.get(provider)
        if entry is None and self._repository is not None:
            record = self._repository.get(provider)
            if record is not None:
                entry = CacheEntry(token=record.token, timestamp=record.timestamp)
                self._entries[provider] = entry
        return entry

    def get(self, provider: str) -> CacheEntry | None:
        entry = self.peek(provider)
        if entry is None:
            return None
        age = self._now() - entry.timestamp
        if age >= self.ttl_s:
            log.debug(f"Cached {provider} token expired ({age:.0f}s old)")
            self.delete(provider)
            return None
        return entry

    def put(self, provider: str, token: str) -> CacheEntry:
        entry = CacheEntry(token=token, timestamp=self._now())
        self._entries[provider] = entry
        if self._repository is not None:
            self._repository.put(provider, token, entry.timestamp)
        return entry

    def delete(self, provider: str) -> None:
        self._entries.pop(provider, None)
        if self._repository is not None:
            self._repository.delete(provider)


class CookieCredentialCheck:
    """True while the named auth cookie is present in the jar for ``url``."""

    def __init__(self, jar: aiohttp.abc.AbstractCookieJar, url: str, cookie_name: str):
        self._jar = jar
        self._url = URL(url)
        self.cookie_name = cookie_name

    def __call__(self) -> bool:
        return self.cookie_name in self._jar.filter_cookies(self._url)


class HttpTokenRefresher:
    """Fetches a fresh access token using the cookies already in the jar."""

    def __init__(self, session: aiohttp.ClientSession, token_url: str):
        self._session = session
        self.token_url = token_url

    async def __call__(self) -> str | None:
        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "x-request-id": str(uuid.uuid4()),
            "Cache-Control": "no-cache",
            "Pragma": "no-cache",
        }
        try:
            async with self._session.get(self.token_url, headers=headers) as resp:
                if resp.status >= 400:
                    detail = (await resp.text()).strip() or resp.reason
                    log.info(f"Token refresh failed with HTTP {resp.status}: {detail[:200]}")
                    return None
                data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            log.warning(f"Token refresh error: {type(e).__name__}: {e}")
            return None

        token = data.get("accessToken") if isinstance(data, dict) else None
        if isinstance(token, str) and token:
            return token
        log.info("Token refresh response carried no access token")
        return None


class ConsoleLoginSurface:
    """Asks the human to sign in, optionally opening a browser tab."""

    def __init__(self, *, launch_browser: bool = False):
        self.launch_browser = launch_browser
        self._open = False
        self.url: str | None = None

    async def open(self, url: str) -> None:
        self._open = True
        self.url = url
        log.warning(f"Sign in at {url} to continue")
        if self.launch_browser:
            webbrowser.open(url)

    async def close(self) -> None:
        self._open = False

    def is_open(self) -> bool:
        return self._open


class TokenManager:
    def __init__(
        self,
        *,
        provider: str,
        refresher: TokenRefresher,
        login_surface: LoginSurfacePort,
        login_url: str,
        has_credential: Callable[[], bool],
        cache: AuthCache | None = None,
        snapshots: SessionSnapshotRepository | None = None,
        ttl_s: float = 3600.0,
        now_fn: Callable[[], float] = time.time,
    ):
        self.provider = provider
        self._refresher = refresher
        self._login_surface = login_surface
        self._login_url = login_url
        self._has_credential = has_credential
        self._now = now_fn
        self.ttl_s = ttl_s
        self._cache = cache or AuthCache(ttl_s=ttl_s, now_fn=now_fn)
        self._snapshots = snapshots

        self._login_pending = False
        self._login_opening = False
        self._refresh_task: asyncio.Task | None = None
        self._listeners: list[AuthListener] = []
        self._notify_tasks: set[asyncio.Task] = set()

    @property
    def auth_in_progress(self) -> bool:
        if self._login_opening:
            return True
        if self._login_pending and not self._login_surface.is_open():
            # The human dismissed the login surface.
            log.debug("Login surface closed without completing")
            self._login_pending = False
        return self._login_pending

    # -----------------
    # Acquisition
    # -----------------

    async def acquire(self) -> str:
        cached = self._cache.get(self.provider)
        if cached:
            if self._has_credential():
                log.debug("Using cached token")
                return cached.token
            log.info("Auth cookie missing despite cached token")
            self._cache.delete(self.provider)

        if self.auth_in_progress:
            raise AuthInProgressError()

        token = await self.refresh()
        if token:
            return token

        # Another caller may have failed the same refresh and opened the surface.
        if self.auth_in_progress:
            raise AuthInProgressError()

        log.info("Full authentication needed, opening login surface")
        self._login_pending = True
        self._login_opening = True
        try:
            await self._login_surface.open(self._login_url)
        except BaseException:
            self._login_pending = False
            raise
        finally:
            self._login_opening = False
        raise AuthRequiredError()

    async def refresh(self) -> str | None:
        """Silent refresh; concurrent callers share a single request."""
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.create_task(self._refresh())
        return await asyncio.shield(self._refresh_task)

    async def _refresh(self) -> str | None:
        token = await self._refresher()
        if token:
            log.info("Token refresh successful, caching token")
            self._cache.put(self.provider, token)
        return token

    async def request(self, message: dict) -> dict:
        """Auth RPC surface: answers ``{"action": "auth"}`` style requests.

        ``{"invalidate": True}`` drops the cached token first (the backend
        rejected it).
        """
        if message.get("invalidate"):
            self.invalidate()
        try:
            token = await self.acquire()
        except AuthError as e:
            return {"success": False, "error": e.message}
        except Exception as e:
            log.exception("Auth request failed")
            return {"success": False, "error": str(e) or type(e).__name__}
        return {"success": True, "data": {"accessToken": token}}

    def invalidate(self) -> None:
        log.debug("Invalidating cached token")
        self._cache.delete(self.provider)

    # -----------------
    # Out-of-band completion
    # -----------------

    def add_listener(self, listener: AuthListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: AuthListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def complete_auth(self, token: str | None = None) -> str | None:
        """Signal that the human finished signing in."""
        if token is None:
            token = await self.refresh()
        else:
            self._cache.put(self.provider, token)
        if not token:
            log.warning("Authentication completed but no token could be obtained")
            return None

        self._login_pending = False
        await self._login_surface.close()
        log.info("Authentication complete")
        for listener in list(self._listeners):
            task = asyncio.create_task(listener(token))
            self._notify_tasks.add(task)
            task.add_done_callback(self._notify_tasks.discard)
        return token

    async def run_refresh_loop(
        self, *, interval_s: float = 300.0, refresh_after_s: float = 3000.0
    ) -> None:
        """Refresh the cached token before it reaches the TTL."""
        while True:
            await asyncio.sleep(interval_s)
            entry = self._cache.peek(self.provider)
            if entry and self._now() - entry.timestamp > refresh_after_s:
                log.info("Refreshing auth token")
                await self.refresh()

    # -----------------
    # Session snapshots
    # -----------------

    def persist(self, session: Session) -> None:
        if self._snapshots is None:
            return
        self._snapshots.save(self.provider, session.access_token, self._now())
        log.debug("Session saved")

    def restore(self, conversation_id: str | None = None) -> Session | None:
        if self._snapshots is None:
            return None
        record = self._snapshots.load(self.provider, ttl_s=self.ttl_s, now=self._now())
        if record is None:
            return None
        if not self._has_credential():
            log.info("Auth cookie missing, discarding saved session")
            return None
        log.info("Restoring saved session")
        return Session(
            access_token=record.access_token,
            conversation_id=conversation_id or new_conversation_id(),
            acquired_at=record.timestamp,
        )

    def remove(self) -> None:
        if self._snapshots is not None:
            self._snapshots.delete(self.provider)
            log.debug("Session removed")
