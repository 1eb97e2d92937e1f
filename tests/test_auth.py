"""Token cache, refresh single-flight and the login surface."""

from __future__ import annotations

import asyncio

import aiohttp
import pytest
from aiohttp import web
from yarl import URL

from chatrelay.auth import AuthCache, CookieCredentialCheck, HttpTokenRefresher, TokenManager
from chatrelay.conversation.models import Session
from chatrelay.errors import AuthInProgressError, AuthRequiredError
from chatrelay.store import SessionSnapshotRepository, TokenRepository, init_db
from tests.fakes import MemoryLoginSurface


class CountingRefresher:
    def __init__(self, tokens: list[str | None], delay: float = 0.0) -> None:
        self.tokens = list(tokens)
        self.delay = delay
        self.calls = 0

    async def __call__(self) -> str | None:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if len(self.tokens) > 1:
            return self.tokens.pop(0)
        return self.tokens[0]


def _manager(refresher, *, clock=None, credential=True, surface=None, conn=None) -> TokenManager:
    clock = clock or [0.0]
    conn = conn or init_db()
    now_fn = lambda: clock[0]  # noqa: E731
    return TokenManager(
        provider="copilot",
        refresher=refresher,
        login_surface=surface or MemoryLoginSurface(),
        login_url="https://login.test/chat",
        has_credential=lambda: credential,
        cache=AuthCache(ttl_s=3600.0, now_fn=now_fn, repository=TokenRepository(conn)),
        snapshots=SessionSnapshotRepository(conn),
        ttl_s=3600.0,
        now_fn=now_fn,
    )


def test_expired_cache_entries_are_never_returned() -> None:
    clock = [0.0]
    conn = init_db()
    cache = AuthCache(ttl_s=3600.0, now_fn=lambda: clock[0], repository=TokenRepository(conn))
    cache.put("copilot", "tok")
    clock[0] = 3599.0
    assert cache.get("copilot").token == "tok"
    clock[0] = 3600.0
    assert cache.get("copilot") is None
    assert TokenRepository(conn).get("copilot") is None


def test_cache_survives_through_the_repository() -> None:
    conn = init_db()
    AuthCache(now_fn=lambda: 100.0, repository=TokenRepository(conn)).put("copilot", "tok")
    fresh = AuthCache(now_fn=lambda: 200.0, repository=TokenRepository(conn))
    assert fresh.get("copilot").token == "tok"


def test_cached_token_is_used_without_refresh() -> None:
    async def _run():
        refresher = CountingRefresher(["new"])
        manager = _manager(refresher)
        manager._cache.put("copilot", "cached")
        return await manager.acquire(), refresher.calls

    assert asyncio.run(_run()) == ("cached", 0)


def test_cached_token_without_cookie_is_dropped() -> None:
    async def _run():
        refresher = CountingRefresher(["new"])
        manager = _manager(refresher, credential=False)
        manager._cache.put("copilot", "cached")
        return await manager.acquire(), refresher.calls

    assert asyncio.run(_run()) == ("new", 1)


def test_failed_refresh_opens_login_once() -> None:
    async def _run():
        refresher = CountingRefresher([None])
        surface = MemoryLoginSurface()
        manager = _manager(refresher, surface=surface)
        with pytest.raises(AuthRequiredError):
            await manager.acquire()
        with pytest.raises(AuthInProgressError):
            await manager.acquire()
        return refresher.calls, surface.opened, manager.auth_in_progress

    calls, opened, in_progress = asyncio.run(_run())
    assert calls == 1
    assert opened == ["https://login.test/chat"]
    assert in_progress


def test_dismissed_login_surface_allows_a_new_attempt() -> None:
    async def _run():
        refresher = CountingRefresher([None, "tok"])
        surface = MemoryLoginSurface()
        manager = _manager(refresher, surface=surface)
        with pytest.raises(AuthRequiredError):
            await manager.acquire()
        await surface.close()
        return await manager.acquire()

    assert asyncio.run(_run()) == "tok"


def test_concurrent_refreshes_share_one_request() -> None:
    async def _run():
        refresher = CountingRefresher(["tok"], delay=0.02)
        manager = _manager(refresher)
        tokens = await asyncio.gather(manager.acquire(), manager.acquire(), manager.acquire())
        return tokens, refresher.calls

    assert asyncio.run(_run()) == (["tok", "tok", "tok"], 1)


def test_complete_auth_caches_token_and_notifies_listeners() -> None:
    async def _run():
        surface = MemoryLoginSurface()
        manager = _manager(CountingRefresher([None]), surface=surface)
        notified: list[str] = []

        async def listener(token: str) -> None:
            notified.append(token)

        manager.add_listener(listener)
        with pytest.raises(AuthRequiredError):
            await manager.acquire()
        await manager.complete_auth("fresh")
        await asyncio.sleep(0)
        return notified, surface.is_open(), manager.auth_in_progress, await manager.acquire()

    notified, surface_open, in_progress, token = asyncio.run(_run())
    assert notified == ["fresh"]
    assert not surface_open
    assert not in_progress
    assert token == "fresh"


def test_complete_auth_without_token_refreshes() -> None:
    async def _run():
        refresher = CountingRefresher([None, "after-login"])
        manager = _manager(refresher)
        with pytest.raises(AuthRequiredError):
            await manager.acquire()
        return await manager.complete_auth()

    assert asyncio.run(_run()) == "after-login"


def test_auth_rpc_responses() -> None:
    async def _run():
        refresher = CountingRefresher(["tok", None])
        manager = _manager(refresher)
        ok = await manager.request({"action": "auth"})
        cached = await manager.request({"action": "auth"})
        invalidated = await manager.request({"action": "auth", "invalidate": True})
        busy = await manager.request({"action": "auth"})
        return ok, cached, invalidated, busy

    ok, cached, invalidated, busy = asyncio.run(_run())
    assert ok == {"success": True, "data": {"accessToken": "tok"}}
    assert cached == ok
    assert invalidated == {"success": False, "error": "Authentication required"}
    assert busy == {"success": False, "error": "Authentication in progress"}


def test_session_snapshots_expire_and_need_the_cookie() -> None:
    clock = [1000.0]
    conn = init_db()
    manager = _manager(CountingRefresher([None]), clock=clock, conn=conn)
    manager.persist(Session(access_token="tok"))

    clock[0] = 1000.0 + 10.0
    restored = manager.restore(conversation_id="conv-1")
    assert restored.access_token == "tok"
    assert restored.conversation_id == "conv-1"

    no_cookie = _manager(CountingRefresher([None]), clock=clock, conn=conn, credential=False)
    assert no_cookie.restore() is None

    clock[0] = 1000.0 + 3600.0
    assert manager.restore() is None
    clock[0] = 1000.0
    assert manager.restore() is None


def test_remove_deletes_the_snapshot() -> None:
    manager = _manager(CountingRefresher([None]), clock=[5.0])
    manager.persist(Session(access_token="tok"))
    manager.remove()
    assert manager.restore() is None


def test_cookie_credential_check() -> None:
    async def _run():
        jar = aiohttp.CookieJar()
        check = CookieCredentialCheck(jar, "https://copilot.microsoft.com", "_C_Auth")
        before = check()
        jar.update_cookies({"_C_Auth": "v"}, URL("https://copilot.microsoft.com/"))
        return before, check()

    assert asyncio.run(_run()) == (False, True)


def test_http_token_refresher() -> None:
    async def _run():
        seen: list[dict] = []
        status = {"code": 200}

        async def token(request: web.Request) -> web.Response:
            seen.append({k.lower(): v for k, v in request.headers.items()})
            if status["code"] != 200:
                return web.Response(status=status["code"], text="nope")
            return web.json_response({"accessToken": "abc"})

        app = web.Application()
        app.router.add_get("/api/auth/token", token)
        runner = web.AppRunner(app)
        await runner.setup()
        site = web.TCPSite(runner, "127.0.0.1", 0)
        await site.start()
        url = f"http://127.0.0.1:{runner.addresses[0][1]}/api/auth/token"
        try:
            async with aiohttp.ClientSession() as session:
                refresher = HttpTokenRefresher(session, url)
                good = await refresher()
                status["code"] = 401
                bad = await refresher()
            return good, bad, seen
        finally:
            await runner.cleanup()

    good, bad, seen = asyncio.run(_run())
    assert good == "abc"
    assert bad is None
    assert seen[0]["cache-control"] == "no-cache"
    assert seen[0]["pragma"] == "no-cache"
    assert seen[0]["x-request-id"] != seen[1]["x-request-id"]


def test_racing_callers_open_one_login_surface() -> None:
    async def _run():
        refresher = CountingRefresher([None], delay=0.01)
        surface = MemoryLoginSurface()
        manager = _manager(refresher, surface=surface)
        results = await asyncio.gather(
            manager.acquire(), manager.acquire(), return_exceptions=True
        )
        return [type(r).__name__ for r in results], surface.opened, refresher.calls

    kinds, opened, calls = asyncio.run(_run())
    assert sorted(kinds) == ["AuthInProgressError", "AuthRequiredError"]
    assert opened == ["https://login.test/chat"]
    assert calls == 1


def test_login_surface_that_suspends_while_opening_is_not_raced() -> None:
    class SlowSurface(MemoryLoginSurface):
        async def open(self, url: str) -> None:
            await asyncio.sleep(0.01)
            await super().open(url)

    async def _run():
        surface = SlowSurface()
        manager = _manager(CountingRefresher([None]), surface=surface)
        first = asyncio.create_task(manager.acquire())
        await asyncio.sleep(0.005)
        with pytest.raises(AuthInProgressError):
            await manager.acquire()
        with pytest.raises(AuthRequiredError):
            await first
        return surface.opened

    assert asyncio.run(_run()) == ["https://login.test/chat"]
