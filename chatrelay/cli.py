"""Command-line entry point: send one prompt and stream the answer to stdout."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Iterable

from chatrelay.auth import ConsoleLoginSurface
from chatrelay.config import RelayConfig, load_env
from chatrelay.conversation.models import Turn
from chatrelay.ports import Event
from chatrelay.service import RelayEngine

log = logging.getLogger("chatrelay")


class StdoutSink:
    """Prints streamed text as it arrives; everything else goes to stderr."""

    def __init__(self, out=None, err=None):
        self.out = out or sys.stdout
        self.err = err or sys.stderr
        self.suggestions: list[str] = []

    async def emit(self, event: Event) -> None:
        kind, payload = event
        if kind == "text":
            self.out.write(str(payload))
            self.out.flush()
        elif kind == "suggestions":
            self.suggestions = list(payload)
        elif kind == "auth_required":
            info = payload if isinstance(payload, dict) else {}
            print(f"{info.get('text')}: sign in at {info.get('url')}", file=self.err)
        elif kind == "error":
            print(f"\nError: {payload}", file=self.err)
        elif kind == "done":
            self.out.write("\n")
            for suggestion in self.suggestions:
                self.out.write(f"  > {suggestion}\n")
            self.out.flush()
        elif kind == "state":
            log.debug(f"state: {payload}")


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    logging.getLogger("aiohttp").setLevel(logging.WARNING)


def _parse_args(argv: Iterable[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Relay a prompt to a streaming chat backend")
    parser.add_argument("prompt", nargs="+")
    parser.add_argument("--verbose", action="store_true")
    parser.add_argument("--db", default=None, help="SQLite path for cached tokens")
    parser.add_argument("--cookie", default=None, help="Auth cookie value to seed the jar")
    parser.add_argument("--browser", action="store_true", help="Open the login page")
    parser.add_argument(
        "--event-stream",
        action="store_true",
        help="Use the HTTP event-stream backend instead of the chat socket",
    )
    parser.add_argument("--timeout", type=float, default=300.0)
    return parser.parse_args(list(argv))


async def _complete_login(engine: RelayEngine) -> str | None:
    print(
        "Paste an access token once signed in (or press Enter to retry the refresh):",
        file=sys.stderr,
    )
    line = await asyncio.get_running_loop().run_in_executor(None, sys.stdin.readline)
    return await engine.tokens.complete_auth(line.strip() or None)


async def run(args: argparse.Namespace) -> int:
    config = RelayConfig(db_path=args.db)
    engine = RelayEngine(
        config,
        events=StdoutSink(),
        login_surface=ConsoleLoginSurface(launch_browser=args.browser),
        auto_resume=False,
    )
    async with engine:
        if args.cookie:
            engine.seed_auth_cookie(args.cookie)

        prompt = " ".join(args.prompt)
        if args.event_stream:
            turn: Turn | None = await engine.stream_conversation.send(prompt)
        else:
            turn = await engine.conversation.send(prompt)
            while turn is not None and turn.status == "auth_required":
                token = await _complete_login(engine)
                if not token:
                    print("Authentication did not complete", file=sys.stderr)
                    return 1
                try:
                    turn = await asyncio.wait_for(
                        engine.conversation.resume_after_auth(token), args.timeout
                    )
                except asyncio.TimeoutError:
                    print("Timed out waiting for the answer", file=sys.stderr)
                    return 1

        if turn is None or turn.status != "done":
            return 1
        log.debug(f"turn: {turn.summary()}")
        return 0


def main(argv: Iterable[str] | None = None) -> int:
    args = _parse_args(sys.argv[1:] if argv is None else argv)
    _configure_logging(args.verbose)
    load_env()
    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
