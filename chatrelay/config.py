"""Relay configuration.

Tunables are dataclass fields; endpoints and paths fall back to environment
variables (call load_env() first if you keep them in a .env file).
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_DB_PATH = Path(__file__).parent.parent / "chatrelay.db"


def load_env(env_path: Path | None = None) -> None:
    """Load .env file into os.environ. Handles quoted values and spaces."""
    if env_path is None:
        env_path = Path(__file__).parent.parent / ".env"

    if not env_path.exists():
        return

    for line in env_path.read_text().splitlines():
        line = line.strip()
        if line and not line.startswith("#") and "=" in line:
            key, val = line.split("=", 1)
            val = val.strip().strip('"').strip("'")
            os.environ[key.strip()] = val


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return float(raw)


@dataclass(frozen=True)
class RelayConfig:
    # Optional overrides (otherwise env defaults apply)
    chat_url: str | None = None
    token_url: str | None = None
    login_url: str | None = None
    origin: str | None = None
    auth_cookie: str | None = None
    db_path: str | None = None
    stream_url: str | None = None

    provider: str = "copilot"
    auth_action: str = "auth"
    controller_origin: str = "chatrelay://controller"
    stream_model: str = "auto"

    # Transport registry
    open_retries: int = 3
    open_backoff_base_s: float = 1.0
    open_backoff_cap_s: float = 5.0
    connect_timeout_s: float = 10.0
    close_poll_interval_s: float = 0.05
    close_max_wait_s: float = 5.0
    channel_size: int = 1024

    # Keepalive
    keepalive_interval_s: float = 15.0
    keepalive_idle_s: float = 30.0

    # Rate limiter
    rate_max_requests: int = 25
    rate_window_s: float = 60.0
    rate_retry_delay_s: float = 5.0

    # Conversation
    max_retries: int = 3
    reconnect_base_s: float = 1.0
    reconnect_cap_s: float = 5.0

    # Tokens / sessions
    token_ttl_s: float = 3600.0
    refresh_check_interval_s: float = 300.0
    refresh_after_s: float = 3000.0

    capability_modules: tuple[str, ...] = field(default=("socket", "event-stream"))

    def resolve_chat_url(self) -> str:
        return self.chat_url or os.getenv(
            "CHATRELAY_CHAT_URL", "wss://copilot.microsoft.com/c/api/chat?api-version=2"
        )

    def resolve_token_url(self) -> str:
        return self.token_url or os.getenv(
            "CHATRELAY_TOKEN_URL", "https://copilot.microsoft.com/api/auth/token"
        )

    def resolve_login_url(self) -> str:
        return self.login_url or os.getenv(
            "CHATRELAY_LOGIN_URL", "https://copilot.microsoft.com/chat"
        )

    def resolve_origin(self) -> str:
        return self.origin or os.getenv("CHATRELAY_ORIGIN", "https://copilot.microsoft.com")

    def resolve_auth_cookie(self) -> str:
        return self.auth_cookie or os.getenv("CHATRELAY_AUTH_COOKIE", "_C_Auth")

    def resolve_stream_url(self) -> str:
        return self.stream_url or os.getenv(
            "CHATRELAY_STREAM_URL", "https://chat.openai.com/backend-api/conversation"
        )

    def resolve_db_path(self) -> str:
        return self.db_path or os.getenv("CHATRELAY_DB_PATH", str(DEFAULT_DB_PATH))

    def resolve_http_timeout_s(self) -> float:
        return _env_float("CHATRELAY_HTTP_TIMEOUT_S", 600.0)
