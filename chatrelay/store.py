"""SQLite persistence for short-lived credentials.

Provides:
- init_db(): schema creation
- TokenRepository: auth token cache rows, keyed by provider
- SessionSnapshotRepository: resumable session snapshots, keyed by provider

Both tables only ever hold data younger than the token TTL; stale rows are
deleted when they are read.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass

log = logging.getLogger("store")


@dataclass
class TokenRecord:
    """Auth token cache record."""

    provider: str
    token: str
    timestamp: float


@dataclass
class SnapshotRecord:
    """Session snapshot record."""

    provider: str
    access_token: str
    timestamp: float


class TokenRepository:
    """Repository for auth_tokens table."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def get(self, provider: str) -> TokenRecord | None:
        row = self.conn.execute(
            "SELECT * FROM auth_tokens WHERE provider = ?", (provider,)
        ).fetchone()
        if not row:
            return None
        return TokenRecord(
            provider=row["provider"], token=row["token"], timestamp=row["timestamp"]
        )

    def put(self, provider: str, token: str, timestamp: float) -> None:
        self.conn.execute(
            """INSERT INTO auth_tokens (provider, token, timestamp)
               VALUES (?, ?, ?)
               ON CONFLICT(provider) DO UPDATE SET
                   token = excluded.token, timestamp = excluded.timestamp""",
            (provider, token, timestamp),
        )
        self.conn.commit()

    def delete(self, provider: str) -> None:
        self.conn.execute("DELETE FROM auth_tokens WHERE provider = ?", (provider,))
        self.conn.commit()


class SessionSnapshotRepository:
    """Repository for session_snapshots table."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def save(self, provider: str, access_token: str, timestamp: float) -> None:
        self.conn.execute(
            """INSERT INTO session_snapshots (provider, access_token, timestamp)
               VALUES (?, ?, ?)
               ON CONFLICT(provider) DO UPDATE SET
                   access_token = excluded.access_token, timestamp = excluded.timestamp""",
            (provider, access_token, timestamp),
        )
        self.conn.commit()

    def load(self, provider: str, *, ttl_s: float, now: float) -> SnapshotRecord | None:
        """Return the snapshot if it is younger than ``ttl_s``; purge it otherwise."""
        row = self.conn.execute(
            "SELECT * FROM session_snapshots WHERE provider = ?", (provider,)
        ).fetchone()
        if not row:
            return None
        if now - row["timestamp"] >= ttl_s:
            log.debug(f"Purging expired session snapshot for {provider}")
            self.delete(provider)
            return None
        return SnapshotRecord(
            provider=row["provider"],
            access_token=row["access_token"],
            timestamp=row["timestamp"],
        )

    def delete(self, provider: str) -> None:
        self.conn.execute("DELETE FROM session_snapshots WHERE provider = ?", (provider,))
        self.conn.commit()


def init_db(path: str = ":memory:") -> sqlite3.Connection:
    """Initialize SQLite database with schema."""
    conn = sqlite3.connect(path, check_same_thread=False)
    conn.row_factory = sqlite3.Row

    try:
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
    except sqlite3.OperationalError:
        # Best-effort; some environments may reject specific pragmas.
        pass

    conn.execute("""
        CREATE TABLE IF NOT EXISTS auth_tokens (
            provider TEXT PRIMARY KEY,
            token TEXT NOT NULL,
            timestamp REAL NOT NULL
        )
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS session_snapshots (
            provider TEXT PRIMARY KEY,
            access_token TEXT NOT NULL,
            timestamp REAL NOT NULL
        )
    """)

    conn.commit()
    return conn
