"""SQLite connection handling for rate limit windows."""
from __future__ import annotations

import sqlite3
import threading
from pathlib import Path
from typing import Dict

_CONNECTION_CACHE: Dict[str, sqlite3.Connection] = {}
_CACHE_LOCK = threading.Lock()


def _sqlite_path(database_url: str) -> str:
    prefix = "sqlite:///"
    if not database_url.startswith(prefix):
        raise ValueError("Only sqlite:/// URLs are supported")
    path = database_url[len(prefix) :]
    if path in {":memory", ":memory:"}:
        return ":memory:"
    return path


def get_connection(database_url: str) -> sqlite3.Connection:
    """Return a cached sqlite3 connection for the provided URL."""

    with _CACHE_LOCK:
        if database_url not in _CONNECTION_CACHE:
            path = _sqlite_path(database_url)
            if path != ":memory:":
                Path(path).parent.mkdir(parents=True, exist_ok=True)
            # Autocommit mode; window updates manage their own transactions.
            conn = sqlite3.connect(
                path, check_same_thread=False, isolation_level=None, timeout=5.0
            )
            conn.row_factory = sqlite3.Row
            _CONNECTION_CACHE[database_url] = conn
        return _CONNECTION_CACHE[database_url]


def close_connection(database_url: str) -> None:
    with _CACHE_LOCK:
        conn = _CONNECTION_CACHE.pop(database_url, None)
    if conn is not None:
        conn.close()


def init_storage(database_url: str) -> None:
    """Ensure required tables exist."""

    conn = get_connection(database_url)
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS rate_limits (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            identifier TEXT NOT NULL,
            type TEXT NOT NULL CHECK (type IN ('ip', 'user')),
            endpoint TEXT NOT NULL,
            window_start INTEGER NOT NULL,
            window_duration_ms INTEGER NOT NULL,
            count INTEGER NOT NULL DEFAULT 1
        )
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_rate_limits_lookup
        ON rate_limits (identifier, type, endpoint, window_start)
        """
    )
