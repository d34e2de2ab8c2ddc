"""Persisted rate limit windows.

A window counts the requests admitted for one ``(identifier, type, endpoint)``
triple from ``window_start`` for ``window_duration_ms`` milliseconds. Stores
expose a single atomic ``increment_or_create`` so concurrent requests for the
same caller cannot both slip past the limit.
"""
from __future__ import annotations

import sqlite3
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, List, Optional

from . import persistence


class IdentifierType(str, Enum):
    IP = "ip"
    USER = "user"


class WindowStoreError(RuntimeError):
    """Raised when the backing store cannot be read or written."""


@dataclass(frozen=True)
class WindowKey:
    identifier: str
    type: IdentifierType
    endpoint: str


@dataclass(frozen=True)
class RateLimitWindow:
    identifier: str
    type: IdentifierType
    endpoint: str
    window_start: int
    window_duration_ms: int
    count: int

    @property
    def key(self) -> WindowKey:
        return WindowKey(self.identifier, self.type, self.endpoint)

    @property
    def reset_at(self) -> int:
        return self.window_start + self.window_duration_ms

    def is_open(self, now_ms: int) -> bool:
        return self.reset_at > now_ms


@dataclass(frozen=True)
class WindowUpdate:
    window: RateLimitWindow
    allowed: bool


class WindowStore(ABC):
    """Abstract base class for window stores."""

    @abstractmethod
    def increment_or_create(
        self, key: WindowKey, now_ms: int, window_ms: int, max_requests: int
    ) -> WindowUpdate:
        """Admit one request against the open window for ``key``.

        Creates a fresh window with ``count=1`` when none is open, increments
        the open window while it is below ``max_requests`` and otherwise
        leaves it untouched and reports ``allowed=False``.
        """

    @abstractmethod
    def release(self, key: WindowKey, window_start: int) -> None:
        """Give back one admission in the given window (never below zero)."""

    @abstractmethod
    def find_open(
        self, key: WindowKey, now_ms: int, window_ms: int
    ) -> Optional[RateLimitWindow]:
        """Return the most recent window for ``key`` still open at ``now_ms``."""

    @abstractmethod
    def purge_expired(self, cutoff_ms: int) -> int:
        """Delete windows that closed at or before ``cutoff_ms``."""

    @abstractmethod
    def for_identifier(
        self, identifier: str, type: IdentifierType
    ) -> List[RateLimitWindow]:
        """Every stored window of one caller, across all endpoints."""

    @abstractmethod
    def clear_identifier(self, identifier: str, type: IdentifierType) -> int:
        """Delete one caller's windows and return how many were removed."""

    @abstractmethod
    def clear(self) -> int:
        """Delete every window and return how many were removed."""

    @abstractmethod
    def all(self) -> List[RateLimitWindow]:
        pass


class InMemoryWindowStore(WindowStore):
    """Process-local store, used for tests and the ``memory`` backend."""

    def __init__(self) -> None:
        self._windows: Dict[WindowKey, List[RateLimitWindow]] = {}
        self._lock = threading.Lock()

    def _latest_open(
        self, key: WindowKey, now_ms: int, window_ms: int
    ) -> Optional[RateLimitWindow]:
        lower_bound = now_ms - window_ms
        candidates = [
            window
            for window in self._windows.get(key, [])
            if window.window_start > lower_bound
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda window: window.window_start)

    def _replace(self, updated: RateLimitWindow) -> None:
        bucket = self._windows[updated.key]
        for index, window in enumerate(bucket):
            if window.window_start == updated.window_start:
                bucket[index] = updated
                return

    def increment_or_create(
        self, key: WindowKey, now_ms: int, window_ms: int, max_requests: int
    ) -> WindowUpdate:
        with self._lock:
            window = self._latest_open(key, now_ms, window_ms)
            if window is None:
                created = RateLimitWindow(
                    identifier=key.identifier,
                    type=key.type,
                    endpoint=key.endpoint,
                    window_start=now_ms,
                    window_duration_ms=window_ms,
                    count=1,
                )
                self._windows.setdefault(key, []).append(created)
                return WindowUpdate(window=created, allowed=True)
            if window.count >= max_requests:
                return WindowUpdate(window=window, allowed=False)
            updated = replace(window, count=window.count + 1)
            self._replace(updated)
            return WindowUpdate(window=updated, allowed=True)

    def release(self, key: WindowKey, window_start: int) -> None:
        with self._lock:
            for window in self._windows.get(key, []):
                if window.window_start == window_start and window.count > 0:
                    self._replace(replace(window, count=window.count - 1))
                    return

    def find_open(
        self, key: WindowKey, now_ms: int, window_ms: int
    ) -> Optional[RateLimitWindow]:
        with self._lock:
            return self._latest_open(key, now_ms, window_ms)

    def purge_expired(self, cutoff_ms: int) -> int:
        removed = 0
        with self._lock:
            for key in list(self._windows):
                kept = [w for w in self._windows[key] if w.reset_at > cutoff_ms]
                removed += len(self._windows[key]) - len(kept)
                if kept:
                    self._windows[key] = kept
                else:
                    del self._windows[key]
        return removed

    def for_identifier(
        self, identifier: str, type: IdentifierType
    ) -> List[RateLimitWindow]:
        with self._lock:
            return [
                window
                for key, bucket in self._windows.items()
                if key.identifier == identifier and key.type == type
                for window in bucket
            ]

    def clear_identifier(self, identifier: str, type: IdentifierType) -> int:
        removed = 0
        with self._lock:
            for key in list(self._windows):
                if key.identifier == identifier and key.type == type:
                    removed += len(self._windows.pop(key))
        return removed

    def clear(self) -> int:
        with self._lock:
            removed = sum(len(bucket) for bucket in self._windows.values())
            self._windows.clear()
        return removed

    def all(self) -> List[RateLimitWindow]:
        with self._lock:
            return [window for bucket in self._windows.values() for window in bucket]


_SELECT_COLUMNS = (
    "SELECT id, identifier, type, endpoint, window_start, window_duration_ms, count "
    "FROM rate_limits"
)


def _row_to_window(row: sqlite3.Row) -> RateLimitWindow:
    return RateLimitWindow(
        identifier=row["identifier"],
        type=IdentifierType(row["type"]),
        endpoint=row["endpoint"],
        window_start=int(row["window_start"]),
        window_duration_ms=int(row["window_duration_ms"]),
        count=int(row["count"]),
    )


class SqliteWindowStore(WindowStore):
    """Windows kept in the ``rate_limits`` table of a sqlite database.

    Each update runs in a ``BEGIN IMMEDIATE`` transaction, which takes the
    database write lock before reading so other processes serialize behind
    it. The shared connection is additionally guarded by a thread lock.
    """

    def __init__(self, database_url: str) -> None:
        self.database_url = database_url
        self._lock = threading.Lock()
        try:
            persistence.init_storage(database_url)
        except sqlite3.Error as exc:
            raise WindowStoreError(f"Cannot initialise rate limit storage: {exc}") from exc

    def _connection(self) -> sqlite3.Connection:
        return persistence.get_connection(self.database_url)

    def _fetch_open(
        self, conn: sqlite3.Connection, key: WindowKey, now_ms: int, window_ms: int
    ) -> Optional[sqlite3.Row]:
        return conn.execute(
            f"{_SELECT_COLUMNS} WHERE identifier = ? AND type = ? AND endpoint = ? "
            "AND window_start > ? ORDER BY window_start DESC LIMIT 1",
            (key.identifier, key.type.value, key.endpoint, now_ms - window_ms),
        ).fetchone()

    def increment_or_create(
        self, key: WindowKey, now_ms: int, window_ms: int, max_requests: int
    ) -> WindowUpdate:
        with self._lock:
            conn = self._connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    row = self._fetch_open(conn, key, now_ms, window_ms)
                    if row is None:
                        conn.execute(
                            """
                            INSERT INTO rate_limits (
                                identifier, type, endpoint, window_start, window_duration_ms, count
                            ) VALUES (?, ?, ?, ?, ?, 1)
                            """,
                            (key.identifier, key.type.value, key.endpoint, now_ms, window_ms),
                        )
                        update = WindowUpdate(
                            window=RateLimitWindow(
                                identifier=key.identifier,
                                type=key.type,
                                endpoint=key.endpoint,
                                window_start=now_ms,
                                window_duration_ms=window_ms,
                                count=1,
                            ),
                            allowed=True,
                        )
                    elif row["count"] >= max_requests:
                        update = WindowUpdate(window=_row_to_window(row), allowed=False)
                    else:
                        conn.execute(
                            "UPDATE rate_limits SET count = count + 1 WHERE id = ?",
                            (row["id"],),
                        )
                        window = _row_to_window(row)
                        update = WindowUpdate(
                            window=replace(window, count=window.count + 1), allowed=True
                        )
                    conn.execute("COMMIT")
                except BaseException:
                    conn.execute("ROLLBACK")
                    raise
            except sqlite3.Error as exc:
                raise WindowStoreError(f"Rate limit window update failed: {exc}") from exc
        return update

    def release(self, key: WindowKey, window_start: int) -> None:
        with self._lock:
            try:
                self._connection().execute(
                    """
                    UPDATE rate_limits SET count = count - 1
                    WHERE identifier = ? AND type = ? AND endpoint = ?
                      AND window_start = ? AND count > 0
                    """,
                    (key.identifier, key.type.value, key.endpoint, window_start),
                )
            except sqlite3.Error as exc:
                raise WindowStoreError(f"Rate limit release failed: {exc}") from exc

    def find_open(
        self, key: WindowKey, now_ms: int, window_ms: int
    ) -> Optional[RateLimitWindow]:
        with self._lock:
            try:
                row = self._fetch_open(self._connection(), key, now_ms, window_ms)
            except sqlite3.Error as exc:
                raise WindowStoreError(f"Rate limit lookup failed: {exc}") from exc
        return _row_to_window(row) if row else None

    def purge_expired(self, cutoff_ms: int) -> int:
        with self._lock:
            try:
                cursor = self._connection().execute(
                    "DELETE FROM rate_limits WHERE window_start + window_duration_ms <= ?",
                    (cutoff_ms,),
                )
            except sqlite3.Error as exc:
                raise WindowStoreError(f"Rate limit purge failed: {exc}") from exc
        return cursor.rowcount

    def for_identifier(
        self, identifier: str, type: IdentifierType
    ) -> List[RateLimitWindow]:
        with self._lock:
            try:
                rows = self._connection().execute(
                    f"{_SELECT_COLUMNS} WHERE identifier = ? AND type = ? ORDER BY id",
                    (identifier, type.value),
                ).fetchall()
            except sqlite3.Error as exc:
                raise WindowStoreError(f"Rate limit lookup failed: {exc}") from exc
        return [_row_to_window(row) for row in rows]

    def clear_identifier(self, identifier: str, type: IdentifierType) -> int:
        with self._lock:
            try:
                cursor = self._connection().execute(
                    "DELETE FROM rate_limits WHERE identifier = ? AND type = ?",
                    (identifier, type.value),
                )
            except sqlite3.Error as exc:
                raise WindowStoreError(f"Rate limit clear failed: {exc}") from exc
        return cursor.rowcount

    def clear(self) -> int:
        with self._lock:
            try:
                cursor = self._connection().execute("DELETE FROM rate_limits")
            except sqlite3.Error as exc:
                raise WindowStoreError(f"Rate limit clear failed: {exc}") from exc
        return cursor.rowcount

    def all(self) -> List[RateLimitWindow]:
        with self._lock:
            try:
                rows = self._connection().execute(
                    f"{_SELECT_COLUMNS} ORDER BY id"
                ).fetchall()
            except sqlite3.Error as exc:
                raise WindowStoreError(f"Rate limit listing failed: {exc}") from exc
        return [_row_to_window(row) for row in rows]
