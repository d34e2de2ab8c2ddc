"""Heartbeat logs and in-memory session tracking."""
from __future__ import annotations

import bisect
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from core.activity import (
    ActivitySummary,
    InvalidRangeError,
    calculate_active_time,
    summarize_activity,
    to_ms,
)

MAX_HEARTBEATS = 100


class SessionNotFoundError(KeyError):
    """Raised for operations on a session id that is not being tracked."""


class HeartbeatLog:
    """Most recent heartbeats of one session, kept in ascending order."""

    def __init__(self, max_samples: int = MAX_HEARTBEATS) -> None:
        if max_samples < 1:
            raise ValueError("max_samples must be >= 1")
        self.max_samples = max_samples
        self._samples: List[datetime] = []

    def record(self, at: datetime) -> List[datetime]:
        """Insert ``at`` and return the oldest samples evicted by the cap."""
        bisect.insort(self._samples, at)
        overflow = len(self._samples) - self.max_samples
        if overflow <= 0:
            return []
        evicted = self._samples[:overflow]
        del self._samples[:overflow]
        return evicted

    def samples(self) -> List[datetime]:
        return list(self._samples)

    def __len__(self) -> int:
        return len(self._samples)


@dataclass
class TrackedSession:
    """A live session.

    Heartbeats evicted from the log are credited into ``credited_ms`` as they
    leave it; ``anchor`` is the newest evicted heartbeat and the point the
    retained samples are accounted from.
    """

    session_id: str
    user_id: str
    started_at: datetime
    heartbeats: HeartbeatLog = field(default_factory=HeartbeatLog)
    credited_ms: int = 0
    anchor: Optional[datetime] = None

    def record(self, at: datetime) -> None:
        # Anything at or before the anchor has already been accounted for.
        if self.anchor is not None and at <= self.anchor:
            return
        for beat in self.heartbeats.record(at):
            self._credit(beat)

    def _credit(self, beat: datetime) -> None:
        if beat < self.started_at:
            return
        if self.anchor is None:
            self.credited_ms += calculate_active_time(self.started_at, beat, [beat])
        else:
            self.credited_ms += calculate_active_time(
                self.anchor, beat, [beat], credit_first=False
            )
        self.anchor = beat

    def summarize(self, ended_at: datetime) -> ActivitySummary:
        beats = self.heartbeats.samples()
        if self.anchor is None:
            return summarize_activity(self.started_at, ended_at, beats)
        if ended_at < self.anchor:
            raise InvalidRangeError("ended_at precedes heartbeats already recorded")
        tail_ms = calculate_active_time(self.anchor, ended_at, beats, credit_first=False)
        return ActivitySummary(
            raw_ms=to_ms(ended_at - self.started_at),
            active_ms=self.credited_ms + tail_ms,
        )


@dataclass(frozen=True)
class SessionSummary:
    session_id: str
    user_id: str
    started_at: datetime
    ended_at: datetime
    raw_ms: int
    active_ms: int
    heartbeat_count: int

    def as_dict(self) -> Dict[str, object]:
        return {
            "session_id": self.session_id,
            "user_id": self.user_id,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat(),
            "raw_ms": self.raw_ms,
            "active_ms": self.active_ms,
            "idle_ms": self.raw_ms - self.active_ms,
            "heartbeat_count": self.heartbeat_count,
        }


class SessionTracker:
    def __init__(self) -> None:
        self._sessions: Dict[str, TrackedSession] = {}
        self._lock = threading.Lock()

    def _require(self, session_id: str) -> TrackedSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def start(self, session_id: str, user_id: str, started_at: datetime) -> TrackedSession:
        with self._lock:
            if session_id in self._sessions:
                raise ValueError(f"Session {session_id} already exists")
            session = TrackedSession(session_id=session_id, user_id=user_id, started_at=started_at)
            self._sessions[session_id] = session
            return session

    def heartbeat(self, session_id: str, at: datetime) -> int:
        """Record a heartbeat and return how many are currently retained."""
        with self._lock:
            session = self._require(session_id)
            session.record(at)
            return len(session.heartbeats)

    def end(self, session_id: str, ended_at: datetime) -> SessionSummary:
        with self._lock:
            session = self._require(session_id)
            summary = session.summarize(ended_at)
            del self._sessions[session_id]
        return SessionSummary(
            session_id=session.session_id,
            user_id=session.user_id,
            started_at=session.started_at,
            ended_at=ended_at,
            raw_ms=summary.raw_ms,
            active_ms=summary.active_ms,
            heartbeat_count=len(session.heartbeats),
        )

    def get(self, session_id: str) -> TrackedSession:
        with self._lock:
            return self._require(session_id)
