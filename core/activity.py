"""Active-time accounting from heartbeat streams.

Clients emit a heartbeat roughly every 30 seconds while a session is in use.
The helpers below rebuild how long the user was genuinely active between a
session's start and end: short gaps (a coffee break, a dropped connection)
count as continuous presence, long gaps (a sleeping laptop, an overnight
absence) are dropped entirely. Everything here is pure; callers own
persistence and reporting.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Sequence

IDLE_THRESHOLD = timedelta(minutes=15)


class InvalidRangeError(ValueError):
    """Raised when a session range or heartbeat sequence is malformed."""


@dataclass(frozen=True)
class ActivitySummary:
    raw_ms: int
    active_ms: int

    @property
    def idle_ms(self) -> int:
        return self.raw_ms - self.active_ms

    def as_dict(self) -> Dict[str, int]:
        return {
            "raw_ms": self.raw_ms,
            "active_ms": self.active_ms,
            "idle_ms": self.idle_ms,
        }


def to_ms(delta: timedelta) -> int:
    return int(round(delta.total_seconds() * 1000))


def _in_range_heartbeats(
    start: datetime, end: datetime, heartbeats: Sequence[datetime]
) -> List[datetime]:
    previous: datetime | None = None
    kept: List[datetime] = []
    for beat in heartbeats:
        if previous is not None and beat < previous:
            raise InvalidRangeError("heartbeats must be sorted in ascending order")
        previous = beat
        if start <= beat <= end:
            kept.append(beat)
    return kept


def calculate_active_time(
    start: datetime,
    end: datetime,
    heartbeats: Sequence[datetime] = (),
    *,
    credit_first: bool = True,
) -> int:
    """Return the active duration in milliseconds between ``start`` and ``end``.

    The interval from ``start`` to the first heartbeat is always credited.
    Every later interval (heartbeat to heartbeat, last heartbeat to ``end``)
    is credited in full when it is at most ``IDLE_THRESHOLD`` long and
    contributes nothing otherwise. Without heartbeats the session earns
    ``min(end - start, IDLE_THRESHOLD)``.

    Heartbeats outside ``[start, end]`` are ignored.

    With ``credit_first=False`` ``start`` is treated as a heartbeat itself, so
    the first interval is gap-checked like the others. Use this to continue
    an accounting from a heartbeat that has already been credited.
    """
    if end < start:
        raise InvalidRangeError("end must not be earlier than start")

    beats = _in_range_heartbeats(start, end, heartbeats)
    if not credit_first:
        beats = [start] + beats
    if not beats:
        return to_ms(min(end - start, IDLE_THRESHOLD))

    active = beats[0] - start
    boundaries = beats + [end]
    for previous, current in zip(boundaries, boundaries[1:]):
        gap = current - previous
        if gap <= IDLE_THRESHOLD:
            active += gap
    return to_ms(active)


def summarize_activity(
    start: datetime, end: datetime, heartbeats: Sequence[datetime] = ()
) -> ActivitySummary:
    active_ms = calculate_active_time(start, end, heartbeats)
    return ActivitySummary(raw_ms=to_ms(end - start), active_ms=active_ms)
