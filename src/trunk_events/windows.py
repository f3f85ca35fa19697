"""Time-windowed resource queries layered on top of the event log.

Every daily or weekly window in the library is computed by
:func:`reset_boundary`. Nothing else may re-derive a reset instant; callers
that need "today" or "this week" route through it.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Callable, Dict, Iterable, Optional, Tuple

from trunk_events.constants import (
    NURTURE_DAILY_CAPACITY,
    REFLECTION_WEEKLY_CAPACITY,
    RESET_HOUR,
    WEEKLY_RESET_WEEKDAY,
)
from trunk_events.events import GOAL_NURTURED, REFLECTION_RECORDED
from trunk_events.models import Event, ensure_aware


class ResetKind(str, Enum):
    """Window length for a capped resource."""

    DAILY = "daily"
    WEEKLY = "weekly"


_WINDOW_LENGTH: Dict[ResetKind, timedelta] = {
    ResetKind.DAILY: timedelta(days=1),
    ResetKind.WEEKLY: timedelta(days=7),
}


def reset_boundary(kind: ResetKind, now: datetime) -> datetime:
    """Most recent reset instant at-or-before ``now``.

    Daily windows open at RESET_HOUR every day; weekly windows open at
    RESET_HOUR on WEEKLY_RESET_WEEKDAY (Monday). The computation happens in
    ``now``'s own timezone, so a device's local reset hour is honoured.
    """
    now = ensure_aware(now)
    boundary = now.replace(hour=RESET_HOUR, minute=0, second=0, microsecond=0)
    if boundary > now:
        boundary -= timedelta(days=1)
    if ResetKind(kind) is ResetKind.WEEKLY:
        days_back = (boundary.weekday() - WEEKLY_RESET_WEEKDAY) % 7
        boundary -= timedelta(days=days_back)
    return boundary


def next_reset(kind: ResetKind, now: datetime) -> datetime:
    """First reset instant strictly after ``now``."""
    return reset_boundary(kind, now) + _WINDOW_LENGTH[ResetKind(kind)]


def activity_day_key(timestamp: datetime) -> str:
    """ISO date of the daily window containing ``timestamp``."""
    return reset_boundary(ResetKind.DAILY, timestamp).date().isoformat()


def usage_since(
    events: Iterable[Event],
    event_type: str,
    boundary: datetime,
    goal_id: Optional[str] = None,
) -> int:
    """Count distinct events of ``event_type`` at-or-after ``boundary``."""
    seen = set()
    for event in events:
        if event.type != event_type or event.timestamp < boundary:
            continue
        if goal_id is not None and event.payload.get("goal_id") != goal_id:
            continue
        seen.add(event.client_id)
    return len(seen)


def available(capacity: int, used: int) -> int:
    """Remaining uses in a window; never negative."""
    return max(0, capacity - used)


def nurture_available(events: Iterable[Event], now: datetime) -> int:
    """Nurtures left in the current daily window."""
    used = usage_since(events, GOAL_NURTURED, reset_boundary(ResetKind.DAILY, now))
    return available(NURTURE_DAILY_CAPACITY, used)


def reflection_available(events: Iterable[Event], now: datetime) -> int:
    """Reflections left in the current weekly window."""
    used = usage_since(
        events, REFLECTION_RECORDED, reset_boundary(ResetKind.WEEKLY, now)
    )
    return available(REFLECTION_WEEKLY_CAPACITY, used)


def was_nurtured_today(events: Iterable[Event], goal_id: str, now: datetime) -> bool:
    """Read-time gate: has this goal already been nurtured in today's window?"""
    boundary = reset_boundary(ResetKind.DAILY, now)
    return usage_since(events, GOAL_NURTURED, boundary, goal_id=goal_id) > 0


def was_nurtured_this_week(
    events: Iterable[Event], goal_id: str, now: datetime
) -> bool:
    boundary = reset_boundary(ResetKind.WEEKLY, now)
    return usage_since(events, GOAL_NURTURED, boundary, goal_id=goal_id) > 0


def was_reflected_this_week(events: Iterable[Event], now: datetime) -> bool:
    boundary = reset_boundary(ResetKind.WEEKLY, now)
    return usage_since(events, REFLECTION_RECORDED, boundary) > 0


@dataclass(frozen=True)
class NurtureStreak:
    """Consecutive daily windows containing at least one nurture."""

    current: int
    longest: int


def nurture_streak(activity_days: Iterable[str], now: datetime) -> NurtureStreak:
    """Compute current and longest streaks from activity-day keys.

    The current streak is still alive when today has no nurture yet but
    yesterday did.
    """
    days = sorted({date.fromisoformat(d) for d in activity_days})
    if not days:
        return NurtureStreak(current=0, longest=0)

    one_day = timedelta(days=1)
    longest = 0
    run = 0
    previous: Optional[date] = None
    for day in days:
        run = run + 1 if previous is not None and day - previous == one_day else 1
        longest = max(longest, run)
        previous = day

    day_set = set(days)
    today = date.fromisoformat(activity_day_key(now))
    cursor = today if today in day_set else today - one_day
    current = 0
    while cursor in day_set:
        current += 1
        cursor -= one_day

    return NurtureStreak(current=current, longest=longest)


class AvailabilityCache:
    """Memoizes window availability per reset kind.

    An entry is reused only while both the log version it was computed
    from and the reset boundary it was computed in are unchanged, so a
    cached value never outlives the next reset even with no new events.
    """

    def __init__(self) -> None:
        self._entries: Dict[ResetKind, Tuple[int, datetime, int]] = {}

    def get(
        self,
        kind: ResetKind,
        now: datetime,
        log_version: int,
        compute: Callable[[], int],
    ) -> int:
        boundary = reset_boundary(kind, now)
        entry = self._entries.get(kind)
        if entry is not None and entry[0] == log_version and entry[1] == boundary:
            return entry[2]
        value = compute()
        self._entries[kind] = (log_version, boundary, value)
        return value

    def clear(self) -> None:
        self._entries.clear()
