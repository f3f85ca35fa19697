"""Property tests for reset boundary computation."""

from datetime import datetime, timedelta, timezone

from hypothesis import given, settings, strategies as st

from trunk_events import ResetKind, next_reset, reset_boundary
from trunk_events.windows import activity_day_key

_instants = st.datetimes(
    min_value=datetime(2020, 1, 1),
    max_value=datetime(2035, 12, 31),
)
_offsets = st.integers(min_value=-12 * 4, max_value=14 * 4).map(
    lambda quarters: timezone(timedelta(minutes=15 * quarters))
)


class TestBoundaryRule:
    """One rule decides every window: 06:00 local, weekly on Monday."""

    @settings(deadline=None, max_examples=200)
    @given(naive=_instants, tz=_offsets)
    def test_daily_boundary(self, naive: datetime, tz: timezone) -> None:
        now = naive.replace(tzinfo=tz)
        boundary = reset_boundary(ResetKind.DAILY, now)
        assert boundary.utcoffset() == now.utcoffset()
        assert (boundary.hour, boundary.minute, boundary.second) == (6, 0, 0)
        assert boundary <= now < boundary + timedelta(days=1)

    @settings(deadline=None, max_examples=200)
    @given(naive=_instants, tz=_offsets)
    def test_weekly_boundary(self, naive: datetime, tz: timezone) -> None:
        now = naive.replace(tzinfo=tz)
        boundary = reset_boundary(ResetKind.WEEKLY, now)
        assert boundary.weekday() == 0
        assert (boundary.hour, boundary.minute) == (6, 0)
        assert boundary <= now < boundary + timedelta(days=7)
        assert reset_boundary(ResetKind.DAILY, now) >= boundary

    @settings(deadline=None, max_examples=100)
    @given(naive=_instants, tz=_offsets, kind=st.sampled_from(list(ResetKind)))
    def test_boundary_is_a_fixed_point(
        self, naive: datetime, tz: timezone, kind: ResetKind
    ) -> None:
        boundary = reset_boundary(kind, naive.replace(tzinfo=tz))
        assert reset_boundary(kind, boundary) == boundary
        assert next_reset(kind, boundary - timedelta(microseconds=1)) == boundary

    @settings(deadline=None, max_examples=100)
    @given(naive=_instants, tz=_offsets)
    def test_day_key_follows_daily_boundary(self, naive: datetime, tz: timezone) -> None:
        """Instants in the same daily window share an activity day key."""
        now = naive.replace(tzinfo=tz)
        boundary = reset_boundary(ResetKind.DAILY, now)
        assert activity_day_key(now) == activity_day_key(boundary)
        assert activity_day_key(boundary - timedelta(microseconds=1)) != activity_day_key(now)
