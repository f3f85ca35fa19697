"""Shared pytest fixtures for all tests."""
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterator, Optional

import pytest
from ulid import ULID

from trunk_events import (
    Difficulty,
    Duration,
    Event,
    GoalAbandonedPayload,
    GoalConcludedPayload,
    GoalEditedPayload,
    GoalNurturedPayload,
    GoalStartedPayload,
    GroupingCreatedPayload,
    InMemoryStorage,
    NodeRelabeledPayload,
    ReflectionRecordedPayload,
    TrunkStore,
    make_event,
)

# Monday 2026-03-02 09:00 UTC, three hours after the weekly reset.
T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def make_raw_event(**overrides: Any) -> Event:
    """Build an Event envelope with defaults for all required fields.

    Callers override specific fields as needed; the payload is not
    validated against its type, so malformed payloads are easy to build.
    """
    defaults: dict[str, Any] = {
        "type": "goal_nurtured",
        "timestamp": T0,
        "client_id": str(ULID()),
        "payload": {"goal_id": "goal-1", "content": "entry"},
    }
    defaults.update(overrides)
    return Event(**defaults)


class EventFactory:
    """Typed event builders with sensible defaults around T0."""

    t0 = T0

    def started(
        self,
        goal_id: str = "goal-1",
        at: datetime = T0,
        cost: float = 8,
        duration: Duration = Duration.THREE_MONTHS,
        difficulty: Difficulty = Difficulty.FIRM,
        node_id: str = "branch-0-twig-0",
        grouping_id: Optional[str] = None,
        client_id: Optional[str] = None,
    ) -> Event:
        payload = GoalStartedPayload(
            goal_id=goal_id,
            node_id=node_id,
            title=f"Goal {goal_id}",
            duration=duration,
            difficulty=difficulty,
            cost=cost,
            grouping_id=grouping_id,
        )
        return make_event(payload, timestamp=at, client_id=client_id)

    def nurtured(
        self,
        goal_id: str = "goal-1",
        at: datetime = T0,
        content: str = "entry",
        client_id: Optional[str] = None,
    ) -> Event:
        payload = GoalNurturedPayload(goal_id=goal_id, content=content)
        return make_event(payload, timestamp=at, client_id=client_id)

    def concluded(
        self,
        goal_id: str = "goal-1",
        at: datetime = T0,
        result: int = 5,
        gained: float = 1.5,
    ) -> Event:
        payload = GoalConcludedPayload(goal_id=goal_id, result=result, capacity_gained=gained)
        return make_event(payload, timestamp=at)

    def abandoned(self, goal_id: str = "goal-1", at: datetime = T0, refund: float = 2.0) -> Event:
        return make_event(GoalAbandonedPayload(goal_id=goal_id, refund=refund), timestamp=at)

    def edited(self, goal_id: str = "goal-1", at: datetime = T0, **changes: Any) -> Event:
        return make_event(GoalEditedPayload(goal_id=goal_id, **changes), timestamp=at)

    def reflected(
        self, node_id: str = "branch-0", at: datetime = T0, client_id: Optional[str] = None
    ) -> Event:
        payload = ReflectionRecordedPayload(node_id=node_id, content="a note")
        return make_event(payload, timestamp=at, client_id=client_id)

    def grouping(
        self, grouping_id: str = "grouping-1", node_id: str = "branch-0", at: datetime = T0
    ) -> Event:
        payload = GroupingCreatedPayload(grouping_id=grouping_id, node_id=node_id, name="Fitness")
        return make_event(payload, timestamp=at)

    def relabeled(
        self,
        node_id: str = "branch-0",
        at: datetime = T0,
        label: Optional[str] = "Health",
        note: Optional[str] = None,
    ) -> Event:
        payload = NodeRelabeledPayload(node_id=node_id, label=label, note=note)
        return make_event(payload, timestamp=at)


class SettableClock:
    """Callable clock for code that takes a ``clock`` argument."""

    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now += delta


@pytest.fixture
def t0() -> datetime:
    return T0


@pytest.fixture
def ev() -> EventFactory:
    return EventFactory()


@pytest.fixture
def raw_event() -> Callable[..., Event]:
    """Factory for envelopes with arbitrary (possibly malformed) payloads."""
    return make_raw_event


@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
def store(storage: InMemoryStorage) -> Iterator[TrunkStore]:
    with TrunkStore.open(storage) as opened:
        yield opened


@pytest.fixture
def clock() -> SettableClock:
    return SettableClock()
