"""Action functions for the UI collaborator.

Each action builds one event from the current derived state, appends it to
the store and returns it. Usage caps (daily nurtures, weekly reflections)
are read-time policy and are deliberately not checked here; callers consult
``TrunkStore.nurture_available`` and friends before offering the action.
"""

from datetime import datetime, timezone
from typing import Optional

from trunk_events.calculations import abandon_refund, capacity_reward, goal_cost
from trunk_events.constants import Difficulty, Duration
from trunk_events.derive import Goal, GoalState
from trunk_events.events import (
    GoalAbandonedPayload,
    GoalConcludedPayload,
    GoalEditedPayload,
    GoalNurturedPayload,
    GoalStartedPayload,
    GroupingCreatedPayload,
    NodeRelabeledPayload,
    ReflectionRecordedPayload,
    TrunkPayload,
    make_event,
)
from trunk_events.models import Event, ValidationError, new_client_id
from trunk_events.store import TrunkStore


def _now(now: Optional[datetime]) -> datetime:
    return now if now is not None else datetime.now(timezone.utc)


def _emit(store: TrunkStore, payload: TrunkPayload, now: Optional[datetime]) -> Event:
    event = make_event(payload, timestamp=_now(now))
    store.append(event)
    return event


def _active_goal(store: TrunkStore, goal_id: str) -> Goal:
    goal = store.state().goals.get(goal_id)
    if goal is None:
        raise ValidationError(f"Goal {goal_id!r} not found")
    if goal.state is not GoalState.ACTIVE:
        raise ValidationError(f"Goal {goal_id!r} is already {goal.state.value}")
    return goal


def start_goal(
    store: TrunkStore,
    node_id: str,
    title: str,
    duration: Duration,
    difficulty: Difficulty,
    *,
    grouping_id: Optional[str] = None,
    outcome_low: Optional[str] = None,
    outcome_mid: Optional[str] = None,
    outcome_high: Optional[str] = None,
    goal_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Event:
    """Spend balance to start a goal on ``node_id``.

    Raises:
        ValidationError: If the goal costs more than the available balance.
    """
    cost = goal_cost(duration, difficulty)
    if not store.can_afford(cost):
        raise ValidationError(
            f"Goal costs {cost} but only {store.state().available} is available"
        )
    payload = GoalStartedPayload(
        goal_id=goal_id or f"goal-{new_client_id()}",
        node_id=node_id,
        title=title,
        duration=duration,
        difficulty=difficulty,
        cost=cost,
        grouping_id=grouping_id,
        outcome_low=outcome_low,
        outcome_mid=outcome_mid,
        outcome_high=outcome_high,
    )
    return _emit(store, payload, now)


def nurture_goal(
    store: TrunkStore,
    goal_id: str,
    content: str,
    *,
    prompt: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Event:
    if goal_id not in store.state().goals:
        raise ValidationError(f"Goal {goal_id!r} not found")
    return _emit(
        store, GoalNurturedPayload(goal_id=goal_id, content=content, prompt=prompt), now
    )


def conclude_goal(
    store: TrunkStore,
    goal_id: str,
    result: int,
    *,
    reflection: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Event:
    """Conclude an active goal, fixing its capacity reward at this moment."""
    goal = _active_goal(store, goal_id)
    gained = capacity_reward(
        goal.duration, goal.difficulty, result, store.state().capacity
    )
    payload = GoalConcludedPayload(
        goal_id=goal_id,
        result=result,
        capacity_gained=gained,
        reflection=reflection,
    )
    return _emit(store, payload, now)


def abandon_goal(
    store: TrunkStore,
    goal_id: str,
    *,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Event:
    goal = _active_goal(store, goal_id)
    payload = GoalAbandonedPayload(
        goal_id=goal_id, refund=abandon_refund(goal.cost), reason=reason
    )
    return _emit(store, payload, now)


def edit_goal(
    store: TrunkStore,
    goal_id: str,
    *,
    title: Optional[str] = None,
    grouping_id: Optional[str] = None,
    outcome_low: Optional[str] = None,
    outcome_mid: Optional[str] = None,
    outcome_high: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Event:
    if goal_id not in store.state().goals:
        raise ValidationError(f"Goal {goal_id!r} not found")
    payload = GoalEditedPayload(
        goal_id=goal_id,
        title=title,
        grouping_id=grouping_id,
        outcome_low=outcome_low,
        outcome_mid=outcome_mid,
        outcome_high=outcome_high,
    )
    return _emit(store, payload, now)


def record_reflection(
    store: TrunkStore,
    node_id: str,
    content: str,
    *,
    prompt: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Event:
    """Record a reflection on a facet, capturing its current label for display."""
    node = store.state().nodes.get(node_id)
    payload = ReflectionRecordedPayload(
        node_id=node_id,
        content=content,
        node_label=node.label if node is not None else None,
        prompt=prompt,
    )
    return _emit(store, payload, now)


def create_grouping(
    store: TrunkStore,
    node_id: str,
    name: str,
    *,
    grouping_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Event:
    payload = GroupingCreatedPayload(
        grouping_id=grouping_id or f"grouping-{new_client_id()}",
        node_id=node_id,
        name=name,
    )
    return _emit(store, payload, now)


def relabel_node(
    store: TrunkStore,
    node_id: str,
    *,
    label: Optional[str] = None,
    note: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Event:
    return _emit(store, NodeRelabeledPayload(node_id=node_id, label=label, note=note), now)
