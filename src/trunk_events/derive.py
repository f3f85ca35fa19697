"""State derivation from the event log.

All application state is computed by replaying events; the log is the only
source of truth. This module defines the derived entity models, the
``DerivedState`` projection and the deterministic reducer that produces it.

Sections:
    1. Entity models
    2. Anomaly and output models
    3. Ordering helpers
    4. Reducer
    5. Read accessors
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Dict, FrozenSet, List, Optional, Sequence, Set, Tuple

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from trunk_events.calculations import round_balance
from trunk_events.constants import (
    DURATION_DAYS,
    MAX_CAPACITY,
    NURTURE_RECOVERY,
    REFLECTION_RECOVERY,
    SNAPSHOT_VERSION,
    STARTING_CAPACITY,
    Difficulty,
    Duration,
)
from trunk_events.events import (
    GOAL_ABANDONED,
    GOAL_CONCLUDED,
    GOAL_NURTURED,
    GOAL_STARTED,
    REFLECTION_RECORDED,
    GoalAbandonedPayload,
    GoalConcludedPayload,
    GoalEditedPayload,
    GoalNurturedPayload,
    GoalStartedPayload,
    GroupingCreatedPayload,
    NodeRelabeledPayload,
    ReflectionRecordedPayload,
    parse_payload,
)
from trunk_events.models import Event, VersionError
from trunk_events.windows import activity_day_key

if TYPE_CHECKING:
    from trunk_events.compaction import Snapshot

logger = logging.getLogger("trunk_events.derive")

# ── Section 1: Entity Models ─────────────────────────────────────────────────


class GoalState(str, Enum):
    """Goal lifecycle states. Non-active states are terminal."""

    ACTIVE = "active"
    CONCLUDED = "concluded"
    ABANDONED = "abandoned"


TERMINAL_GOAL_STATES: FrozenSet[GoalState] = frozenset({
    GoalState.CONCLUDED,
    GoalState.ABANDONED,
})


class NurtureEntry(BaseModel):
    """One journal entry recorded against a goal."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    content: str
    prompt: Optional[str] = None
    client_id: Optional[str] = Field(None, description="Event that recorded the entry")


class Goal(BaseModel):
    """Derived goal entity.

    Reward and refund fields are recorded at the moment of conclusion or
    abandonment so a compacted history can still be exported losslessly.
    The client ids of the start, conclude and abandon events are kept for
    the same reason: re-exported facts keep their idempotency keys.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    node_id: str
    title: str
    duration: Duration
    difficulty: Difficulty
    cost: float
    state: GoalState = GoalState.ACTIVE
    started_at: datetime
    concluded_at: Optional[datetime] = None
    abandoned_at: Optional[datetime] = None
    nurture_entries: Tuple[NurtureEntry, ...] = ()
    result: Optional[int] = None
    reflection: Optional[str] = None
    capacity_gained: Optional[float] = None
    refund: Optional[float] = None
    abandon_reason: Optional[str] = None
    grouping_id: Optional[str] = None
    outcome_low: Optional[str] = None
    outcome_mid: Optional[str] = None
    outcome_high: Optional[str] = None
    started_client_id: Optional[str] = None
    concluded_client_id: Optional[str] = None
    abandoned_client_id: Optional[str] = None


class Grouping(BaseModel):
    """Named grouping of goals under a node."""

    model_config = ConfigDict(frozen=True)

    id: str
    node_id: str
    name: str
    created_at: datetime
    client_id: Optional[str] = None


class Reflection(BaseModel):
    """Dated note tied to a node (facet)."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    node_id: str
    content: str
    node_label: Optional[str] = None
    prompt: Optional[str] = None
    client_id: Optional[str] = None


class NodeInfo(BaseModel):
    """Label and note of an addressable organizational node."""

    model_config = ConfigDict(frozen=True)

    id: str
    label: Optional[str] = None
    note: Optional[str] = None
    updated_at: datetime
    client_id: Optional[str] = Field(None, description="Latest relabel event")


# ── Section 2: Anomaly and Output Models ─────────────────────────────────────


class DerivationAnomaly(BaseModel):
    """Non-fatal issue recorded during derivation.

    Valid kind values: "malformed_payload", "unknown_event_type",
    "missing_reference", "invalid_transition", "duplicate_entity",
    "capacity_violation".
    """

    model_config = ConfigDict(frozen=True)

    kind: str
    client_id: str
    event_type: str
    message: str


class DerivedState(BaseModel):
    """Deterministic projection output of derive_state()."""

    model_config = ConfigDict(frozen=True)

    capacity: float = Field(STARTING_CAPACITY, description="Balance capacity")
    available: float = Field(STARTING_CAPACITY, description="Spendable balance")
    goals: Dict[str, Goal] = Field(default_factory=dict)
    groupings: Dict[str, Grouping] = Field(default_factory=dict)
    reflections: Tuple[Reflection, ...] = ()
    nodes: Dict[str, NodeInfo] = Field(default_factory=dict)
    activity_days: FrozenSet[str] = Field(
        default_factory=frozenset,
        description="Daily-window keys containing at least one nurture",
    )
    goals_by_node: Dict[str, Tuple[str, ...]] = Field(default_factory=dict)
    active_goals_by_node: Dict[str, Tuple[str, ...]] = Field(default_factory=dict)
    goals_by_grouping: Dict[str, Tuple[str, ...]] = Field(default_factory=dict)
    groupings_by_node: Dict[str, Tuple[str, ...]] = Field(default_factory=dict)
    anomalies: Tuple[DerivationAnomaly, ...] = ()
    event_count: int = Field(0, description="Unique events folded, seed included")

    def diagnostic_counts(self) -> Dict[str, int]:
        """Number of anomalies per kind."""
        counts: Dict[str, int] = {}
        for anomaly in self.anomalies:
            counts[anomaly.kind] = counts.get(anomaly.kind, 0) + 1
        return counts


class BalanceChange(BaseModel):
    """Balance immediately after one event that moved it."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    client_id: str
    event_type: str
    reason: str = Field(..., description="Short human-readable cause")
    context: Optional[str] = Field(None, description="Goal title or node label")
    capacity: float
    available: float


# ── Section 3: Ordering Helpers ──────────────────────────────────────────────


def event_sort_key(event: Event) -> Tuple[datetime, str]:
    """Total order over events: (timestamp, client_id)."""
    return event.sort_key()


def dedup_events(events: Sequence[Event]) -> List[Event]:
    """Drop repeated client_ids, keeping the first occurrence."""
    seen: Set[str] = set()
    unique: List[Event] = []
    for event in events:
        if event.client_id in seen:
            continue
        seen.add(event.client_id)
        unique.append(event)
    return unique


# ── Section 4: Reducer ───────────────────────────────────────────────────────


@dataclass
class _Fold:
    """Mutable working copies for one derivation pass."""

    capacity: float = STARTING_CAPACITY
    available: float = STARTING_CAPACITY
    goals: Dict[str, Goal] = field(default_factory=dict)
    groupings: Dict[str, Grouping] = field(default_factory=dict)
    reflections: List[Reflection] = field(default_factory=list)
    nodes: Dict[str, NodeInfo] = field(default_factory=dict)
    activity_days: Set[str] = field(default_factory=set)
    anomalies: List[DerivationAnomaly] = field(default_factory=list)

    @classmethod
    def from_seed(cls, seed: "Snapshot") -> "_Fold":
        return cls(
            capacity=seed.capacity,
            available=seed.available,
            goals=dict(seed.goals),
            groupings=dict(seed.groupings),
            reflections=list(seed.reflections),
            nodes=dict(seed.nodes),
            activity_days=set(seed.activity_days),
            anomalies=list(seed.anomalies),
        )

    def flag(self, kind: str, event: Event, message: str) -> None:
        logger.warning(
            "Skipping %s (%s): %s", event.type, event.client_id, message
        )
        self.anomalies.append(
            DerivationAnomaly(
                kind=kind,
                client_id=event.client_id,
                event_type=event.type,
                message=message,
            )
        )

    def recover(self, amount: float) -> None:
        self.available = min(round_balance(self.available + amount), self.capacity)

    def active_goal(self, event: Event, goal_id: str) -> Optional[Goal]:
        goal = self.goals.get(goal_id)
        if goal is None:
            self.flag("missing_reference", event, f"Goal {goal_id!r} not found")
            return None
        if goal.state in TERMINAL_GOAL_STATES:
            self.flag(
                "invalid_transition",
                event,
                f"Goal {goal_id!r} is already {goal.state.value}",
            )
            return None
        return goal


def _apply_started(fold: _Fold, event: Event, payload: GoalStartedPayload) -> None:
    if payload.goal_id in fold.goals:
        fold.flag("duplicate_entity", event, f"Goal {payload.goal_id!r} already started")
        return
    if payload.cost > fold.available:
        # Surfaced, not hidden: a log that overspends is an ordering bug.
        fold.flag(
            "capacity_violation",
            event,
            f"Cost {payload.cost} exceeds available balance {fold.available}",
        )
        fold.available = 0.0
    else:
        fold.available = round_balance(fold.available - payload.cost)
    fold.goals[payload.goal_id] = Goal(
        id=payload.goal_id,
        node_id=payload.node_id,
        title=payload.title,
        duration=payload.duration,
        difficulty=payload.difficulty,
        cost=payload.cost,
        started_at=event.timestamp,
        grouping_id=payload.grouping_id,
        outcome_low=payload.outcome_low,
        outcome_mid=payload.outcome_mid,
        outcome_high=payload.outcome_high,
        started_client_id=event.client_id,
    )


def _apply_nurtured(fold: _Fold, event: Event, payload: GoalNurturedPayload) -> None:
    goal = fold.goals.get(payload.goal_id)
    if goal is None:
        fold.flag("missing_reference", event, f"Goal {payload.goal_id!r} not found")
        return
    entry = NurtureEntry(
        timestamp=event.timestamp,
        content=payload.content,
        prompt=payload.prompt,
        client_id=event.client_id,
    )
    fold.goals[goal.id] = goal.model_copy(
        update={"nurture_entries": goal.nurture_entries + (entry,)}
    )
    fold.activity_days.add(activity_day_key(event.timestamp))
    if goal.state is GoalState.ACTIVE:
        fold.recover(NURTURE_RECOVERY)


def _apply_concluded(fold: _Fold, event: Event, payload: GoalConcludedPayload) -> None:
    goal = fold.active_goal(event, payload.goal_id)
    if goal is None:
        return
    fold.goals[goal.id] = goal.model_copy(
        update={
            "state": GoalState.CONCLUDED,
            "concluded_at": event.timestamp,
            "result": payload.result,
            "reflection": payload.reflection,
            "capacity_gained": payload.capacity_gained,
            "concluded_client_id": event.client_id,
        }
    )
    fold.capacity = min(fold.capacity + payload.capacity_gained, MAX_CAPACITY)
    fold.recover(goal.cost)


def _apply_abandoned(fold: _Fold, event: Event, payload: GoalAbandonedPayload) -> None:
    goal = fold.active_goal(event, payload.goal_id)
    if goal is None:
        return
    fold.goals[goal.id] = goal.model_copy(
        update={
            "state": GoalState.ABANDONED,
            "abandoned_at": event.timestamp,
            "refund": payload.refund,
            "abandon_reason": payload.reason,
            "abandoned_client_id": event.client_id,
        }
    )
    fold.recover(payload.refund)


def _apply_edited(fold: _Fold, event: Event, payload: GoalEditedPayload) -> None:
    goal = fold.goals.get(payload.goal_id)
    if goal is None:
        fold.flag("missing_reference", event, f"Goal {payload.goal_id!r} not found")
        return
    changes = payload.model_dump(exclude={"goal_id"}, exclude_none=True)
    if changes:
        fold.goals[goal.id] = goal.model_copy(update=changes)


def _apply_reflection(
    fold: _Fold, event: Event, payload: ReflectionRecordedPayload
) -> None:
    fold.reflections.append(
        Reflection(
            timestamp=event.timestamp,
            node_id=payload.node_id,
            content=payload.content,
            node_label=payload.node_label,
            prompt=payload.prompt,
            client_id=event.client_id,
        )
    )
    fold.recover(REFLECTION_RECOVERY)


def _apply_grouping(fold: _Fold, event: Event, payload: GroupingCreatedPayload) -> None:
    if payload.grouping_id in fold.groupings:
        fold.flag(
            "duplicate_entity", event, f"Grouping {payload.grouping_id!r} already exists"
        )
        return
    fold.groupings[payload.grouping_id] = Grouping(
        id=payload.grouping_id,
        node_id=payload.node_id,
        name=payload.name,
        created_at=event.timestamp,
        client_id=event.client_id,
    )


def _apply_relabel(fold: _Fold, event: Event, payload: NodeRelabeledPayload) -> None:
    current = fold.nodes.get(payload.node_id)
    fold.nodes[payload.node_id] = NodeInfo(
        id=payload.node_id,
        label=payload.label if payload.label is not None else (current.label if current else None),
        note=payload.note if payload.note is not None else (current.note if current else None),
        updated_at=event.timestamp,
        client_id=event.client_id,
    )


def _apply(fold: _Fold, event: Event) -> None:
    try:
        payload = parse_payload(event)
    except PydanticValidationError as exc:
        fold.flag(
            "malformed_payload",
            event,
            f"Payload validation failed: {exc.error_count()} error(s)",
        )
        return

    if payload is None:
        # Forward compatibility: newer clients may emit types we do not know.
        fold.flag("unknown_event_type", event, f"Unknown event type {event.type!r}")
    elif isinstance(payload, GoalStartedPayload):
        _apply_started(fold, event, payload)
    elif isinstance(payload, GoalNurturedPayload):
        _apply_nurtured(fold, event, payload)
    elif isinstance(payload, GoalConcludedPayload):
        _apply_concluded(fold, event, payload)
    elif isinstance(payload, GoalAbandonedPayload):
        _apply_abandoned(fold, event, payload)
    elif isinstance(payload, GoalEditedPayload):
        _apply_edited(fold, event, payload)
    elif isinstance(payload, ReflectionRecordedPayload):
        _apply_reflection(fold, event, payload)
    elif isinstance(payload, GroupingCreatedPayload):
        _apply_grouping(fold, event, payload)
    elif isinstance(payload, NodeRelabeledPayload):
        _apply_relabel(fold, event, payload)
    else:  # pragma: no cover - every union member is handled above
        raise TypeError(f"Unhandled payload type {type(payload).__name__}")


def _index(pairs: List[Tuple[str, str]]) -> Dict[str, Tuple[str, ...]]:
    grouped: Dict[str, List[str]] = {}
    for key, value in pairs:
        grouped.setdefault(key, []).append(value)
    return {key: tuple(values) for key, values in grouped.items()}


def _prepare(
    events: Sequence[Event], seed: Optional["Snapshot"]
) -> Tuple[_Fold, int, List[Event]]:
    if seed is not None:
        if seed.version != SNAPSHOT_VERSION:
            raise VersionError(
                f"Snapshot version {seed.version} cannot seed derivation "
                f"version {SNAPSHOT_VERSION}"
            )
        fold = _Fold.from_seed(seed)
        base_count = seed.compacted_event_count
        candidates = [e for e in events if e.timestamp > seed.cutoff]
    else:
        fold = _Fold()
        base_count = 0
        candidates = list(events)
    return fold, base_count, dedup_events(sorted(candidates, key=event_sort_key))


def derive_state(
    events: Sequence[Event],
    seed: Optional["Snapshot"] = None,
) -> DerivedState:
    """Fold a sequence of events into derived application state.

    Pipeline:
    1. Drop events already folded into ``seed`` (timestamp <= cutoff)
    2. Sort by (timestamp, client_id)
    3. Deduplicate by client_id
    4. Fold each event through its per-type reducer
    5. Rebuild the lookup indexes

    Pure function. No I/O. Deterministic for any input permutation.

    Raises:
        VersionError: If ``seed`` was produced by a different snapshot version.
    """
    fold, base_count, unique_events = _prepare(events, seed)
    for event in unique_events:
        _apply(fold, event)

    goals_by_node = _index([(g.node_id, g.id) for g in fold.goals.values()])
    active_goals_by_node = _index([
        (g.node_id, g.id)
        for g in fold.goals.values()
        if g.state is GoalState.ACTIVE
    ])
    goals_by_grouping = _index([
        (g.grouping_id, g.id)
        for g in fold.goals.values()
        if g.grouping_id is not None
    ])
    groupings_by_node = _index([(gr.node_id, gr.id) for gr in fold.groupings.values()])

    return DerivedState(
        capacity=fold.capacity,
        available=fold.available,
        goals=fold.goals,
        groupings=fold.groupings,
        reflections=tuple(fold.reflections),
        nodes=fold.nodes,
        activity_days=frozenset(fold.activity_days),
        goals_by_node=goals_by_node,
        active_goals_by_node=active_goals_by_node,
        goals_by_grouping=goals_by_grouping,
        groupings_by_node=groupings_by_node,
        anomalies=tuple(fold.anomalies),
        event_count=base_count + len(unique_events),
    )


def _balance_reason(fold: _Fold, event: Event) -> Optional[Tuple[str, Optional[str]]]:
    if event.type == REFLECTION_RECORDED:
        node_id = event.payload.get("node_id")
        node = fold.nodes.get(node_id) if isinstance(node_id, str) else None
        label = event.payload.get("node_label") or (node.label if node else None)
        return "Reflection", label or node_id
    goal = fold.goals.get(event.payload.get("goal_id"))
    if goal is None:
        return None
    if event.type == GOAL_STARTED:
        return "Started goal", goal.title
    if event.type == GOAL_NURTURED:
        if goal.state is not GoalState.ACTIVE:
            return None
        return "Nurtured goal", goal.title
    if event.type == GOAL_CONCLUDED:
        return f"Concluded goal ({goal.result}/5)", goal.title
    if event.type == GOAL_ABANDONED:
        return "Abandoned goal", goal.title
    return None


def balance_history(
    events: Sequence[Event],
    seed: Optional["Snapshot"] = None,
) -> List[BalanceChange]:
    """Capacity and available balance after each event that moved them.

    Runs the same pipeline and reducers as ``derive_state``, so the last
    entry always agrees with ``derive_state(events, seed)``. Skipped events
    are left out; a nurture of a finished goal recovers nothing and is left
    out too. With a ``seed`` the history starts after its cutoff.

    Raises:
        VersionError: If ``seed`` was produced by a different snapshot version.
    """
    fold, _, unique_events = _prepare(events, seed)
    history: List[BalanceChange] = []
    for event in unique_events:
        flagged = len(fold.anomalies)
        _apply(fold, event)
        if any(a.kind != "capacity_violation" for a in fold.anomalies[flagged:]):
            continue
        described = _balance_reason(fold, event)
        if described is None:
            continue
        reason, context = described
        history.append(
            BalanceChange(
                timestamp=event.timestamp,
                client_id=event.client_id,
                event_type=event.type,
                reason=reason,
                context=context,
                capacity=fold.capacity,
                available=fold.available,
            )
        )
    return history


# ── Section 5: Read Accessors ────────────────────────────────────────────────


def active_goals(state: DerivedState) -> List[Goal]:
    return [g for g in state.goals.values() if g.state is GoalState.ACTIVE]


def concluded_goals(state: DerivedState) -> List[Goal]:
    return [g for g in state.goals.values() if g.state is GoalState.CONCLUDED]


def abandoned_goals(state: DerivedState) -> List[Goal]:
    return [g for g in state.goals.values() if g.state is GoalState.ABANDONED]


def goals_for_node(state: DerivedState, node_id: str) -> List[Goal]:
    return [state.goals[gid] for gid in state.goals_by_node.get(node_id, ())]


def active_goals_for_node(state: DerivedState, node_id: str) -> List[Goal]:
    return [state.goals[gid] for gid in state.active_goals_by_node.get(node_id, ())]


def goals_for_grouping(state: DerivedState, grouping_id: str) -> List[Goal]:
    return [state.goals[gid] for gid in state.goals_by_grouping.get(grouping_id, ())]


def groupings_for_node(state: DerivedState, node_id: str) -> List[Grouping]:
    return [state.groupings[gid] for gid in state.groupings_by_node.get(node_id, ())]


def all_nurture_entries(state: DerivedState) -> List[Tuple[Goal, NurtureEntry]]:
    """Every journal entry across all goals, newest first."""
    entries = [
        (goal, entry)
        for goal in state.goals.values()
        for entry in goal.nurture_entries
    ]
    entries.sort(key=lambda pair: pair[1].timestamp, reverse=True)
    return entries


def goal_end_date(goal: Goal) -> datetime:
    """Planned end of a goal: start + duration, at 09:00 in the start's timezone."""
    end = goal.started_at + timedelta(days=DURATION_DAYS[goal.duration])
    return end.replace(hour=9, minute=0, second=0, microsecond=0)
