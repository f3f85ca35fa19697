"""Migration of legacy flat state into a synthetic event log.

Before event sourcing, state was persisted as one document of nodes with
their goals and groupings, plus a flat reflection list::

    {"version": 1,
     "nodes": {"<node_id>": {"label": ..., "note": ...,
                             "goals": [...], "groupings": [...]}},
     "reflections": [...]}

Every dated fact in that document becomes one event carrying the fact's
original timestamp. Capacity rewards were never stored, so they are
recomputed in a second pass that replays conclusions in time order with the
diminishing-returns formula.

Sections:
    1. Legacy document models
    2. Event synthesis
    3. Validation
    4. Entry points
"""

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from trunk_events.calculations import abandon_refund, capacity_reward, goal_cost
from trunk_events.constants import (
    LEGACY_STATE_VERSION,
    MAX_CAPACITY,
    STARTING_CAPACITY,
    Difficulty,
    Duration,
)
from trunk_events.derive import GoalState, derive_state
from trunk_events.events import (
    GOAL_CONCLUDED,
    GOAL_STARTED,
    GoalAbandonedPayload,
    GoalConcludedPayload,
    GoalNurturedPayload,
    GoalStartedPayload,
    GroupingCreatedPayload,
    NodeRelabeledPayload,
    ReflectionRecordedPayload,
    make_event,
)
from trunk_events.models import Event, MigrationError, ValidationError, VersionError
from trunk_events.store import TrunkStore

logger = logging.getLogger("trunk_events.migrate")

_ONE_TICK = timedelta(microseconds=1)

# Derivation anomalies tolerated in a migrated log. Legacy state never
# tracked the balance, so an overspent history is reported but not fatal.
_TOLERATED_ANOMALIES = frozenset({"capacity_violation"})

# ── Section 1: Legacy Document Models ────────────────────────────────────────


class LegacyNurtureEntry(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    timestamp: datetime
    content: str = Field(..., min_length=1)
    prompt: Optional[str] = None


class LegacyGoal(BaseModel):
    """A goal as stored in the flat document."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1)
    duration: Duration
    difficulty: Difficulty
    cost: Optional[float] = Field(None, ge=0)
    state: GoalState = GoalState.ACTIVE
    started_at: datetime
    concluded_at: Optional[datetime] = None
    abandoned_at: Optional[datetime] = None
    result: Optional[int] = Field(None, ge=1, le=5)
    reflection: Optional[str] = None
    abandon_reason: Optional[str] = None
    grouping_id: Optional[str] = None
    outcome_low: Optional[str] = None
    outcome_mid: Optional[str] = None
    outcome_high: Optional[str] = None
    nurture_entries: List[LegacyNurtureEntry] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_terminal_fields(self) -> "LegacyGoal":
        if self.state is GoalState.CONCLUDED and (
            self.result is None or self.concluded_at is None
        ):
            raise ValueError(f"concluded goal {self.id!r} needs result and concluded_at")
        if self.state is GoalState.ABANDONED and self.abandoned_at is None:
            raise ValueError(f"abandoned goal {self.id!r} needs abandoned_at")
        return self

    def effective_cost(self) -> float:
        if self.cost is not None:
            return self.cost
        return float(goal_cost(self.duration, self.difficulty))


class LegacyGrouping(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    created_at: datetime


class LegacyNode(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    label: Optional[str] = None
    note: Optional[str] = None
    goals: List[LegacyGoal] = Field(default_factory=list)
    groupings: List[LegacyGrouping] = Field(default_factory=list)


class LegacyReflection(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    timestamp: datetime
    node_id: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1)
    node_label: Optional[str] = None
    prompt: Optional[str] = None


class LegacyState(BaseModel):
    """The pre-event-sourcing flat document."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    version: int
    nodes: Dict[str, LegacyNode] = Field(default_factory=dict)
    reflections: List[LegacyReflection] = Field(default_factory=list)


def parse_legacy(raw: Union[str, bytes, Dict[str, Any]]) -> LegacyState:
    """Parse a legacy document.

    Raises:
        VersionError: If the document carries an unknown version.
        ValidationError: If the document is malformed.
    """
    if isinstance(raw, (str, bytes)):
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ValidationError(f"Legacy state is not valid JSON: {exc}") from exc
    else:
        data = raw
    if not isinstance(data, dict):
        raise ValidationError("Legacy state must be a JSON object")
    version = data.get("version")
    if version != LEGACY_STATE_VERSION:
        raise VersionError(f"Unknown legacy state version {version!r}")
    try:
        return LegacyState.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError(f"Legacy state failed validation: {exc}") from exc


# ── Section 2: Event Synthesis ───────────────────────────────────────────────


def _goal_events(node_id: str, goal: LegacyGoal) -> List[Event]:
    prefix = f"legacy-goal-{goal.id}"
    cost = goal.effective_cost()
    events = [make_event(
        GoalStartedPayload(
            goal_id=goal.id,
            node_id=node_id,
            title=goal.title,
            duration=goal.duration,
            difficulty=goal.difficulty,
            cost=cost,
            grouping_id=goal.grouping_id,
            outcome_low=goal.outcome_low,
            outcome_mid=goal.outcome_mid,
            outcome_high=goal.outcome_high,
        ),
        timestamp=goal.started_at,
        client_id=f"{prefix}-start",
    )]
    for index, entry in enumerate(goal.nurture_entries):
        events.append(make_event(
            GoalNurturedPayload(goal_id=goal.id, content=entry.content, prompt=entry.prompt),
            timestamp=entry.timestamp,
            client_id=f"{prefix}-nurture-{index}",
        ))
    if goal.state is GoalState.CONCLUDED:
        if goal.result is None or goal.concluded_at is None:
            raise ValidationError(f"Concluded goal {goal.id!r} needs result and concluded_at")
        # Reward filled in by _recompute_rewards.
        events.append(make_event(
            GoalConcludedPayload(
                goal_id=goal.id,
                result=goal.result,
                capacity_gained=0.0,
                reflection=goal.reflection,
            ),
            timestamp=goal.concluded_at,
            client_id=f"{prefix}-conclude",
        ))
    elif goal.state is GoalState.ABANDONED:
        if goal.abandoned_at is None:
            raise ValidationError(f"Abandoned goal {goal.id!r} needs abandoned_at")
        events.append(make_event(
            GoalAbandonedPayload(
                goal_id=goal.id, refund=abandon_refund(cost), reason=goal.abandon_reason
            ),
            timestamp=goal.abandoned_at,
            client_id=f"{prefix}-abandon",
        ))
    return events


def _recompute_rewards(events: List[Event]) -> List[Event]:
    """Replay conclusions in order, filling in each capacity reward."""
    capacity = STARTING_CAPACITY
    classes: Dict[str, Tuple[str, str]] = {}
    rewritten: List[Event] = []
    for event in events:
        if event.type == GOAL_STARTED:
            classes[event.payload["goal_id"]] = (
                event.payload["duration"],
                event.payload["difficulty"],
            )
        elif event.type == GOAL_CONCLUDED and event.payload["goal_id"] in classes:
            duration, difficulty = classes[event.payload["goal_id"]]
            gained = capacity_reward(
                Duration(duration), Difficulty(difficulty), event.payload["result"], capacity
            )
            capacity = min(capacity + gained, MAX_CAPACITY)
            event = event.model_copy(
                update={"payload": {**event.payload, "capacity_gained": gained}}
            )
        rewritten.append(event)
    return rewritten


def migrate_to_events(
    legacy: LegacyState, now: Optional[datetime] = None
) -> List[Event]:
    """Synthesize a timestamp-faithful event list from a legacy document.

    Client ids are derived from entity ids, so migrating the same document
    twice yields the same events.

    Raises:
        ValidationError: If a terminal goal lacks its conclusion or
            abandonment fields.
    """
    facts: List[Event] = []
    for node_id, node in legacy.nodes.items():
        for grouping in node.groupings:
            facts.append(make_event(
                GroupingCreatedPayload(
                    grouping_id=grouping.id, node_id=node_id, name=grouping.name
                ),
                timestamp=grouping.created_at,
                client_id=f"legacy-grouping-{grouping.id}",
            ))
        for goal in node.goals:
            facts.extend(_goal_events(node_id, goal))
    for index, reflection in enumerate(legacy.reflections):
        facts.append(make_event(
            ReflectionRecordedPayload(
                node_id=reflection.node_id,
                content=reflection.content,
                node_label=reflection.node_label,
                prompt=reflection.prompt,
            ),
            timestamp=reflection.timestamp,
            client_id=f"legacy-reflection-{index}",
        ))

    # Labels precede every other fact so reflections see them.
    if facts:
        label_time = min(e.timestamp for e in facts) - _ONE_TICK
    else:
        label_time = now or datetime.now(timezone.utc)
    for node_id, node in legacy.nodes.items():
        if node.label is None and node.note is None:
            continue
        facts.append(make_event(
            NodeRelabeledPayload(node_id=node_id, label=node.label, note=node.note),
            timestamp=label_time,
            client_id=f"legacy-node-{node_id}",
        ))

    facts.sort(key=Event.sort_key)
    return _recompute_rewards(facts)


# ── Section 3: Validation ────────────────────────────────────────────────────


class MigrationReport(BaseModel):
    """Comparison of a legacy document with the state derived from its events."""

    model_config = ConfigDict(frozen=True)

    valid: bool
    errors: Tuple[str, ...] = ()
    expected: Dict[str, int] = Field(default_factory=dict)
    actual: Dict[str, int] = Field(default_factory=dict)


def _expected_counts(legacy: LegacyState) -> Dict[str, int]:
    goals = [g for node in legacy.nodes.values() for g in node.goals]
    return {
        "goals": len(goals),
        "active": sum(1 for g in goals if g.state is GoalState.ACTIVE),
        "concluded": sum(1 for g in goals if g.state is GoalState.CONCLUDED),
        "abandoned": sum(1 for g in goals if g.state is GoalState.ABANDONED),
        "nurture_entries": sum(len(g.nurture_entries) for g in goals),
        "groupings": sum(len(node.groupings) for node in legacy.nodes.values()),
        "reflections": len(legacy.reflections),
    }


def validate_migration(legacy: LegacyState, events: List[Event]) -> MigrationReport:
    """Derive state from ``events`` and compare it with ``legacy``.

    Compares entity counts, then per-goal fields.
    """
    state = derive_state(events)
    goals = list(state.goals.values())
    actual = {
        "goals": len(goals),
        "active": sum(1 for g in goals if g.state is GoalState.ACTIVE),
        "concluded": sum(1 for g in goals if g.state is GoalState.CONCLUDED),
        "abandoned": sum(1 for g in goals if g.state is GoalState.ABANDONED),
        "nurture_entries": sum(len(g.nurture_entries) for g in goals),
        "groupings": len(state.groupings),
        "reflections": len(state.reflections),
    }
    expected = _expected_counts(legacy)

    errors: List[str] = [
        f"{name}: expected {expected[name]}, got {actual[name]}"
        for name in expected
        if expected[name] != actual[name]
    ]

    for node_id, node in legacy.nodes.items():
        for original in node.goals:
            derived = state.goals.get(original.id)
            if derived is None:
                errors.append(f"goal {original.id!r} missing")
                continue
            for field_name, want, got in (
                ("node_id", node_id, derived.node_id),
                ("title", original.title, derived.title),
                ("state", original.state, derived.state),
                ("result", original.result, derived.result),
                ("nurture_entries", len(original.nurture_entries), len(derived.nurture_entries)),
            ):
                if want != got:
                    errors.append(f"goal {original.id!r} {field_name}: {want!r} != {got!r}")
        if node.label is not None:
            info = state.nodes.get(node_id)
            if info is None or info.label != node.label:
                errors.append(f"node {node_id!r} label not preserved")

    for anomaly in state.anomalies:
        if anomaly.kind in _TOLERATED_ANOMALIES:
            logger.warning("Migrated history: %s", anomaly.message)
        else:
            errors.append(f"{anomaly.kind} at {anomaly.client_id}: {anomaly.message}")

    return MigrationReport(
        valid=not errors, errors=tuple(errors), expected=expected, actual=actual
    )


# ── Section 4: Entry Points ──────────────────────────────────────────────────


def migrate_legacy(
    raw: Union[str, bytes, Dict[str, Any], LegacyState],
    now: Optional[datetime] = None,
) -> List[Event]:
    """Parse, migrate and validate a legacy document.

    Raises:
        VersionError: Unknown legacy version.
        ValidationError: Malformed legacy document.
        MigrationError: The synthesized events do not reproduce the document.
    """
    legacy = raw if isinstance(raw, LegacyState) else parse_legacy(raw)
    events = migrate_to_events(legacy, now=now)
    report = validate_migration(legacy, events)
    if not report.valid:
        raise MigrationError(report.errors)
    logger.info("Migrated legacy state into %d event(s)", len(events))
    return events


def import_legacy(store: TrunkStore, raw: Union[str, bytes, Dict[str, Any]]) -> int:
    """Replace the store's history with a migrated legacy document.

    The migrated events start out unconfirmed and are uploaded on the next sync.
    """
    events = migrate_legacy(raw)
    store.replace_events(events)
    return len(events)
