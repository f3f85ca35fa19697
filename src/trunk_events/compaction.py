"""Snapshot compaction for the event log.

Old, remote-confirmed events are folded into a versioned ``Snapshot`` so
replay cost stays bounded as history grows. A short uncompacted tail (the
current and previous weekly window) is kept as raw events, which lets window
queries keep working without knowing about snapshots.

Guarantee: ``derive_state(tail, seed=snapshot) == derive_state(all_events)``.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Collection, Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from trunk_events.constants import SNAPSHOT_VERSION
from trunk_events.derive import (
    DerivationAnomaly,
    Goal,
    Grouping,
    NodeInfo,
    Reflection,
    dedup_events,
    derive_state,
    event_sort_key,
)
from trunk_events.events import (
    GoalAbandonedPayload,
    GoalConcludedPayload,
    GoalNurturedPayload,
    GoalStartedPayload,
    GroupingCreatedPayload,
    NodeRelabeledPayload,
    ReflectionRecordedPayload,
    make_event,
)
from trunk_events.models import Event, ValidationError, VersionError
from trunk_events.windows import ResetKind, reset_boundary

logger = logging.getLogger("trunk_events.compaction")

DEFAULT_COMPACTION_THRESHOLD: int = 500
DEFAULT_SAFETY_MARGIN: timedelta = timedelta(days=1)

_ONE_TICK = timedelta(microseconds=1)

UNREADABLE_ANOMALIES = frozenset({"unknown_event_type", "malformed_payload"})


class Snapshot(BaseModel):
    """Versioned checkpoint of derived state at a cutoff instant.

    Lookup indexes are not stored; they are rebuilt from the entity maps.
    """

    model_config = ConfigDict(frozen=True)

    version: int = Field(SNAPSHOT_VERSION, description="Derivation logic version")
    created_at: datetime
    cutoff: datetime = Field(..., description="Latest event timestamp folded in")
    compacted_event_count: int = Field(..., ge=0)
    capacity: float
    available: float
    goals: Dict[str, Goal] = Field(default_factory=dict)
    groupings: Dict[str, Grouping] = Field(default_factory=dict)
    reflections: Tuple[Reflection, ...] = ()
    nodes: Dict[str, NodeInfo] = Field(default_factory=dict)
    activity_days: Tuple[str, ...] = Field(
        default_factory=tuple,
        description="Sorted daily-window keys with a nurture (streaks span the cutoff)",
    )
    anomalies: Tuple[DerivationAnomaly, ...] = ()
    retained_events: Tuple[Event, ...] = Field(
        default_factory=tuple,
        description="Folded events derivation could not read, kept verbatim",
    )

    @model_validator(mode="after")
    def _check_cutoff(self) -> "Snapshot":
        if self.cutoff > self.created_at:
            raise ValueError("snapshot cutoff must not be after created_at")
        if not 0 <= self.available <= self.capacity:
            raise ValueError("snapshot balance outside [0, capacity]")
        return self

    def to_json(self) -> str:
        return self.model_dump_json()


def load_snapshot(raw: str) -> Snapshot:
    """Parse a persisted snapshot.

    Raises:
        VersionError: If the snapshot was written by other derivation logic.
        ValidationError: If the record is malformed.
    """
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValidationError(f"Snapshot is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ValidationError("Snapshot record is not an object")
    version = data.get("version")
    if version != SNAPSHOT_VERSION:
        raise VersionError(
            f"Snapshot version {version!r} does not match {SNAPSHOT_VERSION}"
        )
    try:
        return Snapshot.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError(f"Snapshot failed validation: {exc}") from exc


@dataclass(frozen=True)
class CompactionResult:
    """A new snapshot plus the events that remain uncompacted."""

    snapshot: Snapshot
    tail: Tuple[Event, ...]


class CompactionManager:
    """Decides when and where to compact, and builds snapshots."""

    def __init__(
        self,
        threshold: int = DEFAULT_COMPACTION_THRESHOLD,
        margin: timedelta = DEFAULT_SAFETY_MARGIN,
    ) -> None:
        if threshold < 1:
            raise ValueError("compaction threshold must be positive")
        self.threshold = threshold
        self.margin = margin

    def should_compact(self, event_count: int) -> bool:
        return event_count >= self.threshold

    def cutoff(self, now: datetime) -> datetime:
        """Latest instant eligible for compaction at ``now``."""
        return reset_boundary(ResetKind.WEEKLY, now) - self.margin

    def compact(
        self,
        events: Sequence[Event],
        now: datetime,
        unconfirmed: Collection[str] = (),
        seed: Optional[Snapshot] = None,
    ) -> Optional[CompactionResult]:
        """Fold eligible events (on top of ``seed``) into a new snapshot.

        Events whose client_id is in ``unconfirmed`` have not been
        acknowledged by the remote authority and are never folded: the
        effective cutoff moves to just before the earliest of them.

        Returns:
            None when nothing new can be compacted.
        """
        cutoff = self.cutoff(now)
        candidates = [
            e for e in events if seed is None or e.timestamp > seed.cutoff
        ]
        pending_times = [
            e.timestamp
            for e in candidates
            if e.client_id in unconfirmed and e.timestamp <= cutoff
        ]
        if pending_times:
            cutoff = min(pending_times) - _ONE_TICK
            logger.info(
                "Compaction cutoff held back to %s by %d unconfirmed event(s)",
                cutoff.isoformat(),
                len(pending_times),
            )
        if seed is not None and cutoff <= seed.cutoff:
            return None

        folded = [e for e in candidates if e.timestamp <= cutoff]
        if not folded:
            return None
        tail = tuple(e for e in candidates if e.timestamp > cutoff)

        state = derive_state(folded, seed=seed)
        # Unknown types (from newer clients) and malformed payloads have no
        # entity to live in, so the raw envelopes ride along in the snapshot.
        unreadable = {
            a.client_id for a in state.anomalies if a.kind in UNREADABLE_ANOMALIES
        }
        retained = tuple(
            e for e in dedup_events(sorted(folded, key=event_sort_key))
            if e.client_id in unreadable
        )
        snapshot = Snapshot(
            created_at=now,
            cutoff=cutoff,
            compacted_event_count=state.event_count,
            capacity=state.capacity,
            available=state.available,
            goals=state.goals,
            groupings=state.groupings,
            reflections=state.reflections,
            nodes=state.nodes,
            activity_days=tuple(sorted(state.activity_days)),
            anomalies=state.anomalies,
            retained_events=(seed.retained_events if seed else ()) + retained,
        )
        logger.info(
            "Compacted %d event(s) up to %s; %d remain in tail",
            len(folded),
            cutoff.isoformat(),
            len(tail),
        )
        return CompactionResult(snapshot=snapshot, tail=tail)


def snapshot_to_events(snapshot: Snapshot) -> List[Event]:
    """Expand a snapshot into a flat event list equivalent to it.

    One event per recorded fact, stamped with the fact's original time and
    carrying the client id of the event that recorded it, so re-publishing
    an export is absorbed by the remote as duplicates. Facts from snapshots
    written before ids were kept fall back to ids derived from entity ids.
    Retained unreadable events are re-emitted verbatim.
    """
    prefix = f"snapshot-v{snapshot.version}"
    expanded: List[Event] = []

    for node in snapshot.nodes.values():
        expanded.append(make_event(
            NodeRelabeledPayload(node_id=node.id, label=node.label, note=node.note),
            timestamp=node.updated_at,
            client_id=node.client_id or f"{prefix}-node-{node.id}",
        ))

    for grouping in snapshot.groupings.values():
        expanded.append(make_event(
            GroupingCreatedPayload(
                grouping_id=grouping.id, node_id=grouping.node_id, name=grouping.name
            ),
            timestamp=grouping.created_at,
            client_id=grouping.client_id or f"{prefix}-grouping-{grouping.id}",
        ))

    for goal in snapshot.goals.values():
        expanded.append(make_event(
            GoalStartedPayload(
                goal_id=goal.id,
                node_id=goal.node_id,
                title=goal.title,
                duration=goal.duration,
                difficulty=goal.difficulty,
                cost=goal.cost,
                grouping_id=goal.grouping_id,
                outcome_low=goal.outcome_low,
                outcome_mid=goal.outcome_mid,
                outcome_high=goal.outcome_high,
            ),
            timestamp=goal.started_at,
            client_id=goal.started_client_id or f"{prefix}-goal-{goal.id}-start",
        ))
        for index, entry in enumerate(goal.nurture_entries):
            expanded.append(make_event(
                GoalNurturedPayload(
                    goal_id=goal.id, content=entry.content, prompt=entry.prompt
                ),
                timestamp=entry.timestamp,
                client_id=entry.client_id or f"{prefix}-goal-{goal.id}-nurture-{index}",
            ))
        if goal.concluded_at is not None and goal.result is not None:
            expanded.append(make_event(
                GoalConcludedPayload(
                    goal_id=goal.id,
                    result=goal.result,
                    capacity_gained=goal.capacity_gained or 0.0,
                    reflection=goal.reflection,
                ),
                timestamp=goal.concluded_at,
                client_id=goal.concluded_client_id or f"{prefix}-goal-{goal.id}-conclude",
            ))
        if goal.abandoned_at is not None:
            expanded.append(make_event(
                GoalAbandonedPayload(
                    goal_id=goal.id,
                    refund=goal.refund or 0.0,
                    reason=goal.abandon_reason,
                ),
                timestamp=goal.abandoned_at,
                client_id=goal.abandoned_client_id or f"{prefix}-goal-{goal.id}-abandon",
            ))

    for index, reflection in enumerate(snapshot.reflections):
        expanded.append(make_event(
            ReflectionRecordedPayload(
                node_id=reflection.node_id,
                content=reflection.content,
                node_label=reflection.node_label,
                prompt=reflection.prompt,
            ),
            timestamp=reflection.timestamp,
            client_id=reflection.client_id or f"{prefix}-reflection-{index}",
        ))

    expanded.extend(snapshot.retained_events)
    expanded.sort(key=Event.sort_key)
    return expanded
