"""Typed event contracts for the Trunk event log.

This module defines the event type constants, one frozen payload model per
event type, and the tagged union the derivation reducer dispatches over.
The envelope itself lives in :mod:`trunk_events.models`.

Sections:
    1. Event type constants
    2. Payload models
    3. Tagged payload union and parsing
    4. Event construction
"""

from __future__ import annotations

from datetime import datetime
from typing import Dict, FrozenSet, Optional, Type, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from trunk_events.constants import Difficulty, Duration
from trunk_events.models import Event, new_client_id

# ── Section 1: Event Type Constants ──────────────────────────────────────────

GOAL_STARTED: str = "goal_started"
GOAL_NURTURED: str = "goal_nurtured"
GOAL_CONCLUDED: str = "goal_concluded"
GOAL_ABANDONED: str = "goal_abandoned"
GOAL_EDITED: str = "goal_edited"
REFLECTION_RECORDED: str = "reflection_recorded"
GROUPING_CREATED: str = "grouping_created"
NODE_RELABELED: str = "node_relabeled"

GOAL_EVENT_TYPES: FrozenSet[str] = frozenset({
    GOAL_STARTED,
    GOAL_NURTURED,
    GOAL_CONCLUDED,
    GOAL_ABANDONED,
    GOAL_EDITED,
})

TRUNK_EVENT_TYPES: FrozenSet[str] = GOAL_EVENT_TYPES | frozenset({
    REFLECTION_RECORDED,
    GROUPING_CREATED,
    NODE_RELABELED,
})

# ── Section 2: Payload Models ────────────────────────────────────────────────


class GoalStartedPayload(BaseModel):
    """Typed payload for goal_started events.

    Carries a full copy of the goal's descriptive fields so the event is
    self-contained.
    """

    model_config = ConfigDict(frozen=True)

    goal_id: str = Field(..., min_length=1, description="Goal identifier")
    node_id: str = Field(
        ..., min_length=1, description="Organizational node the goal hangs from"
    )
    title: str = Field(..., min_length=1, description="Goal title")
    duration: Duration = Field(..., description="Duration class")
    difficulty: Difficulty = Field(..., description="Difficulty class")
    cost: float = Field(..., ge=0, description="Balance spent at start")
    grouping_id: Optional[str] = Field(
        None, min_length=1, description="Grouping the goal belongs to"
    )
    outcome_low: Optional[str] = Field(None, description="What a poor result looks like")
    outcome_mid: Optional[str] = Field(None, description="What a fair result looks like")
    outcome_high: Optional[str] = Field(None, description="What a great result looks like")


class GoalNurturedPayload(BaseModel):
    """Typed payload for goal_nurtured events (a journal entry)."""

    model_config = ConfigDict(frozen=True)

    goal_id: str = Field(..., min_length=1, description="Goal identifier")
    content: str = Field(..., min_length=1, description="Free-text journal entry")
    prompt: Optional[str] = Field(None, description="Prompt shown to the user")


class GoalConcludedPayload(BaseModel):
    """Typed payload for goal_concluded events."""

    model_config = ConfigDict(frozen=True)

    goal_id: str = Field(..., min_length=1, description="Goal identifier")
    result: int = Field(..., ge=1, le=5, description="Result tier (1-5)")
    capacity_gained: float = Field(
        ...,
        ge=0,
        description="Capacity reward, computed when the goal was concluded",
    )
    reflection: Optional[str] = Field(None, description="Closing reflection")


class GoalAbandonedPayload(BaseModel):
    """Typed payload for goal_abandoned events."""

    model_config = ConfigDict(frozen=True)

    goal_id: str = Field(..., min_length=1, description="Goal identifier")
    refund: float = Field(..., ge=0, description="Balance returned on abandon")
    reason: Optional[str] = Field(None, description="Why the goal was abandoned")


class GoalEditedPayload(BaseModel):
    """Typed payload for goal_edited events. Absent fields are left unchanged."""

    model_config = ConfigDict(frozen=True)

    goal_id: str = Field(..., min_length=1, description="Goal identifier")
    title: Optional[str] = Field(None, min_length=1, description="New title")
    grouping_id: Optional[str] = Field(None, min_length=1, description="New grouping")
    outcome_low: Optional[str] = None
    outcome_mid: Optional[str] = None
    outcome_high: Optional[str] = None


class ReflectionRecordedPayload(BaseModel):
    """Typed payload for reflection_recorded events."""

    model_config = ConfigDict(frozen=True)

    node_id: str = Field(..., min_length=1, description="Facet the reflection is about")
    content: str = Field(..., min_length=1, description="Reflection text")
    node_label: Optional[str] = Field(
        None, description="Facet label at the time of writing (display snapshot)"
    )
    prompt: Optional[str] = Field(None, description="Prompt shown to the user")


class GroupingCreatedPayload(BaseModel):
    """Typed payload for grouping_created events."""

    model_config = ConfigDict(frozen=True)

    grouping_id: str = Field(..., min_length=1, description="Grouping identifier")
    node_id: str = Field(..., min_length=1, description="Owning node")
    name: str = Field(..., min_length=1, description="Grouping name")


class NodeRelabeledPayload(BaseModel):
    """Typed payload for node_relabeled events."""

    model_config = ConfigDict(frozen=True)

    node_id: str = Field(..., min_length=1, description="Addressable node")
    label: Optional[str] = Field(None, description="New label")
    note: Optional[str] = Field(None, description="New note")

    @model_validator(mode="after")
    def _require_change(self) -> "NodeRelabeledPayload":
        if self.label is None and self.note is None:
            raise ValueError("node_relabeled requires label or note")
        return self


# ── Section 3: Tagged Payload Union ──────────────────────────────────────────

TrunkPayload = Union[
    GoalStartedPayload,
    GoalNurturedPayload,
    GoalConcludedPayload,
    GoalAbandonedPayload,
    GoalEditedPayload,
    ReflectionRecordedPayload,
    GroupingCreatedPayload,
    NodeRelabeledPayload,
]

EVENT_TO_PAYLOAD: Dict[str, Type[BaseModel]] = {
    GOAL_STARTED: GoalStartedPayload,
    GOAL_NURTURED: GoalNurturedPayload,
    GOAL_CONCLUDED: GoalConcludedPayload,
    GOAL_ABANDONED: GoalAbandonedPayload,
    GOAL_EDITED: GoalEditedPayload,
    REFLECTION_RECORDED: ReflectionRecordedPayload,
    GROUPING_CREATED: GroupingCreatedPayload,
    NODE_RELABELED: NodeRelabeledPayload,
}

PAYLOAD_TO_EVENT: Dict[Type[BaseModel], str] = {
    model: event_type for event_type, model in EVENT_TO_PAYLOAD.items()
}


def parse_payload(event: Event) -> Optional[TrunkPayload]:
    """Validate an event's payload into its typed model.

    Returns None for event types this version does not know (forward
    compatibility). Raises pydantic.ValidationError for malformed payloads.
    """
    payload_cls = EVENT_TO_PAYLOAD.get(event.type)
    if payload_cls is None:
        return None
    parsed: TrunkPayload = payload_cls.model_validate(event.payload)  # type: ignore[assignment]
    return parsed


# ── Section 4: Event Construction ────────────────────────────────────────────


def make_event(
    payload: TrunkPayload,
    timestamp: datetime,
    client_id: Optional[str] = None,
) -> Event:
    """Wrap a typed payload in an envelope, generating a client id if needed."""
    return Event(
        type=PAYLOAD_TO_EVENT[type(payload)],
        timestamp=timestamp,
        client_id=client_id or new_client_id(),
        payload=payload.model_dump(mode="json", exclude_none=True),
    )
