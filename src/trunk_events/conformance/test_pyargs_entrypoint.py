"""Conformance test suite for trunk-events.

Run: pytest --pyargs trunk_events.conformance
"""
from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List

import pytest

from trunk_events.conformance.loader import (
    FixtureCase,
    load_fixtures,
    load_reducer_output,
    load_replay_stream,
)
from trunk_events.conformance.pytest_helpers import assert_replay_matches
from trunk_events.conformance.validators import known_contracts, validate_event
from trunk_events.derive import derive_state
from trunk_events.events import TRUNK_EVENT_TYPES
from trunk_events.models import Event
from trunk_events.schemas import list_schemas, load_schema


def _all_cases() -> List[FixtureCase]:
    return [
        case
        for category in ("events", "edge_cases", "documents")
        for case in load_fixtures(category)
    ]


# --- Manifest-driven fixture tests ---


@pytest.mark.parametrize("case", _all_cases(), ids=lambda c: c.id)
def test_fixture_conformance(case: FixtureCase) -> None:
    """Validate each fixture against its expected result.

    Expected-valid fixtures must pass both layers; expected-invalid
    fixtures must be rejected by at least one.
    """
    result = validate_event(case.payload, case.event_type)
    if case.expected_valid:
        if not result.valid:
            violations = [
                f"  Model: {v.field}: {v.message}" for v in result.model_violations
            ] + [
                f"  Schema: {v.json_path}: {v.message}" for v in result.schema_violations
            ]
            raise AssertionError(
                f"Payload for {case.event_type!r} (fixture {case.id}) "
                f"failed conformance:\n" + "\n".join(violations)
            )
    else:
        if result.valid:
            raise AssertionError(
                f"Payload for {case.event_type!r} (fixture {case.id}) "
                f"was expected to fail but passed conformance."
            )


def test_manifest_paths_exist(
    manifest_entries: List[Dict[str, Any]], fixture_root: Path
) -> None:
    ids = [entry["id"] for entry in manifest_entries]
    assert len(ids) == len(set(ids)), "duplicate fixture ids in manifest"
    for entry in manifest_entries:
        assert (fixture_root / entry["path"]).exists(), entry["path"]


def test_every_event_type_has_a_valid_fixture() -> None:
    covered = {c.event_type for c in load_fixtures("events") if c.expected_valid}
    assert TRUNK_EVENT_TYPES <= covered


# --- Replay fixtures ---


def test_replay_goal_lifecycle() -> None:
    stream: List[Dict[str, Any]] = load_replay_stream("replay-goal-lifecycle")
    expected = load_reducer_output("replay-goal-lifecycle-output")
    assert_replay_matches(stream, expected)


def test_replay_is_order_independent() -> None:
    stream = load_replay_stream("replay-goal-lifecycle")
    expected = load_reducer_output("replay-goal-lifecycle-output")
    assert_replay_matches(list(reversed(stream)), expected)


def test_replay_duplicates_are_dropped(replay_events: List[Event]) -> None:
    state = derive_state(replay_events)
    assert state.event_count == len({e.client_id for e in replay_events})
    assert [a.kind for a in state.anomalies] == ["missing_reference"]


# --- Schema integrity tests ---


def test_all_contracts_have_schemas() -> None:
    schemas = set(list_schemas())
    assert {"event", "snapshot", "export_document", "legacy_state"} <= schemas
    for event_type in TRUNK_EVENT_TYPES:
        assert f"{event_type}_payload" in schemas
    assert len(known_contracts()) == len(TRUNK_EVENT_TYPES) + 4


@pytest.mark.parametrize("name", list_schemas())
def test_schema_is_valid_json_schema(name: str) -> None:
    """Each generated schema is a self-identifying JSON Schema document."""
    schema = load_schema(name)
    assert schema["$schema"] == "https://json-schema.org/draft/2020-12/schema"
    assert schema["$id"] == f"trunk-events/{name}"


def test_unknown_contract_rejected() -> None:
    with pytest.raises(ValueError, match="Unknown event type"):
        validate_event({}, "sprout_planted")
