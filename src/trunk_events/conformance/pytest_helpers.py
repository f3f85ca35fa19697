"""Reusable test helpers for trunk-events conformance testing.

Consumers can import these to write their own conformance assertions:
    from trunk_events.conformance.pytest_helpers import (
        assert_payload_conforms,
        assert_payload_fails,
        assert_replay_matches,
    )
"""
from __future__ import annotations

from typing import Any, Dict, List

from trunk_events.conformance.validators import (
    ConformanceResult,
    validate_event,
)
from trunk_events.derive import derive_state
from trunk_events.models import Event


def assert_payload_conforms(
    payload: Dict[str, Any],
    event_type: str,
) -> ConformanceResult:
    """Assert a payload conforms to the canonical contract."""
    result = validate_event(payload, event_type)
    if not result.valid:
        violations = []
        for mv in result.model_violations:
            violations.append(f"  Model: {mv.field}: {mv.message}")
        for sv in result.schema_violations:
            violations.append(f"  Schema: {sv.json_path}: {sv.message}")
        raise AssertionError(
            f"Payload for {event_type!r} failed conformance:\n"
            + "\n".join(violations)
        )
    return result


def assert_payload_fails(
    payload: Dict[str, Any],
    event_type: str,
) -> ConformanceResult:
    """Assert a payload DOES NOT conform (expected invalid)."""
    result = validate_event(payload, event_type)
    if result.valid:
        raise AssertionError(
            f"Payload for {event_type!r} was expected to fail but passed conformance."
        )
    return result


def assert_replay_matches(
    stream: List[Dict[str, Any]],
    expected: Dict[str, Any],
) -> None:
    """Derive state from a raw event stream and compare it with a summary.

    ``expected`` holds ``capacity``, ``available``, a ``goals`` map of
    goal id to state value and an optional ``anomalies`` count.
    """
    state = derive_state([Event.model_validate(raw) for raw in stream])
    assert round(state.capacity, 6) == round(expected["capacity"], 6), (
        f"capacity {state.capacity} != {expected['capacity']}"
    )
    assert state.available == expected["available"], (
        f"available {state.available} != {expected['available']}"
    )
    actual_goals = {gid: goal.state.value for gid, goal in state.goals.items()}
    assert actual_goals == expected["goals"], f"goals {actual_goals} != {expected['goals']}"
    if "anomalies" in expected:
        assert len(state.anomalies) == expected["anomalies"], (
            f"anomalies {len(state.anomalies)} != {expected['anomalies']}"
        )
