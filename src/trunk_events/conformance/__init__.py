"""Conformance test suite for trunk-events.

Run: pytest --pyargs trunk_events.conformance
"""
from trunk_events.conformance.loader import (
    FixtureCase,
    load_fixtures,
    load_reducer_output,
    load_replay_stream,
)
from trunk_events.conformance.pytest_helpers import (
    assert_payload_conforms,
    assert_payload_fails,
    assert_replay_matches,
)
from trunk_events.conformance.validators import (
    ConformanceResult,
    ModelViolation,
    SchemaViolation,
    validate_event,
)

__all__ = [
    "ConformanceResult",
    "FixtureCase",
    "ModelViolation",
    "SchemaViolation",
    "assert_payload_conforms",
    "assert_payload_fails",
    "assert_replay_matches",
    "load_fixtures",
    "load_reducer_output",
    "load_replay_stream",
    "validate_event",
]
