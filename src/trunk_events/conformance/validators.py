"""Dual-layer validation for trunk-events wire formats.

This module provides conformance validation combining:
1. Pydantic model validation (primary layer)
2. JSON Schema validation against the generated schemas (secondary layer)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Tuple, Type, Union

from jsonschema import Draft202012Validator
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from trunk_events.compaction import Snapshot
from trunk_events.events import EVENT_TO_PAYLOAD
from trunk_events.export import ExportDocument
from trunk_events.migrate import LegacyState
from trunk_events.models import Event
from trunk_events.schemas import load_schema


@dataclass(frozen=True)
class ModelViolation:
    """A violation detected by Pydantic model validation."""

    field: str
    message: str
    violation_type: str
    input_value: object


@dataclass(frozen=True)
class SchemaViolation:
    """A violation detected by JSON Schema validation."""

    json_path: str
    message: str
    validator: str
    validator_value: object
    schema_path: Tuple[Union[str, int], ...]


@dataclass(frozen=True)
class ConformanceResult:
    """Result of dual-layer conformance validation."""

    valid: bool
    model_violations: Tuple[ModelViolation, ...]
    schema_violations: Tuple[SchemaViolation, ...]
    event_type: str


# Contract name to (Pydantic model, schema name). Wire event types validate
# their payload; the capitalised names validate whole documents.
_CONTRACTS: Dict[str, Tuple[Type[BaseModel], str]] = {
    "Event": (Event, "event"),
    "Snapshot": (Snapshot, "snapshot"),
    "ExportDocument": (ExportDocument, "export_document"),
    "LegacyState": (LegacyState, "legacy_state"),
}
for _event_type, _payload_cls in EVENT_TO_PAYLOAD.items():
    _CONTRACTS[_event_type] = (_payload_cls, f"{_event_type}_payload")


def known_contracts() -> Tuple[str, ...]:
    return tuple(sorted(_CONTRACTS))


def _validate_with_model(
    payload: Dict[str, Any],
    model_class: Type[BaseModel],
) -> Tuple[ModelViolation, ...]:
    try:
        model_class.model_validate(payload)
        return ()
    except PydanticValidationError as e:
        violations = []
        for error in e.errors():
            field_path = ".".join(str(loc) for loc in error["loc"])
            violations.append(
                ModelViolation(
                    field=field_path,
                    message=error["msg"],
                    violation_type=error["type"],
                    input_value=error.get("input"),
                )
            )
        return tuple(violations)


def _validate_with_schema(
    payload: Dict[str, Any],
    schema_name: str,
) -> Tuple[SchemaViolation, ...]:
    validator = Draft202012Validator(load_schema(schema_name))
    violations = []
    for error in validator.iter_errors(payload):
        json_path = "$" + "".join(
            f"[{p}]" if isinstance(p, int) else f".{p}" for p in error.absolute_path
        )
        violations.append(
            SchemaViolation(
                json_path=json_path,
                message=error.message,
                validator=str(error.validator),
                validator_value=error.validator_value,
                schema_path=tuple(error.absolute_schema_path),
            )
        )
    return tuple(violations)


def validate_event(
    payload: Dict[str, Any],
    event_type: str,
) -> ConformanceResult:
    """Validate a payload (or whole document) against its contract.

    Args:
        payload: The payload dictionary to validate.
        event_type: A wire event type (e.g. ``"goal_started"``) or one of
            ``"Event"``, ``"Snapshot"``, ``"ExportDocument"``, ``"LegacyState"``.

    Raises:
        ValueError: If event_type is not recognized.
    """
    if event_type not in _CONTRACTS:
        raise ValueError(
            f"Unknown event type: {event_type!r}. "
            f"Known types: {list(known_contracts())}"
        )

    model_class, schema_name = _CONTRACTS[event_type]
    model_violations = _validate_with_model(payload, model_class)
    schema_violations = _validate_with_schema(payload, schema_name)

    return ConformanceResult(
        valid=not model_violations and not schema_violations,
        model_violations=model_violations,
        schema_violations=schema_violations,
        event_type=event_type,
    )
