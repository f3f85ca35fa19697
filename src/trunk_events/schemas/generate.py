"""JSON Schema generation for trunk-events wire and persisted formats."""
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Type

from pydantic import BaseModel, TypeAdapter

# Import all models to generate schemas for
from trunk_events.compaction import Snapshot
from trunk_events.constants import Difficulty, Duration
from trunk_events.derive import GoalState
from trunk_events.events import (
    GoalAbandonedPayload,
    GoalConcludedPayload,
    GoalEditedPayload,
    GoalNurturedPayload,
    GoalStartedPayload,
    GroupingCreatedPayload,
    NodeRelabeledPayload,
    ReflectionRecordedPayload,
)
from trunk_events.export import ExportDocument
from trunk_events.migrate import LegacyState
from trunk_events.models import Event

# Registry of models to generate schemas for
PYDANTIC_MODELS: List[tuple[str, Type[BaseModel]]] = [
    ("event", Event),
    ("goal_started_payload", GoalStartedPayload),
    ("goal_nurtured_payload", GoalNurturedPayload),
    ("goal_concluded_payload", GoalConcludedPayload),
    ("goal_abandoned_payload", GoalAbandonedPayload),
    ("goal_edited_payload", GoalEditedPayload),
    ("reflection_recorded_payload", ReflectionRecordedPayload),
    ("grouping_created_payload", GroupingCreatedPayload),
    ("node_relabeled_payload", NodeRelabeledPayload),
    ("snapshot", Snapshot),
    ("export_document", ExportDocument),
    ("legacy_state", LegacyState),
]

# Enums (use TypeAdapter)
ENUM_TYPES: List[tuple[str, type]] = [
    ("duration", Duration),
    ("difficulty", Difficulty),
    ("goal_state", GoalState),
]


def generate_schema(name: str, model: Type[BaseModel]) -> Dict[str, Any]:
    """Generate JSON Schema for a Pydantic model.

    Args:
        name: Schema name for $id field
        model: Pydantic model class

    Returns:
        JSON Schema dict with $schema and $id fields
    """
    schema = model.model_json_schema(mode="serialization")
    schema["$schema"] = "https://json-schema.org/draft/2020-12/schema"
    schema["$id"] = f"trunk-events/{name}"
    return schema


def generate_enum_schema(name: str, enum_cls: type) -> Dict[str, Any]:
    adapter: TypeAdapter[Any] = TypeAdapter(enum_cls)
    schema = adapter.json_schema(mode="serialization")
    schema["$schema"] = "https://json-schema.org/draft/2020-12/schema"
    schema["$id"] = f"trunk-events/{name}"
    return schema


def schema_to_json(schema: Dict[str, Any]) -> str:
    """Serialize schema to a deterministic JSON string with trailing newline."""
    return json.dumps(schema, indent=2, sort_keys=True) + "\n"


def generate_all_schemas() -> Dict[str, Dict[str, Any]]:
    """Generate all schemas, keyed by schema name."""
    schemas: Dict[str, Dict[str, Any]] = {}
    for name, model in PYDANTIC_MODELS:
        schemas[name] = generate_schema(name, model)
    for name, enum_cls in ENUM_TYPES:
        schemas[name] = generate_enum_schema(name, enum_cls)
    return schemas


def write_all_schemas(schemas: Dict[str, Dict[str, Any]], out_dir: Path) -> None:
    out_dir.mkdir(parents=True, exist_ok=True)
    for name, schema in schemas.items():
        path = out_dir / f"{name}.schema.json"
        path.write_text(schema_to_json(schema), encoding="utf-8")
        print(f"Generated {path}")


def check_drift(out_dir: Path) -> int:
    """Compare freshly generated schemas with files previously written to ``out_dir``.

    Returns:
        0 if all schemas match, 1 if any drift detected
    """
    schemas = generate_all_schemas()
    drift_detected = False

    for name, schema in schemas.items():
        path = out_dir / f"{name}.schema.json"
        if not path.exists():
            print(f"ERROR: Missing schema file: {path}", file=sys.stderr)
            drift_detected = True
            continue
        if path.read_text(encoding="utf-8") != schema_to_json(schema):
            print(f"ERROR: Schema drift detected in {path}", file=sys.stderr)
            drift_detected = True

    expected_files = {f"{name}.schema.json" for name in schemas}
    actual_files = {p.name for p in out_dir.glob("*.schema.json")}
    for orphan in sorted(actual_files - expected_files):
        print(f"Orphaned schema {orphan}", file=sys.stderr)
        drift_detected = True

    if drift_detected:
        print("\nSchema drift detected. Run without --check to regenerate.", file=sys.stderr)
        return 1

    print(f"All {len(schemas)} schemas are up to date.")
    return 0


def main(argv: List[str] | None = None) -> int:
    """Entry point. Returns an exit code (0 for success, 1 for drift)."""
    parser = argparse.ArgumentParser(
        description="Generate JSON schemas for trunk-events models"
    )
    parser.add_argument(
        "--out",
        type=Path,
        default=Path("schemas"),
        help="Directory to write (or check) *.schema.json files",
    )
    parser.add_argument(
        "--check",
        action="store_true",
        help="Check for schema drift without writing files (CI mode)",
    )
    args = parser.parse_args(argv)

    if args.check:
        return check_drift(args.out)

    schemas = generate_all_schemas()
    write_all_schemas(schemas, args.out)
    print(f"\nSuccessfully generated {len(schemas)} schemas.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
