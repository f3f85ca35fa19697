"""JSON Schema access for trunk-events models.

Schemas are generated from the pydantic models on first use, so they can
never drift from the code that reads and writes the data.
"""
from __future__ import annotations

import copy
from functools import lru_cache
from typing import Any, Dict, List


@lru_cache(maxsize=1)
def _all_schemas() -> Dict[str, Dict[str, Any]]:
    from trunk_events.schemas.generate import generate_all_schemas

    return generate_all_schemas()


def load_schema(name: str) -> Dict[str, Any]:
    """Return the JSON Schema for a model name (a fresh copy)."""
    schemas = _all_schemas()
    if name not in schemas:
        raise KeyError(
            f"No schema found for '{name}'. Available: {list_schemas()}"
        )
    return copy.deepcopy(schemas[name])


def list_schemas() -> List[str]:
    """List all available schema names."""
    return sorted(_all_schemas())
