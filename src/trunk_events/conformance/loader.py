"""Bundled fixture access for trunk-events conformance testing.

Fixtures are listed in ``fixtures/manifest.json``. Plain entries are single
JSON documents grouped by the top-level directory they live in (their
category). Entries with a ``fixture_type`` are replay material: a JSONL
event stream and the derived summary it must produce.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

FIXTURES_DIR = Path(__file__).parent / "fixtures"

CATEGORIES: Tuple[str, ...] = ("events", "edge_cases", "documents")

REPLAY_STREAM = "replay_stream"
REDUCER_OUTPUT = "reducer_output"
_REPLAY_TYPES = frozenset({REPLAY_STREAM, REDUCER_OUTPUT})


@dataclass(frozen=True)
class FixtureCase:
    """One manifest entry with its loaded document."""

    id: str
    payload: Any
    expected_valid: bool
    event_type: str
    notes: str
    min_version: str


@lru_cache(maxsize=1)
def _entries() -> Tuple[Dict[str, Any], ...]:
    raw = (FIXTURES_DIR / "manifest.json").read_text(encoding="utf-8")
    return tuple(json.loads(raw)["fixtures"])


def _resolve(entry: Dict[str, Any]) -> Path:
    path = FIXTURES_DIR / entry["path"]
    if not path.is_file():
        raise FileNotFoundError(f"Manifest entry {entry['id']!r} points at missing {path}")
    return path


def _replay_type(entry: Dict[str, Any]) -> Optional[str]:
    kind: Optional[str] = entry.get("fixture_type")
    if kind is not None and kind not in _REPLAY_TYPES:
        raise ValueError(
            f"Manifest entry {entry['id']!r} has unknown fixture_type {kind!r}"
        )
    return kind


def _entry(fixture_id: str, kind: str) -> Dict[str, Any]:
    for entry in _entries():
        if entry["id"] != fixture_id:
            continue
        if _replay_type(entry) != kind:
            raise ValueError(f"Fixture {fixture_id!r} is not a {kind}")
        return entry
    raise ValueError(f"Fixture {fixture_id!r} not found in manifest")


def _plain_entries(category: str) -> Iterator[Dict[str, Any]]:
    for entry in _entries():
        if entry["path"].split("/", 1)[0] != category:
            continue
        if _replay_type(entry) is None:
            yield entry


def load_fixtures(category: str) -> List[FixtureCase]:
    """Load every plain fixture in ``category``.

    Raises:
        ValueError: Unknown category, or a manifest entry with a bad fixture_type.
        FileNotFoundError: A manifest entry points at a missing file.
    """
    if category not in CATEGORIES:
        raise ValueError(
            f"Unknown fixture category {category!r}; expected one of {list(CATEGORIES)}"
        )
    cases = []
    for entry in _plain_entries(category):
        payload = json.loads(_resolve(entry).read_text(encoding="utf-8"))
        cases.append(FixtureCase(
            id=entry["id"],
            payload=payload,
            expected_valid=entry["expected_result"] == "valid",
            event_type=entry["event_type"],
            notes=entry["notes"],
            min_version=entry["min_version"],
        ))
    return cases


def load_replay_stream(fixture_id: str) -> List[Dict[str, Any]]:
    """Raw event dicts from a JSONL replay stream, in file order."""
    path = _resolve(_entry(fixture_id, REPLAY_STREAM))
    with path.open("r", encoding="utf-8") as fh:
        return [json.loads(line) for line in fh if line.strip()]


def load_reducer_output(fixture_id: str) -> Dict[str, Any]:
    """Expected derivation summary paired with a replay stream."""
    path = _resolve(_entry(fixture_id, REDUCER_OUTPUT))
    summary: Dict[str, Any] = json.loads(path.read_text(encoding="utf-8"))
    return summary
