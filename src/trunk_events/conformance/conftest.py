"""Fixtures for the bundled conformance suite."""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List

import pytest

from trunk_events.conformance.loader import load_replay_stream
from trunk_events.models import Event


@pytest.fixture(scope="session")
def fixture_root() -> Path:
    """Directory holding manifest.json and the fixture tree."""
    return Path(__file__).parent / "fixtures"


@pytest.fixture(scope="session")
def manifest_entries(fixture_root: Path) -> List[Dict[str, Any]]:
    raw = (fixture_root / "manifest.json").read_text(encoding="utf-8")
    entries: List[Dict[str, Any]] = json.loads(raw)["fixtures"]
    return entries


@pytest.fixture
def replay_events() -> List[Event]:
    """The goal lifecycle replay stream as envelopes, duplicates included."""
    return [Event.model_validate(raw) for raw in load_replay_stream("replay-goal-lifecycle")]
