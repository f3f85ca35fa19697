"""Append-only event log with local durability."""

import json
import logging
from datetime import datetime
from typing import Dict, Iterable, List, Set, Tuple

from pydantic import ValidationError as PydanticValidationError

from trunk_events.models import Event
from trunk_events.storage import EVENTS_KEY, KeyValueStorage

logger = logging.getLogger("trunk_events.log")


class EventLog:
    """Ordered, append-only collection of events, idempotent on client_id.

    Events keep their arrival order in the log; derivation imposes the
    (timestamp, client_id) order on its own. Every mutation bumps
    ``version`` so caches keyed on it can tell the log changed.
    """

    def __init__(self, storage: KeyValueStorage, key: str = EVENTS_KEY) -> None:
        self._storage = storage
        self._key = key
        self._events: List[Event] = []
        self._client_ids: Set[str] = set()
        self._version = 0

    @property
    def version(self) -> int:
        return self._version

    @property
    def events(self) -> Tuple[Event, ...]:
        return tuple(self._events)

    def __len__(self) -> int:
        return len(self._events)

    def __contains__(self, client_id: object) -> bool:
        return client_id in self._client_ids

    def load(self) -> int:
        """Load the persisted log, skipping unreadable records.

        Returns:
            Number of records dropped as invalid.
        """
        raw = self._storage.get(self._key)
        self._events = []
        self._client_ids = set()
        self._version += 1
        if not raw:
            return 0
        try:
            items = json.loads(raw)
        except json.JSONDecodeError as exc:
            logger.error("Event log under %r is not valid JSON: %s", self._key, exc)
            return 0
        if not isinstance(items, list):
            logger.error("Event log under %r is not a list", self._key)
            return 0

        dropped = 0
        for item in items:
            try:
                event = Event.model_validate(item)
            except PydanticValidationError:
                dropped += 1
                continue
            if event.client_id not in self._client_ids:
                self._client_ids.add(event.client_id)
                self._events.append(event)
        if dropped:
            logger.warning("Dropped %d invalid event record(s) on load", dropped)
        return dropped

    def append(self, event: Event) -> bool:
        """Append one event. Returns False if its client_id is already logged.

        Raises:
            StorageError: If the log could not be persisted. The event stays
                in memory so the session can continue.
        """
        if event.client_id in self._client_ids:
            return False
        self._events.append(event)
        self._client_ids.add(event.client_id)
        self._version += 1
        self._persist()
        return True

    def extend(self, events: Iterable[Event]) -> List[Event]:
        """Append many events in one write. Returns those actually added."""
        added: List[Event] = []
        for event in events:
            if event.client_id in self._client_ids:
                continue
            self._events.append(event)
            self._client_ids.add(event.client_id)
            added.append(event)
        if added:
            self._version += 1
            self._persist()
        return added

    def replace(self, events: Iterable[Event]) -> None:
        """Swap the whole log (full sync, import), deduplicating by client_id.

        The new log is written before it replaces the one in memory, so a
        failed write leaves both copies on the old history.
        """
        new_events: List[Event] = []
        new_ids: Set[str] = set()
        for event in events:
            if event.client_id in new_ids:
                continue
            new_ids.add(event.client_id)
            new_events.append(event)
        self._write(new_events)
        self._events = new_events
        self._client_ids = new_ids
        self._version += 1

    def drop_through(self, cutoff: datetime) -> int:
        """Remove events at or before ``cutoff`` (they live in a snapshot now)."""
        kept = [e for e in self._events if e.timestamp > cutoff]
        removed = len(self._events) - len(kept)
        if removed:
            self._write(kept)
            self._events = kept
            self._client_ids = {e.client_id for e in kept}
            self._version += 1
        return removed

    def clear(self) -> None:
        self._events = []
        self._client_ids = set()
        self._version += 1
        self._storage.remove(self._key)

    def _persist(self) -> None:
        self._write(self._events)

    def _write(self, events: List[Event]) -> None:
        self._storage.set(self._key, json.dumps([e.to_dict() for e in events]))


class ClientIdSet:
    """Persisted, insertion-ordered set of client ids under one storage key."""

    def __init__(self, storage: KeyValueStorage, key: str) -> None:
        self._storage = storage
        self._key = key
        self._ids: Dict[str, None] = {}

    def load(self) -> None:
        self._ids = {}
        raw = self._storage.get(self._key)
        if not raw:
            return
        try:
            items = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Client id list under %r is unreadable", self._key)
            return
        if isinstance(items, list):
            self._ids = {str(item): None for item in items}

    def save(self) -> None:
        self._storage.set(self._key, json.dumps(list(self._ids)))

    def add(self, client_id: str) -> None:
        self._ids[client_id] = None

    def discard(self, client_id: str) -> None:
        self._ids.pop(client_id, None)

    def reset(self, client_ids: Iterable[str]) -> None:
        self._ids = dict.fromkeys(client_ids)

    def ids(self) -> Tuple[str, ...]:
        return tuple(self._ids)

    def __contains__(self, client_id: object) -> bool:
        return client_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)
