"""Event store: the log, its snapshot and cached derived state.

``TrunkStore`` is the object the UI collaborator talks to. It owns one
``EventLog`` plus the current ``Snapshot`` and memoizes derivation, so every
read accessor is cheap until the log changes or a reset boundary passes.
Instances are isolated; construct one per storage backend.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Tuple

from trunk_events.compaction import (
    CompactionManager,
    Snapshot,
    load_snapshot,
    snapshot_to_events,
)
from trunk_events.derive import BalanceChange, DerivedState, balance_history, derive_state
from trunk_events.events import GOAL_NURTURED, REFLECTION_RECORDED
from trunk_events.log import ClientIdSet, EventLog
from trunk_events.models import Event, StorageError, TrunkEventsError, ValidationError, VersionError
from trunk_events.storage import CONFIRMED_KEY, SNAPSHOT_KEY, KeyValueStorage
from trunk_events.windows import (
    AvailabilityCache,
    NurtureStreak,
    ResetKind,
    nurture_available,
    nurture_streak,
    reflection_available,
    was_nurtured_this_week,
    was_nurtured_today,
    was_reflected_this_week,
)

logger = logging.getLogger("trunk_events.store")

AppendListener = Callable[[Event], None]


class StoreClosedError(TrunkEventsError):
    """The store was used outside its open/close lifecycle."""
    pass


class TrunkStore:
    """Explicit store object with an init/teardown lifecycle.

    Usage:
        >>> with TrunkStore.open(InMemoryStorage()) as store:
        ...     store.state().available
        10.0
    """

    def __init__(
        self,
        storage: KeyValueStorage,
        compaction: Optional[CompactionManager] = None,
        on_storage_error: Optional[Callable[[StorageError], None]] = None,
    ) -> None:
        self._storage = storage
        self._log = EventLog(storage)
        # Tail events the remote authority is known to hold.
        self._confirmed = ClientIdSet(storage, CONFIRMED_KEY)
        self._compaction = compaction or CompactionManager()
        self._on_storage_error = on_storage_error
        self._snapshot: Optional[Snapshot] = None
        self._revision = 0
        self._cached_state: Optional[Tuple[int, DerivedState]] = None
        self._availability = AvailabilityCache()
        self._listeners: List[AppendListener] = []
        self._needs_full_resync = False
        self._open = False

    # ── Lifecycle ────────────────────────────────────────────────────────────

    @classmethod
    def open(
        cls,
        storage: KeyValueStorage,
        compaction: Optional[CompactionManager] = None,
        on_storage_error: Optional[Callable[[StorageError], None]] = None,
    ) -> "TrunkStore":
        store = cls(storage, compaction=compaction, on_storage_error=on_storage_error)
        store.load()
        return store

    def load(self) -> None:
        """Load the persisted log and snapshot.

        A snapshot that is malformed or from another version is discarded
        and the store is flagged for a full resync from the remote log.
        """
        self._log.load()
        self._confirmed.load()
        self._snapshot = None
        raw = self._storage.get(SNAPSHOT_KEY)
        if raw:
            try:
                self._snapshot = load_snapshot(raw)
            except (VersionError, ValidationError) as exc:
                logger.warning("Discarding snapshot, full replay required: %s", exc)
                self._storage.remove(SNAPSHOT_KEY)
                self._needs_full_resync = True
        self._touch()
        self._open = True

    def close(self) -> None:
        self._listeners.clear()
        self._cached_state = None
        self._availability.clear()
        self._open = False

    def __enter__(self) -> "TrunkStore":
        if not self._open:
            self.load()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _require_open(self) -> None:
        if not self._open:
            raise StoreClosedError("TrunkStore is not open; call load() or open()")

    def _touch(self) -> None:
        self._revision += 1

    # ── Properties ───────────────────────────────────────────────────────────

    @property
    def events(self) -> Tuple[Event, ...]:
        """Uncompacted events (the tail after the snapshot cutoff)."""
        return self._log.events

    @property
    def storage(self) -> KeyValueStorage:
        return self._storage

    @property
    def snapshot(self) -> Optional[Snapshot]:
        return self._snapshot

    @property
    def revision(self) -> int:
        return self._revision

    @property
    def needs_full_resync(self) -> bool:
        return self._needs_full_resync

    def event_count(self) -> int:
        return len(self._log)

    def contains(self, client_id: str) -> bool:
        return client_id in self._log

    def is_confirmed(self, client_id: str) -> bool:
        return client_id in self._confirmed

    def unconfirmed_ids(self) -> Tuple[str, ...]:
        """Client ids of logged events the remote authority has not acknowledged.

        Anything not known to be confirmed counts: local appends, imports and
        migrations all start out here.
        """
        return tuple(
            e.client_id for e in self._log.events if e.client_id not in self._confirmed
        )

    def add_append_listener(self, listener: AppendListener) -> Callable[[], None]:
        """Register a callback for locally appended events. Returns a remover."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    # ── Mutations ────────────────────────────────────────────────────────────

    def append(self, event: Event) -> bool:
        """Append a locally created event and notify listeners.

        Raises:
            StorageError: If persisting failed. The event is still held in
                memory and still handed to listeners so it can reach the
                remote log.
        """
        self._require_open()
        try:
            added = self._log.append(event)
        except StorageError as exc:
            logger.error("Event %s kept in memory only: %s", event.client_id, exc)
            self._touch()
            self._notify(event)
            if self._on_storage_error is not None:
                self._on_storage_error(exc)
            raise
        if added:
            self._touch()
            self._notify(event)
        return added

    def merge_remote(self, events: Iterable[Event]) -> List[Event]:
        """Append events pulled from the remote log (deduplicated, no listeners).

        Every event passed in is recorded as confirmed, including ones the
        log already held.
        """
        self._require_open()
        pulled = list(events)
        added = self._log.extend(pulled)
        if added:
            self._touch()
        self.mark_confirmed(e.client_id for e in pulled)
        return added

    def replace_events(
        self, events: Iterable[Event], confirmed: Iterable[str] = ()
    ) -> None:
        """Replace the whole local history and drop the snapshot.

        Only the ids in ``confirmed`` are treated as held by the remote
        authority; every other event is left for upload.
        """
        self._require_open()
        self._log.replace(events)
        self._drop_snapshot()
        self._confirmed.reset(cid for cid in confirmed if cid in self._log)
        self._confirmed.save()
        self._needs_full_resync = False
        self._touch()

    def mark_confirmed(self, client_ids: Iterable[str]) -> None:
        """Record that the remote authority holds these events.

        Raises:
            StorageError: If the confirmed set could not be persisted.
        """
        changed = False
        for client_id in client_ids:
            if client_id in self._log and client_id not in self._confirmed:
                self._confirmed.add(client_id)
                changed = True
        if changed:
            self._confirmed.save()

    def discard_snapshot(self) -> None:
        """Forget the snapshot; the store must be refilled by a full resync."""
        self._require_open()
        if self._snapshot is not None:
            self._drop_snapshot()
            self._needs_full_resync = True
            self._touch()

    def _drop_snapshot(self) -> None:
        self._snapshot = None
        self._storage.remove(SNAPSHOT_KEY)

    def predates_snapshot(self, events: Iterable[Event]) -> bool:
        """True if any event falls at or before the snapshot cutoff."""
        if self._snapshot is None:
            return False
        cutoff = self._snapshot.cutoff
        return any(e.timestamp <= cutoff for e in events)

    def maybe_compact(self, now: datetime) -> Optional[Snapshot]:
        """Compact when the tail has reached the threshold.

        Only events the remote authority has confirmed are folded; the
        cutoff stops just before the earliest unconfirmed one. The snapshot
        is written before the tail is truncated, so an interruption leaves
        extra raw events behind rather than losing any.
        """
        self._require_open()
        if not self._compaction.should_compact(len(self._log)):
            return None
        result = self._compaction.compact(
            self._log.events,
            now,
            unconfirmed=frozenset(self.unconfirmed_ids()),
            seed=self._snapshot,
        )
        if result is None:
            return None
        self._storage.set(SNAPSHOT_KEY, result.snapshot.to_json())
        self._snapshot = result.snapshot
        self._log.drop_through(result.snapshot.cutoff)
        self._confirmed.reset(cid for cid in self._confirmed.ids() if cid in self._log)
        self._confirmed.save()
        self._touch()
        return result.snapshot

    # ── Reads ────────────────────────────────────────────────────────────────

    def state(self) -> DerivedState:
        """Current derived state (memoized per revision)."""
        self._require_open()
        if self._cached_state is None or self._cached_state[0] != self._revision:
            self._cached_state = (
                self._revision,
                derive_state(self._log.events, seed=self._snapshot),
            )
        return self._cached_state[1]

    def can_afford(self, cost: float) -> bool:
        return self.state().available >= cost

    def nurture_available(self, now: datetime) -> int:
        return self._availability.get(
            ResetKind.DAILY,
            now,
            self._revision,
            lambda: nurture_available(self._log.events, now),
        )

    def reflection_available(self, now: datetime) -> int:
        return self._availability.get(
            ResetKind.WEEKLY,
            now,
            self._revision,
            lambda: reflection_available(self._log.events, now),
        )

    def was_nurtured_today(self, goal_id: str, now: datetime) -> bool:
        return was_nurtured_today(self._log.events, goal_id, now)

    def was_nurtured_this_week(self, goal_id: str, now: datetime) -> bool:
        return was_nurtured_this_week(self._log.events, goal_id, now)

    def was_reflected_this_week(self, now: datetime) -> bool:
        return was_reflected_this_week(self._log.events, now)

    def nurture_streak(self, now: datetime) -> NurtureStreak:
        return nurture_streak(self.state().activity_days, now)

    def balance_history(self) -> List[BalanceChange]:
        """Balance after every event that moved it, across the whole history."""
        return balance_history(self.export_events())

    def history(self, event_type: Optional[str] = None) -> List[Event]:
        """Decompacted event history, oldest first, optionally filtered by type."""
        merged = self.export_events()
        if event_type is None:
            return merged
        return [e for e in merged if e.type == event_type]

    def nurture_history(self) -> List[Event]:
        return self.history(GOAL_NURTURED)

    def reflection_history(self) -> List[Event]:
        return self.history(REFLECTION_RECORDED)

    def export_events(self) -> List[Event]:
        """Full flat history: expanded snapshot facts plus the raw tail."""
        self._require_open()
        expanded = snapshot_to_events(self._snapshot) if self._snapshot else []
        return sorted(expanded + list(self._log.events), key=Event.sort_key)

    def _notify(self, event: Event) -> None:
        for listener in list(self._listeners):
            listener(event)
