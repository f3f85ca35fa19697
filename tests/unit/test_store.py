"""Unit tests for TrunkStore."""
import json
from datetime import datetime, timedelta
from typing import Any, Callable, List

import pytest

from trunk_events import (
    CompactionManager,
    Event,
    InMemoryStorage,
    StorageError,
    StoreClosedError,
    TrunkStore,
    balance_history,
)
from trunk_events.storage import CONFIRMED_KEY, EVENTS_KEY, SNAPSHOT_KEY


class FlakyStorage(InMemoryStorage):
    """Storage whose writes fail while ``broken`` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.broken = False

    def set(self, key: str, value: str) -> None:
        if self.broken:
            raise StorageError(f"Could not save {key!r}: quota exceeded")
        super().set(key, value)


def nurture_log(ev: Any, start: datetime, count: int) -> List[Event]:
    events = [ev.started(at=start, cost=2)]
    for i in range(1, count):
        events.append(ev.nurtured(at=start + timedelta(hours=6 * i), content=f"entry {i}"))
    return events


class TestLifecycle:
    def test_open_loads_persisted_events(self, storage: InMemoryStorage, ev: Any) -> None:
        with TrunkStore.open(storage) as first:
            first.append(ev.started())
        with TrunkStore.open(storage) as second:
            assert second.event_count() == 1
            assert "goal-1" in second.state().goals

    def test_closed_store_refuses_use(self, storage: InMemoryStorage, ev: Any) -> None:
        store = TrunkStore.open(storage)
        store.close()
        with pytest.raises(StoreClosedError):
            store.append(ev.nurtured())
        with pytest.raises(StoreClosedError):
            store.state()

    def test_context_manager_loads_unopened_store(self, storage: InMemoryStorage) -> None:
        store = TrunkStore(storage)
        with pytest.raises(StoreClosedError):
            store.state()
        with store:
            assert store.state().available == 10.0

    def test_instances_are_isolated(self, ev: Any) -> None:
        with TrunkStore.open(InMemoryStorage()) as a, TrunkStore.open(InMemoryStorage()) as b:
            a.append(ev.started())
            assert b.state().goals == {}


class TestAppend:
    def test_append_updates_state(self, store: TrunkStore, ev: Any) -> None:
        revision = store.revision
        assert store.append(ev.started(cost=8)) is True
        assert store.revision > revision
        assert store.state().available == 2.0

    def test_duplicate_append(self, store: TrunkStore, ev: Any) -> None:
        event = ev.started()
        store.append(event)
        revision = store.revision
        assert store.append(event) is False
        assert store.revision == revision

    def test_listeners(self, store: TrunkStore, ev: Any) -> None:
        seen: List[str] = []
        remove = store.add_append_listener(lambda e: seen.append(e.client_id))
        first = ev.started()
        store.append(first)
        store.append(first)
        remove()
        store.append(ev.nurtured())
        assert seen == [first.client_id]

    def test_storage_failure_surfaces_and_keeps_event(self, ev: Any) -> None:
        storage = FlakyStorage()
        errors: List[StorageError] = []
        seen: List[Event] = []
        with TrunkStore.open(storage, on_storage_error=errors.append) as store:
            store.add_append_listener(seen.append)
            storage.broken = True
            event = ev.started(cost=8)
            with pytest.raises(StorageError):
                store.append(event)
            assert len(errors) == 1
            assert seen == [event]
            assert store.contains(event.client_id)
            assert store.state().available == 2.0

    def test_state_is_memoized(self, store: TrunkStore, ev: Any) -> None:
        store.append(ev.started())
        assert store.state() is store.state()

    def test_merge_remote_skips_listeners(self, store: TrunkStore, ev: Any) -> None:
        seen: List[Event] = []
        store.add_append_listener(seen.append)
        event = ev.started()
        assert store.merge_remote([event, event]) == [event]
        assert store.merge_remote([event]) == []
        assert seen == []


class TestReads:
    def test_nurture_gate_and_window(self, store: TrunkStore, ev: Any, t0: datetime) -> None:
        store.append(ev.started(cost=8))
        store.append(ev.nurtured(at=t0 + timedelta(hours=1)))
        now = t0 + timedelta(hours=2)
        assert store.was_nurtured_today("goal-1", now)
        store.append(ev.nurtured(at=now))
        # Both entries are kept even though the gate already said "done today".
        assert len(store.state().goals["goal-1"].nurture_entries) == 2
        assert store.nurture_available(now) == 1
        assert store.was_nurtured_this_week("goal-1", now)

    def test_availability_refreshes_after_reset(
        self, store: TrunkStore, ev: Any, t0: datetime
    ) -> None:
        store.append(ev.started())
        for i in range(3):
            store.append(ev.nurtured(at=t0 + timedelta(minutes=i + 1)))
        assert store.nurture_available(t0 + timedelta(hours=1)) == 0
        assert store.nurture_available(t0 + timedelta(days=1)) == 3

    def test_reflection_window(self, store: TrunkStore, ev: Any, t0: datetime) -> None:
        assert store.reflection_available(t0) == 1
        store.append(ev.reflected(at=t0))
        assert store.reflection_available(t0) == 0
        assert store.was_reflected_this_week(t0)

    def test_can_afford(self, store: TrunkStore, ev: Any) -> None:
        store.append(ev.started(cost=8))
        assert store.can_afford(2)
        assert not store.can_afford(3)

    def test_streak(self, store: TrunkStore, ev: Any, t0: datetime) -> None:
        store.append(ev.started(at=t0 - timedelta(days=4)))
        for days in (3, 2, 1):
            store.append(ev.nurtured(at=t0 - timedelta(days=days)))
        streak = store.nurture_streak(t0)
        assert (streak.current, streak.longest) == (3, 3)

    def test_history_filters(self, store: TrunkStore, ev: Any, t0: datetime) -> None:
        store.append(ev.started())
        store.append(ev.nurtured(at=t0 + timedelta(hours=1)))
        store.append(ev.reflected(at=t0 + timedelta(hours=2)))
        assert len(store.history()) == 3
        assert [e.type for e in store.nurture_history()] == ["goal_nurtured"]
        assert [e.type for e in store.reflection_history()] == ["reflection_recorded"]


class TestCompactionInStore:
    def test_compacts_at_threshold(self, ev: Any, t0: datetime) -> None:
        storage = InMemoryStorage()
        manager = CompactionManager(threshold=20)
        events = nurture_log(ev, t0 - timedelta(days=30), 25)
        with TrunkStore.open(storage, compaction=manager) as store:
            store.merge_remote(events)
            before = store.state()
            snapshot = store.maybe_compact(t0)
            assert snapshot is not None
            assert storage.get(SNAPSHOT_KEY) is not None
            assert store.event_count() < 25
            assert store.state() == before
            persisted = json.loads(storage.get(EVENTS_KEY) or "[]")
            assert len(persisted) == store.event_count()

    def test_below_threshold_does_nothing(self, store: TrunkStore, ev: Any, t0: datetime) -> None:
        store.append(ev.started(at=t0 - timedelta(days=30)))
        assert store.maybe_compact(t0) is None
        assert store.snapshot is None

    def test_snapshot_survives_reload(self, ev: Any, t0: datetime) -> None:
        storage = InMemoryStorage()
        manager = CompactionManager(threshold=5)
        with TrunkStore.open(storage, compaction=manager) as store:
            store.merge_remote(nurture_log(ev, t0 - timedelta(days=20), 10))
            store.maybe_compact(t0)
            expected = store.state()
        with TrunkStore.open(storage, compaction=manager) as reopened:
            assert reopened.snapshot is not None
            assert reopened.state() == expected
            assert not reopened.needs_full_resync

    def test_export_events_decompacts(self, ev: Any, t0: datetime) -> None:
        manager = CompactionManager(threshold=5)
        with TrunkStore.open(InMemoryStorage(), compaction=manager) as store:
            store.merge_remote(nurture_log(ev, t0 - timedelta(days=20), 10))
            store.maybe_compact(t0)
            exported = store.export_events()
            assert len(exported) == 10
            assert exported == sorted(exported, key=Event.sort_key)

    def test_bad_snapshot_discarded(self, storage: InMemoryStorage) -> None:
        storage.set(SNAPSHOT_KEY, json.dumps({"version": 42}))
        with TrunkStore.open(storage) as store:
            assert store.snapshot is None
            assert store.needs_full_resync
            assert storage.get(SNAPSHOT_KEY) is None

    def test_replace_events_clears_resync_flag(self, storage: InMemoryStorage, ev: Any) -> None:
        storage.set(SNAPSHOT_KEY, "not json")
        with TrunkStore.open(storage) as store:
            assert store.needs_full_resync
            store.replace_events([ev.started()])
            assert not store.needs_full_resync
            assert store.event_count() == 1

    def test_discard_snapshot(self, ev: Any, t0: datetime) -> None:
        manager = CompactionManager(threshold=5)
        with TrunkStore.open(InMemoryStorage(), compaction=manager) as store:
            store.merge_remote(nurture_log(ev, t0 - timedelta(days=20), 10))
            store.maybe_compact(t0)
            assert store.predates_snapshot([ev.nurtured(at=t0 - timedelta(days=19))])
            assert not store.predates_snapshot([ev.nurtured(at=t0)])
            store.discard_snapshot()
            assert store.snapshot is None
            assert store.needs_full_resync

    def test_balance_history_spans_the_snapshot(self, ev: Any, t0: datetime) -> None:
        manager = CompactionManager(threshold=5)
        events = nurture_log(ev, t0 - timedelta(days=20), 10)
        with TrunkStore.open(InMemoryStorage(), compaction=manager) as store:
            store.merge_remote(events)
            store.maybe_compact(t0)
            assert store.snapshot is not None
            assert store.balance_history() == balance_history(events)
            assert store.balance_history()[-1].available == store.state().available

    def test_unknown_event_survives_compaction_and_export(
        self, ev: Any, t0: datetime, raw_event: Callable[..., Event]
    ) -> None:
        manager = CompactionManager(threshold=5)
        future = raw_event(
            type="goal_pruned_v2",
            timestamp=t0 - timedelta(days=19),
            payload={"goal_id": "goal-1"},
        )
        events = nurture_log(ev, t0 - timedelta(days=20), 10) + [future]
        with TrunkStore.open(InMemoryStorage(), compaction=manager) as store:
            store.merge_remote(events)
            assert store.maybe_compact(t0) is not None
            assert not store.contains(future.client_id)
            assert future in store.export_events()
            assert {e.client_id for e in store.export_events()} == {e.client_id for e in events}


class TestConfirmation:
    def test_local_appends_start_unconfirmed(self, store: TrunkStore, ev: Any) -> None:
        event = ev.started()
        store.append(event)
        assert store.unconfirmed_ids() == (event.client_id,)
        assert not store.is_confirmed(event.client_id)

    def test_merge_remote_confirms_events_already_held(self, store: TrunkStore, ev: Any) -> None:
        event = ev.started()
        store.append(event)
        assert store.merge_remote([event]) == []
        assert store.is_confirmed(event.client_id)
        assert store.unconfirmed_ids() == ()

    def test_mark_confirmed_ignores_unknown_ids(
        self, store: TrunkStore, storage: InMemoryStorage
    ) -> None:
        store.mark_confirmed(["ghost"])
        assert not store.is_confirmed("ghost")
        assert storage.get(CONFIRMED_KEY) is None

    def test_confirmations_survive_reload(self, storage: InMemoryStorage, ev: Any) -> None:
        confirmed, local = ev.started(), ev.nurtured()
        with TrunkStore.open(storage) as store:
            store.merge_remote([confirmed])
            store.append(local)
        with TrunkStore.open(storage) as reopened:
            assert reopened.is_confirmed(confirmed.client_id)
            assert reopened.unconfirmed_ids() == (local.client_id,)

    def test_replace_events_confirms_only_given_ids(self, store: TrunkStore, ev: Any) -> None:
        remote_event, local_event = ev.started(), ev.nurtured()
        store.merge_remote([ev.reflected()])
        store.replace_events(
            [remote_event, local_event], confirmed=[remote_event.client_id, "ghost"]
        )
        assert store.unconfirmed_ids() == (local_event.client_id,)
        assert not store.is_confirmed("ghost")

    def test_replace_events_defaults_to_unconfirmed(self, store: TrunkStore, ev: Any) -> None:
        events = [ev.started(), ev.nurtured()]
        store.merge_remote(events)
        store.replace_events(events)
        assert set(store.unconfirmed_ids()) == {e.client_id for e in events}

    def test_unconfirmed_events_hold_back_compaction(self, ev: Any, t0: datetime) -> None:
        manager = CompactionManager(threshold=5)
        events = nurture_log(ev, t0 - timedelta(days=20), 10)
        with TrunkStore.open(InMemoryStorage(), compaction=manager) as store:
            store.merge_remote(events[:5])
            for event in events[5:]:
                store.append(event)
            snapshot = store.maybe_compact(t0)
            assert snapshot is not None
            assert snapshot.compacted_event_count == 5
            assert [e.client_id for e in store.events] == [e.client_id for e in events[5:]]
            assert len(store.unconfirmed_ids()) == 5

    def test_offline_store_never_compacts(self, ev: Any, t0: datetime) -> None:
        manager = CompactionManager(threshold=5)
        with TrunkStore.open(InMemoryStorage(), compaction=manager) as store:
            for event in nurture_log(ev, t0 - timedelta(days=20), 10):
                store.append(event)
            assert store.maybe_compact(t0) is None
            assert store.event_count() == 10

    def test_confirmations_pruned_with_compacted_events(
        self, ev: Any, t0: datetime
    ) -> None:
        storage = InMemoryStorage()
        manager = CompactionManager(threshold=5)
        recent = ev.reflected(at=t0)
        with TrunkStore.open(storage, compaction=manager) as store:
            store.merge_remote(nurture_log(ev, t0 - timedelta(days=20), 10) + [recent])
            assert store.maybe_compact(t0) is not None
            assert json.loads(storage.get(CONFIRMED_KEY) or "[]") == [recent.client_id]
            assert store.unconfirmed_ids() == ()

    def test_failed_replace_keeps_previous_history(self, ev: Any) -> None:
        storage = FlakyStorage()
        kept, incoming = ev.started(cost=8), ev.reflected()
        with TrunkStore.open(storage) as store:
            store.append(kept)
            storage.broken = True
            with pytest.raises(StorageError):
                store.replace_events([incoming])
            assert store.contains(kept.client_id)
            assert not store.contains(incoming.client_id)
            assert store.state().available == 2.0
        storage.broken = False
        with TrunkStore.open(storage) as reopened:
            assert [e.client_id for e in reopened.events] == [kept.client_id]
