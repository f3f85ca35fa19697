"""Integration tests: several devices reconciling through one remote log."""
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import pytest

from trunk_events import (
    CompactionManager,
    FileStorage,
    GoalState,
    InMemoryRemoteLog,
    InMemoryStorage,
    KeyValueStorage,
    SyncError,
    SyncMode,
    SyncService,
    SyncStatus,
    TrunkStore,
    abandon_goal,
    conclude_goal,
    export_document,
    import_document,
    import_legacy,
    nurture_goal,
    record_reflection,
    relabel_node,
    start_goal,
)

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class Ticker:
    """Monotonic clock that jumps a minute per reading, so backoff never blocks."""

    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        self.now += 60.0
        return self.now


def device(
    remote: InMemoryRemoteLog,
    storage: Optional[KeyValueStorage] = None,
    threshold: int = 500,
    now: datetime = T0,
) -> Tuple[TrunkStore, SyncService]:
    store = TrunkStore.open(
        storage or InMemoryStorage(), compaction=CompactionManager(threshold=threshold)
    )
    service = SyncService(store, remote, clock=lambda: now, monotonic=Ticker())
    service.attach()
    return store, service


class TestTwoDevices:
    @pytest.mark.asyncio
    async def test_devices_converge(self) -> None:
        remote = InMemoryRemoteLog()
        laptop, laptop_sync = device(remote)
        phone, phone_sync = device(remote)

        start_goal(laptop, "branch-0-twig-0", "Run a 10k", "3m", "firm",
                   goal_id="goal-run", now=T0)
        first = await laptop_sync.sync()
        assert first.mode is SyncMode.FULL
        assert first.pushed == 1

        await phone_sync.sync()
        assert phone.state().goals["goal-run"].state is GoalState.ACTIVE
        assert phone.state().available == 2.0

        nurture_goal(phone, "goal-run", "5k easy", now=T0 + timedelta(hours=1))
        record_reflection(phone, "branch-0", "steady", now=T0 + timedelta(hours=2))
        await phone_sync.sync()
        second = await laptop_sync.sync()
        assert second.mode is SyncMode.INCREMENTAL
        assert second.pulled == 2

        assert laptop.state() == phone.state()
        assert laptop.state().available == pytest.approx(2.4)

    @pytest.mark.asyncio
    async def test_offline_work_is_uploaded_later(self) -> None:
        remote = InMemoryRemoteLog()
        laptop, laptop_sync = device(remote)
        phone, phone_sync = device(remote)
        start_goal(laptop, "n", "Read", "1m", "fertile", goal_id="goal-read", now=T0)
        await laptop_sync.sync()
        await phone_sync.sync()

        remote.fail_with = SyncError("offline")
        nurture_goal(laptop, "goal-read", "chapter 1", now=T0 + timedelta(hours=1))
        failed = await laptop_sync.sync()
        assert failed.status is SyncStatus.ERROR
        assert len(laptop_sync.pending) == 1
        assert len(laptop.state().goals["goal-read"].nurture_entries) == 1

        remote.fail_with = None
        abandon_goal(phone, "goal-read", reason="too long", now=T0 + timedelta(hours=3))
        await phone_sync.sync()
        recovered = await laptop_sync.sync()
        assert recovered.status is SyncStatus.SUCCESS
        assert recovered.pushed == 1
        assert laptop_sync.pending == ()
        await phone_sync.sync()

        for store in (laptop, phone):
            goal = store.state().goals["goal-read"]
            assert goal.state is GoalState.ABANDONED
            assert len(goal.nurture_entries) == 1
        assert laptop.state() == phone.state()

    @pytest.mark.asyncio
    async def test_same_event_from_two_paths_counts_once(self) -> None:
        remote = InMemoryRemoteLog()
        laptop, laptop_sync = device(remote)
        event = start_goal(laptop, "n", "Walk", "2w", "fertile", goal_id="goal-walk", now=T0)
        await laptop_sync.sync()
        await laptop_sync.push_event(event)
        assert len(remote.records) == 1

        phone, phone_sync = device(remote)
        phone.merge_remote([event])
        await phone_sync.sync()
        assert phone.event_count() == 1
        assert phone.state().available == 8.0


class TestRestart:
    @pytest.mark.asyncio
    async def test_file_backed_device_resumes_incrementally(self, tmp_path: Path) -> None:
        remote = InMemoryRemoteLog()
        store, service = device(remote, FileStorage(tmp_path))
        start_goal(store, "n", "Run", "3m", "firm", goal_id="goal-run", now=T0)
        await service.sync()
        watermark = service.watermark
        expected = store.state()
        store.close()

        reopened, resumed = device(remote, FileStorage(tmp_path))
        assert reopened.state() == expected
        assert resumed.cache_valid()
        assert resumed.watermark == watermark
        result = await resumed.sync()
        assert result.mode is SyncMode.INCREMENTAL
        assert result.pulled == 0

    @pytest.mark.asyncio
    async def test_pending_uploads_survive_restart(self, tmp_path: Path) -> None:
        remote = InMemoryRemoteLog()
        remote.fail_with = SyncError("offline")
        store, service = device(remote, FileStorage(tmp_path))
        start_goal(store, "n", "Run", "3m", "firm", goal_id="goal-run", now=T0)
        await service.sync()
        store.close()

        remote.fail_with = None
        reopened, resumed = device(remote, FileStorage(tmp_path))
        assert len(resumed.pending) == 1
        result = await resumed.sync()
        assert result.pushed == 1
        assert [r.client_id for r in remote.records] == [e.client_id for e in reopened.events]


class TestCompactedDevice:
    @pytest.mark.asyncio
    async def test_compacted_device_agrees_with_fresh_device(self) -> None:
        remote = InMemoryRemoteLog()
        veteran, veteran_sync = device(remote, threshold=10)
        start = T0 - timedelta(days=60)
        start_goal(veteran, "branch-1", "Guitar", "3m", "firm", goal_id="goal-guitar", now=start)
        for day in range(1, 12):
            nurture_goal(veteran, "goal-guitar", f"practice {day}", now=start + timedelta(days=day))
        conclude_goal(veteran, "goal-guitar", 5, now=start + timedelta(days=30))
        relabel_node(veteran, "branch-1", label="Music", now=start + timedelta(days=31))

        result = await veteran_sync.sync()
        assert result.compacted
        assert veteran.snapshot is not None
        assert veteran.snapshot.compacted_event_count == 14

        newcomer, newcomer_sync = device(remote)
        await newcomer_sync.sync()
        assert newcomer.event_count() == 14
        for field in ("capacity", "available", "goals", "nodes", "activity_days"):
            assert getattr(newcomer.state(), field) == getattr(veteran.state(), field)

        with TrunkStore.open(InMemoryStorage()) as restored:
            import_document(restored, export_document(veteran, now=T0).to_json())
            assert restored.state().goals == newcomer.state().goals
            assert restored.state().capacity == newcomer.state().capacity

    @pytest.mark.asyncio
    async def test_republished_export_does_not_double_history(self) -> None:
        remote = InMemoryRemoteLog()
        veteran, veteran_sync = device(remote, threshold=10)
        start = T0 - timedelta(days=60)
        start_goal(veteran, "branch-1", "Guitar", "3m", "firm", goal_id="goal-guitar", now=start)
        for day in range(1, 12):
            nurture_goal(veteran, "goal-guitar", f"practice {day}", now=start + timedelta(days=day))
        record_reflection(veteran, "branch-1", "in tune", now=start + timedelta(days=20))
        await veteran_sync.sync()
        assert veteran.snapshot is not None
        records = len(remote.records)

        import_document(veteran, export_document(veteran, now=T0).to_json())
        veteran_sync.queue_local_history()
        result = await veteran_sync.sync()
        assert result.status is SyncStatus.SUCCESS
        assert len(remote.records) == records

        newcomer, newcomer_sync = device(remote)
        await newcomer_sync.sync()
        assert len(newcomer.state().goals["goal-guitar"].nurture_entries) == 11
        assert len(newcomer.state().reflections) == 1
        assert newcomer.state().available == veteran.state().available


def _legacy() -> Dict[str, Any]:
    return {
        "version": 1,
        "nodes": {
            "branch-3": {
                "label": "Home",
                "goals": [
                    {
                        "id": "goal-garden",
                        "title": "Plant a garden",
                        "duration": "1m",
                        "difficulty": "fertile",
                        "started_at": "2025-04-01T08:00:00+00:00",
                        "nurture_entries": [
                            {"timestamp": "2025-04-02T08:00:00+00:00", "content": "dug beds"}
                        ],
                    }
                ],
            }
        },
    }


class TestLegacyImportThenSync:
    @pytest.mark.asyncio
    async def test_imported_history_reaches_other_devices(self) -> None:
        remote = InMemoryRemoteLog()
        laptop, laptop_sync = device(remote)
        count = import_legacy(laptop, _legacy())
        assert laptop_sync.queue_local_history() == count

        result = await laptop_sync.sync()
        assert result.pushed == count
        assert laptop.state().goals["goal-garden"].nurture_entries[0].content == "dug beds"

        phone, phone_sync = device(remote)
        await phone_sync.sync()
        assert phone.state() == laptop.state()
        assert phone.state().nodes["branch-3"].label == "Home"

    @pytest.mark.asyncio
    async def test_import_is_published_without_queueing(self) -> None:
        remote = InMemoryRemoteLog()
        laptop, laptop_sync = device(remote)
        count = import_legacy(laptop, _legacy())

        result = await laptop_sync.sync()
        assert result.pushed == count
        assert laptop.event_count() == count
        assert laptop_sync.pending == ()

        phone, phone_sync = device(remote)
        await phone_sync.sync()
        assert phone.state().goals["goal-garden"].nurture_entries[0].content == "dug beds"


class TestUnsyncedLocalWork:
    @pytest.mark.asyncio
    async def test_work_done_before_sync_was_attached_is_kept(self) -> None:
        remote = InMemoryRemoteLog()
        phone, phone_sync = device(remote)
        start_goal(phone, "n", "Read", "1m", "fertile", goal_id="goal-read", now=T0)
        await phone_sync.sync()

        laptop = TrunkStore.open(InMemoryStorage())
        start_goal(laptop, "n", "Walk", "2w", "fertile", goal_id="goal-walk", now=T0)
        laptop_sync = SyncService(laptop, remote, clock=lambda: T0, monotonic=Ticker())
        laptop_sync.attach()
        result = await laptop_sync.sync()
        assert result.mode is SyncMode.FULL
        assert set(laptop.state().goals) == {"goal-read", "goal-walk"}

        await phone_sync.sync()
        assert phone.state().goals == laptop.state().goals

    @pytest.mark.asyncio
    async def test_unpushed_work_survives_full_sync(self) -> None:
        remote = InMemoryRemoteLog()
        laptop, laptop_sync = device(remote)
        await laptop_sync.sync()
        remote.fail_with = SyncError("offline")
        start_goal(laptop, "n", "Walk", "2w", "fertile", goal_id="goal-walk", now=T0)
        await laptop_sync.sync()

        remote.fail_with = None
        result = await laptop_sync.force_full_sync()
        assert result.status is SyncStatus.SUCCESS
        assert "goal-walk" in laptop.state().goals
        assert len(remote.records) == 1
