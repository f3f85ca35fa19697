"""Synchronization between the local event log and the remote authority.

The service is a small status machine (idle -> syncing -> success | error
-> idle) that picks a pull mode from the cache-version gate, pushes every
local event the remote has not confirmed with backoff, and leaves the local
cache untouched whenever anything fails. All remote calls are bounded by a
timeout. Overlapping ``sync()`` calls share one in-flight task.

Sections:
    1. Constants and enums
    2. Result and metadata models
    3. Pending uploads
    4. Sync service
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Iterable, List, Optional, Tuple, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from trunk_events.constants import CACHE_VERSION
from trunk_events.log import ClientIdSet
from trunk_events.models import Event, StorageError, SyncError, SyncTimeoutError
from trunk_events.remote import InsertOutcome, RemoteLog, RemoteRecord
from trunk_events.storage import (
    CACHE_VERSION_KEY,
    PENDING_UPLOADS_KEY,
    WATERMARK_KEY,
    KeyValueStorage,
)
from trunk_events.store import TrunkStore

logger = logging.getLogger("trunk_events.sync")

T = TypeVar("T")

# ── Section 1: Constants and Enums ───────────────────────────────────────────

DEFAULT_SYNC_TIMEOUT: float = 15.0
BACKOFF_BASE_SECONDS: float = 1.0
BACKOFF_MAX_SECONDS: float = 30.0
MAX_RETRY_STEPS: int = 3


class SyncStatus(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    SUCCESS = "success"
    ERROR = "error"


class SyncMode(str, Enum):
    INCREMENTAL = "incremental"
    FULL = "full"


class DetailedSyncStatus(str, Enum):
    """Status as shown to the user."""

    SYNCED = "synced"
    SYNCING = "syncing"
    PENDING_UPLOAD = "pending_upload"
    OFFLINE = "offline"


def backoff_delay(attempt: int) -> float:
    """Seconds to wait before retry step ``attempt`` (0-based)."""
    return min(BACKOFF_BASE_SECONDS * 2 ** attempt, BACKOFF_MAX_SECONDS)


# ── Section 2: Result and Metadata Models ────────────────────────────────────


class SyncResult(BaseModel):
    """Outcome of one sync() call."""

    model_config = ConfigDict(frozen=True)

    status: SyncStatus
    mode: SyncMode
    pulled: int = Field(0, ge=0, description="Events added to the local log")
    pushed: int = Field(0, ge=0, description="Pending uploads confirmed")
    error: Optional[str] = None
    compacted: bool = False


class SyncMetadata(BaseModel):
    """Observable sync state for status indicators."""

    model_config = ConfigDict(frozen=True)

    status: DetailedSyncStatus
    last_confirmed: Optional[datetime] = Field(
        None, description="Server created_at of the newest pulled event"
    )
    pending_count: int = 0
    last_error: Optional[str] = None
    consecutive_failures: int = 0
    last_failure_at: Optional[datetime] = None


MetadataListener = Callable[[SyncMetadata], None]

# ── Section 3: Pending Uploads ───────────────────────────────────────────────


class PendingUploads(ClientIdSet):
    """Persisted upload queue: client_ids in the order they were queued."""

    def __init__(self, storage: KeyValueStorage, key: str = PENDING_UPLOADS_KEY) -> None:
        super().__init__(storage, key)


# ── Section 4: Sync Service ──────────────────────────────────────────────────


class _LateEvents(Exception):
    """Pulled events fall before the snapshot cutoff; a full replay is needed."""


class SyncService:
    """Reconciles a ``TrunkStore`` with a ``RemoteLog``.

    Usage:
        >>> service = SyncService(store, InMemoryRemoteLog())
        >>> service.attach()            # queue local appends for upload
        >>> result = await service.sync()
    """

    def __init__(
        self,
        store: TrunkStore,
        remote: RemoteLog,
        timeout: float = DEFAULT_SYNC_TIMEOUT,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._storage = store.storage
        self._remote = remote
        self._timeout = timeout
        self._clock = clock
        self._monotonic = monotonic
        self._pending = PendingUploads(self._storage)
        self._pending.load()
        self._status = SyncStatus.IDLE
        self._inflight: Optional["asyncio.Task[SyncResult]"] = None
        self._listeners: List[MetadataListener] = []
        self._last_error: Optional[str] = None
        self._consecutive_failures = 0
        self._last_failure_at: Optional[datetime] = None
        self._retry_attempt = 0
        self._last_retry: Optional[float] = None
        self._detach: Optional[Callable[[], None]] = None

    # ── Local bookkeeping ────────────────────────────────────────────────────

    @property
    def status(self) -> SyncStatus:
        return self._status

    @property
    def pending(self) -> Tuple[str, ...]:
        return self._pending.ids()

    @property
    def watermark(self) -> Optional[datetime]:
        raw = self._storage.get(WATERMARK_KEY)
        if not raw:
            return None
        try:
            return datetime.fromisoformat(raw)
        except ValueError:
            logger.warning("Ignoring unreadable sync watermark %r", raw)
            return None

    def cache_valid(self) -> bool:
        """Cache-version gate: True allows an incremental pull."""
        if self._store.needs_full_resync:
            return False
        return self._storage.get(CACHE_VERSION_KEY) == str(CACHE_VERSION)

    def attach(self) -> Callable[[], None]:
        """Queue every locally appended event for upload. Returns a detacher.

        Events already in the log without remote confirmation (appended
        before attaching, imported or migrated) are queued straight away.
        """
        if self._detach is None:
            self._detach = self._store.add_append_listener(self._on_local_append)
        self._queue_unconfirmed()
        return self.detach

    def detach(self) -> None:
        if self._detach is not None:
            self._detach()
            self._detach = None

    def _on_local_append(self, event: Event) -> None:
        self._pending.add(event.client_id)
        self._save_pending()
        self._notify()

    def _queue(self, client_ids: Iterable[str]) -> int:
        queued = 0
        for client_id in client_ids:
            if client_id not in self._pending:
                self._pending.add(client_id)
                queued += 1
        if queued:
            self._save_pending()
            self._notify()
        return queued

    def _queue_unconfirmed(self) -> int:
        return self._queue(self._store.unconfirmed_ids())

    def queue_local_history(self) -> int:
        """Queue every local event for upload, confirmed or not.

        Unconfirmed events are queued on their own at attach and sync time;
        this also re-sends confirmed ones, e.g. to publish the whole log to
        an empty remote.

        Returns:
            Number of events newly queued.
        """
        return self._queue(e.client_id for e in self._store.events)

    def _save_pending(self) -> None:
        try:
            self._pending.save()
        except StorageError as exc:
            logger.error("Pending uploads not persisted: %s", exc)
            self._last_error = str(exc)

    def _commit_watermark(self, records: List[RemoteRecord]) -> None:
        if records:
            latest = max(r.created_at for r in records)
            self._storage.set(WATERMARK_KEY, latest.isoformat())

    def _stamp_cache_version(self) -> None:
        self._storage.set(CACHE_VERSION_KEY, str(CACHE_VERSION))

    async def _call(self, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise SyncTimeoutError(
                f"Remote call exceeded {self._timeout:g}s timeout"
            ) from exc

    # ── Metadata ─────────────────────────────────────────────────────────────

    def detailed_status(self) -> DetailedSyncStatus:
        if self._status is SyncStatus.SYNCING:
            return DetailedSyncStatus.SYNCING
        if self._consecutive_failures > 0:
            return DetailedSyncStatus.OFFLINE
        if len(self._pending) > 0:
            return DetailedSyncStatus.PENDING_UPLOAD
        return DetailedSyncStatus.SYNCED

    def metadata(self) -> SyncMetadata:
        return SyncMetadata(
            status=self.detailed_status(),
            last_confirmed=self.watermark,
            pending_count=len(self._pending),
            last_error=self._last_error,
            consecutive_failures=self._consecutive_failures,
            last_failure_at=self._last_failure_at,
        )

    def subscribe(self, listener: MetadataListener) -> Callable[[], None]:
        """Register a metadata listener; it is called immediately. Returns a remover."""
        self._listeners.append(listener)
        listener(self.metadata())

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _notify(self) -> None:
        if not self._listeners:
            return
        meta = self.metadata()
        for listener in list(self._listeners):
            listener(meta)

    def _set_status(self, status: SyncStatus) -> None:
        if status is not self._status:
            logger.info("Sync status %s -> %s", self._status.value, status.value)
        self._status = status
        self._notify()

    # ── Push ─────────────────────────────────────────────────────────────────

    async def _push(self, event: Event) -> bool:
        try:
            outcome = await self._call(self._remote.insert(event))
        except SyncError as exc:
            logger.warning("Push of %s failed, left pending: %s", event.client_id, exc)
            return False
        if outcome is InsertOutcome.DUPLICATE:
            logger.info("Event %s already on remote", event.client_id)
        self._pending.discard(event.client_id)
        try:
            self._store.mark_confirmed([event.client_id])
        except StorageError as exc:
            # Unpersisted confirmations only cost a duplicate push later.
            logger.error("Confirmation of %s not persisted: %s", event.client_id, exc)
        return True

    async def push_event(self, event: Event) -> bool:
        """Push one local event. Returns True once the remote has it.

        The event stays queued on failure and is retried before the next pull.
        """
        if event.client_id not in self._pending:
            self._pending.add(event.client_id)
            self._save_pending()
        pushed = await self._push(event)
        self._save_pending()
        self._notify()
        return pushed

    async def retry_pending(self) -> int:
        """Re-push queued events, honouring exponential backoff between rounds.

        Returns:
            Number of events confirmed by the remote in this round.
        """
        if len(self._pending) == 0:
            self._retry_attempt = 0
            return 0
        now = self._monotonic()
        if (
            self._retry_attempt > 0
            and self._last_retry is not None
            and now - self._last_retry < backoff_delay(self._retry_attempt - 1)
        ):
            return 0
        self._last_retry = now

        local = {e.client_id: e for e in self._store.events}
        pushed = 0
        for client_id in self._pending.ids():
            event = local.get(client_id)
            if event is None:
                logger.warning("Dropping stale pending upload %s", client_id)
                self._pending.discard(client_id)
                continue
            if await self._push(event):
                pushed += 1
        self._save_pending()

        if pushed:
            self._retry_attempt = 0
            self._notify()
        elif len(self._pending) > 0:
            self._retry_attempt = min(self._retry_attempt + 1, MAX_RETRY_STEPS)
        return pushed

    # ── Pull ─────────────────────────────────────────────────────────────────

    async def _pull_incremental(self) -> int:
        watermark = self.watermark
        if watermark is None:
            records = await self._call(self._remote.list_all())
        else:
            records = await self._call(self._remote.list_since(watermark))
        incoming = [r.event for r in records if not self._store.contains(r.client_id)]
        if self._store.predates_snapshot(incoming):
            raise _LateEvents()
        added = self._store.merge_remote(r.event for r in records)
        self._commit_watermark(records)
        self._stamp_cache_version()
        return len(added)

    async def _pull_full(self) -> int:
        # Nothing local is touched until the whole remote log is in hand.
        records = await self._call(self._remote.list_all())
        server_events = [r.event for r in records]
        server_ids = {e.client_id for e in server_events}
        # The remote never deletes, so whatever it lacks exists only here.
        local_only = [e for e in self._store.events if e.client_id not in server_ids]
        merged = server_events + local_only
        self._store.replace_events(merged, confirmed=server_ids)
        for client_id in self._pending.ids():
            if client_id in server_ids:
                self._pending.discard(client_id)
        if local_only:
            logger.info("Keeping %d local event(s) the remote lacks", len(local_only))
            self._queue(e.client_id for e in local_only)
        self._save_pending()
        if records:
            self._commit_watermark(records)
        else:
            self._storage.remove(WATERMARK_KEY)
        self._stamp_cache_version()
        return len(merged)

    # ── Sync ─────────────────────────────────────────────────────────────────

    async def sync(self) -> SyncResult:
        """Run one sync, or join the one already in flight."""
        if self._inflight is not None and not self._inflight.done():
            return await self._inflight
        task = asyncio.ensure_future(self._run())
        self._inflight = task
        try:
            return await task
        finally:
            if self._inflight is task:
                self._inflight = None

    async def force_full_sync(self) -> SyncResult:
        """Clear the watermark and cache marker, then sync."""
        self._storage.remove(WATERMARK_KEY)
        self._storage.remove(CACHE_VERSION_KEY)
        return await self.sync()

    async def _run(self) -> SyncResult:
        self._set_status(SyncStatus.SYNCING)
        mode = SyncMode.INCREMENTAL if self.cache_valid() else SyncMode.FULL
        pushed = 0
        try:
            self._queue_unconfirmed()
            pushed = await self.retry_pending()
            if mode is SyncMode.INCREMENTAL:
                try:
                    pulled = await self._pull_incremental()
                except _LateEvents:
                    logger.info("Pulled events predate the snapshot; switching to full sync")
                    mode = SyncMode.FULL
                    pulled = await self._pull_full()
            else:
                pulled = await self._pull_full()
        except (SyncError, StorageError) as exc:
            return self._fail(mode, pushed, exc)
        except Exception as exc:
            self._fail(mode, pushed, exc)
            raise

        compacted = self._compact()
        self._last_error = None
        self._consecutive_failures = 0
        self._last_failure_at = None
        self._set_status(SyncStatus.SUCCESS)
        self._set_status(SyncStatus.IDLE)
        logger.info("Sync succeeded (%s): pulled %d, pushed %d", mode.value, pulled, pushed)
        return SyncResult(
            status=SyncStatus.SUCCESS,
            mode=mode,
            pulled=pulled,
            pushed=pushed,
            compacted=compacted,
        )

    def _fail(self, mode: SyncMode, pushed: int, exc: Exception) -> SyncResult:
        self._last_error = str(exc)
        self._consecutive_failures += 1
        self._last_failure_at = self._clock()
        logger.warning("Sync failed (%s): %s", mode.value, exc)
        self._set_status(SyncStatus.ERROR)
        self._set_status(SyncStatus.IDLE)
        return SyncResult(
            status=SyncStatus.ERROR, mode=mode, pushed=pushed, error=str(exc)
        )

    def _compact(self) -> bool:
        try:
            snapshot = self._store.maybe_compact(self._clock())
        except StorageError as exc:
            logger.error("Compaction skipped: %s", exc)
            return False
        return snapshot is not None
