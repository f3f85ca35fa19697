"""Remote authority contract and implementations.

The remote authority is a minimal ordered log: list everything, list what
arrived after a watermark, and insert-if-absent keyed on ``client_id``. It
runs no business logic beyond server-side ordering (``created_at``) and key
uniqueness.

Sections:
    1. Records and outcomes
    2. Abstract contract
    3. In-memory implementation
    4. HTTP implementation (PostgREST-style ``events`` table)
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set

import httpx
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from trunk_events.models import Event, SyncError, ensure_aware

logger = logging.getLogger("trunk_events.remote")

# Unique-constraint violation code reported by the database on duplicate keys.
DUPLICATE_KEY_CODE: str = "23505"

# ── Section 1: Records and Outcomes ──────────────────────────────────────────


class RemoteRecord(BaseModel):
    """An event as stored by the remote authority, stamped by the server."""

    model_config = ConfigDict(frozen=True)

    event: Event
    created_at: datetime = Field(..., description="Server-assigned insertion time")

    @property
    def client_id(self) -> str:
        return self.event.client_id


class InsertOutcome(str, Enum):
    INSERTED = "inserted"
    DUPLICATE = "duplicate"


# ── Section 2: Abstract Contract ─────────────────────────────────────────────


class RemoteLog(ABC):
    """Async ordered-log interface of the remote authority.

    Implementations raise ``SyncError`` for transport, auth or server
    failures. Records are returned in ``created_at`` order.
    """

    @abstractmethod
    async def list_all(self) -> List[RemoteRecord]:
        """Return the entire remote log."""

    @abstractmethod
    async def list_since(self, watermark: datetime) -> List[RemoteRecord]:
        """Return records created strictly after ``watermark``."""

    @abstractmethod
    async def insert(self, event: Event) -> InsertOutcome:
        """Insert the event unless its client_id is already present."""

    async def aclose(self) -> None:
        return None


# ── Section 3: In-Memory Implementation ──────────────────────────────────────


class InMemoryRemoteLog(RemoteLog):
    """Process-local remote log shared by several simulated devices.

    ``fail_with`` makes every call raise, and ``delay`` makes every call
    sleep first, which lets tests exercise error and timeout paths.
    """

    def __init__(self) -> None:
        self._records: List[RemoteRecord] = []
        self._client_ids: Set[str] = set()
        self._last_created: Optional[datetime] = None
        self.fail_with: Optional[Exception] = None
        self.delay: float = 0.0
        self.calls: List[str] = []

    @property
    def records(self) -> List[RemoteRecord]:
        return list(self._records)

    async def _enter(self, call: str) -> None:
        self.calls.append(call)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with

    def _stamp(self) -> datetime:
        # Strictly increasing server clock so watermarks never tie.
        now = datetime.now(timezone.utc)
        if self._last_created is not None and now <= self._last_created:
            now = self._last_created + timedelta(microseconds=1)
        self._last_created = now
        return now

    async def list_all(self) -> List[RemoteRecord]:
        await self._enter("list_all")
        return list(self._records)

    async def list_since(self, watermark: datetime) -> List[RemoteRecord]:
        await self._enter("list_since")
        return [r for r in self._records if r.created_at > watermark]

    async def insert(self, event: Event) -> InsertOutcome:
        await self._enter("insert")
        if event.client_id in self._client_ids:
            return InsertOutcome.DUPLICATE
        self._client_ids.add(event.client_id)
        self._records.append(RemoteRecord(event=event, created_at=self._stamp()))
        return InsertOutcome.INSERTED


# ── Section 4: HTTP Implementation ───────────────────────────────────────────


class HttpRemoteLog(RemoteLog):
    """Remote log backed by a PostgREST-style ``events`` table.

    Rows have the columns ``type``, ``payload``, ``client_id``,
    ``client_timestamp`` and the server-assigned ``created_at``. Row-level
    security scopes rows to the authenticated user.
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        access_token: Optional[str] = None,
        table: str = "events",
        timeout: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        headers: Dict[str, str] = {"Accept": "application/json"}
        if api_key:
            headers["apikey"] = api_key
        token = access_token or api_key
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._path = f"/rest/v1/{table}"
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url, headers=headers, timeout=timeout
        )
        if client is not None:
            self._client.headers.update(headers)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _get(self, params: Dict[str, str]) -> List[RemoteRecord]:
        try:
            response = await self._client.get(self._path, params=params)
        except httpx.TimeoutException as exc:
            raise SyncError(f"Remote log timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise SyncError(f"Remote log unreachable: {exc}") from exc
        if response.status_code >= 400:
            raise SyncError(
                f"Remote log returned {response.status_code}: {response.text[:200]}"
            )
        try:
            rows = response.json()
        except ValueError as exc:
            raise SyncError(
                f"Remote log returned a non-JSON body: {response.text[:200]}"
            ) from exc
        if not isinstance(rows, list):
            raise SyncError("Remote log returned a non-list body")
        return self._parse_rows(rows)

    @staticmethod
    def _parse_rows(rows: List[Any]) -> List[RemoteRecord]:
        records: List[RemoteRecord] = []
        for row in rows:
            if not isinstance(row, dict):
                logger.warning("Skipping non-object remote row: %r", row)
                continue
            try:
                event = Event(
                    type=row["type"],
                    timestamp=row["client_timestamp"],
                    client_id=row["client_id"],
                    payload=row.get("payload") or {},
                )
                created_at = ensure_aware(datetime.fromisoformat(row["created_at"]))
            except (KeyError, TypeError, ValueError, PydanticValidationError) as exc:
                logger.warning("Skipping unreadable remote row: %s", exc)
                continue
            records.append(RemoteRecord(event=event, created_at=created_at))
        return records

    async def list_all(self) -> List[RemoteRecord]:
        return await self._get({"select": "*", "order": "created_at.asc"})

    async def list_since(self, watermark: datetime) -> List[RemoteRecord]:
        return await self._get({
            "select": "*",
            "order": "created_at.asc",
            "created_at": f"gt.{watermark.isoformat()}",
        })

    async def insert(self, event: Event) -> InsertOutcome:
        body = {
            "type": event.type,
            "payload": event.payload,
            "client_id": event.client_id,
            "client_timestamp": event.timestamp.isoformat(),
        }
        try:
            response = await self._client.post(
                self._path, json=body, headers={"Prefer": "return=minimal"}
            )
        except httpx.TimeoutException as exc:
            raise SyncError(f"Push timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise SyncError(f"Push failed: {exc}") from exc
        if response.status_code == 409 or _error_code(response) == DUPLICATE_KEY_CODE:
            return InsertOutcome.DUPLICATE
        if response.status_code >= 400:
            raise SyncError(
                f"Push rejected with {response.status_code}: {response.text[:200]}"
            )
        return InsertOutcome.INSERTED


def _error_code(response: httpx.Response) -> Optional[str]:
    if response.status_code < 400:
        return None
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        code = body.get("code")
        return str(code) if code is not None else None
    return None
