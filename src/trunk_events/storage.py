"""Local persistent storage adapters.

Each persisted record (event log, snapshot, cache-version marker, sync
watermark, pending uploads, confirmed ids) lives under its own stable key
so that size pressure on one never starves another.
"""

import logging
import os
import re
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional, Union

from trunk_events.models import StorageError

logger = logging.getLogger("trunk_events.storage")

EVENTS_KEY: str = "trunk-events"
SNAPSHOT_KEY: str = "trunk-snapshot"
CACHE_VERSION_KEY: str = "trunk-cache-version"
WATERMARK_KEY: str = "trunk-last-sync"
PENDING_UPLOADS_KEY: str = "trunk-pending-uploads"
CONFIRMED_KEY: str = "trunk-confirmed"

_KEY_RE = re.compile(r"^[A-Za-z0-9._-]+$")


class KeyValueStorage(ABC):
    """Abstract string key/value store."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the stored value, or None when absent or unreadable."""

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """Store a value. Raises StorageError on failure."""

    @abstractmethod
    def remove(self, key: str) -> None:
        """Delete a key if present."""


class InMemoryStorage(KeyValueStorage):
    """Dictionary-backed storage for tests and ephemeral sessions."""

    def __init__(self) -> None:
        self._data: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return sorted(self._data)


class FileStorage(KeyValueStorage):
    """One file per key inside a directory.

    Writes go to a temporary file in the same directory and are moved into
    place with ``os.replace`` so a crash never leaves a half-written record.
    """

    def __init__(self, directory: Union[str, Path]) -> None:
        self._directory = Path(directory)

    @property
    def directory(self) -> Path:
        return self._directory

    def _path(self, key: str) -> Path:
        if not _KEY_RE.match(key):
            raise ValueError(f"Invalid storage key: {key!r}")
        return self._directory / f"{key}.json"

    def get(self, key: str) -> Optional[str]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            return path.read_text(encoding="utf-8")
        except OSError as exc:
            logger.error("Failed to read %s: %s", path, exc)
            return None

    def set(self, key: str, value: str) -> None:
        path = self._path(key)
        try:
            self._directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{key}.", suffix=".tmp", dir=self._directory
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    fh.write(value)
                os.replace(tmp_name, path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except OSError as exc:
            logger.error("Failed to write %s: %s", path, exc)
            raise StorageError(f"Could not save {key!r}: {exc}") from exc

    def remove(self, key: str) -> None:
        path = self._path(key)
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.error("Failed to remove %s: %s", path, exc)
            raise StorageError(f"Could not remove {key!r}: {exc}") from exc
