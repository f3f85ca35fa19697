"""Core data models for trunk-events library."""
from datetime import datetime, timezone
from typing import Any, Dict

from pydantic import BaseModel, ConfigDict, Field, field_validator
from ulid import ULID


def new_client_id() -> str:
    """Generate a fresh idempotency key for a locally created event."""
    return str(ULID())


def ensure_aware(value: datetime) -> datetime:
    """Return *value* as a timezone-aware datetime.

    Naive datetimes are interpreted as UTC so that every timestamp in the
    log can be totally ordered against every other one.
    """
    if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Event(BaseModel):
    """Immutable record of a single user action.

    The envelope is deliberately loose about ``payload``: typed payload
    validation happens during derivation, so one malformed historical
    event can never prevent the rest of the log from loading.
    """

    model_config = ConfigDict(frozen=True)

    type: str = Field(
        ...,
        min_length=1,
        description="Event type identifier (e.g., 'goal_started')",
    )
    timestamp: datetime = Field(
        ...,
        description="Instant the user performed the action (ordering key)",
    )
    client_id: str = Field(
        ...,
        min_length=1,
        max_length=128,
        description="Client-generated idempotency key, unique per user",
    )
    payload: Dict[str, Any] = Field(
        default_factory=dict,
        description="Type-specific fields",
    )

    @field_validator("timestamp")
    @classmethod
    def _require_timezone(cls, v: datetime) -> datetime:
        return ensure_aware(v)

    @field_validator("client_id", mode="before")
    @classmethod
    def _strip_client_id(cls, v: object) -> object:
        if isinstance(v, str):
            return v.strip()
        return v

    def __repr__(self) -> str:
        """Human-readable representation."""
        return (
            f"Event(type={self.type}, "
            f"timestamp={self.timestamp.isoformat()}, "
            f"client_id={self.client_id[:12]}...)"
        )

    def sort_key(self) -> tuple[datetime, str]:
        """Total order used by derivation: (timestamp, client_id)."""
        return (self.timestamp, self.client_id)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize event to a JSON-compatible dictionary (for storage)."""
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Event":
        """Deserialize event from dictionary."""
        return cls.model_validate(data)


# Custom Exceptions
class TrunkEventsError(Exception):
    """Base exception for all library errors."""
    pass


class StorageError(TrunkEventsError):
    """Local persistence failed.

    Raised for write failures so they are never silent; the message always
    carries an actionable suggestion.
    """

    suggestion = "Export your data now to keep a copy outside this device."

    def __init__(self, message: str) -> None:
        super().__init__(f"{message}. {self.suggestion}")


class ValidationError(TrunkEventsError):
    """Event, snapshot or import document failed validation."""
    pass


class VersionError(TrunkEventsError):
    """Snapshot, export or legacy document carries an unrecognised version."""
    pass


class SyncError(TrunkEventsError):
    """Network, auth or remote failure during synchronization."""
    pass


class SyncTimeoutError(SyncError):
    """A remote call exceeded its time budget."""
    pass


class MigrationError(TrunkEventsError):
    """Synthesized events do not reproduce the legacy state."""

    def __init__(self, errors: tuple[str, ...]) -> None:
        self.errors = errors
        super().__init__(f"Migration mismatch: {'; '.join(errors)}")
