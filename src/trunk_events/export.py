"""Export and import of the full, decompacted event history.

The interchange document is plain JSON::

    {"format_version": 1, "exported_at": "...", "events": [Event, ...]}

Export always decompacts: snapshot facts are re-expanded into events under
their original client ids, so a document written after compaction still
carries every goal, nurture entry and reflection, and re-importing it never
duplicates what the remote already holds.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from trunk_events.constants import EXPORT_FORMAT_VERSION
from trunk_events.models import Event, ValidationError, VersionError
from trunk_events.store import TrunkStore

logger = logging.getLogger("trunk_events.export")


class ExportDocument(BaseModel):
    """Versioned, language-agnostic interchange document."""

    model_config = ConfigDict(frozen=True)

    format_version: int = Field(EXPORT_FORMAT_VERSION, description="Document format version")
    exported_at: datetime
    events: List[Event] = Field(default_factory=list)

    def to_json(self, indent: Optional[int] = 2) -> str:
        return self.model_dump_json(indent=indent)


def export_document(store: TrunkStore, now: Optional[datetime] = None) -> ExportDocument:
    """Build an export of everything the store knows, oldest event first."""
    return ExportDocument(
        exported_at=now or datetime.now(timezone.utc),
        events=store.export_events(),
    )


def parse_document(raw: Union[str, bytes, Dict[str, Any]]) -> ExportDocument:
    """Parse and validate an export document.

    Raises:
        VersionError: If the document was written in an unknown format version.
        ValidationError: If the document is not valid JSON or fails validation.
    """
    if isinstance(raw, (str, bytes)):
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ValidationError(f"Export is not valid JSON: {exc}") from exc
    else:
        data = raw
    if not isinstance(data, dict):
        raise ValidationError("Export document must be a JSON object")
    version = data.get("format_version")
    if version != EXPORT_FORMAT_VERSION:
        raise VersionError(
            f"Unsupported export format version {version!r}; "
            f"expected {EXPORT_FORMAT_VERSION}"
        )
    try:
        return ExportDocument.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError(f"Export failed validation: {exc}") from exc


def import_document(store: TrunkStore, raw: Union[str, bytes, Dict[str, Any]]) -> int:
    """Replace the store's history with an export document.

    The snapshot is dropped; the imported events become the whole log. None
    of them counts as confirmed by the remote authority, so an attached
    ``SyncService`` uploads them (duplicates are absorbed by the remote) and
    compaction leaves them alone until it has.

    Returns:
        Number of events imported.
    """
    document = parse_document(raw)
    store.replace_events(document.events)
    logger.info("Imported %d event(s) exported at %s", len(document.events), document.exported_at)
    return len(document.events)
