"""Operational settings.

Economy constants live in :mod:`trunk_events.constants`; this module holds
the knobs a deployment may tune, with ``TRUNK_*`` environment overrides.
"""

import os
from datetime import timedelta
from pathlib import Path
from typing import Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from trunk_events.compaction import (
    DEFAULT_COMPACTION_THRESHOLD,
    DEFAULT_SAFETY_MARGIN,
    CompactionManager,
)
from trunk_events.models import ValidationError
from trunk_events.remote import HttpRemoteLog, InMemoryRemoteLog, RemoteLog
from trunk_events.storage import FileStorage, InMemoryStorage, KeyValueStorage
from trunk_events.sync import DEFAULT_SYNC_TIMEOUT

ENV_PREFIX = "TRUNK_"


class TrunkSettings(BaseModel):
    """Deployment settings. Every field can be set from ``TRUNK_<FIELD>``."""

    model_config = ConfigDict(frozen=True)

    sync_timeout_seconds: float = Field(DEFAULT_SYNC_TIMEOUT, gt=0)
    compaction_threshold: int = Field(DEFAULT_COMPACTION_THRESHOLD, ge=1)
    compaction_margin_hours: float = Field(
        DEFAULT_SAFETY_MARGIN.total_seconds() / 3600, ge=0
    )
    remote_url: Optional[str] = Field(None, description="Base URL of the remote log")
    remote_api_key: Optional[str] = None
    data_dir: Optional[Path] = Field(
        None, description="Directory for local records; in-memory when unset"
    )

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "TrunkSettings":
        """Build settings from ``TRUNK_*`` variables; empty values are ignored.

        Raises:
            ValidationError: If a variable holds an invalid value.
        """
        env = os.environ if environ is None else environ
        values = {}
        for name in cls.model_fields:
            raw = env.get(ENV_PREFIX + name.upper())
            if raw:
                values[name] = raw
        try:
            return cls.model_validate(values)
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid {ENV_PREFIX}* setting: {exc}") from exc

    def compaction_manager(self) -> CompactionManager:
        return CompactionManager(
            threshold=self.compaction_threshold,
            margin=timedelta(hours=self.compaction_margin_hours),
        )

    def storage(self) -> KeyValueStorage:
        if self.data_dir is None:
            return InMemoryStorage()
        return FileStorage(self.data_dir)

    def remote(self) -> RemoteLog:
        if not self.remote_url:
            return InMemoryRemoteLog()
        return HttpRemoteLog(
            self.remote_url,
            api_key=self.remote_api_key,
            timeout=self.sync_timeout_seconds,
        )
