"""
trunk-events: Event-sourced persistence and sync core for a personal life tracker.

This library keeps an append-only log of user actions, derives all state from
it with a deterministic pure fold, bounds replay cost with versioned
snapshots, and reconciles each device's log with one remote authority.

Example:
    >>> from trunk_events import InMemoryStorage, TrunkStore, start_goal
    >>> with TrunkStore.open(InMemoryStorage()) as store:
    ...     _ = start_goal(store, "branch-0-twig-1", "Run a 10k", "3m", "firm")
    ...     store.state().available
    2.0

Versioning Notes (1.0.0):
    Wire format: the event envelope ``{type, timestamp, client_id, payload}``
    and the eight event types in ``TRUNK_EVENT_TYPES``. Changes are additive;
    clients ignore event types they do not know.

    Persisted formats carry their own integer versions: ``SNAPSHOT_VERSION``
    (snapshots are discarded on mismatch), ``CACHE_VERSION`` (forces a full
    sync on mismatch), ``EXPORT_FORMAT_VERSION`` and ``LEGACY_STATE_VERSION``.

    Conformance fixtures ship with the package:
    ``pytest --pyargs trunk_events.conformance``.
"""

__version__ = "1.0.0"

# Core data models and errors
from trunk_events.models import (
    Event,
    TrunkEventsError,
    StorageError,
    ValidationError,
    VersionError,
    SyncError,
    SyncTimeoutError,
    MigrationError,
    ensure_aware,
    new_client_id,
)

# Economy constants and formulas
from trunk_events.constants import (
    SCHEMA_VERSION,
    SNAPSHOT_VERSION,
    CACHE_VERSION,
    EXPORT_FORMAT_VERSION,
    LEGACY_STATE_VERSION,
    STARTING_CAPACITY,
    MAX_CAPACITY,
    Duration,
    Difficulty,
)
from trunk_events.calculations import (
    abandon_refund,
    capacity_reward,
    goal_cost,
    round_balance,
)

# Event contracts
from trunk_events.events import (
    GOAL_STARTED,
    GOAL_NURTURED,
    GOAL_CONCLUDED,
    GOAL_ABANDONED,
    GOAL_EDITED,
    REFLECTION_RECORDED,
    GROUPING_CREATED,
    NODE_RELABELED,
    GOAL_EVENT_TYPES,
    TRUNK_EVENT_TYPES,
    GoalStartedPayload,
    GoalNurturedPayload,
    GoalConcludedPayload,
    GoalAbandonedPayload,
    GoalEditedPayload,
    ReflectionRecordedPayload,
    GroupingCreatedPayload,
    NodeRelabeledPayload,
    TrunkPayload,
    make_event,
    parse_payload,
)

# Derivation
from trunk_events.derive import (
    GoalState,
    Goal,
    Grouping,
    Reflection,
    NodeInfo,
    NurtureEntry,
    DerivationAnomaly,
    DerivedState,
    BalanceChange,
    derive_state,
    balance_history,
    dedup_events,
    active_goals,
    concluded_goals,
    abandoned_goals,
    goals_for_node,
    active_goals_for_node,
    goals_for_grouping,
    groupings_for_node,
    all_nurture_entries,
    goal_end_date,
)

# Time windows
from trunk_events.windows import (
    ResetKind,
    AvailabilityCache,
    NurtureStreak,
    reset_boundary,
    next_reset,
    usage_since,
    available,
    nurture_available,
    reflection_available,
    nurture_streak,
)

# Storage, log, compaction and the store object
from trunk_events.storage import (
    KeyValueStorage,
    InMemoryStorage,
    FileStorage,
)
from trunk_events.log import ClientIdSet, EventLog
from trunk_events.compaction import (
    Snapshot,
    CompactionManager,
    CompactionResult,
    load_snapshot,
    snapshot_to_events,
)
from trunk_events.store import StoreClosedError, TrunkStore

# Actions
from trunk_events.actions import (
    start_goal,
    nurture_goal,
    conclude_goal,
    abandon_goal,
    edit_goal,
    record_reflection,
    create_grouping,
    relabel_node,
)

# Remote authority and sync
from trunk_events.remote import (
    RemoteLog,
    RemoteRecord,
    InsertOutcome,
    InMemoryRemoteLog,
    HttpRemoteLog,
)
from trunk_events.sync import (
    SyncStatus,
    SyncMode,
    DetailedSyncStatus,
    SyncResult,
    SyncMetadata,
    PendingUploads,
    SyncService,
)

# Export, migration, prompts, settings
from trunk_events.export import (
    ExportDocument,
    export_document,
    import_document,
    parse_document,
)
from trunk_events.migrate import (
    LegacyState,
    MigrationReport,
    import_legacy,
    migrate_legacy,
    migrate_to_events,
    parse_legacy,
    validate_migration,
)
from trunk_events.prompts import (
    NURTURE_PROMPTS,
    REFLECTION_PROMPTS,
    RecentlyShown,
    pick_prompt,
    pick_prompts,
    render_prompt,
)
from trunk_events.config import TrunkSettings

__all__ = [
    "__version__",
    # Core
    "Event",
    "TrunkEventsError",
    "StorageError",
    "ValidationError",
    "VersionError",
    "SyncError",
    "SyncTimeoutError",
    "MigrationError",
    "ensure_aware",
    "new_client_id",
    # Constants and formulas
    "SCHEMA_VERSION",
    "SNAPSHOT_VERSION",
    "CACHE_VERSION",
    "EXPORT_FORMAT_VERSION",
    "LEGACY_STATE_VERSION",
    "STARTING_CAPACITY",
    "MAX_CAPACITY",
    "Duration",
    "Difficulty",
    "abandon_refund",
    "capacity_reward",
    "goal_cost",
    "round_balance",
    # Event contracts
    "GOAL_STARTED",
    "GOAL_NURTURED",
    "GOAL_CONCLUDED",
    "GOAL_ABANDONED",
    "GOAL_EDITED",
    "REFLECTION_RECORDED",
    "GROUPING_CREATED",
    "NODE_RELABELED",
    "GOAL_EVENT_TYPES",
    "TRUNK_EVENT_TYPES",
    "GoalStartedPayload",
    "GoalNurturedPayload",
    "GoalConcludedPayload",
    "GoalAbandonedPayload",
    "GoalEditedPayload",
    "ReflectionRecordedPayload",
    "GroupingCreatedPayload",
    "NodeRelabeledPayload",
    "TrunkPayload",
    "make_event",
    "parse_payload",
    # Derivation
    "GoalState",
    "Goal",
    "Grouping",
    "Reflection",
    "NodeInfo",
    "NurtureEntry",
    "DerivationAnomaly",
    "DerivedState",
    "BalanceChange",
    "derive_state",
    "balance_history",
    "dedup_events",
    "active_goals",
    "concluded_goals",
    "abandoned_goals",
    "goals_for_node",
    "active_goals_for_node",
    "goals_for_grouping",
    "groupings_for_node",
    "all_nurture_entries",
    "goal_end_date",
    # Windows
    "ResetKind",
    "AvailabilityCache",
    "NurtureStreak",
    "reset_boundary",
    "next_reset",
    "usage_since",
    "available",
    "nurture_available",
    "reflection_available",
    "nurture_streak",
    # Storage and store
    "KeyValueStorage",
    "InMemoryStorage",
    "FileStorage",
    "ClientIdSet",
    "EventLog",
    "Snapshot",
    "CompactionManager",
    "CompactionResult",
    "load_snapshot",
    "snapshot_to_events",
    "StoreClosedError",
    "TrunkStore",
    # Actions
    "start_goal",
    "nurture_goal",
    "conclude_goal",
    "abandon_goal",
    "edit_goal",
    "record_reflection",
    "create_grouping",
    "relabel_node",
    # Remote and sync
    "RemoteLog",
    "RemoteRecord",
    "InsertOutcome",
    "InMemoryRemoteLog",
    "HttpRemoteLog",
    "SyncStatus",
    "SyncMode",
    "DetailedSyncStatus",
    "SyncResult",
    "SyncMetadata",
    "PendingUploads",
    "SyncService",
    # Export, migration, prompts, settings
    "ExportDocument",
    "export_document",
    "import_document",
    "parse_document",
    "LegacyState",
    "MigrationReport",
    "import_legacy",
    "migrate_legacy",
    "migrate_to_events",
    "parse_legacy",
    "validate_migration",
    "NURTURE_PROMPTS",
    "REFLECTION_PROMPTS",
    "RecentlyShown",
    "pick_prompt",
    "pick_prompts",
    "render_prompt",
    "TrunkSettings",
]
