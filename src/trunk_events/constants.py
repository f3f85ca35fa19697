"""Resource economy constants shared by every device.

These values are part of the cross-device contract: two devices running
different constants would derive different balances from the same log.

Sections:
    1. Balance (soil) constants
    2. Daily / weekly window constants
    3. Duration classes
    4. Storage and schema versions
"""

from enum import Enum
from typing import Dict, FrozenSet

# ── Section 1: Balance constants ─────────────────────────────────────────────

STARTING_CAPACITY: float = 10.0
MAX_CAPACITY: float = 120.0

NURTURE_RECOVERY: float = 0.05
REFLECTION_RECOVERY: float = 0.35

ABANDON_REFUND_FRACTION: float = 0.25

# Diminishing-returns exponent applied as capacity approaches MAX_CAPACITY
CAPACITY_REWARD_EXPONENT: float = 1.5


class Duration(str, Enum):
    """How long a goal runs."""

    TWO_WEEKS = "2w"
    ONE_MONTH = "1m"
    THREE_MONTHS = "3m"
    SIX_MONTHS = "6m"
    ONE_YEAR = "1y"


class Difficulty(str, Enum):
    """How hard a goal is expected to be."""

    FERTILE = "fertile"
    FIRM = "firm"
    BARREN = "barren"


GOAL_COSTS: Dict[Duration, Dict[Difficulty, int]] = {
    Duration.TWO_WEEKS: {Difficulty.FERTILE: 2, Difficulty.FIRM: 3, Difficulty.BARREN: 4},
    Duration.ONE_MONTH: {Difficulty.FERTILE: 3, Difficulty.FIRM: 5, Difficulty.BARREN: 6},
    Duration.THREE_MONTHS: {Difficulty.FERTILE: 5, Difficulty.FIRM: 8, Difficulty.BARREN: 10},
    Duration.SIX_MONTHS: {Difficulty.FERTILE: 8, Difficulty.FIRM: 12, Difficulty.BARREN: 16},
    Duration.ONE_YEAR: {Difficulty.FERTILE: 12, Difficulty.FIRM: 18, Difficulty.BARREN: 24},
}

DIFFICULTY_MULTIPLIERS: Dict[Difficulty, float] = {
    Difficulty.FERTILE: 1.1,
    Difficulty.FIRM: 1.75,
    Difficulty.BARREN: 2.4,
}

RESULT_MULTIPLIERS: Dict[int, float] = {
    1: 0.4,
    2: 0.55,
    3: 0.7,
    4: 0.85,
    5: 1.0,
}

RESULT_TIERS: FrozenSet[int] = frozenset(RESULT_MULTIPLIERS)

# ── Section 2: Window constants ──────────────────────────────────────────────

NURTURE_DAILY_CAPACITY: int = 3
REFLECTION_WEEKLY_CAPACITY: int = 1

RESET_HOUR: int = 6
# Monday (datetime.weekday() numbering). See DESIGN.md for why Monday.
WEEKLY_RESET_WEEKDAY: int = 0

# ── Section 3: Duration classes ──────────────────────────────────────────────

DURATION_DAYS: Dict[Duration, int] = {
    Duration.TWO_WEEKS: 14,
    Duration.ONE_MONTH: 30,
    Duration.THREE_MONTHS: 90,
    Duration.SIX_MONTHS: 180,
    Duration.ONE_YEAR: 365,
}

DURATION_BASE_REWARD: Dict[Duration, float] = {
    Duration.TWO_WEEKS: 0.26,
    Duration.ONE_MONTH: 0.56,
    Duration.THREE_MONTHS: 1.95,
    Duration.SIX_MONTHS: 4.16,
    Duration.ONE_YEAR: 8.84,
}

# ── Section 4: Versions ──────────────────────────────────────────────────────

SCHEMA_VERSION: str = "1.0.0"
SNAPSHOT_VERSION: int = 1
CACHE_VERSION: int = 1
EXPORT_FORMAT_VERSION: int = 1
LEGACY_STATE_VERSION: int = 1
