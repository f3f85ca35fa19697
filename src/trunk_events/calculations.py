"""Pure cost and reward formulas. No state, just arithmetic on constants."""

from trunk_events.constants import (
    ABANDON_REFUND_FRACTION,
    CAPACITY_REWARD_EXPONENT,
    DIFFICULTY_MULTIPLIERS,
    DURATION_BASE_REWARD,
    GOAL_COSTS,
    MAX_CAPACITY,
    RESULT_MULTIPLIERS,
    Difficulty,
    Duration,
)


def round_balance(value: float) -> float:
    """Round a balance to 2 decimal places to prevent floating-point drift."""
    return round(value * 100) / 100


def goal_cost(duration: Duration, difficulty: Difficulty) -> int:
    """Balance spent when starting a goal."""
    return GOAL_COSTS[Duration(duration)][Difficulty(difficulty)]


def abandon_refund(cost: float) -> float:
    """Balance returned when a goal is abandoned."""
    return round_balance(cost * ABANDON_REFUND_FRACTION)


def capacity_reward(
    duration: Duration,
    difficulty: Difficulty,
    result: int,
    current_capacity: float,
) -> float:
    """Capacity gained by concluding a goal, with diminishing returns.

    Growth slows toward zero as ``current_capacity`` approaches
    MAX_CAPACITY. Unknown result tiers fall back to the middle tier.
    """
    base = DURATION_BASE_REWARD[Duration(duration)]
    difficulty_mult = DIFFICULTY_MULTIPLIERS[Difficulty(difficulty)]
    result_mult = RESULT_MULTIPLIERS.get(result, RESULT_MULTIPLIERS[3])
    headroom = max(0.0, 1 - (current_capacity / MAX_CAPACITY))
    return base * difficulty_mult * result_mult * headroom ** CAPACITY_REWARD_EXPONENT
