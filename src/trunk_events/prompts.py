"""Prompt rotation for nurture and reflection cues.

Which prompts were shown recently is a deliberately approximate, in-memory
affordance: it is never persisted or synced and is lost on restart.
"""

import random
from collections import deque
from typing import Deque, List, Optional, Sequence

NODE_TOKEN = "{node}"

REFLECTION_PROMPTS: Sequence[str] = (
    "What did {node} teach you recently?",
    "How has {node} changed over the past month?",
    "What small wins have you noticed in {node}?",
    "How does {node} feel in your life right now?",
    "What energy have you been bringing to {node} lately?",
    "What would you like {node} to become?",
    "What is the next small step forward in {node}?",
    "Why does {node} matter to you?",
    "What deserves more attention in {node}?",
)

NURTURE_PROMPTS: Sequence[str] = (
    "What did you do for this today?",
    "What got in the way?",
    "What felt easier than expected?",
    "What would make tomorrow's step smaller?",
    "What did you notice about your energy?",
    "What are you proud of so far?",
)

DEFAULT_RECENT_LIMIT = 5


class RecentlyShown:
    """Bounded queue of recently shown prompts; the oldest falls off first."""

    def __init__(self, limit: int = DEFAULT_RECENT_LIMIT) -> None:
        if limit < 0:
            raise ValueError("limit must not be negative")
        self._items: Deque[str] = deque(maxlen=limit)

    @property
    def limit(self) -> int:
        return self._items.maxlen or 0

    def remember(self, prompt: str) -> None:
        if self.limit:
            self._items.append(prompt)

    def __contains__(self, prompt: object) -> bool:
        return prompt in self._items

    def __len__(self) -> int:
        return len(self._items)

    def clear(self) -> None:
        self._items.clear()


def pick_prompts(
    pool: Sequence[str],
    count: int,
    recent: RecentlyShown,
    rng: Optional[random.Random] = None,
) -> List[str]:
    """Pick up to ``count`` distinct prompts, avoiding recent ones when possible.

    Falls back to the whole pool when too few unseen prompts remain.
    """
    if not pool or count <= 0:
        return []
    rng = rng or random.Random()
    fresh = [p for p in pool if p not in recent]
    candidates = fresh if len(fresh) >= count else list(pool)
    selected = rng.sample(candidates, min(count, len(candidates)))
    for prompt in selected:
        recent.remember(prompt)
    return selected


def pick_prompt(
    pool: Sequence[str],
    recent: RecentlyShown,
    rng: Optional[random.Random] = None,
) -> Optional[str]:
    picked = pick_prompts(pool, 1, recent, rng)
    return picked[0] if picked else None


def render_prompt(template: str, node_label: str) -> str:
    """Fill the node token with the facet's current label."""
    return template.replace(NODE_TOKEN, node_label)
