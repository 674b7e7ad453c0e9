"""Reviewer selector: unbiased random choice of reviewers from a candidate pool.

The candidate pool is already filtered by the caller (active team members,
author excluded). The selector only shuffles and truncates, so it never
returns an id that was not offered and never returns the same id twice.

The randomness source is pluggable: production passes nothing and gets a
fresh system-seeded ``random.Random``; tests pass a seeded instance.
"""

from __future__ import annotations

import random
from collections.abc import Iterable

MAX_REVIEWERS = 2


def select_reviewers(
    candidates: Iterable[str],
    max_count: int = MAX_REVIEWERS,
    rng: random.Random | None = None,
) -> list[str]:
    """Return up to ``max_count`` distinct ids drawn from ``candidates``.

    Every ordering of the pool is equally likely (Fisher-Yates via
    ``Random.shuffle``), and the first ``max_count`` entries are kept.
    An empty pool yields an empty list.
    """
    if max_count < 0:
        raise ValueError(f"max_count must be >= 0, got {max_count}")

    pool = list(dict.fromkeys(candidates))
    if not pool or max_count == 0:
        return []

    rng = rng or random.Random()
    rng.shuffle(pool)
    return pool[:max_count]

