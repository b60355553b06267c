"""
Diversity-capped top-k selection over pending queue items.
"""
import math
from collections import Counter
from typing import List, Sequence

from core.entities import QueueItem, QueueStatus
from core.errors import ValidationError


def source_cap(max_items: int, cap_fraction: float) -> int:
    """
    Most picks any single source may take: ceil(max_items * cap_fraction), at least 1.
    """
    # round() keeps 10 * 0.3 from ceiling to 4
    return max(1, math.ceil(round(max_items * cap_fraction, 9)))


def validate_selection_args(max_items: int, cap_fraction: float) -> None:
    if max_items < 1:
        raise ValidationError("max_items must be at least 1", max_items=max_items)
    if not 0.0 < cap_fraction <= 1.0:
        raise ValidationError(
            "per_source_cap_fraction must be in (0, 1]", per_source_cap_fraction=cap_fraction
        )


def ranked(items: Sequence[QueueItem]) -> List[QueueItem]:
    """Pending items by total_score descending, older first on ties."""
    return sorted(
        (i for i in items if i.status == QueueStatus.PENDING),
        key=lambda i: (-i.total_score, i.queued_at, i.id),
    )


def balanced_selection(
    items: Sequence[QueueItem],
    max_items: int,
    cap_fraction: float = 0.35,
) -> List[QueueItem]:
    """
    Greedy walk down the ranking; an item whose source already has `cap`
    picks is passed over (it stays pending). The result is never longer than
    max_items and may be shorter when too few sources are available.
    """
    validate_selection_args(max_items, cap_fraction)
    cap = source_cap(max_items, cap_fraction)

    picked: List[QueueItem] = []
    per_source: Counter = Counter()
    for item in ranked(items):
        if per_source[item.source_identifier] >= cap:
            continue
        picked.append(item)
        per_source[item.source_identifier] += 1
        if len(picked) == max_items:
            break
    return picked
