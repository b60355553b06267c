"""
Queue item state machine.

    pending  -> selected | skipped | expired
    selected -> used

used, skipped and expired are terminal.
"""
from typing import Dict, FrozenSet

from core.entities import QueueStatus
from core.errors import StateConflictError

ALLOWED_TRANSITIONS: Dict[QueueStatus, FrozenSet[QueueStatus]] = {
    QueueStatus.PENDING: frozenset({QueueStatus.SELECTED, QueueStatus.SKIPPED, QueueStatus.EXPIRED}),
    QueueStatus.SELECTED: frozenset({QueueStatus.USED}),
    QueueStatus.USED: frozenset(),
    QueueStatus.SKIPPED: frozenset(),
    QueueStatus.EXPIRED: frozenset(),
}


def can_transition(current: QueueStatus, target: QueueStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def required_status(target: QueueStatus) -> QueueStatus:
    """The single status a row must be in to move to `target`."""
    sources = [s for s, targets in ALLOWED_TRANSITIONS.items() if target in targets]
    if len(sources) != 1:
        raise StateConflictError(f"No transition leads to {target.value}", target=target.value)
    return sources[0]


def check_transition(current: QueueStatus, target: QueueStatus) -> None:
    if not can_transition(current, target):
        raise StateConflictError(
            f"Cannot move queue item from {current.value} to {target.value}",
            current=current.value,
            target=target.value,
        )
