"""
Batch status state machine.

    Manufactured -> InTransit -> Delivered -> Dispensed
    any state except Recalled -> Recalled   (terminal)

Stateless — the ledger gateway reads the current status and asks this module
whether the requested one is reachable before submitting the mutation.
"""

from typing import Dict, FrozenSet

from common.errors import InvalidTransition
from ledger.models import BatchStatus

FORWARD_EDGES: Dict[BatchStatus, BatchStatus] = {
    BatchStatus.MANUFACTURED: BatchStatus.IN_TRANSIT,
    BatchStatus.IN_TRANSIT:   BatchStatus.DELIVERED,
    BatchStatus.DELIVERED:    BatchStatus.DISPENSED,
}

TERMINAL_STATES: FrozenSet[BatchStatus] = frozenset({BatchStatus.RECALLED})


def is_terminal(status: BatchStatus) -> bool:
    return status in TERMINAL_STATES


def is_allowed(current: BatchStatus, requested: BatchStatus) -> bool:
    if is_terminal(current):
        return False
    if requested is BatchStatus.RECALLED:
        return True
    return FORWARD_EDGES.get(current) is requested


def allowed_next(current: BatchStatus) -> FrozenSet[BatchStatus]:
    """All statuses reachable in one step from ``current``."""
    return frozenset(s for s in BatchStatus if is_allowed(current, s))


def check_transition(current: BatchStatus, requested: BatchStatus) -> None:
    """
    Raise InvalidTransition unless current -> requested is a legal edge.
    """
    if not is_allowed(current, requested):
        allowed = sorted(s.value for s in allowed_next(current))
        raise InvalidTransition(
            f"Cannot move batch from {current.value} to {requested.value}",
            details={
                "current": current.value,
                "requested": requested.value,
                "allowed": allowed,
            },
        )
