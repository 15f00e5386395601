"""
Video Processing State Machine - Explicit transition rules for processing_status.

State Transition Diagram:
    UPLOADING ──> PROCESSING ──> READY
        │   │          │
        │   └──────────┼──────> READY    (remote may finish between polls)
        │              v
        └─────────> ERROR ──> UPLOADING  (operator retry only)

READY and ERROR are sinks for steady-state reconciliation. Remote hosts are
observed to report stale transitional states after ready, so any snapshot
implying a backward edge is ignored rather than applied.

Usage:
    from api.video_state import video_state_machine

    if video_state_machine.can_transition(current, proposed):
        ...

Note: Checks are point-in-time. Concurrent writers (engine, webhook, client
poll) are reconciled by idempotent writes with last-write-wins persistence.
"""

import logging
from typing import Dict, FrozenSet, Union

from api.enums import TERMINAL_STATUSES, TRANSITIONAL_STATUSES, ProcessingStatus

logger = logging.getLogger(__name__)

StatusLike = Union[ProcessingStatus, str]

# Edges reconciliation may apply
_RECONCILE_EDGES: Dict[ProcessingStatus, FrozenSet[ProcessingStatus]] = {
    ProcessingStatus.UPLOADING: frozenset(
        [ProcessingStatus.PROCESSING, ProcessingStatus.READY, ProcessingStatus.ERROR]
    ),
    ProcessingStatus.PROCESSING: frozenset([ProcessingStatus.READY, ProcessingStatus.ERROR]),
    ProcessingStatus.READY: frozenset(),
    ProcessingStatus.ERROR: frozenset(),
}

# Edges only an explicit operator action may apply
_OPERATOR_EDGES: Dict[ProcessingStatus, FrozenSet[ProcessingStatus]] = {
    ProcessingStatus.ERROR: frozenset([ProcessingStatus.UPLOADING]),
}


def _coerce(status: StatusLike) -> ProcessingStatus:
    if isinstance(status, ProcessingStatus):
        return status
    return ProcessingStatus(status)


class VideoStateMachine:
    """
    Stateless transition rules for the processing lifecycle.

    Thread Safety:
        This class holds no mutable state. All methods are pure functions.
    """

    def is_transitional(self, status: StatusLike) -> bool:
        """Check if the status is still being converged with the remote host."""
        return _coerce(status) in TRANSITIONAL_STATUSES

    def is_terminal(self, status: StatusLike) -> bool:
        """Check if the status is a steady-state sink (ready or error)."""
        return _coerce(status) in TERMINAL_STATUSES

    def can_transition(self, current: StatusLike, proposed: StatusLike) -> bool:
        """
        Check if reconciliation may move a record from current to proposed.

        Same-state "transitions" are not edges; callers treat them as no-ops.
        """
        current = _coerce(current)
        proposed = _coerce(proposed)
        return proposed in _RECONCILE_EDGES[current]

    def can_retry(self, current: StatusLike) -> bool:
        """Check if the explicit operator retry edge applies (error -> uploading)."""
        current = _coerce(current)
        return ProcessingStatus.UPLOADING in _OPERATOR_EDGES.get(current, frozenset())


# Module-level singleton (the machine is stateless)
video_state_machine = VideoStateMachine()
