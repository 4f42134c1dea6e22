"""
Transfer Orchestrator - State Machine.

============================================================
PURPOSE
============================================================
Transfer lifecycle with strict state transitions.

STATE MACHINE:

    PENDING ───────────────► PENDING_APPROVAL ──► DENIED
       │   (requires_approval)     │        └───► EXPIRED
       │                           ▼
       │                        APPROVED
       │ (no approval needed)      │
       ▼                           ▼
    IN_PROGRESS ◄──────────────────┘
       │
       ├──► COMPLETED
       ├──► FAILED
       └──► CANCELLED

    CANCELLED is reachable from every non-terminal state.
    FAILED is reachable from PENDING, APPROVED, IN_PROGRESS.

INVARIANTS:
- Terminal states are final
- requires_approval decides which edge leaves PENDING
- Illegal calls raise, they never no-op

============================================================
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set, Tuple

from transfers.types import TransferStatus


# ============================================================
# STATE TRANSITION RULES
# ============================================================

VALID_TRANSITIONS: Dict[TransferStatus, Set[TransferStatus]] = {
    TransferStatus.PENDING: {
        TransferStatus.PENDING_APPROVAL,
        TransferStatus.IN_PROGRESS,
        TransferStatus.CANCELLED,
        TransferStatus.FAILED,
    },
    TransferStatus.PENDING_APPROVAL: {
        TransferStatus.APPROVED,
        TransferStatus.DENIED,
        TransferStatus.EXPIRED,
        TransferStatus.CANCELLED,
    },
    TransferStatus.APPROVED: {
        TransferStatus.IN_PROGRESS,
        TransferStatus.CANCELLED,
        TransferStatus.FAILED,
    },
    TransferStatus.IN_PROGRESS: {
        TransferStatus.COMPLETED,
        TransferStatus.FAILED,
        TransferStatus.CANCELLED,
    },
    # Terminal states - no transitions out
    TransferStatus.DENIED: set(),
    TransferStatus.COMPLETED: set(),
    TransferStatus.FAILED: set(),
    TransferStatus.CANCELLED: set(),
    TransferStatus.EXPIRED: set(),
}


def sources_for(target: TransferStatus, requires_approval: Optional[bool] = None) -> Set[TransferStatus]:
    """
    States from which ``target`` may be reached.

    With requires_approval given, PENDING is kept only on the edge
    that matches it.
    """
    sources = {s for s, targets in VALID_TRANSITIONS.items() if target in targets}
    if requires_approval is not None and TransferStatus.PENDING in sources:
        if target is TransferStatus.IN_PROGRESS and requires_approval:
            sources.discard(TransferStatus.PENDING)
        if target is TransferStatus.PENDING_APPROVAL and not requires_approval:
            sources.discard(TransferStatus.PENDING)
    return sources


# ============================================================
# STATE TRANSITION EVENT
# ============================================================

@dataclass
class StateTransitionEvent:
    """Event representing a transfer state transition."""

    transfer_id: int
    """Transfer ID."""

    from_state: TransferStatus
    """Previous state."""

    to_state: TransferStatus
    """New state."""

    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    """When transition occurred."""

    actor: Optional[str] = None
    """Admin or process that caused it."""

    details: Dict[str, Any] = field(default_factory=dict)
    """Additional details."""


# ============================================================
# STATE TRANSITION GUARD
# ============================================================

class TransitionGuard:
    """
    Guard for transfer state transitions.

    Ensures transitions are valid and provides reason for denial.
    """

    @staticmethod
    def can_transition(
        from_state: TransferStatus,
        to_state: TransferStatus,
        requires_approval: bool = False,
    ) -> Tuple[bool, str]:
        """
        Check if transition is allowed.

        Returns:
            Tuple of (allowed, reason)
        """
        if from_state.is_terminal():
            return False, f"Cannot transition from terminal state {from_state.value}"

        if to_state not in VALID_TRANSITIONS.get(from_state, set()):
            return False, f"Invalid transition: {from_state.value} -> {to_state.value}"

        if from_state is TransferStatus.PENDING:
            if to_state is TransferStatus.IN_PROGRESS and requires_approval:
                return False, "Transfer requires approval before it can start"
            if to_state is TransferStatus.PENDING_APPROVAL and not requires_approval:
                return False, "Transfer does not require approval"

        return True, "Valid transition"


# ============================================================
# DERIVED VALUES
# ============================================================

def is_terminal(transfer: Any) -> bool:
    return TransferStatus(transfer.status).is_terminal()


def success_rate(transfer: Any) -> float:
    """(created + updated) / transferred, 0.0 when nothing transferred."""
    if not transfer.records_transferred:
        return 0.0
    return (transfer.records_created + transfer.records_updated) / transfer.records_transferred


def duration_seconds(transfer: Any) -> Optional[float]:
    """None until both started_at and completed_at are set."""
    if transfer.started_at is None or transfer.completed_at is None:
        return None
    return (transfer.completed_at - transfer.started_at).total_seconds()
