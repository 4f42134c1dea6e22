"""
Transfer Orchestrator.

State machine and bookkeeping for table-scoped data movements.
"""

from transfers.types import TransferDirection, TransferStatus, TERMINAL_STATUSES
from transfers.state_machine import (
    VALID_TRANSITIONS,
    StateTransitionEvent,
    TransitionGuard,
    duration_seconds,
    is_terminal,
    success_rate,
)
from transfers.orchestrator import TransferOrchestrator

__all__ = [
    "TransferDirection",
    "TransferStatus",
    "TERMINAL_STATUSES",
    "VALID_TRANSITIONS",
    "StateTransitionEvent",
    "TransitionGuard",
    "duration_seconds",
    "is_terminal",
    "success_rate",
    "TransferOrchestrator",
]
