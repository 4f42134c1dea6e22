"""
Transfer Orchestrator - Types.
"""

from enum import Enum


class TransferDirection(str, Enum):
    SEND = "send"
    RECEIVE = "receive"


class TransferStatus(str, Enum):
    """Transfer lifecycle states."""

    PENDING = "pending"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    DENIED = "denied"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    def is_active(self) -> bool:
        return not self.is_terminal()


TERMINAL_STATUSES = frozenset({
    TransferStatus.DENIED,
    TransferStatus.COMPLETED,
    TransferStatus.FAILED,
    TransferStatus.CANCELLED,
    TransferStatus.EXPIRED,
})

ACTIVE_STATUSES = frozenset(set(TransferStatus) - TERMINAL_STATUSES)


COUNTER_FIELDS = (
    "records_requested",
    "records_transferred",
    "records_created",
    "records_updated",
    "records_skipped",
    "records_failed",
    "bytes_transferred",
)
"""Monotonic progress counters."""
