"""
Session / Pairing Broker.

Process-scoped pairing codes for ad-hoc transfers.
"""

from pairing.broker import (
    CODE_ALPHABET,
    CODE_LENGTH,
    Session,
    SessionBroker,
    SessionDirection,
    SessionStatus,
)

__all__ = [
    "CODE_ALPHABET",
    "CODE_LENGTH",
    "Session",
    "SessionBroker",
    "SessionDirection",
    "SessionStatus",
]
